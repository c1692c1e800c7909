"""In-process event bus shared by the host and sandboxed plugins.

Host handlers run inline on the publishing thread. Handlers registered on
behalf of a plugin carry that plugin's :class:`~warden.core.worker.PluginWorker`
and are enqueued onto it, so plugin code only ever runs on its home worker.
Publishers never wait on a plugin: a full callback queue is counted as a
failed delivery and logged.
"""

from __future__ import annotations

import threading
import time
import traceback
import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..observability.loguru_config import get_logger
from .worker import CallbackQueueFullError, WorkerError

if TYPE_CHECKING:
    from ..plugin_sdk.types import EventPayload
    from .worker import PluginWorker

__all__ = [
    "Event",
    "EventBus",
    "EventHandler",
    "HandlerResult",
    "SubscriptionHandle",
    "create_event_bus",
]

logger = get_logger("events")


@dataclass
class Event:
    """Event container with metadata."""

    name: str
    payload: EventPayload = None
    headers: dict[str, Any] = field(default_factory=dict)
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = field(default_factory=time.time)

    def with_correlation_id(self, correlation_id: str) -> Event:
        """Create new event with specified correlation ID."""
        return Event(
            name=self.name,
            payload=self.payload,
            headers=self.headers.copy(),
            correlation_id=correlation_id,
            timestamp=self.timestamp,
        )


EventHandler = Callable[[Event], Any]
"""Type alias for event handler functions."""

FilterPredicate = Callable[[Event], bool]
"""Type alias for event filter predicates."""


@dataclass
class HandlerResult:
    """Result of handing an event to one subscriber.

    For plugin subscribers ``success`` means the callback was enqueued on the
    plugin's worker, not that it has run.
    """

    success: bool
    duration_ms: float
    error: Exception | None = None
    marshaled: bool = False


@dataclass
class SubscriptionHandle:
    """Handle for managing subscriptions."""

    subscription_id: str
    event_name: str
    handler: EventHandler
    filter_predicate: FilterPredicate | None = None
    once: bool = False
    worker: PluginWorker | None = None
    _triggered: bool = field(default=False, init=False)

    @property
    def plugin_name(self) -> str | None:
        return self.worker.plugin_name if self.worker is not None else None

    def should_handle(self, event: Event) -> bool:
        """Check if this subscription should handle the event."""
        if self.once and self._triggered:
            return False

        return not (self.filter_predicate and not self.filter_predicate(event))

    def mark_triggered(self) -> None:
        """Mark subscription as triggered (for once=True)."""
        self._triggered = True

    def release(self) -> None:
        """Undo :meth:`mark_triggered` after an event could not be queued."""
        self._triggered = False


class EventBus:
    """Thread-safe in-process pub/sub.

    Example:
        >>> bus = EventBus()
        >>> handle = bus.subscribe("buffer.saved", lambda event: print(event.payload["path"]))
        >>> bus.publish("buffer.saved", {"path": "/tmp/a.txt"})
        /tmp/a.txt
        1

    Plugin subscriptions pass ``worker=``; the handler is then enqueued on the
    plugin's home worker instead of being called inline.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._subscriptions: dict[str, list[SubscriptionHandle]] = defaultdict(list)
        self._delivery_stats: dict[str, dict[str, int]] = defaultdict(
            lambda: {"published": 0, "delivered": 0, "failed": 0}
        )

    def publish(
        self,
        event_name: str,
        payload: EventPayload = None,
        *,
        headers: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> int:
        """Publish event to all subscribers.

        Parameters
        ----------
        event_name
            Dot-separated event name (e.g., "buffer.saved")
        payload
            Event payload data
        headers
            Optional metadata headers
        correlation_id
            Optional correlation ID for tracing (generated if not provided)

        Returns
        -------
        int
            Number of handlers that received (or were queued) the event
        """
        event = Event(
            name=event_name,
            payload=payload or {},
            headers=headers or {},
            correlation_id=correlation_id or str(uuid.uuid4()),
            timestamp=time.time(),
        )

        logger.debug(
            f"Event published: {event_name}",
            event_name=event_name,
            correlation_id=event.correlation_id,
            payload_keys=list(event.payload.keys()) if event.payload else [],
        )

        with self._lock:
            self._delivery_stats[event_name]["published"] += 1
            candidates = list(self._subscriptions.get(event_name, []))

        handlers_triggered = 0
        for subscription in candidates:
            with self._lock:
                if not subscription.should_handle(event):
                    continue
                # Claim once-subscriptions before delivery so concurrent
                # publishers cannot both trigger them
                if subscription.once:
                    subscription.mark_triggered()

            result = self._deliver(subscription, event)

            with self._lock:
                if subscription.once:
                    if isinstance(result.error, CallbackQueueFullError):
                        # Nothing was queued; the next publish may deliver it
                        subscription.release()
                    else:
                        self._remove(subscription)

                stats = self._delivery_stats[event_name]
                if result.success:
                    stats["delivered"] += 1
                    handlers_triggered += 1
                else:
                    stats["failed"] += 1

        return handlers_triggered

    def subscribe(
        self,
        event_name: str,
        handler: EventHandler,
        *,
        filter_predicate: FilterPredicate | None = None,
        once: bool = False,
        worker: PluginWorker | None = None,
    ) -> SubscriptionHandle:
        """Subscribe to events.

        Parameters
        ----------
        event_name
            Event name to subscribe to
        handler
            Handler function (takes Event, returns Any)
        filter_predicate
            Optional filter predicate (takes Event, returns bool). Evaluated on
            the publishing thread.
        once
            If True, handler is called only once then unsubscribed
        worker
            Home worker of the plugin owning ``handler``. When given, the
            handler always runs on that worker.

        Returns
        -------
        SubscriptionHandle
            Handle for managing the subscription
        """
        subscription = SubscriptionHandle(
            subscription_id=str(uuid.uuid4()),
            event_name=event_name,
            handler=handler,
            filter_predicate=filter_predicate,
            once=once,
            worker=worker,
        )

        with self._lock:
            self._subscriptions[event_name].append(subscription)

        logger.debug(
            f"Subscription created for {event_name}",
            event_name=event_name,
            subscription_id=subscription.subscription_id,
            plugin=subscription.plugin_name,
            once=once,
        )

        return subscription

    def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        """Unsubscribe handler.

        Returns
        -------
        bool
            True if subscription was found and removed
        """
        with self._lock:
            removed = self._remove(handle)

        if removed:
            logger.debug(
                f"Subscription removed: {handle.subscription_id}",
                subscription_id=handle.subscription_id,
            )

        return removed

    def unsubscribe_all(self, event_name: str) -> int:
        """Remove all subscriptions for event name.

        Returns
        -------
        int
            Number of subscriptions removed
        """
        with self._lock:
            count = len(self._subscriptions.pop(event_name, []))

        if count > 0:
            logger.debug(
                f"Removed all subscriptions for {event_name}",
                event_name=event_name,
                count=count,
            )

        return count

    def unsubscribe_plugin(self, plugin_name: str) -> int:
        """Remove every subscription owned by ``plugin_name``.

        Used on plugin unload so no further callbacks get queued.
        """
        removed = 0
        with self._lock:
            for event_name, subscriptions in list(self._subscriptions.items()):
                kept = [sub for sub in subscriptions if sub.plugin_name != plugin_name]
                removed += len(subscriptions) - len(kept)
                self._subscriptions[event_name] = kept

        if removed:
            logger.debug(f"Removed {removed} subscriptions for plugin {plugin_name}", plugin=plugin_name)

        return removed

    def clear(self) -> None:
        """Remove all subscriptions."""
        with self._lock:
            self._subscriptions.clear()
            self._delivery_stats.clear()

    def get_stats(self) -> dict[str, dict[str, int]]:
        """Get delivery statistics by event name."""
        with self._lock:
            return {name: dict(stats) for name, stats in self._delivery_stats.items()}

    def get_subscriptions(self, event_name: str | None = None) -> list[SubscriptionHandle]:
        """Get current subscriptions, optionally for one event name."""
        with self._lock:
            if event_name:
                return self._subscriptions.get(event_name, [])[:]

            result: list[SubscriptionHandle] = []
            for subscriptions in self._subscriptions.values():
                result.extend(subscriptions)
            return result

    def _remove(self, handle: SubscriptionHandle) -> bool:
        # Caller holds the lock
        subscriptions = self._subscriptions.get(handle.event_name, [])
        initial_count = len(subscriptions)
        self._subscriptions[handle.event_name] = [
            sub for sub in subscriptions if sub.subscription_id != handle.subscription_id
        ]
        return len(self._subscriptions[handle.event_name]) < initial_count

    def _deliver(self, subscription: SubscriptionHandle, event: Event) -> HandlerResult:
        start_time = time.time()

        if subscription.worker is not None:
            try:
                subscription.worker.submit(subscription.handler, event)
            except WorkerError as exc:
                logger.warning(
                    f"Dropped event for plugin: {event.name}",
                    event_name=event.name,
                    correlation_id=event.correlation_id,
                    plugin=subscription.plugin_name,
                    error=str(exc),
                )
                return HandlerResult(
                    success=False,
                    duration_ms=(time.time() - start_time) * 1000,
                    error=exc,
                    marshaled=True,
                )
            return HandlerResult(success=True, duration_ms=(time.time() - start_time) * 1000, marshaled=True)

        try:
            subscription.handler(event)
        except Exception as exc:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                f"Handler failed: {event.name}",
                event_name=event.name,
                correlation_id=event.correlation_id,
                duration_ms=duration_ms,
                error=str(exc),
                traceback=traceback.format_exc(),
            )
            return HandlerResult(success=False, duration_ms=duration_ms, error=exc)

        duration_ms = (time.time() - start_time) * 1000
        logger.debug(
            f"Handler executed successfully: {event.name}",
            event_name=event.name,
            correlation_id=event.correlation_id,
            duration_ms=duration_ms,
        )
        return HandlerResult(success=True, duration_ms=duration_ms)


def create_event_bus() -> EventBus:
    """Factory function to create event bus."""
    return EventBus()
