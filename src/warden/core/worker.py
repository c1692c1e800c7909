"""Home worker: the single serialized context that owns a plugin's interpreter.

Script interpreters are not safe for concurrent use. Anything that wants to
run plugin code from a thread it does not control (an event bus delivering a
subscription, a config watcher firing a change handler) must hand the call to
the plugin's :class:`PluginWorker` instead of invoking it inline.

Producers never wait: :meth:`PluginWorker.submit` uses a bounded queue and
raises :class:`CallbackQueueFullError` when it is full. The worker thread
drains the queue one item at a time, in enqueue order.
"""

from __future__ import annotations

import functools
import queue
import threading
import traceback
from concurrent.futures import Future
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..observability.loguru_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from ..plugin_sdk.types import CallbackArgs, PluginCallback

__all__ = [
    "CallbackQueueFullError",
    "PluginWorker",
    "WorkerError",
    "WorkerStoppedError",
    "marshal",
]

DEFAULT_MAX_QUEUE = 256

logger = get_logger("worker")


class WorkerError(Exception):
    """Base class for home worker failures."""


class CallbackQueueFullError(WorkerError):
    """Raised when a plugin's callback queue has no room left."""

    def __init__(self, plugin_name: str, capacity: int) -> None:
        self.plugin_name = plugin_name
        self.capacity = capacity
        super().__init__(f"Callback queue for plugin '{plugin_name}' is full ({capacity} pending)")


class WorkerStoppedError(WorkerError):
    """Raised when submitting to a worker that is not running."""

    def __init__(self, plugin_name: str) -> None:
        self.plugin_name = plugin_name
        super().__init__(f"Worker for plugin '{plugin_name}' is not running")


@dataclass
class _WorkItem:
    fn: PluginCallback
    args: CallbackArgs
    kwargs: dict[str, Any]
    future: Future[Any]


_STOP = object()


class PluginWorker:
    """Single-consumer executor bound to one plugin.

    Example:
        >>> worker = PluginWorker("demo")
        >>> worker.start()
        >>> worker.call(lambda: threading.current_thread().name)
        'warden-worker-demo'
        >>> worker.stop()
    """

    def __init__(self, plugin_name: str, *, max_queue: int = DEFAULT_MAX_QUEUE) -> None:
        """Create a stopped worker.

        Parameters
        ----------
        plugin_name
            Plugin identifier (used for the thread name and diagnostics)
        max_queue
            Maximum number of pending callbacks; must be positive
        """
        if max_queue <= 0:
            raise ValueError("max_queue must be positive")

        self.plugin_name = plugin_name
        self.max_queue = max_queue
        self._queue: queue.Queue[_WorkItem | object] = queue.Queue(maxsize=max_queue)
        self._state_lock = threading.Lock()
        self._accepting = False
        self._thread: threading.Thread | None = None
        self._exit_when_empty = False

    @property
    def is_running(self) -> bool:
        with self._state_lock:
            return self._accepting

    @property
    def pending(self) -> int:
        """Approximate number of queued callbacks."""
        return self._queue.qsize()

    def in_worker_thread(self) -> bool:
        """Return ``True`` when called from this worker's own thread."""
        thread = self._thread
        return thread is not None and threading.get_ident() == thread.ident

    def start(self) -> None:
        """Start the worker thread. Starting a running worker is a no-op."""
        with self._state_lock:
            if self._accepting:
                return
            self._queue = queue.Queue(maxsize=self.max_queue)
            self._exit_when_empty = False
            self._thread = threading.Thread(
                target=self._run,
                name=f"warden-worker-{self.plugin_name}",
                daemon=True,
            )
            self._accepting = True
            self._thread.start()

        logger.debug("Worker started", plugin=self.plugin_name, max_queue=self.max_queue)

    def submit(self, fn: PluginCallback, *args: Any, **kwargs: Any) -> Future[Any]:
        """Enqueue ``fn(*args, **kwargs)`` for execution on the worker.

        Returns immediately.

        Raises
        ------
        WorkerStoppedError
            If the worker is not accepting callbacks
        CallbackQueueFullError
            If the queue is at capacity
        """
        future: Future[Any] = Future()
        item = _WorkItem(fn=fn, args=args, kwargs=kwargs, future=future)

        with self._state_lock:
            if not self._accepting:
                raise WorkerStoppedError(self.plugin_name)
            try:
                self._queue.put_nowait(item)
            except queue.Full:
                raise CallbackQueueFullError(self.plugin_name, self.max_queue) from None

        return future

    def call(self, fn: PluginCallback, *args: Any, timeout: float | None = None, **kwargs: Any) -> Any:
        """Run ``fn`` on the worker and wait for its result.

        Calling from the worker thread itself runs ``fn`` inline, since waiting
        on the own queue would deadlock.

        Raises
        ------
        TimeoutError
            If the result is not available within ``timeout`` seconds
        """
        if self.in_worker_thread():
            return fn(*args, **kwargs)
        return self.submit(fn, *args, **kwargs).result(timeout=timeout)

    def stop(self, *, discard: bool = True, timeout: float | None = None) -> int:
        """Stop accepting callbacks and shut the worker down.

        Parameters
        ----------
        discard
            Cancel callbacks still waiting in the queue instead of running them
        timeout
            Seconds to wait for the worker thread to exit

        Returns
        -------
        int
            Number of discarded callbacks
        """
        with self._state_lock:
            if not self._accepting and self._thread is None:
                return 0
            self._accepting = False
            thread = self._thread

        discarded = self._drain() if discard else 0

        if thread is threading.current_thread():
            # Nobody else consumes this queue; a full queue must not block here
            try:
                self._queue.put_nowait(_STOP)
            except queue.Full:
                self._exit_when_empty = True
        else:
            # Producers are already refused; the sentinel fits once the
            # worker takes the next item.
            self._queue.put(_STOP)

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

        with self._state_lock:
            if thread is self._thread:
                self._thread = None

        logger.debug("Worker stopped", plugin=self.plugin_name, discarded=discarded)
        return discarded

    def _drain(self) -> int:
        discarded = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return discarded
            if isinstance(item, _WorkItem):
                item.future.cancel()
                discarded += 1

    def _run(self) -> None:
        work_queue = self._queue
        while True:
            if (self._exit_when_empty or self._queue is not work_queue) and work_queue.empty():
                return
            item = work_queue.get()
            if item is _STOP:
                return
            assert isinstance(item, _WorkItem)

            if not item.future.set_running_or_notify_cancel():
                continue

            try:
                result = item.fn(*item.args, **item.kwargs)
            except BaseException as exc:
                item.future.set_exception(exc)
                logger.error(
                    "Plugin callback failed",
                    plugin=self.plugin_name,
                    error=str(exc),
                    traceback=traceback.format_exc(),
                )
                if not isinstance(exc, Exception):
                    raise
            else:
                item.future.set_result(result)

    def __enter__(self) -> PluginWorker:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()

    def __repr__(self) -> str:
        return f"PluginWorker(plugin={self.plugin_name!r}, running={self.is_running}, pending={self.pending})"


def marshal(worker: PluginWorker, fn: PluginCallback) -> Callable[..., Future[Any]]:
    """Wrap ``fn`` so that calling it enqueues onto ``worker`` instead of running inline.

    Example:
        >>> handler = marshal(worker, plugin_on_save)
        >>> bus.subscribe("buffer.saved", handler)  # fires on any thread
    """

    @functools.wraps(fn)
    def marshaled(*args: Any, **kwargs: Any) -> Future[Any]:
        return worker.submit(fn, *args, **kwargs)

    return marshaled
