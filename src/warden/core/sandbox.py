"""Per-plugin sandbox: permissions, resource accounting and a home worker.

A :class:`PluginSandbox` bundles what the host needs to run one plugin
safely: its :class:`~warden.core.policy.PermissionChecker`, its
:class:`~warden.core.limits.ResourceMonitor` and the
:class:`~warden.core.worker.PluginWorker` that alone touches the plugin's
interpreter. :class:`SandboxManager` keeps one sandbox per plugin name.
"""

from __future__ import annotations

import concurrent.futures
import threading
from dataclasses import asdict
from typing import TYPE_CHECKING, Any

from ..observability.logging import (
    log_capability_grant,
    log_limit_exceeded,
    log_permission_denied,
    log_plugin_lifecycle,
)
from ..observability.loguru_config import get_logger, timing_context
from ..plugin_sdk.capabilities import get_capability_info
from ..plugin_sdk.manifest import PermissionSet
from .limits import ResourceLimits, ResourceMonitor, limits_for_tier
from .policy import CapabilityError, PermissionChecker
from .worker import DEFAULT_MAX_QUEUE, PluginWorker

if TYPE_CHECKING:
    import os
    from collections.abc import Callable

    from ..config.settings import Settings
    from ..plugin_sdk.types import RuntimeFactory, ScriptRuntime
    from .config import Change, Config, Subscription
    from .events import Event, EventBus, SubscriptionHandle
    from .registry import ModuleRegistry

__all__ = [
    "ExecutionTimeoutError",
    "PluginSandbox",
    "ResourceExceededError",
    "SandboxError",
    "SandboxManager",
]

logger = get_logger("sandbox")


class SandboxError(Exception):
    """Raised when sandbox operations fail."""

    pass


class ResourceExceededError(SandboxError):
    """Raised at a call boundary once the plugin's monitor has latched."""

    def __init__(self, plugin_name: str, reason: str) -> None:
        self.plugin_name = plugin_name
        self.reason = reason
        super().__init__(f"Plugin {plugin_name} aborted: {reason}")


class ExecutionTimeoutError(SandboxError):
    """Raised when a plugin call outlives ``execution_timeout``."""

    def __init__(self, plugin_name: str, timeout: float) -> None:
        self.plugin_name = plugin_name
        self.timeout = timeout
        super().__init__(f"Plugin {plugin_name} did not finish within {timeout:g}s")


class PluginSandbox:
    """Execution envelope for one plugin.

    Example:
        >>> sandbox = PluginSandbox(
        ...     "git-blame",
        ...     permissions=PermissionSet(capabilities=("filesystem.read",)),
        ...     workspace="/home/dev/projects/app",
        ... )
        >>> sandbox.load(LuaRuntime)
        >>> sandbox.run(lambda runtime: sandbox.checker.check_file_read("/home/dev/projects/app/main.go"))
        >>> sandbox.unload()
    """

    def __init__(
        self,
        plugin_name: str,
        *,
        permissions: PermissionSet | None = None,
        limits: ResourceLimits | None = None,
        workspace: str | os.PathLike[str] | None = None,
        max_queue: int = DEFAULT_MAX_QUEUE,
        registry: ModuleRegistry | None = None,
        event_bus: EventBus | None = None,
        config: Config | None = None,
    ) -> None:
        """Create an unloaded sandbox.

        Parameters
        ----------
        plugin_name
            Plugin identifier
        permissions
            Grants applied on every load (default: none)
        limits
            Resource ceilings (default: ``ResourceLimits.default()``)
        workspace
            Directory bounding file access while no allowed paths are set
        max_queue
            Capacity of the plugin's callback queue
        registry
            API modules to inject into the runtime, gated by capability
        event_bus
            Bus used by :meth:`subscribe`
        config
            Configuration used by :meth:`watch_config`
        """
        self.plugin_name = plugin_name
        self.permissions = permissions or PermissionSet()
        self.workspace = workspace
        self.registry = registry
        self.event_bus = event_bus
        self.config = config

        self.checker = PermissionChecker(plugin_name)
        self.monitor = ResourceMonitor(limits or ResourceLimits.default())
        self.worker = PluginWorker(plugin_name, max_queue=max_queue)

        self._lock = threading.Lock()
        self._loaded = False
        self._runtime: ScriptRuntime | None = None
        self._runtime_factory: RuntimeFactory | None = None
        self._injected: list[str] = []
        self._event_subscriptions: list[SubscriptionHandle] = []
        self._config_subscriptions: list[Subscription] = []

    @property
    def is_loaded(self) -> bool:
        with self._lock:
            return self._loaded

    @property
    def runtime(self) -> ScriptRuntime | None:
        return self._runtime

    @property
    def injected_modules(self) -> list[str]:
        return list(self._injected)

    @property
    def limits(self) -> ResourceLimits:
        return self.monitor.limits()

    # Lifecycle ------------------------------------------------------------

    def load(self, runtime_factory: RuntimeFactory | None = None) -> list[str]:
        """Apply permissions, start the home worker and build the runtime on it.

        Parameters
        ----------
        runtime_factory
            Zero-argument callable returning the plugin's interpreter. It is
            called on the home worker. Without one the sandbox has no runtime
            and ``run`` passes ``None``.

        Returns
        -------
        list[str]
            API modules injected into the runtime

        Raises
        ------
        SandboxError
            If already loaded or the runtime could not be built
        """
        with self._lock:
            if self._loaded:
                raise SandboxError(f"Plugin {self.plugin_name} is already loaded")
            self._loaded = True

        with timing_context("plugin_load", component="sandbox", plugin=self.plugin_name) as ctx:
            self.checker.apply_permission_set(self.permissions)
            if self.workspace is not None:
                self.checker.set_workspace_path(self.workspace)
            self._log_grants()

            self.worker.start()
            self._runtime_factory = runtime_factory

            if runtime_factory is not None:
                try:
                    self._injected = self.worker.call(self._build_runtime, runtime_factory)
                except Exception as exc:
                    self._teardown()
                    raise SandboxError(f"Failed to build runtime for plugin {self.plugin_name}: {exc}") from exc

            ctx["modules"] = len(self._injected)

        log_plugin_lifecycle(
            self.plugin_name,
            "load",
            metadata={"capabilities": sorted(self.checker.capabilities()), "modules": self._injected},
        )
        logger.info("Plugin loaded", plugin=self.plugin_name, modules=self._injected)
        return list(self._injected)

    def _build_runtime(self, runtime_factory: RuntimeFactory) -> list[str]:
        # Runs on the home worker
        runtime = runtime_factory()
        self._runtime = runtime
        if self.registry is None:
            return []
        return self.registry.inject_all(runtime, self.checker)

    def _log_grants(self) -> None:
        for cap in self.permissions.capabilities:
            info = get_capability_info(cap)
            if info is None:
                continue
            log_capability_grant(
                self.plugin_name,
                info.name,
                risk=str(info.risk),
                requires_approval=info.requires_user_approval,
            )
            if info.requires_user_approval:
                logger.warning(
                    "High-risk capability granted",
                    plugin=self.plugin_name,
                    capability=info.name,
                    risk=str(info.risk),
                )

    def unload(self) -> bool:
        """Stop the plugin.

        New callbacks are refused first, the pending queue is discarded, the
        runtime is closed, and only then are checker and monitor reset.

        Returns
        -------
        bool
            ``False`` if the sandbox was not loaded
        """
        with self._lock:
            if not self._loaded:
                return False

        with timing_context("plugin_unload", component="sandbox", plugin=self.plugin_name) as ctx:
            ctx["discarded"] = self._teardown()

        log_plugin_lifecycle(self.plugin_name, "unload", metadata={"discarded": ctx["discarded"]})
        logger.info("Plugin unloaded", plugin=self.plugin_name, discarded=ctx["discarded"])
        return True

    def _teardown(self) -> int:
        if self.event_bus is not None:
            for handle in self._event_subscriptions:
                self.event_bus.unsubscribe(handle)
        if self.config is not None:
            for subscription in self._config_subscriptions:
                self.config.unwatch(subscription)
        self._event_subscriptions.clear()
        self._config_subscriptions.clear()

        discarded = self.worker.stop(discard=True)

        runtime, self._runtime = self._runtime, None
        if runtime is not None:
            try:
                runtime.close()
            except Exception as exc:
                logger.warning("Runtime close failed", plugin=self.plugin_name, error=str(exc))

        self._injected = []
        self.checker.reset()
        self.monitor.reset()

        with self._lock:
            self._loaded = False

        return discarded

    def reload(self, permissions: PermissionSet | None = None) -> list[str]:
        """Unload and load again, optionally with a new permission set.

        The runtime factory from the previous :meth:`load` is reused.
        """
        factory = self._runtime_factory
        self.unload()
        if permissions is not None:
            self.permissions = permissions
        injected = self.load(factory)
        log_plugin_lifecycle(self.plugin_name, "reload")
        return injected

    # Execution ------------------------------------------------------------

    def run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run ``fn(runtime, *args, **kwargs)`` on the home worker and return its result.

        Raises
        ------
        SandboxError
            If the sandbox is not loaded
        ResourceExceededError
            If the monitor is exceeded before or after the call
        ExecutionTimeoutError
            If the call does not finish within ``execution_timeout``
        CapabilityError
            Propagated from ``fn`` (also written to the audit log)
        """
        if not self.is_loaded:
            raise SandboxError(f"Plugin {self.plugin_name} is not loaded")

        self._raise_if_exceeded()
        self.monitor.reset_instruction_count()

        if self.worker.in_worker_thread():
            result = self._invoke(fn, args, kwargs)
        else:
            timeout = self.monitor.execution_timeout or None
            future = self.worker.submit(self._invoke, fn, args, kwargs)
            try:
                result = future.result(timeout=timeout)
            except concurrent.futures.TimeoutError:
                future.cancel()
                logger.warning("Plugin call timed out", plugin=self.plugin_name, timeout=timeout)
                raise ExecutionTimeoutError(self.plugin_name, timeout or 0.0) from None

        self._raise_if_exceeded()
        return result

    def dispatch(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> concurrent.futures.Future[Any]:
        """Queue ``fn(runtime, *args, **kwargs)`` without waiting.

        Raises
        ------
        CallbackQueueFullError
            If the plugin's queue is full
        WorkerStoppedError
            If the plugin is not loaded
        """
        return self.worker.submit(self._invoke, fn, args, kwargs)

    def _invoke(self, fn: Callable[..., Any], args: tuple[Any, ...], kwargs: dict[str, Any]) -> Any:
        try:
            return fn(self._runtime, *args, **kwargs)
        except CapabilityError as exc:
            log_permission_denied(self.plugin_name, exc.capability, exc.operation, exc.message)
            raise

    def _raise_if_exceeded(self) -> None:
        usage = self.monitor.get_usage()
        if usage.exceeded:
            log_limit_exceeded(self.plugin_name, usage.exceeded_reason, usage=asdict(usage))
            raise ResourceExceededError(self.plugin_name, usage.exceeded_reason)

    # Host integration -----------------------------------------------------

    def subscribe(self, event_name: str, handler: Callable[[Event], Any], **kwargs: Any) -> SubscriptionHandle:
        """Subscribe ``handler`` to ``event_name`` on behalf of the plugin.

        The handler runs on the home worker. The subscription is dropped on
        unload.
        """
        if self.event_bus is None:
            raise SandboxError(f"Plugin {self.plugin_name} has no event bus")
        handle = self.event_bus.subscribe(event_name, handler, worker=self.worker, **kwargs)
        self._event_subscriptions.append(handle)
        return handle

    def watch_config(self, prefix: str, handler: Callable[[Change], Any]) -> Subscription:
        """Observe configuration changes under ``prefix`` on the home worker."""
        if self.config is None:
            raise SandboxError(f"Plugin {self.plugin_name} has no config")
        subscription = self.config.watch(prefix, handler, worker=self.worker)
        self._config_subscriptions.append(subscription)
        return subscription

    def __enter__(self) -> PluginSandbox:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.unload()

    def __repr__(self) -> str:
        return f"PluginSandbox(plugin={self.plugin_name!r}, loaded={self.is_loaded})"


class SandboxManager:
    """One :class:`PluginSandbox` per plugin name.

    Per-plugin trust tiers and permissions come from the ``plugins`` section
    of :class:`~warden.core.config.Config` unless passed explicitly. Without an
    explicit ``workspace`` or ``max_queue`` the config's ``workspace.path``
    and ``worker.max_queue`` apply.
    """

    def __init__(
        self,
        *,
        config: Config | None = None,
        registry: ModuleRegistry | None = None,
        event_bus: EventBus | None = None,
        default_tier: str = "default",
        workspace: str | os.PathLike[str] | None = None,
        max_queue: int | None = None,
    ) -> None:
        limits_for_tier(default_tier)

        if config is not None:
            if workspace is None:
                workspace = config.get("workspace.path")
            if max_queue is None:
                max_queue = int(config.get("worker.max_queue", DEFAULT_MAX_QUEUE))

        self.config = config
        self.registry = registry
        self.event_bus = event_bus
        self.default_tier = default_tier
        self.workspace = workspace
        self.max_queue = max_queue if max_queue is not None else DEFAULT_MAX_QUEUE
        self._lock = threading.Lock()
        self._sandboxes: dict[str, PluginSandbox] = {}

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> SandboxManager:
        """Build a manager using the preset, workspace and queue size from ``settings``.

        With a ``config`` the queue size comes from ``worker.max_queue``, which
        already reflects ``WARDEN_CALLBACK_QUEUE_SIZE``.
        """
        if kwargs.get("config") is None:
            kwargs.setdefault("max_queue", settings.callback_queue_size)
        return cls(
            default_tier=settings.limits_preset,
            workspace=settings.workspace,
            **kwargs,
        )

    def create(
        self,
        plugin_name: str,
        *,
        permissions: PermissionSet | None = None,
        tier: str | None = None,
        limits: ResourceLimits | None = None,
    ) -> PluginSandbox:
        """Create (but do not load) the sandbox for ``plugin_name``.

        Precedence for limits: ``limits``, then ``tier``, then the plugin's
        configured tier, then the manager's default tier.

        Raises
        ------
        SandboxError
            If a sandbox for ``plugin_name`` already exists
        ValueError
            If the tier is unknown
        """
        configured_tier = None
        if self.config is not None:
            configured_tier, configured_permissions = self.config.plugin_policy(plugin_name)
            if permissions is None:
                permissions = configured_permissions

        effective_tier = tier or configured_tier or self.default_tier
        if limits is None:
            limits = limits_for_tier(effective_tier)

        with self._lock:
            if plugin_name in self._sandboxes:
                raise SandboxError(f"Sandbox for plugin {plugin_name} already exists")

            sandbox = PluginSandbox(
                plugin_name,
                permissions=permissions,
                limits=limits,
                workspace=self.workspace,
                max_queue=self.max_queue,
                registry=self.registry,
                event_bus=self.event_bus,
                config=self.config,
            )
            self._sandboxes[plugin_name] = sandbox

        logger.debug("Sandbox created", plugin=plugin_name, tier=effective_tier)
        return sandbox

    def get(self, plugin_name: str) -> PluginSandbox | None:
        with self._lock:
            return self._sandboxes.get(plugin_name)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._sandboxes)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sandboxes)

    def unload(self, plugin_name: str) -> bool:
        """Unload and forget ``plugin_name``. Returns ``False`` if unknown."""
        with self._lock:
            sandbox = self._sandboxes.pop(plugin_name, None)
        if sandbox is None:
            return False
        sandbox.unload()
        return True

    def unload_all(self) -> None:
        for plugin_name in self.names():
            self.unload(plugin_name)

    def __enter__(self) -> SandboxManager:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.unload_all()
