"""Core components: permission checks, resource limits, home workers and the sandbox."""

from .config import Change, ChangeType, Config, Subscription, get_config, load_config
from .events import Event, EventBus, EventHandler, SubscriptionHandle, create_event_bus
from .limits import RateLimiter, ResourceLimits, ResourceMonitor, ResourceUsage, limits_for_tier
from .policy import CapabilityError, PermissionChecker, PermissionDeniedError
from .registry import ModuleRegistry, ModuleRegistryError
from .sandbox import ExecutionTimeoutError, PluginSandbox, ResourceExceededError, SandboxError, SandboxManager
from .worker import CallbackQueueFullError, PluginWorker, WorkerError, WorkerStoppedError, marshal

__all__ = [
    # Policy
    "CapabilityError",
    "PermissionChecker",
    "PermissionDeniedError",
    # Limits
    "RateLimiter",
    "ResourceLimits",
    "ResourceMonitor",
    "ResourceUsage",
    "limits_for_tier",
    # Home worker
    "CallbackQueueFullError",
    "PluginWorker",
    "WorkerError",
    "WorkerStoppedError",
    "marshal",
    # Events
    "Event",
    "EventBus",
    "EventHandler",
    "SubscriptionHandle",
    "create_event_bus",
    # Config
    "Change",
    "ChangeType",
    "Config",
    "Subscription",
    "get_config",
    "load_config",
    # Modules
    "ModuleRegistry",
    "ModuleRegistryError",
    # Sandbox
    "ExecutionTimeoutError",
    "PluginSandbox",
    "ResourceExceededError",
    "SandboxError",
    "SandboxManager",
]
