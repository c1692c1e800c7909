"""Typed contracts shared between the sandbox and plugin-facing adapters.

Adapters (buffer, cursor, command, event, config, UI, LSP ...) live outside
this package. They only need these protocols to plug into the module registry
and the sandbox.

Example:
    from warden.plugin_sdk import types

    class CursorModule:
        name = "cursor"
        required_capability = "editor.cursor"

        def register(self, runtime: types.ScriptRuntime) -> None:
            runtime.set_global("_ws_cursor", {...})
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, Protocol, runtime_checkable

__all__ = [
    "CallbackArgs",
    "EventPayload",
    "Module",
    "PluginCallback",
    "RuntimeFactory",
    "ScriptRuntime",
]

EventPayload = Mapping[str, Any] | None
"""Standard payload type delivered to event handlers."""

CallbackArgs = tuple[Any, ...]
"""Positional arguments forwarded to a marshaled plugin callback."""

PluginCallback = Callable[..., Any]
"""A function registered by a plugin that must run on its home worker."""


@runtime_checkable
class ScriptRuntime(Protocol):
    """Interpreter instance backing one plugin.

    Implementations are not safe for concurrent use. Only the plugin's home
    worker may call into them.
    """

    def set_global(self, name: str, value: Any) -> None:
        """Expose ``value`` to plugin code under ``name``."""

    def close(self) -> None:
        """Release interpreter resources."""


RuntimeFactory = Callable[[], ScriptRuntime]
"""Zero-argument callable building a runtime on the home worker."""


@runtime_checkable
class Module(Protocol):
    """Plugin-facing API module gated by a capability.

    ``required_capability`` is ``None`` for modules every plugin may use.
    """

    @property
    def name(self) -> str:
        """Module name (``buf``, ``cursor``, ``event`` ...)."""

    @property
    def required_capability(self) -> str | None:
        """Capability a plugin must hold before the module is exposed."""

    def register(self, runtime: ScriptRuntime) -> None:
        """Install the module's functions into ``runtime``."""
