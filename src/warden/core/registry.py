"""Registry of plugin-facing API modules, gated by capability.

Adapters (buffer, cursor, event, config, UI ...) register a
:class:`~warden.plugin_sdk.types.Module` here once. When a plugin runtime is
built, only the modules whose capability the plugin holds are installed.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..plugin_sdk.types import Module, ScriptRuntime
    from .policy import PermissionChecker

__all__ = ["ModuleRegistry", "ModuleRegistryError"]


class ModuleRegistryError(Exception):
    """Raised for duplicate, unknown or unauthorized modules."""


class ModuleRegistry:
    """Name-keyed set of API modules.

    Example:
        >>> registry = ModuleRegistry()
        >>> registry.register(CursorModule())
        >>> registry.inject_all(runtime, checker)
        ['cursor']
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._modules: dict[str, Module] = {}

    def register(self, module: Module) -> None:
        """Add ``module``.

        Raises
        ------
        ModuleRegistryError
            If a module with the same name is already registered
        """
        with self._lock:
            if module.name in self._modules:
                raise ModuleRegistryError(f"module {module.name!r} already registered")
            self._modules[module.name] = module

    def get(self, name: str) -> Module | None:
        with self._lock:
            return self._modules.get(name)

    def list(self) -> list[str]:
        """Registered module names, sorted."""
        with self._lock:
            return sorted(self._modules)

    def __len__(self) -> int:
        with self._lock:
            return len(self._modules)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._modules

    def inject_all(self, runtime: ScriptRuntime, checker: PermissionChecker | None) -> list[str]:
        """Install every module ``checker`` is allowed to use into ``runtime``.

        Modules whose capability is missing are skipped silently. Without a
        checker only modules that require no capability are installed.

        Returns
        -------
        list[str]
            Names of the installed modules, sorted
        """
        with self._lock:
            modules = sorted(self._modules.values(), key=lambda mod: mod.name)

        injected: list[str] = []
        for module in modules:
            if not self._allowed(module, checker):
                continue
            module.register(runtime)
            injected.append(module.name)
        return injected

    def inject(self, runtime: ScriptRuntime, checker: PermissionChecker | None, *names: str) -> None:
        """Install the named modules into ``runtime``.

        Raises
        ------
        ModuleRegistryError
            If a name is unknown or its capability is not granted. Nothing is
            installed in that case.
        """
        selected: list[Module] = []
        with self._lock:
            for name in names:
                module = self._modules.get(name)
                if module is None:
                    raise ModuleRegistryError(f"module {name!r} not found")
                selected.append(module)

        for module in selected:
            if not self._allowed(module, checker):
                raise ModuleRegistryError(
                    f"module {module.name!r} requires capability {module.required_capability!r}"
                )

        for module in selected:
            module.register(runtime)

    @staticmethod
    def _allowed(module: Module, checker: PermissionChecker | None) -> bool:
        required = module.required_capability
        if not required:
            return True
        return checker is not None and checker.has_capability(required)
