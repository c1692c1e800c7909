"""Centralized host configuration with change notification.

Supports:
- Default configuration from the packaged ``defaults.yaml``
- User overrides from ``warden.yaml``
- Environment variable overrides (WARDEN_*)
- Nested key access with dot notation
- Observers notified on set/delete/reload, marshaled onto a plugin's home
  worker when registered for a plugin
- Per-plugin trust tier and permission set lookup from the ``plugins`` section
"""

from __future__ import annotations

import copy
import itertools
import os
import threading
import traceback
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from ..observability.loguru_config import get_logger
from ..plugin_sdk.manifest import ManifestError, PermissionSet, validate_permissions
from .limits import TRUST_TIERS
from .worker import WorkerError

if TYPE_CHECKING:
    from .worker import PluginWorker

__all__ = [
    "DEFAULTS_PATH",
    "Change",
    "ChangeType",
    "Config",
    "Subscription",
    "get_config",
    "load_config",
]

DEFAULTS_PATH = Path(__file__).resolve().parent.parent / "config" / "defaults.yaml"

ENV_MAPPINGS = {
    "WARDEN_LIMITS_PRESET": "limits.preset",
    "WARDEN_WORKSPACE": "workspace.path",
    "WARDEN_CALLBACK_QUEUE_SIZE": "worker.max_queue",
}

_INT_KEYS = {"worker.max_queue"}

logger = get_logger("config")

# Global config instance
_config_instance: Config | None = None


class ChangeType(str, Enum):
    SET = "set"
    DELETE = "delete"
    RELOAD = "reload"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Change:
    """One configuration change.

    ``path`` is empty for a reload, which replaces the whole tree.
    """

    path: str
    type: ChangeType
    old_value: Any = None
    new_value: Any = None
    source: str = ""


ChangeHandler = Callable[[Change], Any]


@dataclass(frozen=True)
class Subscription:
    """Handle returned by :meth:`Config.watch`."""

    subscription_id: int
    prefix: str
    handler: ChangeHandler
    worker: PluginWorker | None = None

    @property
    def plugin_name(self) -> str | None:
        return self.worker.plugin_name if self.worker is not None else None

    def matches(self, path: str) -> bool:
        """Return ``True`` if a change at ``path`` concerns this subscription.

        An empty prefix watches everything. Reloads (empty path) reach every
        subscription.
        """
        if not self.prefix or not path:
            return True
        return path == self.prefix or path.startswith(self.prefix + ".")


class Config:
    """Centralized configuration with defaults, overrides, env vars and observers.

    Configuration priority (highest to lowest):
    1. Environment variables (WARDEN_*)
    2. User config (warden.yaml)
    3. Defaults (packaged defaults.yaml)

    Example:
        >>> config = Config.load()
        >>> config.get("worker.max_queue", 256)
        256
        >>> sub = config.watch("plugins", lambda change: print(change.path))
        >>> config.set("plugins.git-blame.tier", "relaxed")
        plugins.git-blame.tier
    """

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self._data = data or {}
        self._lock = threading.RLock()
        self._subscriptions: dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._batch: list[Change] | None = None

    @classmethod
    def load(
        cls,
        config_path: str | Path | None = None,
        defaults_path: str | Path | None = None,
    ) -> Config:
        """Load configuration from files and environment.

        Parameters
        ----------
        config_path
            Path to user config file (default: ``$WARDEN_CONFIG`` or warden.yaml)
        defaults_path
            Path to defaults config (default: packaged defaults.yaml)

        Raises
        ------
        yaml.YAMLError
            If a config file exists but is not valid YAML
        """
        if defaults_path is None:
            defaults_path = DEFAULTS_PATH

        defaults = cls._load_yaml_file(defaults_path) if Path(defaults_path).exists() else {}

        if config_path is None:
            config_path = Path(os.environ.get("WARDEN_CONFIG", "warden.yaml"))

        user_config = cls._load_yaml_file(config_path) if Path(config_path).exists() else {}

        merged = cls._deep_merge(defaults, user_config)
        merged = cls._apply_env_overrides(merged)

        logger.debug("Configuration loaded", config_path=str(config_path), defaults_path=str(defaults_path))
        return cls(merged)

    # Access ---------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dot-notation key.

        Returns a copy for container values so callers cannot mutate the
        tree behind the notifier's back.
        """
        with self._lock:
            found, value = self._lookup(key)
            if not found:
                return default
            return copy.deepcopy(value) if isinstance(value, (dict, list)) else value

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._data)

    def set(self, key: str, value: Any, *, source: str = "host") -> None:
        """Set configuration value by key and notify observers."""
        parts = key.split(".")

        with self._lock:
            _, old_value = self._lookup(key)
            data = self._data
            for part in parts[:-1]:
                if not isinstance(data.get(part), dict):
                    data[part] = {}
                data = data[part]
            data[parts[-1]] = value

        self._emit(Change(path=key, type=ChangeType.SET, old_value=old_value, new_value=value, source=source))

    def delete(self, key: str, *, source: str = "host") -> bool:
        """Remove ``key``. Returns ``False`` (and notifies nobody) if it is absent."""
        parts = key.split(".")

        with self._lock:
            found, old_value = self._lookup(key)
            if not found:
                return False
            parent = self._data
            for part in parts[:-1]:
                parent = parent[part]
            del parent[parts[-1]]

        self._emit(Change(path=key, type=ChangeType.DELETE, old_value=old_value, source=source))
        return True

    def reload(self, data: dict[str, Any], *, source: str = "reload") -> None:
        """Replace the whole tree and notify every observer."""
        with self._lock:
            old = self._data
            self._data = copy.deepcopy(data)

        self._emit(Change(path="", type=ChangeType.RELOAD, old_value=old, new_value=data, source=source))

    def _lookup(self, key: str) -> tuple[bool, Any]:
        value: Any = self._data
        for part in key.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return False, None
        return True, value

    # Observers ------------------------------------------------------------

    def watch(
        self,
        prefix: str,
        handler: ChangeHandler,
        *,
        worker: PluginWorker | None = None,
    ) -> Subscription:
        """Observe changes at ``prefix`` or anywhere beneath it.

        Parameters
        ----------
        prefix
            Dot-notation key; empty string watches everything
        handler
            Called with a :class:`Change`
        worker
            Home worker of the plugin owning ``handler``. When given, the
            handler is enqueued there instead of running on the writer's thread.
        """
        with self._lock:
            subscription = Subscription(
                subscription_id=next(self._ids),
                prefix=prefix,
                handler=handler,
                worker=worker,
            )
            self._subscriptions[subscription.subscription_id] = subscription

        logger.debug("Config watcher added", prefix=prefix, plugin=subscription.plugin_name)
        return subscription

    def unwatch(self, subscription: Subscription) -> bool:
        with self._lock:
            return self._subscriptions.pop(subscription.subscription_id, None) is not None

    def unwatch_plugin(self, plugin_name: str) -> int:
        """Drop every watcher owned by ``plugin_name``."""
        with self._lock:
            doomed = [sid for sid, sub in self._subscriptions.items() if sub.plugin_name == plugin_name]
            for sid in doomed:
                del self._subscriptions[sid]
        return len(doomed)

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Collect notifications and deliver them when the block exits.

        Changes are discarded undelivered if the block raises.
        """
        with self._lock:
            if self._batch is not None:
                raise RuntimeError("Config batch already in progress")
            self._batch = []

        try:
            yield
        except BaseException:
            with self._lock:
                self._batch = None
            raise

        with self._lock:
            pending, self._batch = self._batch, None

        for change in pending:
            self._deliver(change)

    def _emit(self, change: Change) -> None:
        with self._lock:
            if self._batch is not None:
                self._batch.append(change)
                return
        self._deliver(change)

    def _deliver(self, change: Change) -> None:
        with self._lock:
            targets = [sub for sub in self._subscriptions.values() if sub.matches(change.path)]

        # Observers run outside the lock
        for sub in targets:
            if sub.worker is not None:
                try:
                    sub.worker.submit(sub.handler, change)
                except WorkerError as exc:
                    logger.warning(
                        "Dropped config change for plugin",
                        path=change.path,
                        plugin=sub.plugin_name,
                        error=str(exc),
                    )
                continue

            try:
                sub.handler(change)
            except Exception as exc:
                logger.error(
                    "Config observer failed",
                    path=change.path,
                    error=str(exc),
                    traceback=traceback.format_exc(),
                )

    # Plugin policy --------------------------------------------------------

    def plugin_policy(self, name: str) -> tuple[str, PermissionSet]:
        """Return ``(trust tier, permission set)`` configured for plugin ``name``.

        Plugins without an entry get the global ``limits.preset`` tier and an
        empty permission set.

        Raises
        ------
        ManifestError
            If the plugin's ``permissions`` section is invalid or its tier is
            unknown
        """
        default_tier = str(self.get("limits.preset", "default"))
        entry = self.get(f"plugins.{name}")
        if entry is None:
            entry = {}
        if not isinstance(entry, dict):
            raise ManifestError(f"Invalid config for plugin '{name}'", ["plugin entry must be a mapping"])

        tier = str(entry.get("tier", default_tier)).lower()
        if tier not in TRUST_TIERS:
            raise ManifestError(
                f"Invalid config for plugin '{name}'",
                [f"unknown trust tier '{tier}', expected one of: {', '.join(TRUST_TIERS)}"],
            )

        section = entry.get("permissions", {})
        errors = validate_permissions(section)
        if errors:
            raise ManifestError(f"Invalid permissions for plugin '{name}'", errors)

        return tier, PermissionSet.from_dict(section)

    # Loading helpers ------------------------------------------------------

    @staticmethod
    def _load_yaml_file(path: str | Path) -> dict[str, Any]:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise yaml.YAMLError(f"Top level of {path} must be a mapping")
        return data

    @staticmethod
    def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Deep merge two dictionaries (``override`` wins)."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = Config._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    @staticmethod
    def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
        """Apply environment variable overrides.

        Example: WARDEN_WORKSPACE overrides config["workspace"]["path"]
        """
        result = copy.deepcopy(config)

        for env_var, config_key in ENV_MAPPINGS.items():
            value: Any = os.environ.get(env_var)
            if value is None:
                continue

            if config_key in _INT_KEYS:
                try:
                    value = int(value)
                except ValueError:
                    logger.warning("Ignoring non-integer override", variable=env_var, value=value)
                    continue

            parts = config_key.split(".")
            data = result
            for part in parts[:-1]:
                if not isinstance(data.get(part), dict):
                    data[part] = {}
                data = data[part]
            data[parts[-1]] = value

        return result


def get_config() -> Config:
    """Get global configuration instance (singleton)."""
    global _config_instance

    if _config_instance is None:
        _config_instance = Config.load()

    return _config_instance


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration and install it as the global instance."""
    global _config_instance
    _config_instance = Config.load(config_path=config_path)
    return _config_instance
