"""Structured security audit log.

Every permission denial, limit breach, capability grant and plugin lifecycle
transition can be written as one JSON line, so an operator can reconstruct
what a plugin tried to do and why it was stopped.
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from pathlib import Path

__all__ = [
    "LogEntry",
    "LogLevel",
    "StructuredLogger",
    "create_logger",
    "log_capability_grant",
    "log_limit_exceeded",
    "log_permission_denied",
    "log_plugin_lifecycle",
]

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


@dataclass
class LogEntry:
    """Structured audit entry.

    Attributes
    ----------
    timestamp : str
        ISO-8601 UTC timestamp
    level : str
        Log level
    event_type : str
        ``permission_denied``, ``limit_exceeded``, ``capability_grant`` or
        ``plugin_lifecycle``
    message : str
        Human-readable message
    plugin : str | None
        Plugin the entry is about
    capability : str | None
        Capability involved (if any)
    correlation_id : str | None
        Correlation ID of the triggering event or call
    metadata : dict[str, Any]
        Additional structured data
    """

    timestamp: str
    level: str
    event_type: str
    message: str
    plugin: str | None = None
    capability: str | None = None
    correlation_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True, default=str)


class StructuredLogger:
    """JSON-lines audit logger on top of :mod:`logging`."""

    def __init__(
        self,
        name: str,
        *,
        log_file: Path | None = None,
        level: str = "INFO",
        console: bool = True,
    ) -> None:
        """Initialize structured logger.

        Parameters
        ----------
        name
            Logger name
        log_file
            Optional log file path
        level
            Minimum log level
        console
            Also write entries to stdout
        """
        self.name = name
        self.log_file = log_file
        self.level = level.upper()

        self._logger = logging.getLogger(name)
        self._logger.setLevel(getattr(logging, self.level))
        self._logger.propagate = False

        # Re-creating a logger with the same name must not duplicate output
        for handler in list(self._logger.handlers):
            self._logger.removeHandler(handler)
            handler.close()

        if console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setFormatter(logging.Formatter("%(message)s"))
            self._logger.addHandler(console_handler)

        if log_file:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setFormatter(logging.Formatter("%(message)s"))
            self._logger.addHandler(file_handler)

    def log(
        self,
        level: str,
        event_type: str,
        message: str,
        *,
        plugin: str | None = None,
        capability: str | None = None,
        correlation_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Log one structured entry."""
        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=level.upper(),
            event_type=event_type,
            message=message,
            plugin=plugin,
            capability=capability,
            correlation_id=correlation_id,
            metadata=metadata or {},
        )

        log_method = getattr(self._logger, level.lower(), self._logger.info)
        log_method(entry.to_json())

    def debug(self, event_type: str, message: str, **kwargs: Any) -> None:
        self.log("DEBUG", event_type, message, **kwargs)

    def info(self, event_type: str, message: str, **kwargs: Any) -> None:
        self.log("INFO", event_type, message, **kwargs)

    def warning(self, event_type: str, message: str, **kwargs: Any) -> None:
        self.log("WARNING", event_type, message, **kwargs)

    def error(self, event_type: str, message: str, **kwargs: Any) -> None:
        self.log("ERROR", event_type, message, **kwargs)

    def critical(self, event_type: str, message: str, **kwargs: Any) -> None:
        self.log("CRITICAL", event_type, message, **kwargs)

    def close(self) -> None:
        """Detach and close all handlers."""
        for handler in list(self._logger.handlers):
            self._logger.removeHandler(handler)
            handler.close()


_default_logger: StructuredLogger | None = None


def create_logger(
    name: str = "warden.audit",
    *,
    log_file: Path | None = None,
    level: str = "INFO",
    console: bool = True,
) -> StructuredLogger:
    """Create the audit logger and make it the module default."""
    global _default_logger
    audit = StructuredLogger(name, log_file=log_file, level=level, console=console)
    _default_logger = audit
    return audit


def _get_logger() -> StructuredLogger:
    global _default_logger
    if _default_logger is None:
        _default_logger = create_logger()
    return _default_logger


def log_permission_denied(
    plugin: str,
    capability: str,
    operation: str,
    reason: str,
    *,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Log a denied capability check.

    Parameters
    ----------
    plugin
        Plugin name
    capability
        Capability that was required
    operation
        Attempted operation (``read file``, ``network request`` ...)
    reason
        Stable denial reason (``path is blocked`` ...)
    metadata
        Additional data (target path or host)
    """
    _get_logger().warning(
        "permission_denied",
        f"Plugin {plugin} denied {capability} for {operation or 'capability check'}: {reason}",
        plugin=plugin,
        capability=capability,
        metadata={"operation": operation, "reason": reason, **(metadata or {})},
    )


def log_limit_exceeded(
    plugin: str,
    reason: str,
    *,
    usage: dict[str, Any] | None = None,
) -> None:
    """Log a resource limit breach with a usage snapshot."""
    _get_logger().warning(
        "limit_exceeded",
        f"Plugin {plugin} exceeded a resource limit: {reason}",
        plugin=plugin,
        metadata={"reason": reason, "usage": usage or {}},
    )


def log_capability_grant(
    plugin: str,
    capability: str,
    *,
    risk: str,
    requires_approval: bool,
) -> None:
    """Log a capability grant. High-risk grants are logged at WARNING."""
    level = "WARNING" if requires_approval else "INFO"
    _get_logger().log(
        level,
        "capability_grant",
        f"Plugin {plugin} granted {capability} (risk: {risk})",
        plugin=plugin,
        capability=capability,
        metadata={"risk": risk, "requires_approval": requires_approval},
    )


def log_plugin_lifecycle(
    plugin: str,
    transition: Literal["load", "unload", "reload"],
    *,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Log a plugin load/unload/reload."""
    _get_logger().info(
        "plugin_lifecycle",
        f"Plugin {plugin} {transition}ed",
        plugin=plugin,
        metadata={"transition": transition, **(metadata or {})},
    )
