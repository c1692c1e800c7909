"""Observability module for Warden.

Provides loguru component logging and the JSON security audit log.
"""

from .logging import (
    StructuredLogger,
    create_logger,
    log_capability_grant,
    log_limit_exceeded,
    log_permission_denied,
    log_plugin_lifecycle,
)
from .loguru_config import (
    configure_loguru,
    get_logger,
    timing_context,
)

__all__ = [
    "StructuredLogger",
    "configure_loguru",
    "create_logger",
    "get_logger",
    "log_capability_grant",
    "log_limit_exceeded",
    "log_permission_denied",
    "log_plugin_lifecycle",
    "timing_context",
]
