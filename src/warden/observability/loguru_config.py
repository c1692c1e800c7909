"""Loguru configuration for the plugin host.

This module provides centralized loguru configuration with:
- Colored console output
- Structured JSON log files, one main file plus one per component
- A timing context manager for load/run/unload measurements

Components: ``sandbox``, ``worker``, ``events``, ``config``.
"""

from __future__ import annotations

import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Generator

__all__ = [
    "COMPONENTS",
    "configure_loguru",
    "get_logger",
    "timing_context",
]

COMPONENTS = ("sandbox", "worker", "events", "config")


def configure_loguru(
    *,
    log_dir: Path | None = None,
    level: str = "INFO",
    rotation: str = "50 MB",
    retention: str = "10 days",
    enable_console: bool = True,
    enable_files: bool = True,
) -> None:
    """Configure loguru sinks.

    Parameters
    ----------
    log_dir
        Directory for log files (default: logs/)
    level
        Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    rotation
        Log rotation policy (e.g., "50 MB", "1 day")
    retention
        Log retention policy (e.g., "10 days", "1 week")
    enable_console
        Enable console output
    enable_files
        Write JSONL files under ``log_dir``

    Example
    -------
    >>> from warden.observability.loguru_config import configure_loguru
    >>> configure_loguru(log_dir=Path("logs"), level="DEBUG")
    """
    logger.remove()
    logger.configure(extra={"component": "warden"})

    if enable_console:
        logger.add(
            sys.stderr,
            format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[component]}</cyan> | "
            "<level>{message}</level>",
            level=level,
            colorize=True,
            backtrace=True,
            diagnose=False,
        )

    if not enable_files:
        logger.info("Loguru configured", level=level, files=False)
        return

    log_dir = log_dir or Path("logs")
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.add(
        log_dir / "warden.jsonl",
        format="{message}",
        level=level,
        rotation=rotation,
        retention=retention,
        serialize=True,
        backtrace=True,
        diagnose=False,
        enqueue=True,
    )

    for component in COMPONENTS:
        logger.add(
            log_dir / f"{component}.jsonl",
            format="{message}",
            level=level,
            rotation=rotation,
            retention=retention,
            serialize=True,
            backtrace=True,
            diagnose=False,
            enqueue=True,
            filter=lambda record, comp=component: record["extra"].get("component") == comp,
        )

    logger.info("Loguru configured", log_dir=str(log_dir), level=level)


def get_logger(component: str = "warden") -> Any:
    """Get logger instance bound to specific component.

    Parameters
    ----------
    component
        Component name (sandbox, worker, events, config)

    Returns
    -------
    Logger
        Loguru logger bound to component
    """
    return logger.bind(component=component)


@contextmanager
def timing_context(
    operation: str,
    *,
    component: str = "warden",
    **metadata: Any,
) -> Generator[dict[str, Any], None, None]:
    """Log the duration of the wrapped block.

    Yields
    ------
    dict
        Context dictionary; extra keys set on it are logged with the end entry

    Example
    -------
    >>> with timing_context("plugin_load", component="sandbox", plugin="git-blame") as ctx:
    ...     ctx["modules"] = 4
    """
    start_ns = time.perf_counter_ns()
    context: dict[str, Any] = {}
    bound = logger.bind(component=component, operation=operation)

    bound.debug(f"START: {operation}", phase="start", **metadata)

    try:
        yield context
    finally:
        duration_ms = (time.perf_counter_ns() - start_ns) / 1_000_000
        bound.debug(
            f"END: {operation}",
            phase="end",
            duration_ms=duration_ms,
            **{**metadata, **context},
        )
