"""Shared CLI helpers: stable exit codes and JSON/human output."""

import json
from enum import IntEnum
from typing import Any

import click


class ExitCode(IntEnum):
    """Stable exit codes for CLI commands."""

    SUCCESS = 0  # Allowed / command succeeded
    DENIED = 1  # At least one check was denied
    INVALID_MANIFEST = 2  # Manifest unreadable or failed validation
    CONFIG_ERROR = 3  # Settings or config file invalid


def emit(data: Any, *, json_output: bool) -> None:
    """Print ``data`` as JSON or in a human-readable form."""
    if json_output:
        click.echo(json.dumps(data, ensure_ascii=False, indent=2, sort_keys=True))
        return

    if isinstance(data, dict):
        for key, value in data.items():
            click.echo(f"{key}: {value}")
    elif isinstance(data, list):
        for item in data:
            click.echo(f"  - {item}")
    else:
        click.echo(data)
