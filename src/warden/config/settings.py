"""Host settings loaded from ``.env`` and the environment.

Missing or malformed values produce a :class:`ConfigError` whose message
says which variable to fix and how.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from ..core.limits import TRUST_TIERS, ResourceLimits, limits_for_tier
from ..observability.logging import create_logger
from ..observability.loguru_config import configure_loguru

__all__ = [
    "ConfigError",
    "Settings",
    "generate_example_env",
    "get_settings",
    "load_env_file",
    "load_settings",
]

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(Exception):
    """Raised when configuration is missing or invalid."""

    pass


@dataclass
class Settings:
    """Process-wide settings for the plugin host.

    Attributes
    ----------
    limits_preset : str
        Default trust tier for plugins without their own: strict, default or relaxed
    workspace : Path | None
        Directory bounding plugin file access while no allowed paths are set
    callback_queue_size : int
        Capacity of each plugin's callback queue
    log_level : str
        Logging level
    log_dir : Path
        Directory for JSONL log files
    config_path : Path
        YAML config file with per-plugin policy
    """

    limits_preset: str = "default"
    workspace: Path | None = None
    callback_queue_size: int = 256
    log_level: str = "INFO"
    log_dir: Path = Path("logs")
    config_path: Path = Path("warden.yaml")

    def __post_init__(self):
        """Validate settings after initialization."""
        if isinstance(self.workspace, str):
            self.workspace = Path(self.workspace)
        if isinstance(self.log_dir, str):
            self.log_dir = Path(self.log_dir)
        if isinstance(self.config_path, str):
            self.config_path = Path(self.config_path)

        self.limits_preset = self.limits_preset.lower()
        if self.limits_preset not in TRUST_TIERS:
            raise ConfigError(
                f"WARDEN_LIMITS_PRESET must be one of: {', '.join(TRUST_TIERS)} "
                f"(got '{self.limits_preset}'). Set it in .env, e.g. WARDEN_LIMITS_PRESET=strict"
            )

        if self.callback_queue_size <= 0:
            raise ConfigError(
                f"WARDEN_CALLBACK_QUEUE_SIZE must be a positive integer (got {self.callback_queue_size})"
            )

        self.log_level = self.log_level.upper()
        if self.log_level not in _LOG_LEVELS:
            raise ConfigError(f"WARDEN_LOG_LEVEL must be one of: {', '.join(_LOG_LEVELS)} (got '{self.log_level}')")

        if self.workspace is not None and not self.workspace.is_dir():
            raise ConfigError(
                f"WARDEN_WORKSPACE points to '{self.workspace}', which is not a directory.\n"
                "Create it or unset WARDEN_WORKSPACE to disable the workspace boundary."
            )

    @property
    def limits(self) -> ResourceLimits:
        """Resource limits of the configured preset."""
        return limits_for_tier(self.limits_preset)

    def configure_logging(self, *, enable_console: bool = True) -> None:
        """Send loguru output and the audit log to ``log_dir`` at ``log_level``.

        Writes ``warden.jsonl`` plus one file per component, and the JSON audit
        log to ``audit.jsonl``.
        """
        configure_loguru(log_dir=self.log_dir, level=self.log_level, enable_console=enable_console)
        create_logger(log_file=self.log_dir / "audit.jsonl", level=self.log_level, console=False)

    @classmethod
    def from_env(cls, env_file: Path | str | None = None) -> Settings:
        """Load settings from environment.

        Loads from .env file if present, otherwise from os.environ.

        Parameters
        ----------
        env_file
            Path to .env file (default: .env in current directory)

        Raises
        ------
        ConfigError
            If settings are invalid
        """
        if env_file is None:
            env_file = Path(".env")

        if isinstance(env_file, str):
            env_file = Path(env_file)

        if env_file.exists():
            load_env_file(env_file)

        workspace = os.environ.get("WARDEN_WORKSPACE")
        queue_size = os.environ.get("WARDEN_CALLBACK_QUEUE_SIZE", "256")

        try:
            callback_queue_size = int(queue_size)
        except ValueError as exc:
            raise ConfigError(
                f"WARDEN_CALLBACK_QUEUE_SIZE must be an integer (got '{queue_size}')"
            ) from exc

        return cls(
            limits_preset=os.environ.get("WARDEN_LIMITS_PRESET", "default"),
            workspace=Path(workspace) if workspace else None,
            callback_queue_size=callback_queue_size,
            log_level=os.environ.get("WARDEN_LOG_LEVEL", "INFO"),
            log_dir=Path(os.environ.get("WARDEN_LOG_DIR", "logs")),
            config_path=Path(os.environ.get("WARDEN_CONFIG", "warden.yaml")),
        )


def load_env_file(env_file: Path) -> None:
    """Load ``KEY=VALUE`` lines from ``env_file`` into ``os.environ``."""
    with open(env_file, encoding="utf-8") as f:
        for line in f:
            line = line.strip()

            # Skip comments and empty lines
            if not line or line.startswith("#"):
                continue

            if "=" in line:
                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip()

                if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
                    value = value[1:-1]

                os.environ[key] = value


# Global settings instance
_settings: Settings | None = None


def load_settings(env_file: Path | str | None = None) -> Settings:
    """Load settings from environment and make them current.

    Raises
    ------
    ConfigError
        If settings are invalid (clear error message)
    """
    global _settings
    _settings = Settings.from_env(env_file)
    return _settings


def get_settings() -> Settings:
    """Get current settings.

    Raises
    ------
    ConfigError
        If settings not loaded
    """
    if _settings is None:
        raise ConfigError("Settings not loaded. Call load_settings() first.")
    return _settings


def generate_example_env(output_path: Path | None = None) -> str:
    """Generate example .env file with all settings."""
    example = """# Warden Configuration
# Copy this to .env and adjust values

# ====================
# Plugin limits
# ====================

# Default trust tier for plugins (optional, default: default)
# Options: strict, default, relaxed
WARDEN_LIMITS_PRESET=default

# Directory plugins may access when they declare no allowed paths (optional)
# WARDEN_WORKSPACE=/home/dev/projects

# Pending callbacks per plugin before new ones are refused (optional, default: 256)
WARDEN_CALLBACK_QUEUE_SIZE=256

# ====================
# Logging
# ====================

# Log level (optional, default: INFO)
# Options: DEBUG, INFO, WARNING, ERROR, CRITICAL
WARDEN_LOG_LEVEL=INFO

# Directory for JSONL logs (optional, default: logs)
WARDEN_LOG_DIR=logs

# ====================
# Plugin policy
# ====================

# YAML file with per-plugin tiers and permissions (optional, default: warden.yaml)
WARDEN_CONFIG=warden.yaml
"""

    if output_path:
        output_path.write_text(example)

    return example
