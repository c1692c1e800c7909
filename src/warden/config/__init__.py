"""Process settings (``.env`` + environment) and packaged configuration defaults."""

from .settings import ConfigError, Settings, generate_example_env, get_settings, load_settings

__all__ = [
    "ConfigError",
    "Settings",
    "generate_example_env",
    "get_settings",
    "load_settings",
]
