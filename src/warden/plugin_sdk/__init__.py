"""Stable public surface for plugin hosts and adapter authors.

The :mod:`warden.plugin_sdk` package re-exports the capability table, the
manifest permission schema and the shared protocols. Adapters should only
import from this namespace.

Example:
    >>> from warden.plugin_sdk import capabilities
    >>> capabilities.is_valid_capability("editor.buffer")
    True
"""

from . import capabilities, manifest, types

__all__ = [
    "capabilities",
    "manifest",
    "types",
]
