"""Capability identifiers and metadata for plugin authors.

Capabilities are hierarchical, dot-separated identifiers. Granting a parent
capability (``editor``) implicitly grants every capability nested under it
(``editor.buffer``, ``editor.cursor`` ...).

Example:
    >>> from warden.plugin_sdk import capabilities
    >>> capabilities.implies_capability("editor", "editor.buffer")
    True
    >>> capabilities.implies_capability("editor.buffer", "editor")
    False
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping

__all__ = [
    "Capability",
    "CapabilityInfo",
    "RiskLevel",
    "all_capabilities",
    "children_of",
    "describe",
    "get_capability_info",
    "high_risk_capabilities",
    "implies_capability",
    "is_child_of",
    "is_valid_capability",
]


class Capability(str, Enum):
    """Capabilities understood by the host."""

    FILE_READ = "filesystem.read"
    FILE_WRITE = "filesystem.write"
    NETWORK = "network"
    SHELL = "shell"
    CLIPBOARD = "clipboard"
    PROCESS = "process.spawn"
    # Full interpreter stdlib access. Grant sparingly.
    UNSAFE = "unsafe"

    EDITOR = "editor"
    BUFFER = "editor.buffer"
    CURSOR = "editor.cursor"
    KEYMAP = "editor.keymap"
    COMMAND = "editor.command"
    UI = "editor.ui"
    CONFIG = "editor.config"
    EVENT = "editor.event"
    LSP = "editor.lsp"

    def __str__(self) -> str:
        return self.value


class RiskLevel(IntEnum):
    """Security risk tier of a capability."""

    LOW = 0
    MEDIUM = 1
    HIGH = 2
    CRITICAL = 3

    def __str__(self) -> str:
        return self.name.lower()


@dataclass(frozen=True, slots=True)
class CapabilityInfo:
    """Metadata describing a capability.

    ``requires_user_approval`` is descriptive: the manifest UI uses it to ask
    the user before granting, the permission checker does not enforce it.
    """

    name: str
    display_name: str
    description: str
    risk: RiskLevel
    requires_user_approval: bool = False
    parent: str | None = None


def _info(
    cap: Capability,
    display_name: str,
    description: str,
    risk: RiskLevel,
    *,
    approval: bool = False,
    parent: Capability | None = None,
) -> tuple[str, CapabilityInfo]:
    return cap.value, CapabilityInfo(
        name=cap.value,
        display_name=display_name,
        description=description,
        risk=risk,
        requires_user_approval=approval,
        parent=parent.value if parent else None,
    )


_REGISTRY: Mapping[str, CapabilityInfo] = MappingProxyType(
    dict(
        [
            _info(Capability.FILE_READ, "File Read", "Read files from the filesystem", RiskLevel.MEDIUM),
            _info(
                Capability.FILE_WRITE, "File Write", "Write files to the filesystem", RiskLevel.HIGH, approval=True
            ),
            _info(Capability.NETWORK, "Network Access", "Make network requests", RiskLevel.HIGH, approval=True),
            _info(Capability.SHELL, "Shell Access", "Execute shell commands", RiskLevel.CRITICAL, approval=True),
            _info(Capability.CLIPBOARD, "Clipboard Access", "Read and write clipboard", RiskLevel.MEDIUM),
            _info(Capability.PROCESS, "Process Spawn", "Spawn child processes", RiskLevel.CRITICAL, approval=True),
            _info(
                Capability.UNSAFE,
                "Unsafe Mode",
                "Full interpreter stdlib access (dangerous)",
                RiskLevel.CRITICAL,
                approval=True,
            ),
            _info(Capability.EDITOR, "Editor Access", "Access editor internals", RiskLevel.LOW),
            _info(
                Capability.BUFFER, "Buffer Access", "Read and modify buffers", RiskLevel.LOW, parent=Capability.EDITOR
            ),
            _info(
                Capability.CURSOR, "Cursor Access", "Control cursor position", RiskLevel.LOW, parent=Capability.EDITOR
            ),
            _info(Capability.KEYMAP, "Keymap Access", "Register keybindings", RiskLevel.LOW, parent=Capability.EDITOR),
            _info(Capability.COMMAND, "Command Access", "Register commands", RiskLevel.LOW, parent=Capability.EDITOR),
            _info(
                Capability.UI,
                "UI Access",
                "Show notifications and UI elements",
                RiskLevel.LOW,
                parent=Capability.EDITOR,
            ),
            _info(
                Capability.CONFIG,
                "Config Access",
                "Read and write configuration",
                RiskLevel.LOW,
                parent=Capability.EDITOR,
            ),
            _info(
                Capability.EVENT, "Event Access", "Subscribe to editor events", RiskLevel.LOW, parent=Capability.EDITOR
            ),
            _info(Capability.LSP, "LSP Access", "Access LSP client", RiskLevel.LOW, parent=Capability.EDITOR),
        ]
    )
)
"""Read-only table of every known capability, built once at import."""


def get_capability_info(cap: str) -> CapabilityInfo | None:
    """Return metadata for ``cap`` or ``None`` if it is unknown."""

    return _REGISTRY.get(str(cap))


def is_valid_capability(cap: str) -> bool:
    """Return ``True`` if ``cap`` is a known capability."""

    return str(cap) in _REGISTRY


def all_capabilities() -> frozenset[str]:
    """Return every known capability identifier."""

    return frozenset(_REGISTRY)


def high_risk_capabilities() -> frozenset[str]:
    """Return capabilities that require explicit user approval."""

    return frozenset(name for name, info in _REGISTRY.items() if info.requires_user_approval)


def children_of(cap: str) -> frozenset[str]:
    """Return known capabilities nested anywhere under ``cap``."""

    return frozenset(name for name in _REGISTRY if is_child_of(name, cap))


def describe(cap: str) -> str:
    """Return a human readable description for ``cap``.

    Raises
    ------
    KeyError
        If ``cap`` is not a known capability
    """

    info = _REGISTRY[str(cap)]
    return f"{info.display_name}: {info.description}"


def is_child_of(child: str, parent: str) -> bool:
    """Return ``True`` if ``child`` is nested under ``parent``.

    Only whole namespace segments count: ``editor.buffer`` is a child of
    ``editor`` but ``editorial`` is not.
    """

    return str(child).startswith(str(parent) + ".")


def implies_capability(granted: str, required: str) -> bool:
    """Return ``True`` if holding ``granted`` satisfies ``required``."""

    granted, required = str(granted), str(required)
    if granted == required:
        return True
    return is_child_of(required, granted)
