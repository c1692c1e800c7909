"""Capability checks and path/host containment for plugin operations.

Each loaded plugin gets one :class:`PermissionChecker`. Plugin-facing adapters
call its ``check_*`` methods before doing anything privileged; a denial is
raised as :class:`CapabilityError` and is never retried.

Blocked entries always win over allowed entries and over the workspace
boundary. Path containment works on whole path segments, so a block on
``/tmp/blocked`` does not affect ``/tmp/blockedfiles``.
"""

from __future__ import annotations

import os
import threading
from pathlib import PurePath
from typing import TYPE_CHECKING

from ..plugin_sdk.capabilities import Capability, implies_capability

if TYPE_CHECKING:
    from collections.abc import Iterable

    from ..plugin_sdk.manifest import PermissionSet

__all__ = [
    "REASON_HOST_BLOCKED",
    "REASON_HOST_NOT_ALLOWED",
    "REASON_NOT_GRANTED",
    "REASON_OUTSIDE_WORKSPACE",
    "REASON_PATH_BLOCKED",
    "REASON_PATH_NOT_ALLOWED",
    "CapabilityError",
    "PermissionChecker",
    "PermissionDeniedError",
    "extract_host",
    "is_within_path",
    "match_host",
    "normalize_path",
]

REASON_NOT_GRANTED = "not granted"
REASON_PATH_BLOCKED = "path is blocked"
REASON_PATH_NOT_ALLOWED = "path not in allowed list"
REASON_OUTSIDE_WORKSPACE = "path outside workspace"
REASON_HOST_BLOCKED = "host is blocked"
REASON_HOST_NOT_ALLOWED = "host not in allowed list"


class PermissionDeniedError(Exception):
    """Raised when a plugin attempts an operation it is not allowed to perform."""


class CapabilityError(PermissionDeniedError):
    """Denial naming the missing capability, the operation and a stable reason.

    Attributes
    ----------
    capability : str
        Capability that was required
    operation : str
        Attempted operation (may be empty)
    message : str
        Machine-stable reason, e.g. ``"path is blocked"``
    """

    def __init__(self, capability: str, operation: str, message: str) -> None:
        self.capability = str(capability)
        self.operation = operation
        self.message = message
        super().__init__(self._render())

    def _render(self) -> str:
        if self.operation:
            return f'capability "{self.capability}" required for {self.operation}: {self.message}'
        return f'capability "{self.capability}": {self.message}'

    def __str__(self) -> str:
        return self._render()

    def __reduce__(self):
        return (type(self), (self.capability, self.operation, self.message))


def normalize_path(path: str | os.PathLike[str]) -> str:
    """Return ``path`` as an absolute, cleaned path (symlinks are not resolved)."""

    return os.path.abspath(os.fspath(path))


def is_within_path(target: str, base: str) -> bool:
    """Return ``True`` if ``target`` equals ``base`` or lies beneath it.

    Both arguments must already be normalized. The comparison decomposes
    ``target`` relative to ``base`` segment by segment, never by string prefix.
    """
    try:
        PurePath(target).relative_to(PurePath(base))
        return True
    except ValueError:
        return False


def _split_host_port(hostport: str) -> tuple[str, str]:
    """Split ``host:port`` or ``[host]:port``.

    Raises
    ------
    ValueError
        If ``hostport`` does not carry a port in one of those forms
    """
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"missing ']' in address {hostport!r}")
        if end + 1 == len(hostport) or hostport[end + 1] != ":":
            raise ValueError(f"missing port in address {hostport!r}")
        host, port = hostport[1:end], hostport[end + 2 :]
        if "[" in host or "]" in port or "[" in port:
            raise ValueError(f"unexpected bracket in address {hostport!r}")
        return host, port

    colon = hostport.rfind(":")
    if colon < 0:
        raise ValueError(f"missing port in address {hostport!r}")
    host, port = hostport[:colon], hostport[colon + 1 :]
    if ":" in host:
        raise ValueError(f"too many colons in address {hostport!r}")
    if "[" in host or "]" in host:
        raise ValueError(f"unexpected bracket in address {hostport!r}")
    return host, port


def extract_host(hostport: str) -> str:
    """Return the bare host of ``hostport``.

    Handles ``host:port``, ``[v6]:port``, ``[v6]``, bare IPv6 literals and
    bare hostnames.

    Example:
        >>> extract_host("[2001:db8::1]:443")
        '2001:db8::1'
        >>> extract_host("example.com:443")
        'example.com'
    """
    try:
        host, _ = _split_host_port(hostport)
        return host
    except ValueError:
        pass

    if hostport.startswith("[") and hostport.endswith("]"):
        return hostport[1:-1]

    return hostport


def match_host(host: str, pattern: str) -> bool:
    """Return ``True`` if ``host`` matches ``pattern`` (case-insensitive).

    ``*.example.com`` matches any proper subdomain of ``example.com`` but not
    ``example.com`` itself.
    """
    host = host.lower()
    pattern = pattern.lower()

    if host == pattern:
        return True

    if pattern.startswith("*."):
        return host.endswith(pattern[1:])

    return False


class PermissionChecker:
    """Per-plugin authorization state.

    Safe to call from any thread. All state is private and only reached
    through the methods below.

    Example:
        >>> checker = PermissionChecker("git-blame")
        >>> checker.grant("editor")
        >>> checker.has_capability("editor.buffer")
        True
        >>> checker.check_file_read("/etc/passwd")
        Traceback (most recent call last):
        ...
        warden.core.policy.CapabilityError: capability "filesystem.read" required for read file: not granted
    """

    def __init__(self, plugin_name: str) -> None:
        self._lock = threading.Lock()
        self._plugin_name = plugin_name
        self._capabilities: set[str] = set()
        self._allowed_paths: list[str] = []
        self._blocked_paths: list[str] = []
        self._workspace_path: str | None = None
        self._allowed_hosts: list[str] = []
        self._blocked_hosts: list[str] = []

    @property
    def plugin_name(self) -> str:
        return self._plugin_name

    # Capabilities ---------------------------------------------------------

    def grant(self, cap: str) -> None:
        with self._lock:
            self._capabilities.add(str(cap))

    def revoke(self, cap: str) -> None:
        with self._lock:
            self._capabilities.discard(str(cap))

    def grant_all(self, caps: Iterable[str]) -> None:
        with self._lock:
            self._capabilities.update(str(cap) for cap in caps)

    def capabilities(self) -> frozenset[str]:
        """Return a snapshot of the directly granted capabilities."""
        with self._lock:
            return frozenset(self._capabilities)

    def has_capability(self, cap: str) -> bool:
        """Return ``True`` if ``cap`` is granted directly or through a parent."""
        with self._lock:
            return self._has_capability(str(cap))

    def _has_capability(self, cap: str) -> bool:
        if cap in self._capabilities:
            return True
        return any(implies_capability(granted, cap) for granted in self._capabilities)

    def check_capability(self, cap: str) -> None:
        """Raise :class:`CapabilityError` unless ``cap`` is granted."""
        if not self.has_capability(cap):
            raise CapabilityError(cap, "", REASON_NOT_GRANTED)

    # Filesystem -----------------------------------------------------------

    def set_workspace_path(self, path: str | os.PathLike[str]) -> None:
        """Bound file access to ``path`` while no explicit allow-list is set."""
        with self._lock:
            self._workspace_path = normalize_path(path)

    def allow_path(self, path: str | os.PathLike[str]) -> None:
        with self._lock:
            self._allowed_paths.append(normalize_path(path))

    def block_path(self, path: str | os.PathLike[str]) -> None:
        with self._lock:
            self._blocked_paths.append(normalize_path(path))

    def check_file_read(self, path: str | os.PathLike[str]) -> None:
        """Check that reading ``path`` is permitted.

        Raises
        ------
        CapabilityError
            If ``filesystem.read`` is missing or the path is not reachable
        """
        self._check_file(Capability.FILE_READ.value, "read file", path)

    def check_file_write(self, path: str | os.PathLike[str]) -> None:
        """Check that writing ``path`` is permitted.

        Raises
        ------
        CapabilityError
            If ``filesystem.write`` is missing or the path is not reachable
        """
        self._check_file(Capability.FILE_WRITE.value, "write file", path)

    def _check_file(self, cap: str, operation: str, path: str | os.PathLike[str]) -> None:
        target = normalize_path(path)

        with self._lock:
            if not self._has_capability(cap):
                raise CapabilityError(cap, operation, REASON_NOT_GRANTED)

            # Blocklist runs first and unconditionally
            for blocked in self._blocked_paths:
                if is_within_path(target, blocked):
                    raise CapabilityError(cap, operation, REASON_PATH_BLOCKED)

            if self._allowed_paths:
                if not any(is_within_path(target, allowed) for allowed in self._allowed_paths):
                    raise CapabilityError(cap, operation, REASON_PATH_NOT_ALLOWED)
            elif self._workspace_path is not None:
                if not is_within_path(target, self._workspace_path):
                    raise CapabilityError(cap, operation, REASON_OUTSIDE_WORKSPACE)

    # Network --------------------------------------------------------------

    def allow_host(self, host: str) -> None:
        with self._lock:
            self._allowed_hosts.append(host.lower())

    def block_host(self, host: str) -> None:
        with self._lock:
            self._blocked_hosts.append(host.lower())

    def check_network(self, hostport: str) -> None:
        """Check that connecting to ``hostport`` is permitted.

        Parameters
        ----------
        hostport
            ``host``, ``host:port``, ``[v6]:port``, ``[v6]`` or a bare IPv6
            literal

        Raises
        ------
        CapabilityError
            If ``network`` is missing or the host is blocked / not allowed
        """
        cap = Capability.NETWORK.value
        operation = "network request"
        host = extract_host(hostport).lower()

        with self._lock:
            if not self._has_capability(cap):
                raise CapabilityError(cap, operation, REASON_NOT_GRANTED)

            for blocked in self._blocked_hosts:
                if match_host(host, blocked):
                    raise CapabilityError(cap, operation, REASON_HOST_BLOCKED)

            if self._allowed_hosts and not any(match_host(host, allowed) for allowed in self._allowed_hosts):
                raise CapabilityError(cap, operation, REASON_HOST_NOT_ALLOWED)

    # Plain gates ----------------------------------------------------------

    def check_shell(self, command: str) -> None:
        if not self.has_capability(Capability.SHELL):
            raise CapabilityError(Capability.SHELL.value, "shell command", REASON_NOT_GRANTED)

    def check_process(self, executable: str) -> None:
        if not self.has_capability(Capability.PROCESS):
            raise CapabilityError(Capability.PROCESS.value, "spawn process", REASON_NOT_GRANTED)

    def check_clipboard(self, operation: str) -> None:
        if not self.has_capability(Capability.CLIPBOARD):
            raise CapabilityError(Capability.CLIPBOARD.value, operation, REASON_NOT_GRANTED)

    # Bulk -----------------------------------------------------------------

    def apply_permission_set(self, permission_set: PermissionSet) -> None:
        """Merge ``permission_set`` into the current state (never replaces)."""
        with self._lock:
            self._capabilities.update(str(cap) for cap in permission_set.capabilities)
            self._allowed_paths.extend(normalize_path(p) for p in permission_set.allowed_paths)
            self._blocked_paths.extend(normalize_path(p) for p in permission_set.blocked_paths)
            self._allowed_hosts.extend(h.lower() for h in permission_set.allowed_hosts)
            self._blocked_hosts.extend(h.lower() for h in permission_set.blocked_hosts)

    def reset(self) -> None:
        """Drop every grant, path list, host list and the workspace boundary."""
        with self._lock:
            self._capabilities.clear()
            self._allowed_paths.clear()
            self._blocked_paths.clear()
            self._workspace_path = None
            self._allowed_hosts.clear()
            self._blocked_hosts.clear()

    def __repr__(self) -> str:
        with self._lock:
            caps = sorted(self._capabilities)
        return f"PermissionChecker(plugin={self._plugin_name!r}, capabilities={caps})"
