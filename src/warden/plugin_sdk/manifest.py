"""Schema and helpers for the ``permissions`` section of plugin manifests.

A manifest declares what a plugin wants to be allowed to do::

    {
        "name": "git-blame",
        "version": "1.2.0",
        "permissions": {
            "capabilities": ["editor.buffer", "filesystem.read"],
            "allowedPaths": ["/home/dev/projects"],
            "blockedPaths": ["/home/dev/projects/secrets"],
            "allowedHosts": ["*.github.com"],
            "blockedHosts": []
        }
    }

The host turns the section into a :class:`PermissionSet` and applies it to the
plugin's permission checker at load time.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft7Validator

from .capabilities import get_capability_info, is_valid_capability

__all__ = [
    "MANIFEST_SCHEMA",
    "PERMISSIONS_SCHEMA",
    "ManifestError",
    "PermissionSet",
    "PermissionSetValidator",
    "get_manifest_schema",
    "load_manifest",
    "load_permission_set",
    "validate_permissions",
]


def _string_list(description: str) -> dict[str, Any]:
    return {
        "type": "array",
        "items": {"type": "string", "minLength": 1},
        "uniqueItems": True,
        "description": description,
    }


PERMISSIONS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "capabilities": {
            "type": "array",
            "items": {"type": "string", "pattern": "^[a-z][a-z0-9]*(\\.[a-z][a-z0-9]*)*$"},
            "uniqueItems": True,
            "description": "Capabilities requested by the plugin.",
        },
        "allowedPaths": _string_list("Filesystem roots the plugin may access."),
        "blockedPaths": _string_list("Filesystem roots the plugin may never access."),
        "allowedHosts": {
            **_string_list("Hosts the plugin may contact (``*.example.com`` wildcards allowed)."),
            "items": {"type": "string", "pattern": "^(\\*\\.)?[^*\\s]+$"},
        },
        "blockedHosts": {
            **_string_list("Hosts the plugin may never contact."),
            "items": {"type": "string", "pattern": "^(\\*\\.)?[^*\\s]+$"},
        },
    },
    "additionalProperties": False,
}

MANIFEST_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["name", "version"],
    "properties": {
        "name": {
            "type": "string",
            "pattern": "^[a-z0-9][a-z0-9-]*[a-z0-9]$",
            "minLength": 3,
            "maxLength": 50,
            "description": "Unique plugin identifier in kebab-case.",
        },
        "version": {
            "type": "string",
            "pattern": "^\\d+\\.\\d+\\.\\d+(-[a-zA-Z0-9.-]+)?$",
            "description": "Semantic version of the plugin.",
        },
        "permissions": PERMISSIONS_SCHEMA,
    },
}


class ManifestError(Exception):
    """Raised when a manifest or its permissions section is invalid."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.errors = errors or []
        if self.errors:
            message = f"{message}: " + "; ".join(self.errors)
        super().__init__(message)


@dataclass(frozen=True)
class PermissionSet:
    """Declarative permission grant for one plugin.

    Applying a set is additive: it never removes capabilities or list entries
    already present on a checker.
    """

    capabilities: tuple[str, ...] = ()
    allowed_paths: tuple[str, ...] = ()
    blocked_paths: tuple[str, ...] = ()
    allowed_hosts: tuple[str, ...] = ()
    blocked_hosts: tuple[str, ...] = ()

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any]) -> PermissionSet:
        """Create a permission set from a full manifest dictionary.

        Parameters
        ----------
        manifest
            Manifest dictionary; a missing ``permissions`` section yields an
            empty set

        Raises
        ------
        ManifestError
            If the ``permissions`` section fails validation
        """
        section = manifest.get("permissions", {})
        errors = validate_permissions(section)
        if errors:
            raise ManifestError(f"Invalid permissions for plugin '{manifest.get('name', 'unknown')}'", errors)
        return cls.from_dict(section)

    @classmethod
    def from_dict(cls, section: dict[str, Any]) -> PermissionSet:
        """Build a set from an already validated ``permissions`` section."""
        return cls(
            capabilities=tuple(section.get("capabilities", ())),
            allowed_paths=tuple(section.get("allowedPaths", ())),
            blocked_paths=tuple(section.get("blockedPaths", ())),
            allowed_hosts=tuple(section.get("allowedHosts", ())),
            blocked_hosts=tuple(section.get("blockedHosts", ())),
        )

    def to_dict(self) -> dict[str, list[str]]:
        """Return the manifest representation of this set."""
        return {
            "capabilities": list(self.capabilities),
            "allowedPaths": list(self.allowed_paths),
            "blockedPaths": list(self.blocked_paths),
            "allowedHosts": list(self.allowed_hosts),
            "blockedHosts": list(self.blocked_hosts),
        }

    def approval_required(self) -> list[str]:
        """Return requested capabilities the user should approve explicitly."""
        required = []
        for cap in self.capabilities:
            info = get_capability_info(cap)
            if info is not None and info.requires_user_approval:
                required.append(cap)
        return required


class PermissionSetValidator:
    """Validate ``permissions`` sections against :data:`PERMISSIONS_SCHEMA`.

    Example:
        >>> validator = PermissionSetValidator()
        >>> validator.validate({"capabilities": ["telepathy"]})
        ["[capability] unknown capability 'telepathy' (path: capabilities -> 0)"]
    """

    def __init__(self) -> None:
        self.validator = Draft7Validator(PERMISSIONS_SCHEMA)

    def validate(self, section: Any) -> list[str]:
        """Return a list of human readable validation errors."""

        collected: list[str] = []

        for error in sorted(self.validator.iter_errors(section), key=lambda err: list(err.absolute_path)):
            location = " -> ".join(str(part) for part in error.absolute_path) or "<root>"
            collected.append(f"[{error.validator}] {error.message} (path: {location})")

        if collected or not isinstance(section, dict):
            return collected

        for index, cap in enumerate(section.get("capabilities", [])):
            if not is_valid_capability(cap):
                collected.append(f"[capability] unknown capability '{cap}' (path: capabilities -> {index})")

        return collected


def validate_permissions(section: Any) -> list[str]:
    """Return validation errors for a ``permissions`` section (empty if valid)."""

    return PermissionSetValidator().validate(section)


def load_manifest(path: str | Path) -> dict[str, Any]:
    """Load a JSON or YAML manifest file and check it against :data:`MANIFEST_SCHEMA`.

    Raises
    ------
    ManifestError
        If the file cannot be read or parsed, or the manifest is invalid
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ManifestError(f"Unable to read manifest {path}: {exc}") from exc

    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ManifestError(f"Unable to parse manifest {path}: {exc}") from exc

    errors = [
        f"[{error.validator}] {error.message}"
        for error in Draft7Validator(MANIFEST_SCHEMA).iter_errors(data)
        if "permissions" not in error.absolute_path
    ]
    if errors:
        raise ManifestError(f"Invalid manifest {path}", errors)

    return data


def load_permission_set(path: str | Path) -> PermissionSet:
    """Load a manifest file and return its :class:`PermissionSet`."""

    return PermissionSet.from_manifest(load_manifest(path))


def get_manifest_schema() -> dict[str, Any]:
    """Return a deep copy of :data:`MANIFEST_SCHEMA`."""

    return copy.deepcopy(MANIFEST_SCHEMA)
