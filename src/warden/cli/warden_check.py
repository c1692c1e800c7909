"""Dry-run a plugin manifest against concrete operations (``warden check``).

Exit codes: 0 when every operation is allowed, 1 when any is denied, 2 when the
manifest cannot be loaded.
"""

import sys
from pathlib import Path

import click

from ..core.policy import CapabilityError, PermissionChecker
from ..plugin_sdk.manifest import ManifestError, PermissionSet, load_manifest
from .cli_common import ExitCode, emit

__all__ = ["check_command"]


@click.command("check")
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--read", "reads", multiple=True, help="Path the plugin would read (repeatable)")
@click.option("--write", "writes", multiple=True, help="Path the plugin would write (repeatable)")
@click.option("--host", "hosts", multiple=True, help="host[:port] the plugin would connect to (repeatable)")
@click.option("--capability", "capabilities", multiple=True, help="Capability to test directly (repeatable)")
@click.option(
    "--workspace",
    type=click.Path(file_okay=False, path_type=Path),
    help="Workspace boundary applied when the manifest lists no allowed paths",
)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON (machine-readable)")
def check_command(
    manifest: Path,
    reads: tuple[str, ...],
    writes: tuple[str, ...],
    hosts: tuple[str, ...],
    capabilities: tuple[str, ...],
    workspace: Path | None,
    json_output: bool,
) -> None:
    """Check what a plugin MANIFEST would be allowed to do."""

    try:
        data = load_manifest(manifest)
        permission_set = PermissionSet.from_manifest(data)
    except ManifestError as exc:
        if json_output:
            emit({"status": "invalid", "error": str(exc), "errors": exc.errors}, json_output=True)
        else:
            click.echo(f"❌ {exc}", err=True)
            for error in exc.errors:
                click.echo(f"  - {error}", err=True)
        sys.exit(int(ExitCode.INVALID_MANIFEST))

    checker = PermissionChecker(data["name"])
    checker.apply_permission_set(permission_set)
    if workspace is not None:
        checker.set_workspace_path(workspace)

    checks = (
        [("capability", cap, checker.check_capability) for cap in capabilities]
        + [("read", path, checker.check_file_read) for path in reads]
        + [("write", path, checker.check_file_write) for path in writes]
        + [("network", host, checker.check_network) for host in hosts]
    )

    results = []
    for kind, target, check in checks:
        try:
            check(target)
        except CapabilityError as exc:
            results.append({"kind": kind, "target": target, "allowed": False, "reason": str(exc)})
        else:
            results.append({"kind": kind, "target": target, "allowed": True, "reason": None})

    denied = [result for result in results if not result["allowed"]]

    if json_output:
        emit(
            {
                "status": "denied" if denied else "allowed",
                "plugin": data["name"],
                "results": results,
            },
            json_output=True,
        )
    else:
        click.echo(f"Plugin {data['name']}: {', '.join(sorted(checker.capabilities())) or 'no capabilities'}")
        approval = permission_set.approval_required()
        if approval:
            click.echo(f"⚠️  Requires user approval: {', '.join(approval)}")
        for result in results:
            if result["allowed"]:
                click.echo(f"✅ {result['kind']} {result['target']}")
            else:
                click.echo(f"❌ {result['kind']} {result['target']}: {result['reason']}")

    sys.exit(int(ExitCode.DENIED if denied else ExitCode.SUCCESS))
