"""Capability table inspection (``warden caps``)."""

import sys

import click

from ..plugin_sdk.capabilities import (
    all_capabilities,
    children_of,
    describe,
    get_capability_info,
    high_risk_capabilities,
)
from .cli_common import ExitCode, emit

CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}


@click.group(context_settings=CONTEXT_SETTINGS, help="Inspect the capability table")
def cli() -> None:
    """Root command for capability inspection."""


@cli.command("list")
@click.option("--high-risk", is_flag=True, help="Only capabilities that need user approval")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON (machine-readable)")
def list_command(high_risk: bool, json_output: bool) -> None:
    """List known capabilities."""

    names = sorted(high_risk_capabilities() if high_risk else all_capabilities())

    if json_output:
        emit([_info_dict(name) for name in names], json_output=True)
        return

    for name in names:
        info = get_capability_info(name)
        marker = " [approval]" if info.requires_user_approval else ""
        click.echo(f"{name:<22} {str(info.risk):<9} {info.display_name}{marker}")


@cli.command("show")
@click.argument("capability")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON (machine-readable)")
def show_command(capability: str, json_output: bool) -> None:
    """Show details of one capability."""

    if get_capability_info(capability) is None:
        click.echo(f"❌ Unknown capability: {capability}", err=True)
        sys.exit(int(ExitCode.DENIED))

    if not json_output:
        click.echo(describe(capability))
    emit(_info_dict(capability), json_output=json_output)


def _info_dict(name: str) -> dict:
    info = get_capability_info(name)
    return {
        "name": info.name,
        "display_name": info.display_name,
        "description": info.description,
        "risk": str(info.risk),
        "requires_user_approval": info.requires_user_approval,
        "parent": info.parent,
        "children": sorted(children_of(name)),
    }
