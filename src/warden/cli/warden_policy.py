"""Effective per-plugin policy from settings and ``warden.yaml`` (``warden policy``)."""

import sys
from pathlib import Path

import click
import yaml

from ..config.settings import ConfigError, Settings
from ..core.config import Config
from ..core.limits import limits_for_tier
from ..plugin_sdk.manifest import ManifestError
from .cli_common import ExitCode, emit

__all__ = ["policy_command"]


@click.command("policy")
@click.argument("plugin")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="YAML config file (default: $WARDEN_CONFIG or warden.yaml)",
)
@click.option("--env-file", type=click.Path(dir_okay=False, path_type=Path), help="Settings file (default: .env)")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON (machine-readable)")
def policy_command(plugin: str, config_path: Path | None, env_file: Path | None, json_output: bool) -> None:
    """Show the trust tier, limits and permissions configured for PLUGIN."""

    try:
        settings = Settings.from_env(env_file)
        config = Config.load(config_path=config_path or settings.config_path)
        tier, permissions = config.plugin_policy(plugin)
    except (ConfigError, ManifestError, yaml.YAMLError) as exc:
        click.echo(f"❌ {exc}", err=True)
        sys.exit(int(ExitCode.CONFIG_ERROR))

    result = {
        "plugin": plugin,
        "tier": tier,
        "limits": limits_for_tier(tier).to_dict(),
        "permissions": permissions.to_dict(),
        "approval_required": permissions.approval_required(),
        "workspace": str(settings.workspace) if settings.workspace else None,
    }

    if json_output:
        emit(result, json_output=True)
        return

    click.echo(f"Plugin {plugin}: tier {tier}")
    if settings.workspace:
        click.echo(f"Workspace: {settings.workspace}")
    for key, values in result["permissions"].items():
        if values:
            click.echo(f"  {key:<14} {', '.join(values)}")
    if result["approval_required"]:
        click.echo(f"⚠️  Requires user approval: {', '.join(result['approval_required'])}")
