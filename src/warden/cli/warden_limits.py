"""Resource limit presets (``warden limits``)."""

import click

from ..core.limits import TRUST_TIERS, limits_for_tier
from .cli_common import emit

__all__ = ["limits_command"]


@click.command("limits")
@click.argument("tier", required=False, type=click.Choice(list(TRUST_TIERS), case_sensitive=False))
@click.option("--json", "json_output", is_flag=True, help="Output as JSON (machine-readable)")
def limits_command(tier: str | None, json_output: bool) -> None:
    """Show resource limits of one trust TIER, or of all tiers."""

    tiers = [tier.lower()] if tier else list(TRUST_TIERS)
    presets = {name: limits_for_tier(name).to_dict() for name in tiers}

    if json_output:
        emit(presets if tier is None else presets[tiers[0]], json_output=True)
        return

    for name, values in presets.items():
        click.echo(f"[{name}]")
        for key, value in values.items():
            click.echo(f"  {key:<24} {_format(key, value)}")


def _format(key: str, value: float) -> str:
    if value == 0:
        return "unlimited"
    if key in ("memory_limit", "max_output_size"):
        if value >= 1024 * 1024:
            return f"{value / (1024 * 1024):g} MiB"
        return f"{value / 1024:g} KiB"
    if key == "execution_timeout":
        return f"{value:g}s"
    return f"{value:,}"
