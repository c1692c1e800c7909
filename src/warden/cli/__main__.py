#!/usr/bin/env python3
"""Main CLI module for Warden."""

import sys

import click

from ..config.settings import generate_example_env
from ..observability.loguru_config import configure_loguru
from .warden_caps import cli as caps_cli
from .warden_check import check_command
from .warden_limits import limits_command
from .warden_policy import policy_command

CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}
EPILOG = """
Examples:
  warden caps list --high-risk          # Capabilities that need user approval
  warden caps show editor.buffer        # Details of one capability
  warden check plugin.json --read /etc/passwd --host api.github.com:443
  warden limits strict                  # Resource limits of the strict tier
  warden policy git-blame               # Tier and permissions configured for a plugin
  warden env-example > .env             # Example settings file
""".strip()


@click.group(
    context_settings=CONTEXT_SETTINGS,
    help="Warden - plugin capability and resource limit tooling",
    epilog=EPILOG,
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logs on stderr")
def cli(verbose: bool) -> None:
    """Root CLI command."""

    configure_loguru(level="DEBUG" if verbose else "WARNING", enable_files=False)


@cli.command("env-example")
def env_example_command() -> None:
    """Print an example .env file."""

    click.echo(generate_example_env(), nl=False)


cli.add_command(caps_cli, "caps")
cli.add_command(check_command, "check")
cli.add_command(limits_command, "limits")
cli.add_command(policy_command, "policy")


def main(args: list[str] | None = None) -> int:
    """CLI entry point."""

    try:
        normalized_args = list(args) if args is not None else None
        cli.main(args=normalized_args, standalone_mode=False)
        return 0
    except SystemExit as exc:
        return int(exc.code) if exc.code is not None else 0
    except click.ClickException as exc:
        exc.show()
        return exc.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
