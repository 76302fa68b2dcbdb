#!/usr/bin/env python3
"""Main CLI entry point for the infrastructure orchestrator."""

import logging
from pathlib import Path
from typing import Optional

import click

from .. import __version__
from .common import CLIContext
from .deploy import deploy, plan, teardown
from .stacks import outputs, status


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Deployment file (YAML)",
)
@click.option("--environment", "-e", help="Environment name")
@click.option("--region", "-r", help="AWS region")
@click.option("--profile", help="AWS profile to use")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Optional[Path],
    environment: Optional[str],
    region: Optional[str],
    profile: Optional[str],
    verbose: bool,
) -> None:
    """Ordered deployment and teardown of interdependent infrastructure stacks."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    # boto's own debug output drowns the orchestrator's
    logging.getLogger("botocore").setLevel(logging.WARNING)

    ctx.obj = CLIContext(
        config_path=config_path,
        overrides={
            "environment_name": environment,
            "aws_region": region,
            "aws_profile": profile,
        },
    )


cli.add_command(plan)
cli.add_command(deploy)
cli.add_command(teardown)
cli.add_command(status)
cli.add_command(outputs)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
