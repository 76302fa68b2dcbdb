"""
Per-stack status and output queries.
"""

import json
import sys
from typing import Optional

import click

from ..cloudformation import StackManager
from ..errors import BackendError
from .common import CLIContext, load_or_exit


def _status_color(status: str) -> str:
    if "COMPLETE" in status and "ROLLBACK" not in status:
        return "green"
    if "FAILED" in status or "ROLLBACK" in status:
        return "red"
    return "yellow"


@click.command()
@click.option(
    "--all",
    "list_all",
    is_flag=True,
    help="List every stack whose name starts with the environment name",
)
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def status(ctx: CLIContext, list_all: bool, output_json: bool) -> None:
    """Show the backend status of every stack."""
    deployment = load_or_exit(ctx)
    manager = StackManager(deployment.config, template_root=deployment.base_dir)

    if list_all:
        _list_environment_stacks(manager, deployment.config.environment_name, output_json)
        return

    statuses = {}
    try:
        for descriptor in deployment.stacks:
            stack_name = manager.physical_name(descriptor.name)
            statuses[descriptor.name] = (stack_name, manager.get_stack_status(stack_name))
    except BackendError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if output_json:
        click.echo(
            json.dumps(
                {name: {"stack": stack, "status": st} for name, (stack, st) in statuses.items()},
                indent=2,
            )
        )
        return

    click.echo(f"Stacks for {deployment.config.environment_name}:")
    click.echo("-" * 80)
    for name, (stack_name, stack_status) in statuses.items():
        if stack_status is None:
            click.echo(f"{stack_name:<40} {click.style('NOT_DEPLOYED', fg='yellow')}")
        else:
            click.echo(
                f"{stack_name:<40} {click.style(stack_status, fg=_status_color(stack_status))}"
            )


@click.command()
@click.argument("stack")
@click.option("--key", "-k", "output_key", help="Output key to retrieve")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def outputs(ctx: CLIContext, stack: str, output_key: Optional[str], output_json: bool) -> None:
    """Show the outputs of one stack."""
    deployment = load_or_exit(ctx)
    if stack not in {d.name for d in deployment.stacks}:
        click.echo(f"Unknown stack: {stack}", err=True)
        sys.exit(1)

    manager = StackManager(deployment.config, template_root=deployment.base_dir)
    try:
        values = manager.get_outputs(stack)
    except BackendError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if output_key:
        if output_key not in values:
            click.echo(
                f"Output '{output_key}' not found in stack {manager.physical_name(stack)}",
                err=True,
            )
            sys.exit(1)
        click.echo(values[output_key])
        return

    if output_json:
        click.echo(json.dumps(values, indent=2))
        return

    if not values:
        click.echo(f"No outputs found for stack {manager.physical_name(stack)}")
        return
    for key, value in values.items():
        click.echo(f"  {key}: {value}")


def _list_environment_stacks(manager: StackManager, environment: str, output_json: bool) -> None:
    try:
        stacks = manager.list_stacks(prefix=f"{environment}-")
    except BackendError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if output_json:
        click.echo(json.dumps(stacks, indent=2))
        return
    if not stacks:
        click.echo(f"No stacks found for {environment}")
        return
    for stack in stacks:
        click.echo(
            f"{stack['name']:<40} "
            f"{click.style(stack['status'], fg=_status_color(stack['status']))} "
            f"(updated {stack['updated']})"
        )
