"""
Shared helpers for CLI commands.
"""

import json
import signal
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import click

from ..config import ConfigManager, Deployment
from ..deployment.models import DeploymentRun, RunOutcome, StackStatus
from ..errors import ConfigurationError

STATUS_EMOJI = {
    StackStatus.SETTLED: "✅",
    StackStatus.DELETED: "✅",
    StackStatus.FAILED: "❌",
    StackStatus.NOT_STARTED: "⏭️ ",
}


@dataclass
class CLIContext:
    """Options given to the top-level command."""

    config_path: Optional[Path] = None
    overrides: Dict[str, Any] = field(default_factory=dict)


def load_or_exit(ctx: CLIContext) -> Deployment:
    """Load the deployment, exiting with an error message if it is invalid."""
    try:
        return ConfigManager().load(ctx.config_path, ctx.overrides)
    except ConfigurationError as e:
        click.echo(f"❌ Configuration error: {e}", err=True)
        sys.exit(1)


def kubeconfig_path(cluster_name: str) -> Path:
    return Path.home() / ".kube" / f"{cluster_name}.yaml"


def report(run: DeploymentRun, output_json: bool = False) -> None:
    """Print the per-stack outcome of a run."""
    if output_json:
        click.echo(json.dumps(run.to_dict(), indent=2, default=str))
        return

    outcome = run.outcome
    header = {
        RunOutcome.SUCCESS: "✅",
        RunOutcome.PARTIAL_FAILURE: "❌",
        RunOutcome.ABORTED: "⚠️ ",
    }[outcome]
    click.echo(f"\n{header} {run.operation.capitalize()} {outcome.value} ({run.duration:.0f}s)")
    if run.abort_reason:
        click.echo(f"  Reason: {run.abort_reason}")

    for instance in run.instances:
        emoji = STATUS_EMOJI.get(instance.status, "🔄")
        line = f"  {emoji} {instance.name:<30} {instance.status.value}"
        if instance.last_error:
            line += f" - {instance.last_error}"
        elif instance.skip_reason:
            line += f" - skipped ({instance.skip_reason})"
        click.echo(line)

    if run.cluster_error:
        click.echo(f"\n❌ Cluster access: {run.cluster_error}", err=True)
    if run.workload_error:
        click.echo(f"\n❌ Workloads: {run.workload_error}", err=True)
    if run.warnings:
        click.echo("\nWarnings:")
        for warning in run.warnings:
            click.echo(f"  ⚠️  {warning}")


@contextmanager
def cancel_on_interrupt(orchestrator: Any) -> Iterator[None]:
    """Turn the first Ctrl+C into cooperative cancellation of the run.

    A second Ctrl+C interrupts the process as usual.
    """
    previous = signal.getsignal(signal.SIGINT)

    def handler(signum: int, frame: Any) -> None:
        click.echo("\n⚠️  Cancelling: no new stack operations will start...", err=True)
        orchestrator.cancel()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)
