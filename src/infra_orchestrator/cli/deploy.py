"""
Deployment and teardown CLI commands.
"""

import sys
from typing import Optional

import click

from ..cloudformation import ResidualResourceScanner, StackManager
from ..cluster import EKSClusterAccess, KubectlWorkloads
from ..deployment.orchestrator import DeploymentOrchestrator
from ..deployment.planner import topological_order
from ..deployment.teardown import TeardownOrchestrator
from ..errors import ConfigurationError
from .common import CLIContext, cancel_on_interrupt, kubeconfig_path, load_or_exit, report


@click.command()
@click.pass_obj
def plan(ctx: CLIContext) -> None:
    """Show the order stacks would be deployed in."""
    deployment = load_or_exit(ctx)
    try:
        ordered = topological_order(deployment.stacks)
    except ConfigurationError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    config = deployment.config
    click.echo(f"Environment: {config.environment_name} ({config.aws_region})")
    for step, descriptor in enumerate(ordered, 1):
        deps = ", ".join(sorted(descriptor.depends_on)) or "-"
        click.echo(
            f"  {step}. {descriptor.name:<25} {config.get_stack_name(descriptor.name):<35} "
            f"after: {deps}"
        )


@click.command()
@click.option("--workers", "-w", type=int, help="Stacks processed in parallel")
@click.option("--timeout", "-t", type=float, help="Per-stack settle timeout in seconds")
@click.option(
    "--apply-workloads/--no-apply-workloads",
    default=True,
    help="Apply Kubernetes manifests once infrastructure is ready",
)
@click.option("--json", "output_json", is_flag=True, help="Output run result as JSON")
@click.pass_obj
def deploy(
    ctx: CLIContext,
    workers: Optional[int],
    timeout: Optional[float],
    apply_workloads: bool,
    output_json: bool,
) -> None:
    """Create or update all stacks in dependency order.

    Exits 0 when every stack settled and the cluster handover succeeded.
    Exits 1 when a stack failed or was skipped, and also when every stack
    settled but cluster access or workload deployment failed.
    """
    deployment = load_or_exit(ctx)
    config = deployment.config

    backend = StackManager(config, template_root=deployment.base_dir)
    cluster_access = EKSClusterAccess(config.aws_region, config.aws_profile)

    hook = None
    if apply_workloads:
        workloads = KubectlWorkloads(
            config,
            deployment.base_dir / config.manifests_dir,
            kubeconfig_path(config.get_cluster_name()),
        )
        hook = workloads.apply

    orchestrator = DeploymentOrchestrator(
        backend,
        config,
        max_workers=workers,
        stack_timeout=timeout,
        cluster_access=cluster_access,
        on_infrastructure_ready=hook,
    )

    if not output_json:
        click.echo(f"🚀 Deploying environment {config.environment_name} to {config.aws_region}")

    try:
        with cancel_on_interrupt(orchestrator):
            run = orchestrator.run(deployment.stacks)
    except ConfigurationError as e:
        click.echo(f"❌ Configuration error: {e}", err=True)
        sys.exit(1)

    report(run, output_json)
    if run.exit_code == 0 and not output_json:
        click.echo(
            f"\nKubeconfig: export KUBECONFIG={kubeconfig_path(config.get_cluster_name())}"
        )
    sys.exit(run.exit_code)


@click.command()
@click.option("--yes", "confirmation", help="Confirmation token (skips the prompt)")
@click.option(
    "--skip-workloads",
    is_flag=True,
    help="Do not remove Kubernetes workloads before deleting stacks",
)
@click.option("--json", "output_json", is_flag=True, help="Output run result as JSON")
@click.pass_obj
def teardown(
    ctx: CLIContext,
    confirmation: Optional[str],
    skip_workloads: bool,
    output_json: bool,
) -> None:
    """Delete all stacks in reverse dependency order."""
    deployment = load_or_exit(ctx)
    config = deployment.config

    if confirmation is None:
        click.echo(click.style("WARNING: This will delete the following resources:", fg="red"))
        click.echo("  - All Kubernetes resources (pods, services, ingress, etc.)")
        for descriptor in reversed(deployment.stacks):
            click.echo(f"  - Stack {config.get_stack_name(descriptor.name)}")
        click.echo("  - All data will be PERMANENTLY lost\n")
        confirmation = click.prompt(
            f"Are you sure you want to continue? (type '{config.confirmation_token}' to confirm)",
            default="",
            show_default=False,
        )

    backend = StackManager(config, template_root=deployment.base_dir)
    hooks = []
    if not skip_workloads:
        workloads = KubectlWorkloads(
            config,
            deployment.base_dir / config.manifests_dir,
            kubeconfig_path(config.get_cluster_name()),
            cluster_access=EKSClusterAccess(config.aws_region, config.aws_profile),
        )
        hooks.append(workloads.remove)

    orchestrator = TeardownOrchestrator(
        backend,
        config,
        pre_teardown_hooks=hooks,
        residual_check=ResidualResourceScanner(config),
    )

    try:
        with cancel_on_interrupt(orchestrator):
            run = orchestrator.run(deployment.stacks, confirmation)
    except ConfigurationError as e:
        click.echo(f"❌ Configuration error: {e}", err=True)
        sys.exit(1)

    report(run, output_json)
    if run.warnings and not output_json:
        click.echo("\nIf resources are still in use, wait a few minutes and re-run teardown.")
    sys.exit(run.exit_code)
