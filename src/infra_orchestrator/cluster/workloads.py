"""
Application workload apply/remove through kubectl and helm.

These steps sit outside the orchestration core: deployment hands over to
``apply`` once infrastructure is ready, and teardown runs ``remove`` as a
pre-teardown hook so load balancers are released before stacks are deleted.
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from ..config import OrchestratorConfig
from ..deployment.models import DeploymentRun
from ..deployment.waiter import ReadinessWaiter
from ..errors import ClusterConnectionError, WaitTimeout, WorkloadError
from .access import ClusterAccess, ClusterCredentials, write_kubeconfig

logger = logging.getLogger(__name__)

CommandRunner = Callable[..., subprocess.CompletedProcess]

LOAD_BALANCER_CONTROLLER_RELEASE = "aws-load-balancer-controller"


class KubectlWorkloads:
    """Apply and remove the workload manifests of an environment."""

    def __init__(
        self,
        config: OrchestratorConfig,
        manifests_dir: Union[str, Path],
        kubeconfig_path: Union[str, Path],
        cluster_access: Optional[ClusterAccess] = None,
        waiter: Optional[ReadinessWaiter] = None,
        namespace: str = "default",
        runner: Optional[CommandRunner] = None,
    ):
        """
        Initialize workload manager.

        Args:
            config: Orchestrator configuration
            manifests_dir: Directory holding services/, deployments/ and ingress/
            kubeconfig_path: Kubeconfig file written and used for kubectl
            cluster_access: Used by ``remove`` to refresh credentials
            waiter: Readiness waiter for load balancer drain polling
            namespace: Namespace workloads are applied to
            runner: ``subprocess.run`` compatible callable
        """
        self.config = config
        self.manifests_dir = Path(manifests_dir)
        self.kubeconfig_path = Path(kubeconfig_path)
        self.cluster_access = cluster_access
        self.waiter = waiter or ReadinessWaiter()
        self.namespace = namespace
        self.runner = runner or subprocess.run

    def run_command(self, command: List[str]) -> Tuple[int, str, str]:
        """
        Run a command against the cluster.

        Returns:
            Tuple of (return_code, stdout, stderr)
        """
        logger.debug(f"Running command: {' '.join(command)}")
        env = os.environ.copy()
        env["KUBECONFIG"] = str(self.kubeconfig_path)
        try:
            result = self.runner(command, env=env, capture_output=True, text=True, check=False)
        except OSError as e:
            return 127, "", str(e)

        if result.returncode != 0:
            logger.warning(f"Command failed with code {result.returncode}: {' '.join(command)}")
            if result.stderr:
                logger.warning(f"STDERR: {result.stderr.strip()}")
        return result.returncode, result.stdout, result.stderr

    def _manifests(self, subdir: str) -> List[Path]:
        directory = self.manifests_dir / subdir
        if not directory.is_dir():
            return []
        return sorted(p for p in directory.iterdir() if p.suffix in (".yaml", ".yml"))

    def apply(self, run: DeploymentRun, credentials: Optional[ClusterCredentials]) -> None:
        """
        Apply services, deployments and ingress, in that order.

        Raises:
            WorkloadError: if credentials are missing or a manifest fails to apply
        """
        if credentials is None:
            raise WorkloadError("No cluster credentials available for workload deployment")
        write_kubeconfig(credentials, self.kubeconfig_path)

        for subdir in ("services", "deployments"):
            for manifest in self._manifests(subdir):
                logger.info(f"Applying: {manifest}")
                code, _, stderr = self.run_command(
                    ["kubectl", "apply", "-f", str(manifest), "-n", self.namespace]
                )
                if code != 0:
                    raise WorkloadError(f"Failed to apply {manifest}: {stderr.strip()}")

        logger.info("Waiting for deployments to be ready...")
        code, _, _ = self.run_command(
            [
                "kubectl", "wait", "--for=condition=available",
                f"--timeout={int(self.config.stack_timeout)}s",
                "deployment", "--all", "-n", self.namespace,
            ]
        )
        if code != 0:
            # Not fatal: ingress still gets applied
            logger.warning("Some deployments may not be ready yet")
            run.add_warning("Some deployments were not available before ingress was applied")

        for manifest in self._manifests("ingress"):
            logger.info(f"Applying: {manifest}")
            code, _, stderr = self.run_command(
                ["kubectl", "apply", "-f", str(manifest), "-n", self.namespace]
            )
            if code != 0:
                raise WorkloadError(f"Failed to apply {manifest}: {stderr.strip()}")

    def remove(self, run: DeploymentRun) -> None:
        """
        Remove workloads so they release backend resources.

        Ingress goes first so load balancers are deprovisioned, then
        deployments, services and the load balancer controller release.

        Raises:
            WorkloadError: listing every step that failed
        """
        if self.cluster_access is not None:
            try:
                credentials = self.cluster_access.refresh_access(self.config.get_cluster_name())
            except ClusterConnectionError as e:
                raise WorkloadError(f"Cannot reach cluster to remove workloads: {e}")
            write_kubeconfig(credentials, self.kubeconfig_path)

        failures: List[str] = []

        logger.info("Deleting ingress resources...")
        self._delete("ingress", failures)
        self._wait_for_ingress_drain(run)

        logger.info("Deleting deployments and services...")
        self._delete("deployments", failures)
        self._delete("services", failures)

        logger.info("Deleting AWS Load Balancer Controller...")
        code, _, stderr = self.run_command(
            ["helm", "uninstall", LOAD_BALANCER_CONTROLLER_RELEASE, "-n", "kube-system"]
        )
        if code != 0 and "not found" not in stderr:
            failures.append(f"helm uninstall: {stderr.strip()}")

        if failures:
            raise WorkloadError("; ".join(failures))
        logger.info("Kubernetes resources deleted.")

    def _delete(self, subdir: str, failures: List[str]) -> None:
        directory = self.manifests_dir / subdir
        if not directory.is_dir():
            return
        code, _, stderr = self.run_command(
            ["kubectl", "delete", "-f", str(directory), "--ignore-not-found=true",
             "-n", self.namespace]
        )
        if code != 0:
            failures.append(f"delete {subdir}: {stderr.strip()}")

    def _ingress_drained(self) -> bool:
        code, stdout, _ = self.run_command(
            ["kubectl", "get", "ingress", "-n", self.namespace, "-o", "name"]
        )
        # Unreachable API counts as drained; stack deletion reports what is left
        return code != 0 or not stdout.strip()

    def _wait_for_ingress_drain(self, run: DeploymentRun) -> None:
        logger.info("Waiting for load balancers to be deleted...")
        try:
            self.waiter.wait(
                self._ingress_drained,
                {True},
                timeout=self.config.load_balancer_drain_seconds,
                poll_interval=min(10, max(self.config.load_balancer_drain_seconds, 1)),
                description="ingress load balancer drain",
            )
        except WaitTimeout as e:
            logger.warning(str(e))
            run.add_warning(f"Load balancers may still be draining: {e}")
