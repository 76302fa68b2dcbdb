"""
Dependency-ordered stack deployment.
"""

import logging
from abc import ABC, abstractmethod
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Set

from ..cloudformation.stack_manager import NO_CHANGES, StackBackend, StackState
from ..cluster.access import ClusterAccess, ClusterCredentials
from ..config import OrchestratorConfig
from ..errors import (
    BackendError,
    ClusterConnectionError,
    ConfigurationError,
    WaitCancelled,
    WaitTimeout,
)
from .models import DeploymentRun, StackDescriptor, StackStatus
from .planner import resolve_parameters, topological_order
from .waiter import CancellationToken, ReadinessWaiter

logger = logging.getLogger(__name__)

InfrastructureReadyHook = Callable[[DeploymentRun, Optional[ClusterCredentials]], None]


class BaseOrchestrator(ABC):
    """Schedules per-stack work over a dependency DAG.

    A stack is submitted as soon as every stack blocking it reached the
    success status; independent stacks run concurrently on a thread pool.
    Subclasses decide what blocks what and what one unit of work does.
    """

    operation = "run"
    success_status = StackStatus.SETTLED

    def __init__(
        self,
        backend: StackBackend,
        config: Optional[OrchestratorConfig] = None,
        waiter: Optional[ReadinessWaiter] = None,
        max_workers: Optional[int] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            backend: Stack backend adapter
            config: Orchestrator configuration
            waiter: Readiness waiter (a real-time waiter if not provided)
            max_workers: Parallel stack workers (uses config if not provided)
        """
        self.backend = backend
        self.config = config or OrchestratorConfig()
        self.waiter = waiter or ReadinessWaiter()
        self.max_workers = max(1, max_workers or self.config.max_workers)
        self.cancel_token = CancellationToken()

    def cancel(self) -> None:
        """Stop issuing stack operations; in-flight waits stop at their next poll."""
        logger.warning(f"Cancellation requested for {self.operation}")
        self.cancel_token.cancel()

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.cancelled

    @abstractmethod
    def blockers(self, descriptors: List[StackDescriptor]) -> Dict[str, Set[str]]:
        """Map each stack to the stacks that must succeed before it starts."""

    @abstractmethod
    def process_stack(self, run: DeploymentRun, descriptor: StackDescriptor) -> None:
        """Carry one stack to a terminal status, recording it on the run."""

    def schedule(self, run: DeploymentRun, ordered: List[StackDescriptor]) -> None:
        """Run ``process_stack`` for every stack whose blockers succeeded."""
        by_name = {d.name: d for d in ordered}
        order_index = {d.name: idx for idx, d in enumerate(ordered)}
        waiting = {name: set(deps) for name, deps in self.blockers(ordered).items()}
        ready = [d.name for d in ordered if not waiting[d.name]]
        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix=self.operation
        ) as executor:
            while ready or in_flight:
                while ready and not self.cancelled:
                    name = ready.pop(0)
                    in_flight[executor.submit(self.process_stack, run, by_name[name])] = name

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in sorted(done, key=lambda f: order_index[in_flight[f]]):
                    name = in_flight.pop(future)
                    try:
                        future.result()
                    except Exception as e:
                        logger.exception(f"Unexpected error while processing {name}")
                        run.set_status(name, StackStatus.FAILED, f"Unexpected error: {e}")

                    if run.status_of(name) != self.success_status:
                        continue
                    for other, deps in waiting.items():
                        if name in deps:
                            deps.discard(name)
                            if not deps and run.status_of(other) == StackStatus.NOT_STARTED:
                                ready.append(other)

                ready.sort(key=order_index.__getitem__)

        if self.cancelled:
            run.abort(f"{self.operation} cancelled")
        self._record_skips(run, ordered)

    def _record_skips(self, run: DeploymentRun, ordered: List[StackDescriptor]) -> None:
        blockers = self.blockers(ordered)
        for descriptor in ordered:
            instance = run.get(descriptor.name)
            if instance.status != StackStatus.NOT_STARTED or instance.skip_reason:
                continue
            if self.cancelled:
                reason = f"{self.operation} cancelled"
            else:
                unmet = [
                    name
                    for name in sorted(blockers[descriptor.name])
                    if run.status_of(name) != self.success_status
                ]
                reason = f"waiting on {', '.join(unmet)}"
            run.mark_skipped(descriptor.name, reason)
            logger.warning(f"Skipped {descriptor.name}: {reason}")

    def wait_for(self, descriptor: StackDescriptor, probe, terminal, timeout: float) -> StackState:
        return self.waiter.wait(
            probe,
            terminal,
            timeout=timeout,
            poll_interval=self.config.poll_interval,
            cancel_token=self.cancel_token,
            description=f"stack {descriptor.name}",
        )

    def failure_detail(self, name: str, state: StackState) -> str:
        reason = self.backend.describe_failure(name)
        detail = f"stack ended in state {state.value}"
        return f"{detail}: {reason}" if reason else detail


class DeploymentOrchestrator(BaseOrchestrator):
    """Create or update stacks in dependency order."""

    operation = "deploy"
    success_status = StackStatus.SETTLED

    def __init__(
        self,
        backend: StackBackend,
        config: Optional[OrchestratorConfig] = None,
        waiter: Optional[ReadinessWaiter] = None,
        max_workers: Optional[int] = None,
        stack_timeout: Optional[float] = None,
        cluster_access: Optional[ClusterAccess] = None,
        on_infrastructure_ready: Optional[InfrastructureReadyHook] = None,
    ):
        """
        Initialize deployment orchestrator.

        Args:
            backend: Stack backend adapter
            config: Orchestrator configuration
            waiter: Readiness waiter
            max_workers: Parallel stack workers
            stack_timeout: Per-stack settle timeout in seconds
            cluster_access: Refreshed once every stack is settled
            on_infrastructure_ready: Called with the run and cluster
                credentials once infrastructure is ready
        """
        super().__init__(backend, config, waiter, max_workers)
        self.stack_timeout = (
            self.config.stack_timeout if stack_timeout is None else stack_timeout
        )
        self.cluster_access = cluster_access
        self.on_infrastructure_ready = on_infrastructure_ready

    def plan(self, descriptors: List[StackDescriptor]) -> List[StackDescriptor]:
        """Execution order for the descriptors."""
        return topological_order(descriptors)

    def blockers(self, descriptors: List[StackDescriptor]) -> Dict[str, Set[str]]:
        return {d.name: set(d.depends_on) for d in descriptors}

    def run(self, descriptors: List[StackDescriptor]) -> DeploymentRun:
        """
        Deploy all stacks.

        Raises:
            ConfigurationError: if the stack set is invalid; nothing is
                deployed in that case.
        """
        ordered = self.plan(descriptors)
        run = DeploymentRun(ordered, self.operation)
        logger.info(f"Deploying {len(ordered)} stack(s): {', '.join(d.name for d in ordered)}")

        self.schedule(run, ordered)

        if run.success:
            self._infrastructure_ready(run)

        run.finish()
        for line in run.summary_lines():
            logger.info(line)
        return run

    def process_stack(self, run: DeploymentRun, descriptor: StackDescriptor) -> None:
        name = descriptor.name
        if self.cancelled:
            return

        try:
            resolved = self._resolve(run, descriptor)
            exists = self.backend.exists(name)
            run.set_status(name, StackStatus.UPDATING if exists else StackStatus.CREATING)
            handle = self.backend.update(resolved) if exists else self.backend.create(resolved)

            if handle is NO_CHANGES:
                state = StackState.SETTLED
            else:
                state = self.wait_for(
                    descriptor,
                    lambda: self.backend.poll(handle),
                    {StackState.SETTLED, StackState.FAILED, StackState.DELETED},
                    self.stack_timeout,
                )

            if state != StackState.SETTLED:
                run.set_status(name, StackStatus.FAILED, self.failure_detail(name, state))
                logger.error(f"Stack {name} failed: {run.get(name).last_error}")
                return

            run.set_outputs(name, self.backend.get_outputs(name))
        except (BackendError, ConfigurationError) as e:
            run.set_status(name, StackStatus.FAILED, str(e))
            logger.error(f"Stack {name} failed: {e}")
            return
        except WaitTimeout as e:
            run.set_status(name, StackStatus.FAILED, f"Timeout: {e}")
            logger.error(f"Stack {name} timed out: {e}")
            return
        except WaitCancelled as e:
            run.set_status(name, StackStatus.FAILED, f"Cancelled: {e}")
            logger.warning(f"Stack {name}: {e}")
            return

        run.set_status(name, StackStatus.SETTLED)
        logger.info(f"Stack {name} settled")

    def _resolve(self, run: DeploymentRun, descriptor: StackDescriptor) -> StackDescriptor:
        outputs = {dep: run.outputs_of(dep) for dep in descriptor.depends_on}
        parameters = resolve_parameters(descriptor, outputs)
        return replace(descriptor, parameters=tuple(parameters.items()))

    def _infrastructure_ready(self, run: DeploymentRun) -> None:
        credentials = None
        if self.cluster_access is not None:
            cluster_name = self.config.get_cluster_name()
            try:
                credentials = self.cluster_access.refresh_access(cluster_name)
                if not self.cluster_access.is_live(credentials):
                    raise ClusterConnectionError(
                        f"Cluster {cluster_name} endpoint is not ready"
                    )
            except ClusterConnectionError as e:
                run.cluster_error = str(e)
                logger.error(f"Cluster access failed: {e}")
                return

        if self.on_infrastructure_ready is None:
            return
        logger.info("Infrastructure ready, handing over to workload deployment")
        try:
            self.on_infrastructure_ready(run, credentials)
        except Exception as e:
            run.workload_error = str(e)
            logger.error(f"Workload deployment failed: {e}")
