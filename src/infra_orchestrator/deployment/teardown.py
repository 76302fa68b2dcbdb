"""
Reverse-order stack teardown.
"""

import logging
from typing import Callable, Dict, List, Optional, Sequence, Set

from ..cloudformation.stack_manager import StackBackend, StackState
from ..config import OrchestratorConfig
from ..errors import BackendError, ConfirmationDenied, WaitCancelled, WaitTimeout
from .models import DeploymentRun, StackDescriptor, StackStatus
from .orchestrator import BaseOrchestrator
from .planner import dependents_map, teardown_order
from .waiter import ReadinessWaiter

logger = logging.getLogger(__name__)

PreTeardownHook = Callable[[DeploymentRun], None]
ResidualCheck = Callable[[], List[str]]


class TeardownOrchestrator(BaseOrchestrator):
    """Delete stacks after their dependents, once teardown is confirmed.

    Pre-teardown hooks (workload removal) and the residual resource check
    are best effort: their failures become warnings on the run.
    """

    operation = "teardown"
    success_status = StackStatus.DELETED

    def __init__(
        self,
        backend: StackBackend,
        config: Optional[OrchestratorConfig] = None,
        waiter: Optional[ReadinessWaiter] = None,
        max_workers: Optional[int] = None,
        delete_timeout: Optional[float] = None,
        pre_teardown_hooks: Optional[Sequence[PreTeardownHook]] = None,
        residual_check: Optional[ResidualCheck] = None,
    ):
        super().__init__(backend, config, waiter, max_workers)
        self.delete_timeout = (
            self.config.delete_timeout if delete_timeout is None else delete_timeout
        )
        self.pre_teardown_hooks = list(pre_teardown_hooks or [])
        self.residual_check = residual_check

    def plan(self, descriptors: List[StackDescriptor]) -> List[StackDescriptor]:
        """Deletion order for the descriptors."""
        return teardown_order(descriptors)

    def blockers(self, descriptors: List[StackDescriptor]) -> Dict[str, Set[str]]:
        return dependents_map(descriptors)

    def confirm(self, token: Optional[str]) -> None:
        """
        Check the caller's confirmation token.

        Raises:
            ConfirmationDenied: unless ``token`` exactly matches the
                configured confirmation token
        """
        if token != self.config.confirmation_token:
            raise ConfirmationDenied("Teardown not confirmed")

    def run(
        self, descriptors: List[StackDescriptor], confirmation: Optional[str]
    ) -> DeploymentRun:
        """
        Tear down all stacks.

        Raises:
            ConfigurationError: if the stack set is invalid; nothing is
                deleted in that case.
        """
        ordered = self.plan(descriptors)
        run = DeploymentRun(ordered, self.operation)

        try:
            self.confirm(confirmation)
        except ConfirmationDenied as e:
            logger.info(f"Teardown cancelled: {e}")
            run.abort(str(e))
            run.finish()
            return run

        logger.info(f"Tearing down {len(ordered)} stack(s): {', '.join(d.name for d in ordered)}")
        self._run_hooks(run)

        if self.cancelled:
            run.abort(f"{self.operation} cancelled")
        else:
            self.schedule(run, ordered)

        self._check_residual(run)
        run.finish()
        for line in run.summary_lines():
            logger.info(line)
        return run

    def _run_hooks(self, run: DeploymentRun) -> None:
        for hook in self.pre_teardown_hooks:
            hook_name = getattr(hook, "__qualname__", repr(hook))
            try:
                hook(run)
            except Exception as e:
                message = f"Pre-teardown hook {hook_name} failed: {e}"
                logger.warning(f"{message}; continuing with stack deletion")
                run.add_warning(message)

    def process_stack(self, run: DeploymentRun, descriptor: StackDescriptor) -> None:
        name = descriptor.name
        if self.cancelled:
            return

        try:
            if not self.backend.exists(name):
                logger.warning(f"Stack {name} does not exist, skipping...")
                run.set_status(name, StackStatus.DELETED)
                return

            run.set_status(name, StackStatus.DELETING)
            handle = self.backend.delete(name)
            state = self.wait_for(
                descriptor,
                lambda: self.backend.poll(handle),
                {StackState.DELETED, StackState.FAILED},
                self.delete_timeout,
            )
        except BackendError as e:
            run.set_status(name, StackStatus.FAILED, str(e))
            logger.error(f"Stack {name} deletion failed: {e}")
            return
        except WaitTimeout as e:
            run.set_status(name, StackStatus.FAILED, f"Timeout: {e}")
            logger.error(f"Stack {name} deletion timed out: {e}")
            return
        except WaitCancelled as e:
            run.set_status(name, StackStatus.FAILED, f"Cancelled: {e}")
            logger.warning(f"Stack {name}: {e}")
            return

        if state != StackState.DELETED:
            run.set_status(name, StackStatus.FAILED, self.failure_detail(name, state))
            logger.error(f"Stack {name} deletion failed: {run.get(name).last_error}")
            return

        run.set_status(name, StackStatus.DELETED)
        logger.info(f"Stack {name} deleted")

    def _check_residual(self, run: DeploymentRun) -> None:
        if self.residual_check is None:
            return
        logger.info("Checking for remaining resources...")
        try:
            findings = self.residual_check()
        except Exception as e:
            run.add_warning(f"Residual resource check failed: {e}")
            logger.warning(f"Residual resource check failed: {e}")
            return
        for finding in findings:
            run.add_warning(finding)
            logger.warning(finding)
