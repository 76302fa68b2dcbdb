"""
Tests for reverse-order teardown.
"""

from unittest.mock import Mock

import pytest

from infra_orchestrator.cloudformation.stack_manager import StackState
from infra_orchestrator.config import OrchestratorConfig
from infra_orchestrator.deployment.models import RunOutcome, StackDescriptor, StackStatus
from infra_orchestrator.deployment.teardown import TeardownOrchestrator
from infra_orchestrator.errors import ConfigurationError

ALL = {"vpc", "eks-cluster", "node-groups"}


class TestTeardownOrchestrator:
    """Test TeardownOrchestrator against an in-memory backend."""

    @pytest.fixture
    def make_orchestrator(self, config, instant_waiter):
        def make(backend, **kwargs):
            return TeardownOrchestrator(backend, config, waiter=instant_waiter, **kwargs)

        return make

    def test_deletes_in_reverse_order(self, backend_factory, make_orchestrator, eks_stacks) -> None:
        """Test dependents are deleted before the stacks they depend on."""
        backend = backend_factory(existing=ALL)
        run = make_orchestrator(backend).run(eks_stacks, "yes")

        assert run.outcome == RunOutcome.SUCCESS
        assert backend.operations("delete") == ["node-groups", "eks-cluster", "vpc"]
        assert all(i.status == StackStatus.DELETED for i in run.instances)
        assert [i.name for i in run.instances] == ["node-groups", "eks-cluster", "vpc"]

    def test_wrong_token_makes_no_calls(self, backend_factory, make_orchestrator, eks_stacks) -> None:
        """Test an unconfirmed teardown is aborted with no side effects."""
        backend = backend_factory(existing=ALL)
        hook = Mock()
        residual = Mock(return_value=[])
        run = make_orchestrator(
            backend, pre_teardown_hooks=[hook], residual_check=residual
        ).run(eks_stacks, "no")

        assert run.outcome == RunOutcome.ABORTED
        assert run.exit_code == 1
        assert backend.calls == []
        hook.assert_not_called()
        residual.assert_not_called()

    def test_missing_token(self, backend_factory, make_orchestrator, eks_stacks) -> None:
        backend = backend_factory(existing=ALL)
        run = make_orchestrator(backend).run(eks_stacks, None)
        assert run.outcome == RunOutcome.ABORTED
        assert backend.calls == []

    def test_token_must_match_exactly(self, backend_factory, make_orchestrator, eks_stacks) -> None:
        backend = backend_factory(existing=ALL)
        run = make_orchestrator(backend).run(eks_stacks, "YES")
        assert run.outcome == RunOutcome.ABORTED

    def test_cycle_raises_before_confirmation(self, backend_factory, make_orchestrator) -> None:
        backend = backend_factory()
        stacks = [
            StackDescriptor.create("a", "a.yaml", depends_on=["b"]),
            StackDescriptor.create("b", "b.yaml", depends_on=["a"]),
        ]
        with pytest.raises(ConfigurationError):
            make_orchestrator(backend).run(stacks, "yes")
        assert backend.calls == []

    def test_failed_delete_keeps_dependencies(
        self, backend_factory, make_orchestrator, eks_stacks
    ) -> None:
        """Test a stack is not deleted while a dependent failed to delete."""
        backend = backend_factory(
            existing=ALL, delete_states={"eks-cluster": StackState.FAILED}
        )
        run = make_orchestrator(backend).run(eks_stacks, "yes")

        assert run.outcome == RunOutcome.PARTIAL_FAILURE
        assert run.status_of("node-groups") == StackStatus.DELETED
        assert run.status_of("eks-cluster") == StackStatus.FAILED
        assert run.status_of("vpc") == StackStatus.NOT_STARTED
        assert run.get("vpc").skip_reason == "waiting on eks-cluster"
        assert "vpc" not in backend.operations("delete")

    def test_missing_stack_counts_as_deleted(
        self, backend_factory, make_orchestrator, eks_stacks
    ) -> None:
        backend = backend_factory(existing={"vpc", "eks-cluster"})
        run = make_orchestrator(backend).run(eks_stacks, "yes")

        assert run.outcome == RunOutcome.SUCCESS
        assert run.status_of("node-groups") == StackStatus.DELETED
        assert backend.operations("delete") == ["eks-cluster", "vpc"]

    def test_delete_timeout(self, backend_factory, make_orchestrator, eks_stacks) -> None:
        backend = backend_factory(
            existing=ALL, delete_states={"node-groups": StackState.IN_PROGRESS}
        )
        run = make_orchestrator(backend, delete_timeout=90).run(eks_stacks, "yes")

        assert run.get("node-groups").last_error.startswith("Timeout")
        assert run.skipped_stacks == ["eks-cluster", "vpc"]

    def test_hook_failure_is_a_warning(self, backend_factory, make_orchestrator, eks_stacks) -> None:
        """Test a failing pre-teardown hook does not stop stack deletion."""
        backend = backend_factory(existing=ALL)
        first = Mock(side_effect=RuntimeError("cluster unreachable"))
        second = Mock()
        run = make_orchestrator(backend, pre_teardown_hooks=[first, second]).run(
            eks_stacks, "yes"
        )

        first.assert_called_once_with(run)
        second.assert_called_once_with(run)
        assert run.outcome == RunOutcome.SUCCESS
        assert len(run.warnings) == 1
        assert "cluster unreachable" in run.warnings[0]
        assert backend.operations("delete") == ["node-groups", "eks-cluster", "vpc"]

    def test_residual_findings_are_warnings(
        self, backend_factory, make_orchestrator, eks_stacks
    ) -> None:
        backend = backend_factory(existing=ALL)
        residual = Mock(return_value=["Remaining security groups: sg-123"])
        run = make_orchestrator(backend, residual_check=residual).run(eks_stacks, "yes")

        residual.assert_called_once_with()
        assert run.outcome == RunOutcome.SUCCESS
        assert run.warnings == ["Remaining security groups: sg-123"]

    def test_residual_check_error(self, backend_factory, make_orchestrator, eks_stacks) -> None:
        backend = backend_factory(existing=ALL)
        residual = Mock(side_effect=RuntimeError("throttled"))
        run = make_orchestrator(backend, residual_check=residual).run(eks_stacks, "yes")

        assert run.outcome == RunOutcome.SUCCESS
        assert run.warnings == ["Residual resource check failed: throttled"]

    def test_custom_confirmation_token(self, backend_factory, instant_waiter, eks_stacks) -> None:
        config = OrchestratorConfig(environment_name="test", confirmation_token="delete test")
        backend = backend_factory(existing=ALL)
        orchestrator = TeardownOrchestrator(backend, config, waiter=instant_waiter)

        assert orchestrator.run(eks_stacks, "yes").outcome == RunOutcome.ABORTED
        assert orchestrator.run(eks_stacks, "delete test").outcome == RunOutcome.SUCCESS
