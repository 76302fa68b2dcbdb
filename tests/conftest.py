"""
Shared fixtures: an in-memory stack backend and a fake clock.
"""

import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import pytest

from infra_orchestrator.cloudformation.stack_manager import (
    NO_CHANGES,
    OperationHandle,
    StackBackend,
    StackState,
)
from infra_orchestrator.config import OrchestratorConfig
from infra_orchestrator.deployment.models import StackDescriptor
from infra_orchestrator.deployment.waiter import ReadinessWaiter
from infra_orchestrator.errors import BackendError


class FakeBackend(StackBackend):
    """Stack backend that settles operations in memory and records every call."""

    def __init__(
        self,
        existing: Iterable[str] = (),
        outputs: Optional[Dict[str, Dict[str, str]]] = None,
        final_states: Optional[Dict[str, StackState]] = None,
        delete_states: Optional[Dict[str, StackState]] = None,
        no_changes: Iterable[str] = (),
        errors: Optional[Dict[str, str]] = None,
        poll_hooks: Optional[Dict[str, Callable[[], Any]]] = None,
    ):
        self.existing = set(existing)
        self.outputs = outputs or {}
        self.final_states = final_states or {}
        self.delete_states = delete_states or {}
        self.no_changes = set(no_changes)
        self.errors = errors or {}
        self.poll_hooks = poll_hooks or {}
        self.submitted_parameters: Dict[str, Dict[str, str]] = {}
        self.calls: List[Tuple[str, str]] = []
        self._lock = threading.Lock()

    def _record(self, operation: str, name: str) -> None:
        with self._lock:
            self.calls.append((operation, name))

    def operations(self, operation: str) -> List[str]:
        with self._lock:
            return [name for op, name in self.calls if op == operation]

    def exists(self, name: str) -> bool:
        self._record("exists", name)
        return name in self.existing

    def _submit(self, operation: str, descriptor: StackDescriptor) -> OperationHandle:
        self._record(operation, descriptor.name)
        if descriptor.name in self.errors:
            raise BackendError(self.errors[descriptor.name], descriptor.name)
        self.submitted_parameters[descriptor.name] = descriptor.parameter_map
        return OperationHandle(descriptor.name, operation)

    def create(self, descriptor: StackDescriptor) -> OperationHandle:
        return self._submit("create", descriptor)

    def update(self, descriptor: StackDescriptor):
        if descriptor.name in self.no_changes:
            self._record("update", descriptor.name)
            return NO_CHANGES
        return self._submit("update", descriptor)

    def delete(self, name: str) -> OperationHandle:
        self._record("delete", name)
        if name in self.errors:
            raise BackendError(self.errors[name], name)
        return OperationHandle(name, "delete")

    def poll(self, handle: OperationHandle) -> StackState:
        name = handle.stack_name
        self._record("poll", name)
        hook = self.poll_hooks.get(name)
        if hook is not None:
            hook()
        if handle.operation == "delete":
            return self.delete_states.get(name, StackState.DELETED)
        return self.final_states.get(name, StackState.SETTLED)

    def get_outputs(self, name: str) -> Dict[str, str]:
        return dict(self.outputs.get(name, {}))

    def describe_failure(self, name: str) -> Optional[str]:
        return f"{name} resource failed"


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def backend_factory():
    """Return the in-memory backend class."""
    return FakeBackend


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def instant_waiter(fake_clock) -> ReadinessWaiter:
    """Waiter driven by the fake clock, so polling never really sleeps."""
    return ReadinessWaiter(clock=fake_clock, sleep=fake_clock.sleep)


@pytest.fixture
def config() -> OrchestratorConfig:
    return OrchestratorConfig(environment_name="test", poll_interval=30, stack_timeout=300)


@pytest.fixture
def eks_stacks() -> List[StackDescriptor]:
    """The three-stack EKS layout: vpc -> eks-cluster -> node-groups."""
    return [
        StackDescriptor.create("vpc", "01-vpc.yaml", {"EnvironmentName": "test"}),
        StackDescriptor.create(
            "eks-cluster", "02-eks-cluster.yaml", {"EnvironmentName": "test"}, ["vpc"]
        ),
        StackDescriptor.create(
            "node-groups", "03-node-groups.yaml", {"EnvironmentName": "test"}, ["eks-cluster"]
        ),
    ]


@pytest.fixture
def aws_credentials(monkeypatch) -> None:
    """Mocked AWS credentials so no real account is ever reached."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
