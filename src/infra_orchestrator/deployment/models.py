"""
Data model for deployment and teardown runs.
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


class StackStatus(Enum):
    """Runtime status of one stack during a run."""

    NOT_STARTED = "NotStarted"
    CREATING = "Creating"
    UPDATING = "Updating"
    SETTLED = "Settled"
    FAILED = "Failed"
    DELETING = "Deleting"
    DELETED = "Deleted"


class RunOutcome(Enum):
    """Overall outcome of a run."""

    SUCCESS = "Success"
    PARTIAL_FAILURE = "PartialFailure"
    ABORTED = "Aborted"


@dataclass(frozen=True)
class StackDescriptor:
    """Static description of one deployable stack."""

    name: str
    template_reference: str
    parameters: Tuple[Tuple[str, str], ...] = ()
    depends_on: FrozenSet[str] = frozenset()

    @classmethod
    def create(
        cls,
        name: str,
        template_reference: str,
        parameters: Optional[Dict[str, Any]] = None,
        depends_on: Optional[List[str]] = None,
    ) -> "StackDescriptor":
        """Build a descriptor from plain mappings, keeping parameter order."""
        return cls(
            name=name,
            template_reference=template_reference,
            parameters=tuple(
                (k, str(v).lower() if isinstance(v, bool) else str(v))
                for k, v in (parameters or {}).items()
            ),
            depends_on=frozenset(depends_on or ()),
        )

    @property
    def parameter_map(self) -> Dict[str, str]:
        return dict(self.parameters)


@dataclass
class StackInstance:
    """Runtime state of a stack descriptor during one run."""

    descriptor: StackDescriptor
    status: StackStatus = StackStatus.NOT_STARTED
    last_error: Optional[str] = None
    skip_reason: Optional[str] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at


class DeploymentRun:
    """Aggregate state of one deployment or teardown invocation.

    All mutation goes through methods holding the run lock, so workers in a
    thread pool can update it concurrently.
    """

    def __init__(self, descriptors: List[StackDescriptor], operation: str = "deploy"):
        self.operation = operation
        self._lock = threading.Lock()
        self._instances: Dict[str, StackInstance] = {
            d.name: StackInstance(descriptor=d) for d in descriptors
        }
        self._order: List[str] = [d.name for d in descriptors]
        self.aborted = False
        self.abort_reason: Optional[str] = None
        self.warnings: List[str] = []
        self.cluster_error: Optional[str] = None
        self.workload_error: Optional[str] = None
        self.start_time = time.time()
        self.end_time: Optional[float] = None

    @property
    def instances(self) -> List[StackInstance]:
        """Stack instances in run order."""
        with self._lock:
            return [self._instances[name] for name in self._order]

    def get(self, name: str) -> StackInstance:
        with self._lock:
            return self._instances[name]

    def status_of(self, name: str) -> StackStatus:
        with self._lock:
            return self._instances[name].status

    def set_status(
        self, name: str, status: StackStatus, error: Optional[str] = None
    ) -> None:
        """Record a status transition for a stack."""
        with self._lock:
            instance = self._instances[name]
            instance.status = status
            if status in (StackStatus.CREATING, StackStatus.UPDATING, StackStatus.DELETING):
                instance.started_at = time.time()
            if status in (StackStatus.SETTLED, StackStatus.FAILED, StackStatus.DELETED):
                instance.finished_at = time.time()
            if status == StackStatus.FAILED:
                instance.last_error = error
            elif error is None:
                instance.last_error = None

    def set_outputs(self, name: str, outputs: Dict[str, str]) -> None:
        with self._lock:
            self._instances[name].outputs = dict(outputs)

    def outputs_of(self, name: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._instances[name].outputs)

    def mark_skipped(self, name: str, reason: str) -> None:
        """Leave a stack NotStarted and record why it was never attempted."""
        with self._lock:
            self._instances[name].skip_reason = reason

    def add_warning(self, message: str) -> None:
        with self._lock:
            self.warnings.append(message)

    def abort(self, reason: str) -> None:
        with self._lock:
            self.aborted = True
            self.abort_reason = reason

    def finish(self) -> None:
        self.end_time = time.time()

    @property
    def duration(self) -> float:
        return (self.end_time or time.time()) - self.start_time

    @property
    def failed_stacks(self) -> List[str]:
        return [i.name for i in self.instances if i.status == StackStatus.FAILED]

    @property
    def skipped_stacks(self) -> List[str]:
        return [i.name for i in self.instances if i.skip_reason is not None]

    @property
    def outcome(self) -> RunOutcome:
        if self.aborted:
            return RunOutcome.ABORTED
        if self.failed_stacks or self.skipped_stacks:
            return RunOutcome.PARTIAL_FAILURE
        return RunOutcome.SUCCESS

    @property
    def success(self) -> bool:
        """Check if the run completed without any failure."""
        return self.outcome == RunOutcome.SUCCESS

    @property
    def exit_code(self) -> int:
        if not self.success or self.cluster_error or self.workload_error:
            return 1
        return 0

    def summary_lines(self) -> List[str]:
        """Per-stack outcome enumeration for reporting."""
        lines = [f"{self.operation} outcome: {self.outcome.value}"]
        if self.abort_reason:
            lines.append(f"  aborted: {self.abort_reason}")
        for instance in self.instances:
            line = f"  {instance.name}: {instance.status.value}"
            if instance.last_error:
                line += f" ({instance.last_error})"
            elif instance.skip_reason:
                line += f" (skipped: {instance.skip_reason})"
            lines.append(line)
        if self.outcome == RunOutcome.PARTIAL_FAILURE:
            names = self.failed_stacks + self.skipped_stacks
            lines.append(f"  failed or skipped: {', '.join(names)}")
        if self.cluster_error:
            lines.append(f"  cluster access: {self.cluster_error}")
        if self.workload_error:
            lines.append(f"  workloads: {self.workload_error}")
        for warning in self.warnings:
            lines.append(f"  warning: {warning}")
        return lines

    def to_dict(self) -> Dict[str, Any]:
        """Convert run to a JSON-friendly dictionary."""
        return {
            "operation": self.operation,
            "outcome": self.outcome.value,
            "abort_reason": self.abort_reason,
            "duration": self.duration,
            "stacks": [
                {
                    "name": i.name,
                    "status": i.status.value,
                    "last_error": i.last_error,
                    "skip_reason": i.skip_reason,
                    "outputs": i.outputs,
                }
                for i in self.instances
            ],
            "warnings": list(self.warnings),
            "cluster_error": self.cluster_error,
            "workload_error": self.workload_error,
        }
