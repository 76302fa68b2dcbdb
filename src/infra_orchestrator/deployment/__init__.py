"""
Deployment and teardown sequencing for interdependent stacks.
"""

from .models import (
    DeploymentRun,
    RunOutcome,
    StackDescriptor,
    StackInstance,
    StackStatus,
)
from .planner import teardown_order, topological_order
from .waiter import CancellationToken, ReadinessWaiter

__all__ = [
    "CancellationToken",
    "DeploymentRun",
    "ReadinessWaiter",
    "RunOutcome",
    "StackDescriptor",
    "StackInstance",
    "StackStatus",
    "teardown_order",
    "topological_order",
]
