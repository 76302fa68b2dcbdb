"""
CloudFormation stack backend and residual resource checks.
"""

from .residual import ResidualResourceScanner
from .stack_manager import (
    NO_CHANGES,
    OperationHandle,
    StackBackend,
    StackManager,
    StackState,
)

__all__ = [
    "NO_CHANGES",
    "OperationHandle",
    "ResidualResourceScanner",
    "StackBackend",
    "StackManager",
    "StackState",
]
