"""
Error taxonomy for deployment and teardown runs.
"""

from typing import Optional


class OrchestratorError(Exception):
    """Base class for orchestrator errors."""


class ConfigurationError(OrchestratorError):
    """Stack set is invalid (cycle, unresolved or duplicate name, bad config).

    Always raised before any backend call is made.
    """


class BackendError(OrchestratorError):
    """The provisioning backend rejected a call for a single stack."""

    def __init__(self, message: str, stack_name: Optional[str] = None):
        super().__init__(message)
        self.stack_name = stack_name


class WaitTimeout(OrchestratorError, TimeoutError):
    """Readiness wait exceeded its bound."""

    def __init__(self, message: str, last_state: object = None):
        super().__init__(message)
        self.last_state = last_state


class WaitCancelled(OrchestratorError):
    """Readiness wait observed a cancellation request."""


class ClusterConnectionError(OrchestratorError, ConnectionError):
    """Cluster credentials could not be refreshed or the cluster is unreachable."""


class ConfirmationDenied(OrchestratorError):
    """Teardown was not confirmed with the expected token."""


class WorkloadError(OrchestratorError):
    """Applying or removing application workloads failed."""
