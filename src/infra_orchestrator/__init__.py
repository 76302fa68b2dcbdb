"""
Infrastructure Orchestrator - ordered deployment and teardown of interdependent
CloudFormation stacks for an EKS environment.
"""

__version__ = "1.0.0"

from .config import ConfigManager, OrchestratorConfig, load_deployment
from .deployment.models import DeploymentRun, RunOutcome, StackDescriptor, StackStatus
from .deployment.orchestrator import DeploymentOrchestrator
from .deployment.teardown import TeardownOrchestrator

__all__ = [
    "ConfigManager",
    "DeploymentOrchestrator",
    "DeploymentRun",
    "OrchestratorConfig",
    "RunOutcome",
    "StackDescriptor",
    "StackStatus",
    "TeardownOrchestrator",
    "load_deployment",
]
