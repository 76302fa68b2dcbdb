"""
CloudFormation stack backend operations.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import boto3
from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from ..config import OrchestratorConfig
from ..deployment.models import StackDescriptor
from ..errors import BackendError

logger = logging.getLogger(__name__)


class StackState(Enum):
    """Backend-neutral state of a stack operation."""

    IN_PROGRESS = "in_progress"
    SETTLED = "settled"
    FAILED = "failed"
    DELETED = "deleted"


@dataclass(frozen=True)
class OperationHandle:
    """Reference to an asynchronous stack operation."""

    stack_name: str
    operation: str
    stack_id: Optional[str] = None


class _NoChanges:
    def __repr__(self) -> str:
        return "NO_CHANGES"


# Returned by update() when the stack already matches the request
NO_CHANGES = _NoChanges()


SETTLED_STATUSES = {"CREATE_COMPLETE", "UPDATE_COMPLETE", "IMPORT_COMPLETE"}
DELETED_STATUSES = {"DELETE_COMPLETE"}
# A stack left in one of these can only be deleted, never updated
UNRECOVERABLE_STATUSES = {"ROLLBACK_COMPLETE", "ROLLBACK_FAILED", "CREATE_FAILED"}
FAILED_STATUSES = {
    "CREATE_FAILED",
    "ROLLBACK_COMPLETE",
    "ROLLBACK_FAILED",
    "DELETE_FAILED",
    "UPDATE_FAILED",
    "UPDATE_ROLLBACK_COMPLETE",
    "UPDATE_ROLLBACK_FAILED",
    "IMPORT_ROLLBACK_COMPLETE",
    "IMPORT_ROLLBACK_FAILED",
}

# Everything except DELETE_COMPLETE
ACTIVE_STATUS_FILTER = [
    "CREATE_IN_PROGRESS",
    "CREATE_FAILED",
    "CREATE_COMPLETE",
    "ROLLBACK_IN_PROGRESS",
    "ROLLBACK_FAILED",
    "ROLLBACK_COMPLETE",
    "DELETE_IN_PROGRESS",
    "DELETE_FAILED",
    "UPDATE_IN_PROGRESS",
    "UPDATE_COMPLETE_CLEANUP_IN_PROGRESS",
    "UPDATE_COMPLETE",
    "UPDATE_ROLLBACK_IN_PROGRESS",
    "UPDATE_ROLLBACK_FAILED",
    "UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS",
    "UPDATE_ROLLBACK_COMPLETE",
    "REVIEW_IN_PROGRESS",
]


def map_stack_status(status: Optional[str]) -> StackState:
    """Translate a CloudFormation stack status into a StackState."""
    if status is None or status in DELETED_STATUSES:
        return StackState.DELETED
    if status in SETTLED_STATUSES:
        return StackState.SETTLED
    if status in FAILED_STATUSES:
        return StackState.FAILED
    return StackState.IN_PROGRESS


def _is_missing_stack(error: ClientError) -> bool:
    return "does not exist" in str(error)


class StackBackend(ABC):
    """Operations the orchestrators need from a declarative-stack backend."""

    @abstractmethod
    def exists(self, name: str) -> bool:
        """Whether the stack currently exists."""

    @abstractmethod
    def create(self, descriptor: StackDescriptor) -> OperationHandle:
        """Start creating a stack."""

    @abstractmethod
    def update(self, descriptor: StackDescriptor) -> Union[OperationHandle, _NoChanges]:
        """Start updating a stack, or return NO_CHANGES."""

    @abstractmethod
    def delete(self, name: str) -> OperationHandle:
        """Start deleting a stack."""

    @abstractmethod
    def poll(self, handle: OperationHandle) -> StackState:
        """Report the current state of an operation."""

    def get_outputs(self, name: str) -> Dict[str, str]:
        """Output values of a settled stack."""
        return {}

    def describe_failure(self, name: str) -> Optional[str]:
        """Best-effort reason for the latest failure of a stack."""
        return None


class StackManager(StackBackend):
    """Manage CloudFormation stack operations."""

    CAPABILITIES = ["CAPABILITY_IAM", "CAPABILITY_NAMED_IAM", "CAPABILITY_AUTO_EXPAND"]

    def __init__(
        self,
        config: Optional[OrchestratorConfig] = None,
        region: Optional[str] = None,
        profile: Optional[str] = None,
        template_root: Optional[Union[str, Path]] = None,
    ):
        """
        Initialize stack manager.

        Args:
            config: Orchestrator configuration (naming, tags, capabilities)
            region: AWS region (overrides config)
            profile: AWS profile to use (overrides config)
            template_root: Directory relative template paths are resolved from
        """
        self.config = config or OrchestratorConfig()
        self.region = region or self.config.aws_region
        self.profile = profile or self.config.aws_profile
        self.template_root = Path(template_root) if template_root else Path.cwd()

        session_args = {"region_name": self.region}
        if self.profile:
            session_args["profile_name"] = self.profile

        session = boto3.Session(**session_args)
        self.cloudformation = session.client("cloudformation")

    def physical_name(self, name: str) -> str:
        """CloudFormation stack name for a descriptor name."""
        return self.config.get_stack_name(name)

    def get_stack_status(self, stack_name: str) -> Optional[str]:
        """Get current stack status, or None if the stack does not exist."""
        try:
            response = self.cloudformation.describe_stacks(StackName=stack_name)
            if response["Stacks"]:
                return str(response["Stacks"][0]["StackStatus"])
        except ClientError as e:
            if _is_missing_stack(e):
                return None
            raise BackendError(f"Failed to describe stack {stack_name}: {e}", stack_name)
        except BotoCoreError as e:
            raise BackendError(f"Failed to describe stack {stack_name}: {e}", stack_name)
        return None

    def exists(self, name: str) -> bool:
        """Whether the stack exists in a state an update can start from.

        Stacks whose creation rolled back count as absent; ``create`` clears
        them out first.
        """
        status = self.get_stack_status(self.physical_name(name))
        return (
            status is not None
            and status not in DELETED_STATUSES
            and status not in UNRECOVERABLE_STATUSES
        )

    def clean_failed_stack(self, stack_name: str) -> None:
        """Delete a stack left behind by a failed create, and wait until it is gone."""
        status = self.get_stack_status(stack_name)
        if status not in UNRECOVERABLE_STATUSES:
            return

        logger.warning(f"Stack {stack_name} is in {status} state. Cleaning up...")
        delay = max(1, int(self.config.poll_interval))
        try:
            self.cloudformation.delete_stack(StackName=stack_name)
            waiter = self.cloudformation.get_waiter("stack_delete_complete")
            waiter.wait(
                StackName=stack_name,
                WaiterConfig={
                    "Delay": delay,
                    "MaxAttempts": max(1, int(self.config.delete_timeout // delay)),
                },
            )
        except (ClientError, BotoCoreError, WaiterError) as e:
            raise BackendError(f"Failed to delete failed stack {stack_name}: {e}", stack_name)
        logger.info(f"Deleted failed stack {stack_name}")

    def load_template(self, template_reference: str) -> Dict[str, str]:
        """Template arguments for a create/update call.

        URLs are passed through as ``TemplateURL``; anything else is read as
        a file and sent verbatim as ``TemplateBody`` so YAML intrinsic tags
        survive.
        """
        if template_reference.startswith("https://"):
            return {"TemplateURL": template_reference}

        path = Path(template_reference)
        if not path.is_absolute():
            path = self.template_root / path
        if not path.exists():
            raise BackendError(f"Template not found: {path}")
        return {"TemplateBody": path.read_text()}

    def prepare_parameters(self, descriptor: StackDescriptor) -> List[Dict[str, str]]:
        """Prepare CloudFormation parameters."""
        return [
            {"ParameterKey": key, "ParameterValue": str(value)}
            for key, value in descriptor.parameters
        ]

    def prepare_tags(self) -> List[Dict[str, str]]:
        """Prepare CloudFormation tags."""
        tags = {
            self.config.residual_tag_key: self.config.environment_name,
            "ManagedBy": "infra-orchestrator",
            **self.config.tag_map,
        }
        return [{"Key": key, "Value": str(value)} for key, value in tags.items()]

    def _stack_arguments(self, descriptor: StackDescriptor) -> Dict[str, Any]:
        return {
            "StackName": self.physical_name(descriptor.name),
            **self.load_template(descriptor.template_reference),
            "Parameters": self.prepare_parameters(descriptor),
            "Tags": self.prepare_tags(),
            "Capabilities": list(self.config.capabilities or self.CAPABILITIES),
        }

    def create(self, descriptor: StackDescriptor) -> OperationHandle:
        stack_name = self.physical_name(descriptor.name)
        arguments = self._stack_arguments(descriptor)
        self.clean_failed_stack(stack_name)
        logger.info(f"Creating stack {stack_name}...")
        try:
            response = self.cloudformation.create_stack(**arguments)
        except (ClientError, BotoCoreError) as e:
            raise BackendError(f"Stack create failed: {e}", descriptor.name)
        return OperationHandle(stack_name, "create", response.get("StackId"))

    def update(self, descriptor: StackDescriptor) -> Union[OperationHandle, _NoChanges]:
        stack_name = self.physical_name(descriptor.name)
        logger.info(f"Updating stack {stack_name}...")
        try:
            response = self.cloudformation.update_stack(**self._stack_arguments(descriptor))
        except ClientError as e:
            if "No updates are to be performed" in str(e):
                logger.info(f"No stack updates needed for {stack_name}")
                return NO_CHANGES
            raise BackendError(f"Stack update failed: {e}", descriptor.name)
        except BotoCoreError as e:
            raise BackendError(f"Stack update failed: {e}", descriptor.name)
        return OperationHandle(stack_name, "update", response.get("StackId"))

    def delete(self, name: str) -> OperationHandle:
        stack_name = self.physical_name(name)
        logger.info(f"Deleting stack {stack_name}...")
        try:
            # Capture the ID first; deleted stacks are only describable by ID
            response = self.cloudformation.describe_stacks(StackName=stack_name)
            stack_id = response["Stacks"][0].get("StackId") if response["Stacks"] else None
            self.cloudformation.delete_stack(StackName=stack_name)
        except ClientError as e:
            if _is_missing_stack(e):
                logger.warning(f"Stack {stack_name} does not exist, skipping...")
                return OperationHandle(stack_name, "delete")
            raise BackendError(f"Stack delete failed: {e}", name)
        except BotoCoreError as e:
            raise BackendError(f"Stack delete failed: {e}", name)
        return OperationHandle(stack_name, "delete", stack_id)

    def poll(self, handle: OperationHandle) -> StackState:
        return map_stack_status(self.get_stack_status(handle.stack_id or handle.stack_name))

    def get_stack_outputs(self, stack_name: str) -> Dict[str, str]:
        """Get outputs from a CloudFormation stack."""
        try:
            response = self.cloudformation.describe_stacks(StackName=stack_name)
        except ClientError as e:
            if _is_missing_stack(e):
                return {}
            raise BackendError(f"Failed to read outputs of {stack_name}: {e}", stack_name)
        except BotoCoreError as e:
            raise BackendError(f"Failed to read outputs of {stack_name}: {e}", stack_name)
        outputs = {}
        if response["Stacks"]:
            for output in response["Stacks"][0].get("Outputs", []):
                outputs[output["OutputKey"]] = output["OutputValue"]
        return outputs

    def get_outputs(self, name: str) -> Dict[str, str]:
        return self.get_stack_outputs(self.physical_name(name))

    def describe_failure(self, name: str) -> Optional[str]:
        """Reason of the most recent failed event of the stack."""
        stack_name = self.physical_name(name)
        try:
            response = self.cloudformation.describe_stack_events(StackName=stack_name)
        except (ClientError, BotoCoreError) as e:
            logger.debug(f"Could not retrieve stack events for {stack_name}: {e}")
            return None

        for event in response.get("StackEvents", []):
            if "FAILED" in event.get("ResourceStatus", ""):
                return (
                    f"{event['LogicalResourceId']} ({event['ResourceType']}): "
                    f"{event.get('ResourceStatusReason', 'No reason provided')}"
                )
        return None

    def list_stacks(self, prefix: Optional[str] = None) -> List[Dict[str, Any]]:
        """List non-deleted stacks, optionally filtered by name prefix."""
        stacks = []
        try:
            paginator = self.cloudformation.get_paginator("list_stacks")
            for page in paginator.paginate(StackStatusFilter=ACTIVE_STATUS_FILTER):
                for stack in page["StackSummaries"]:
                    if prefix and not stack["StackName"].startswith(prefix):
                        continue
                    stacks.append(
                        {
                            "name": stack["StackName"],
                            "status": stack["StackStatus"],
                            "created": str(stack["CreationTime"]),
                            "updated": str(
                                stack.get("LastUpdatedTime", stack["CreationTime"])
                            ),
                        }
                    )
        except (ClientError, BotoCoreError) as e:
            raise BackendError(f"Error listing stacks: {e}")
        return stacks
