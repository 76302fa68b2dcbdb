"""
Tests for CloudFormation stack management functionality.
"""

from unittest.mock import Mock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, WaiterError

from infra_orchestrator.cloudformation.stack_manager import (
    NO_CHANGES,
    OperationHandle,
    StackManager,
    StackState,
    map_stack_status,
)
from infra_orchestrator.config import OrchestratorConfig
from infra_orchestrator.deployment.models import StackDescriptor, StackStatus
from infra_orchestrator.deployment.orchestrator import DeploymentOrchestrator
from infra_orchestrator.errors import BackendError


def client_error(message: str, operation: str = "DescribeStacks") -> ClientError:
    return ClientError({"Error": {"Code": "ValidationError", "Message": message}}, operation)


class TestStackManager:
    """Test CloudFormation stack management."""

    def create_manager(self, template_root=None) -> StackManager:
        """Create a test manager with a mocked CloudFormation client."""
        config = OrchestratorConfig(environment_name="test", tags=(("Team", "platform"),))
        with patch("boto3.Session"):
            manager = StackManager(config, template_root=template_root)
        manager.cloudformation = Mock()
        return manager

    def test_session_uses_profile(self) -> None:
        config = OrchestratorConfig(aws_region="eu-west-1", aws_profile="ops")
        with patch("boto3.Session") as mock_session:
            StackManager(config)
        mock_session.assert_called_once_with(region_name="eu-west-1", profile_name="ops")

    def test_get_stack_status_exists(self) -> None:
        """Test getting stack status for existing stack."""
        manager = self.create_manager()
        manager.cloudformation.describe_stacks.return_value = {
            "Stacks": [{"StackStatus": "CREATE_COMPLETE"}]
        }

        assert manager.get_stack_status("test-vpc") == "CREATE_COMPLETE"
        manager.cloudformation.describe_stacks.assert_called_once_with(StackName="test-vpc")

    def test_get_stack_status_not_exists(self) -> None:
        """Test getting stack status for non-existent stack."""
        manager = self.create_manager()
        manager.cloudformation.describe_stacks.side_effect = client_error(
            "Stack with id test-vpc does not exist"
        )
        assert manager.get_stack_status("test-vpc") is None

    def test_get_stack_status_error(self) -> None:
        manager = self.create_manager()
        manager.cloudformation.describe_stacks.side_effect = client_error("Rate exceeded")
        with pytest.raises(BackendError, match="Rate exceeded"):
            manager.get_stack_status("test-vpc")

    def test_exists(self) -> None:
        """Test exists uses the physical name and ignores deleted stacks."""
        manager = self.create_manager()
        manager.cloudformation.describe_stacks.return_value = {
            "Stacks": [{"StackStatus": "UPDATE_COMPLETE"}]
        }
        assert manager.exists("vpc") is True
        manager.cloudformation.describe_stacks.assert_called_with(StackName="test-vpc")

        manager.cloudformation.describe_stacks.return_value = {
            "Stacks": [{"StackStatus": "DELETE_COMPLETE"}]
        }
        assert manager.exists("vpc") is False

    def test_create_from_template_file(self, tmp_path) -> None:
        """Test create sends the template body, parameters, tags and capabilities."""
        template = tmp_path / "01-vpc.yaml"
        template.write_text("Resources:\n  Vpc:\n    Type: AWS::EC2::VPC\n")
        manager = self.create_manager(template_root=tmp_path)
        manager.cloudformation.create_stack.return_value = {"StackId": "arn:stack/test-vpc/1"}
        manager.cloudformation.describe_stacks.side_effect = client_error(
            "Stack with id test-vpc does not exist"
        )

        descriptor = StackDescriptor.create("vpc", "01-vpc.yaml", {"EnvironmentName": "test"})
        handle = manager.create(descriptor)

        assert handle == OperationHandle("test-vpc", "create", "arn:stack/test-vpc/1")
        kwargs = manager.cloudformation.create_stack.call_args.kwargs
        assert kwargs["StackName"] == "test-vpc"
        assert kwargs["TemplateBody"] == template.read_text()
        assert kwargs["Parameters"] == [
            {"ParameterKey": "EnvironmentName", "ParameterValue": "test"}
        ]
        assert {"Key": "Environment", "Value": "test"} in kwargs["Tags"]
        assert {"Key": "Team", "Value": "platform"} in kwargs["Tags"]
        assert "CAPABILITY_NAMED_IAM" in kwargs["Capabilities"]

    def test_create_from_template_url(self) -> None:
        manager = self.create_manager()
        manager.cloudformation.create_stack.return_value = {"StackId": "id"}
        manager.cloudformation.describe_stacks.side_effect = client_error(
            "Stack with id test-vpc does not exist"
        )
        url = "https://bucket.s3.amazonaws.com/vpc.yaml"

        manager.create(StackDescriptor.create("vpc", url))

        kwargs = manager.cloudformation.create_stack.call_args.kwargs
        assert kwargs["TemplateURL"] == url
        assert "TemplateBody" not in kwargs

    def test_create_missing_template(self, tmp_path) -> None:
        manager = self.create_manager(template_root=tmp_path)
        with pytest.raises(BackendError, match="Template not found"):
            manager.create(StackDescriptor.create("vpc", "missing.yaml"))
        manager.cloudformation.create_stack.assert_not_called()

    def test_create_rejected(self, tmp_path) -> None:
        (tmp_path / "vpc.yaml").write_text("Resources: {}\n")
        manager = self.create_manager(template_root=tmp_path)
        manager.cloudformation.create_stack.side_effect = client_error(
            "Stack [test-vpc] already exists", "CreateStack"
        )
        manager.cloudformation.describe_stacks.return_value = {
            "Stacks": [{"StackStatus": "CREATE_COMPLETE"}]
        }
        with pytest.raises(BackendError) as exc_info:
            manager.create(StackDescriptor.create("vpc", "vpc.yaml"))
        assert exc_info.value.stack_name == "vpc"

    def test_exists_ignores_rolled_back_stack(self) -> None:
        """Test a stack whose creation rolled back is not treated as updatable."""
        manager = self.create_manager()
        for status in ("ROLLBACK_COMPLETE", "ROLLBACK_FAILED", "CREATE_FAILED"):
            manager.cloudformation.describe_stacks.return_value = {
                "Stacks": [{"StackStatus": status}]
            }
            assert manager.exists("vpc") is False

    def test_create_replaces_rolled_back_stack(self, tmp_path) -> None:
        """Test create deletes a rolled back stack and waits before creating it again."""
        (tmp_path / "vpc.yaml").write_text("Resources: {}\n")
        manager = self.create_manager(template_root=tmp_path)
        manager.cloudformation.describe_stacks.return_value = {
            "Stacks": [{"StackStatus": "ROLLBACK_COMPLETE"}]
        }
        manager.cloudformation.create_stack.return_value = {"StackId": "arn:stack/test-vpc/2"}
        waiter = Mock()
        manager.cloudformation.get_waiter.return_value = waiter

        handle = manager.create(StackDescriptor.create("vpc", "vpc.yaml"))

        manager.cloudformation.delete_stack.assert_called_once_with(StackName="test-vpc")
        manager.cloudformation.get_waiter.assert_called_once_with("stack_delete_complete")
        waiter.wait.assert_called_once_with(
            StackName="test-vpc", WaiterConfig={"Delay": 30, "MaxAttempts": 60}
        )
        calls = [c[0] for c in manager.cloudformation.mock_calls]
        assert calls.index("delete_stack") < calls.index("create_stack")
        assert handle.stack_id == "arn:stack/test-vpc/2"

    def test_create_new_stack_skips_cleanup(self, tmp_path) -> None:
        (tmp_path / "vpc.yaml").write_text("Resources: {}\n")
        manager = self.create_manager(template_root=tmp_path)
        manager.cloudformation.describe_stacks.side_effect = client_error(
            "Stack with id test-vpc does not exist"
        )
        manager.cloudformation.create_stack.return_value = {"StackId": "id"}

        manager.create(StackDescriptor.create("vpc", "vpc.yaml"))

        manager.cloudformation.delete_stack.assert_not_called()

    def test_create_cleanup_failure(self, tmp_path) -> None:
        (tmp_path / "vpc.yaml").write_text("Resources: {}\n")
        manager = self.create_manager(template_root=tmp_path)
        manager.cloudformation.describe_stacks.return_value = {
            "Stacks": [{"StackStatus": "ROLLBACK_FAILED"}]
        }
        manager.cloudformation.get_waiter.return_value.wait.side_effect = WaiterError(
            name="StackDeleteComplete", reason="Max attempts exceeded", last_response={}
        )

        with pytest.raises(BackendError, match="Failed to delete failed stack test-vpc"):
            manager.create(StackDescriptor.create("vpc", "vpc.yaml"))
        manager.cloudformation.create_stack.assert_not_called()

    def test_update_no_changes(self, tmp_path) -> None:
        """Test an update with nothing to do returns the no-changes sentinel."""
        (tmp_path / "vpc.yaml").write_text("Resources: {}\n")
        manager = self.create_manager(template_root=tmp_path)
        manager.cloudformation.update_stack.side_effect = client_error(
            "No updates are to be performed.", "UpdateStack"
        )
        assert manager.update(StackDescriptor.create("vpc", "vpc.yaml")) is NO_CHANGES

    def test_update(self, tmp_path) -> None:
        (tmp_path / "vpc.yaml").write_text("Resources: {}\n")
        manager = self.create_manager(template_root=tmp_path)
        manager.cloudformation.update_stack.return_value = {"StackId": "arn:stack/test-vpc/1"}

        handle = manager.update(StackDescriptor.create("vpc", "vpc.yaml"))
        assert handle.operation == "update"
        assert handle.stack_id == "arn:stack/test-vpc/1"

    def test_delete_captures_stack_id(self) -> None:
        """Test delete records the stack ID so the deletion can be polled."""
        manager = self.create_manager()
        manager.cloudformation.describe_stacks.return_value = {
            "Stacks": [{"StackId": "arn:stack/test-vpc/1", "StackStatus": "CREATE_COMPLETE"}]
        }

        handle = manager.delete("vpc")

        manager.cloudformation.delete_stack.assert_called_once_with(StackName="test-vpc")
        assert handle == OperationHandle("test-vpc", "delete", "arn:stack/test-vpc/1")

    def test_delete_missing_stack(self) -> None:
        manager = self.create_manager()
        manager.cloudformation.describe_stacks.side_effect = client_error(
            "Stack with id test-vpc does not exist"
        )
        handle = manager.delete("vpc")
        assert handle.stack_id is None
        manager.cloudformation.delete_stack.assert_not_called()

    def test_poll_by_stack_id(self) -> None:
        manager = self.create_manager()
        manager.cloudformation.describe_stacks.return_value = {
            "Stacks": [{"StackStatus": "DELETE_COMPLETE"}]
        }
        state = manager.poll(OperationHandle("test-vpc", "delete", "arn:stack/test-vpc/1"))

        assert state == StackState.DELETED
        manager.cloudformation.describe_stacks.assert_called_once_with(
            StackName="arn:stack/test-vpc/1"
        )

    def test_get_outputs(self) -> None:
        manager = self.create_manager()
        manager.cloudformation.describe_stacks.return_value = {
            "Stacks": [
                {
                    "StackStatus": "CREATE_COMPLETE",
                    "Outputs": [
                        {"OutputKey": "VpcId", "OutputValue": "vpc-123"},
                        {"OutputKey": "SubnetIds", "OutputValue": "subnet-1,subnet-2"},
                    ],
                }
            ]
        }
        assert manager.get_outputs("vpc") == {"VpcId": "vpc-123", "SubnetIds": "subnet-1,subnet-2"}

    def test_get_outputs_connection_error(self) -> None:
        manager = self.create_manager()
        manager.cloudformation.describe_stacks.side_effect = EndpointConnectionError(
            endpoint_url="https://cloudformation.us-east-1.amazonaws.com/"
        )
        with pytest.raises(BackendError, match="Failed to read outputs of test-vpc"):
            manager.get_outputs("vpc")

    def test_describe_failure(self) -> None:
        """Test the first failed event is used as the failure reason."""
        manager = self.create_manager()
        manager.cloudformation.describe_stack_events.return_value = {
            "StackEvents": [
                {
                    "LogicalResourceId": "test-vpc",
                    "ResourceType": "AWS::CloudFormation::Stack",
                    "ResourceStatus": "ROLLBACK_IN_PROGRESS",
                },
                {
                    "LogicalResourceId": "NatGateway",
                    "ResourceType": "AWS::EC2::NatGateway",
                    "ResourceStatus": "CREATE_FAILED",
                    "ResourceStatusReason": "Address limit exceeded",
                },
            ]
        }
        assert manager.describe_failure("vpc") == (
            "NatGateway (AWS::EC2::NatGateway): Address limit exceeded"
        )

    def test_describe_failure_unavailable(self) -> None:
        manager = self.create_manager()
        manager.cloudformation.describe_stack_events.side_effect = client_error("denied")
        assert manager.describe_failure("vpc") is None

    def test_list_stacks_with_prefix(self) -> None:
        manager = self.create_manager()
        paginator = Mock()
        paginator.paginate.return_value = [
            {
                "StackSummaries": [
                    {
                        "StackName": "test-vpc",
                        "StackStatus": "CREATE_COMPLETE",
                        "CreationTime": "2024-01-01",
                    },
                    {
                        "StackName": "other-vpc",
                        "StackStatus": "CREATE_COMPLETE",
                        "CreationTime": "2024-01-01",
                    },
                ]
            }
        ]
        manager.cloudformation.get_paginator.return_value = paginator

        stacks = manager.list_stacks(prefix="test-")

        assert [s["name"] for s in stacks] == ["test-vpc"]
        assert stacks[0]["updated"] == "2024-01-01"
        assert "DELETE_COMPLETE" not in paginator.paginate.call_args.kwargs["StackStatusFilter"]


class TestMapStackStatus:
    """Test status translation."""

    @pytest.mark.parametrize(
        "status, expected",
        [
            ("CREATE_IN_PROGRESS", StackState.IN_PROGRESS),
            ("UPDATE_COMPLETE_CLEANUP_IN_PROGRESS", StackState.IN_PROGRESS),
            ("CREATE_COMPLETE", StackState.SETTLED),
            ("UPDATE_COMPLETE", StackState.SETTLED),
            ("ROLLBACK_COMPLETE", StackState.FAILED),
            ("UPDATE_ROLLBACK_COMPLETE", StackState.FAILED),
            ("DELETE_FAILED", StackState.FAILED),
            ("DELETE_COMPLETE", StackState.DELETED),
            (None, StackState.DELETED),
        ],
    )
    def test_mapping(self, status, expected) -> None:
        assert map_stack_status(status) == expected


class TestRolledBackStackRedeploy:
    """Test a redeploy recovers a stack whose first create rolled back."""

    def test_redeploy_recreates_stack(self, tmp_path, instant_waiter) -> None:
        (tmp_path / "vpc.yaml").write_text("Resources: {}\n")
        config = OrchestratorConfig(environment_name="test")
        with patch("boto3.Session"):
            manager = StackManager(config, template_root=tmp_path)
        manager.cloudformation = Mock()
        state = {"status": "ROLLBACK_COMPLETE"}

        def describe_stacks(StackName):
            if state["status"] is None:
                raise client_error(f"Stack with id {StackName} does not exist")
            return {"Stacks": [{"StackId": "arn:stack/test-vpc/2", "StackStatus": state["status"]}]}

        def delete_stack(StackName):
            state["status"] = None

        def create_stack(**kwargs):
            state["status"] = "CREATE_COMPLETE"
            return {"StackId": "arn:stack/test-vpc/2"}

        manager.cloudformation.describe_stacks.side_effect = describe_stacks
        manager.cloudformation.delete_stack.side_effect = delete_stack
        manager.cloudformation.create_stack.side_effect = create_stack
        manager.cloudformation.update_stack.side_effect = client_error(
            "Stack:arn:stack/test-vpc/1 is in ROLLBACK_COMPLETE state and can not be updated.",
            "UpdateStack",
        )

        orchestrator = DeploymentOrchestrator(manager, config, waiter=instant_waiter)
        run = orchestrator.run([StackDescriptor.create("vpc", "vpc.yaml")])

        assert run.status_of("vpc") == StackStatus.SETTLED
        manager.cloudformation.update_stack.assert_not_called()
        manager.cloudformation.delete_stack.assert_called_once_with(StackName="test-vpc")
        manager.cloudformation.create_stack.assert_called_once()
