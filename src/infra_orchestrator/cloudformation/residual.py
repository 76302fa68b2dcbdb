"""
Post-teardown check for resources left behind by an environment.
"""

import logging
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..config import OrchestratorConfig

logger = logging.getLogger(__name__)

CLUSTER_TAG = "elbv2.k8s.aws/cluster"


class ResidualResourceScanner:
    """Look for security groups and load balancers tagged for the environment.

    Findings are advisory: ``scan`` turns an API error into a finding saying
    the check could not be made, rather than raising it.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        region: Optional[str] = None,
        profile: Optional[str] = None,
    ):
        self.config = config
        self.region = region or config.aws_region
        self.profile = profile or config.aws_profile

        session_args = {"region_name": self.region}
        if self.profile:
            session_args["profile_name"] = self.profile

        session = boto3.Session(**session_args)
        self.ec2 = session.client("ec2")
        self.elbv2 = session.client("elbv2")

    def __call__(self) -> List[str]:
        return self.scan()

    def scan(self) -> List[str]:
        """Return one warning line per group of remaining resources."""
        findings = []

        try:
            groups = self.remaining_security_groups()
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Could not list security groups: {e}")
            findings.append(f"Could not check security groups: {e}")
            groups = []
        if groups:
            findings.append(f"Remaining security groups: {', '.join(groups)}")

        try:
            balancers = self.remaining_load_balancers()
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Could not list load balancers: {e}")
            findings.append(f"Could not check load balancers: {e}")
            balancers = []
        if balancers:
            findings.append(
                f"Remaining load balancers found: {', '.join(balancers)}; "
                "these should be deleted manually if they persist"
            )

        return findings

    def remaining_security_groups(self) -> List[str]:
        """Non-default security groups tagged for the environment."""
        tag_filter = {
            "Name": f"tag:{self.config.residual_tag_key}",
            "Values": [self.config.environment_name],
        }
        groups = []
        paginator = self.ec2.get_paginator("describe_security_groups")
        for page in paginator.paginate(Filters=[tag_filter]):
            for group in page["SecurityGroups"]:
                if group.get("GroupName") != "default":
                    groups.append(group["GroupId"])
        return groups

    def remaining_load_balancers(self) -> List[str]:
        """Load balancers tagged for the environment or owned by its cluster."""
        cluster_name = self.config.get_cluster_name()
        remaining = []
        arns = {}
        paginator = self.elbv2.get_paginator("describe_load_balancers")
        for page in paginator.paginate():
            for balancer in page["LoadBalancers"]:
                arns[balancer["LoadBalancerArn"]] = balancer["LoadBalancerName"]

        arn_list = list(arns)
        # describe_tags accepts at most 20 ARNs per call
        for start in range(0, len(arn_list), 20):
            response = self.elbv2.describe_tags(ResourceArns=arn_list[start:start + 20])
            for description in response["TagDescriptions"]:
                tags = {t["Key"]: t["Value"] for t in description.get("Tags", [])}
                owned = (
                    tags.get(self.config.residual_tag_key) == self.config.environment_name
                    or tags.get(CLUSTER_TAG) == cluster_name
                )
                if owned:
                    remaining.append(arns[description["ResourceArn"]])
        return sorted(remaining)
