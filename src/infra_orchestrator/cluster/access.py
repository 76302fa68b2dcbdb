"""
EKS cluster credential refresh and liveness checks.
"""

import base64
import logging
import re
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

import boto3
import requests
import yaml
from botocore.exceptions import BotoCoreError, ClientError
from botocore.signers import RequestSigner

from ..errors import ClusterConnectionError

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "k8s-aws-v1."
TOKEN_EXPIRES_IN = 60
CLUSTER_ID_HEADER = "x-k8s-aws-id"


@dataclass(frozen=True)
class ClusterCredentials:
    """Connection details for one cluster endpoint."""

    cluster_name: str
    region: str
    endpoint: str
    certificate_authority: str
    token: str
    expires_at: datetime
    profile: Optional[str] = None

    @property
    def expired(self) -> bool:
        return datetime.now(timezone.utc) >= self.expires_at


class ClusterAccess(ABC):
    """Operations the orchestrators need from the cluster API."""

    @abstractmethod
    def refresh_access(self, cluster_name: str) -> ClusterCredentials:
        """
        Produce fresh credentials for a cluster.

        Raises:
            ClusterConnectionError: if credentials cannot be produced
        """

    @abstractmethod
    def is_live(self, credentials: ClusterCredentials) -> bool:
        """Whether the cluster API answers its readiness endpoint."""


class EKSClusterAccess(ClusterAccess):
    """Cluster access through the EKS API and presigned STS tokens."""

    def __init__(
        self,
        region: str = "us-east-1",
        profile: Optional[str] = None,
        request_timeout: float = 10,
    ):
        """
        Initialize cluster access.

        Args:
            region: AWS region of the cluster
            profile: AWS profile to use
            request_timeout: Seconds allowed for the liveness request
        """
        self.region = region
        self.profile = profile
        self.request_timeout = request_timeout

        session_args = {"region_name": self.region}
        if profile:
            session_args["profile_name"] = profile

        self.session = boto3.Session(**session_args)
        self.eks = self.session.client("eks")
        self.sts = self.session.client("sts")

    def refresh_access(self, cluster_name: str) -> ClusterCredentials:
        logger.info(f"Updating access for cluster: {cluster_name}")
        try:
            cluster = self.eks.describe_cluster(name=cluster_name)["cluster"]
        except (ClientError, BotoCoreError) as e:
            raise ClusterConnectionError(f"Cannot describe cluster {cluster_name}: {e}")

        status = cluster.get("status")
        if status != "ACTIVE":
            raise ClusterConnectionError(f"Cluster {cluster_name} is {status}, not ACTIVE")

        return ClusterCredentials(
            cluster_name=cluster_name,
            region=self.region,
            endpoint=cluster["endpoint"],
            certificate_authority=cluster["certificateAuthority"]["data"],
            token=self.get_token(cluster_name),
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=TOKEN_EXPIRES_IN),
            profile=self.profile,
        )

    def get_token(self, cluster_name: str) -> str:
        """Bearer token for the cluster: a presigned GetCallerIdentity URL."""
        credentials = self.session.get_credentials()
        if credentials is None:
            raise ClusterConnectionError("AWS credentials not configured")

        signer = RequestSigner(
            self.sts.meta.service_model.service_id,
            self.region,
            "sts",
            "v4",
            credentials,
            self.session.events,
        )
        params = {
            "method": "GET",
            "url": (
                f"https://sts.{self.region}.amazonaws.com/"
                "?Action=GetCallerIdentity&Version=2011-06-15"
            ),
            "body": {},
            "headers": {CLUSTER_ID_HEADER: cluster_name},
            "context": {},
        }
        try:
            signed_url = signer.generate_presigned_url(
                params,
                region_name=self.region,
                expires_in=TOKEN_EXPIRES_IN,
                operation_name="",
            )
        except BotoCoreError as e:
            raise ClusterConnectionError(f"Failed to sign cluster token: {e}")

        encoded = base64.urlsafe_b64encode(signed_url.encode("utf-8")).decode("utf-8")
        return TOKEN_PREFIX + re.sub(r"=*$", "", encoded)

    def is_live(self, credentials: ClusterCredentials) -> bool:
        with tempfile.NamedTemporaryFile("wb", suffix=".crt") as ca_file:
            ca_file.write(base64.b64decode(credentials.certificate_authority))
            ca_file.flush()
            try:
                response = requests.get(
                    f"{credentials.endpoint}/readyz",
                    headers={"Authorization": f"Bearer {credentials.token}"},
                    verify=ca_file.name,
                    timeout=self.request_timeout,
                )
            except requests.RequestException as e:
                logger.warning(f"Cannot connect to cluster {credentials.cluster_name}: {e}")
                return False

        if response.status_code != 200:
            logger.warning(
                f"Cluster {credentials.cluster_name} readiness returned "
                f"{response.status_code}"
            )
            return False
        return True


def kubeconfig_for(credentials: ClusterCredentials) -> Dict[str, Any]:
    """Kubeconfig document that fetches tokens through ``aws eks get-token``."""
    name = credentials.cluster_name
    exec_config: Dict[str, Any] = {
        "apiVersion": "client.authentication.k8s.io/v1beta1",
        "command": "aws",
        "args": ["--region", credentials.region, "eks", "get-token", "--cluster-name", name],
    }
    if credentials.profile:
        exec_config["env"] = [{"name": "AWS_PROFILE", "value": credentials.profile}]

    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [
            {
                "name": name,
                "cluster": {
                    "server": credentials.endpoint,
                    "certificate-authority-data": credentials.certificate_authority,
                },
            }
        ],
        "users": [{"name": name, "user": {"exec": exec_config}}],
        "contexts": [{"name": name, "context": {"cluster": name, "user": name}}],
        "current-context": name,
        "preferences": {},
    }


def write_kubeconfig(credentials: ClusterCredentials, path: Union[str, Path]) -> Path:
    """Write a kubeconfig for the cluster and return its path."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(kubeconfig_for(credentials), f, default_flow_style=False)
    path.chmod(0o600)
    logger.info(f"Wrote kubeconfig for {credentials.cluster_name} to {path}")
    return path
