"""
Cluster access and workload handover.
"""

from .access import (
    ClusterAccess,
    ClusterCredentials,
    EKSClusterAccess,
    kubeconfig_for,
    write_kubeconfig,
)
from .workloads import KubectlWorkloads

__all__ = [
    "ClusterAccess",
    "ClusterCredentials",
    "EKSClusterAccess",
    "KubectlWorkloads",
    "kubeconfig_for",
    "write_kubeconfig",
]
