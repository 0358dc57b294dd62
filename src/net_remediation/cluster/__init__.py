"""Cluster layer: access to the Kubernetes API."""

from net_remediation.cluster.client import ClusterClient

__all__ = [
    "ClusterClient",
]
