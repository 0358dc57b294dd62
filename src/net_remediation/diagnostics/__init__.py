"""Diagnostics layer: post-mortem bundle on terminal failure."""

from net_remediation.diagnostics.collector import DiagnosticsCollector
from net_remediation.diagnostics.models import ClusterSnapshot, DiagnosticsBundle, NodeSnapshot

__all__ = [
    "ClusterSnapshot",
    "DiagnosticsBundle",
    "DiagnosticsCollector",
    "NodeSnapshot",
]
