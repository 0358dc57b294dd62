"""Inspection layer: measure node dataplane state."""

from net_remediation.inspection.inspector import DataplaneInspector, extract_mode
from net_remediation.inspection.models import NodeNetworkState, ProxyMode

__all__ = [
    "DataplaneInspector",
    "NodeNetworkState",
    "ProxyMode",
    "extract_mode",
]
