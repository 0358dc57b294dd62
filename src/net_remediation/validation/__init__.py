"""Validation layer: probe in-cluster DNS reachability."""

from net_remediation.validation.models import ValidationResult, ValidationStatus
from net_remediation.validation.probe import ConnectivityValidator, classify_probe_output

__all__ = [
    "ConnectivityValidator",
    "ValidationResult",
    "ValidationStatus",
    "classify_probe_output",
]
