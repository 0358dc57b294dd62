"""Remediation layer: apply corrective dataplane actions on nodes."""

from net_remediation.remediation.actions import RemediationEngine, plan_actions
from net_remediation.remediation.models import (
    ActionOutcome,
    ActionVerdict,
    NodeRemediation,
    RemediationAction,
    RemediationKind,
)

__all__ = [
    "ActionOutcome",
    "ActionVerdict",
    "NodeRemediation",
    "RemediationAction",
    "RemediationEngine",
    "RemediationKind",
    "plan_actions",
]
