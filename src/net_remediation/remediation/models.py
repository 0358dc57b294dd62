"""Remediation actions and their per-node outcomes."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RemediationKind(str, Enum):
    """Supported corrective action types, in the order they are applied."""

    ENABLE_IP_FORWARD = "enable_ip_forward"
    LOAD_KERNEL_MODULE = "load_kernel_module"
    SET_FORWARD_POLICY_ACCEPT = "set_forward_policy_accept"
    FLUSH_IPVS_TABLE = "flush_ipvs_table"
    RESTART_PROXY_SERVICE = "restart_proxy_service"


class RemediationAction(BaseModel):
    """A single corrective step; `module` is set only for LOAD_KERNEL_MODULE."""

    model_config = ConfigDict(frozen=True)

    kind: RemediationKind
    module: str | None = None

    @model_validator(mode="after")
    def _check_module(self) -> RemediationAction:
        if (self.kind == RemediationKind.LOAD_KERNEL_MODULE) != bool(self.module):
            raise ValueError("module is required for load_kernel_module and only for it")
        return self

    @classmethod
    def enable_ip_forward(cls) -> RemediationAction:
        return cls(kind=RemediationKind.ENABLE_IP_FORWARD)

    @classmethod
    def load_kernel_module(cls, name: str) -> RemediationAction:
        return cls(kind=RemediationKind.LOAD_KERNEL_MODULE, module=name)

    @classmethod
    def set_forward_policy_accept(cls) -> RemediationAction:
        return cls(kind=RemediationKind.SET_FORWARD_POLICY_ACCEPT)

    @classmethod
    def flush_ipvs_table(cls) -> RemediationAction:
        return cls(kind=RemediationKind.FLUSH_IPVS_TABLE)

    @classmethod
    def restart_proxy_service(cls) -> RemediationAction:
        return cls(kind=RemediationKind.RESTART_PROXY_SERVICE)

    def __str__(self) -> str:
        if self.module:
            return f"{self.kind.value}({self.module})"
        return self.kind.value


class ActionVerdict(str, Enum):
    """Idempotence verdict of one action on one node."""

    CHANGED = "changed"
    ALREADY_SATISFIED = "already_satisfied"
    FAILED = "failed"
    SKIPPED = "skipped"
    PLANNED = "planned"


class ActionOutcome(BaseModel):
    """What happened when an action was considered for a node."""

    action: RemediationAction
    verdict: ActionVerdict
    message: str = Field(default="", description="Command output or reason for the verdict")


class NodeRemediation(BaseModel):
    """All outcomes of one remediation pass on one node."""

    node_id: str
    outcomes: list[ActionOutcome] = Field(default_factory=list)

    @property
    def applied(self) -> list[RemediationAction]:
        """Actions that changed the node."""
        return [o.action for o in self.outcomes if o.verdict == ActionVerdict.CHANGED]

    @property
    def failed(self) -> list[RemediationAction]:
        return [o.action for o in self.outcomes if o.verdict == ActionVerdict.FAILED]
