"""Measured dataplane state of one node."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ProxyMode(str, Enum):
    """kube-proxy backend."""

    IPTABLES = "iptables"
    IPVS = "ipvs"
    UNKNOWN = "unknown"


class NodeNetworkState(BaseModel):
    """Snapshot of one node's dataplane, measured at the start of a remediation pass."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    proxy_mode: ProxyMode = ProxyMode.IPTABLES
    ip_forward_enabled: bool
    required_modules: tuple[str, ...] = ()
    required_modules_loaded: frozenset[str] = frozenset()
    forward_policy_accept: bool
    ipvs_entry_count: int = 0
    observed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def missing_modules(self) -> list[str]:
        """Required modules not loaded, in required order."""
        return [m for m in self.required_modules if m not in self.required_modules_loaded]

    @property
    def needs_ipvs_flush(self) -> bool:
        return self.proxy_mode == ProxyMode.IPVS and self.ipvs_entry_count > 0

    @property
    def compliant(self) -> bool:
        return (
            self.ip_forward_enabled
            and not self.missing_modules
            and self.forward_policy_accept
            and not self.needs_ipvs_flush
        )

    def summary(self) -> str:
        return (
            f"mode={self.proxy_mode.value} ip_forward={int(self.ip_forward_enabled)} "
            f"missing_modules={','.join(self.missing_modules) or '-'} "
            f"forward_accept={int(self.forward_policy_accept)} ipvs_entries={self.ipvs_entry_count}"
        )
