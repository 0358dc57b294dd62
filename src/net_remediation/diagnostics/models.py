"""Structured diagnostics captured on terminal failure."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class ClusterSnapshot(BaseModel):
    """Cluster-level state relevant to DNS reachability."""

    dns_service_config: str = ""
    proxy_config: str = ""
    proxy_logs: str = ""


class NodeSnapshot(BaseModel):
    """Raw command output captured from one node."""

    sysctls: str = ""
    firewall_rules: str = ""
    ipvs_table: str = ""
    interfaces: str = ""
    routes: str = ""
    resolv_conf: str = ""
    modules: str = ""


class DiagnosticsBundle(BaseModel):
    """Post-mortem bundle; written once and never mutated."""

    model_config = ConfigDict(frozen=True)

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    target_cluster_ip: str
    cluster_snapshot: ClusterSnapshot = Field(default_factory=ClusterSnapshot)
    per_node_snapshots: dict[str, NodeSnapshot] = Field(default_factory=dict)
    archive_path: str
    errors: dict[str, str] = Field(
        default_factory=dict,
        description="collector name -> error, for collectors that failed",
    )

    def to_summary_text(self) -> str:
        """Render the bundle index as markdown, stored as SUMMARY.md in the archive."""
        lines = [
            f"# Network diagnostics (target={self.target_cluster_ip}, created_at={self.created_at.isoformat()})",
            "",
            "## Nodes",
        ]
        for name, snap in self.per_node_snapshots.items():
            captured = [k for k, v in snap.model_dump().items() if v]
            lines.append(f"- {name}: {', '.join(captured) or '(nothing captured)'}")
        lines.extend(["", "## Cluster"])
        for key, value in self.cluster_snapshot.model_dump().items():
            lines.append(f"- {key}: {'captured' if value else 'missing'}")
        if self.errors:
            lines.extend(["", "## Collector errors"])
            for key, err in self.errors.items():
                lines.append(f"- {key}: {err}")
        return "\n".join(lines)
