"""Best-effort collection of cluster and node state into a compressed archive."""

from __future__ import annotations

import io
import json
import logging
import tarfile
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Sequence

from pydantic import BaseModel

from net_remediation.cluster import ClusterClient
from net_remediation.config import Settings
from net_remediation.diagnostics.models import ClusterSnapshot, DiagnosticsBundle, NodeSnapshot
from net_remediation.execution import NodeExecutor

logger = logging.getLogger(__name__)

NODE_COMMANDS = {
    "sysctls": (
        "sysctl -e net.ipv4.ip_forward net.bridge.bridge-nf-call-iptables "
        "net.bridge.bridge-nf-call-ip6tables net.ipv4.conf.all.rp_filter"
    ),
    "firewall_rules": "iptables-save",
    "ipvs_table": "ipvsadm -Ln",
    "interfaces": "ip addr",
    "routes": "ip route",
    "resolv_conf": "cat /etc/resolv.conf",
    "modules": "lsmod",
}

ARCHIVE_PREFIX = "net-remediation-diag"


class DiagnosticsCollector:
    """Gathers a DiagnosticsBundle; no single failing collector aborts the rest."""

    def __init__(self, settings: Settings, cluster: ClusterClient | None = None) -> None:
        self.settings = settings
        self.cluster = cluster

    def collect(
        self,
        nodes: Sequence[NodeExecutor],
        target_cluster_ip: str,
        attempts: Sequence[BaseModel] = (),
    ) -> DiagnosticsBundle:
        """Collect everything, write the archive, and return the bundle."""
        created_at = datetime.now(timezone.utc)
        errors: dict[str, str] = {}

        def capture(key: str, fn: Callable[[], str]) -> str:
            try:
                return fn()
            except Exception as e:
                logger.warning("Diagnostics collector %s failed: %s", key, e)
                errors[key] = f"{type(e).__name__}: {e}"
                return ""

        cluster_snapshot = ClusterSnapshot()
        if self.cluster is not None:
            cluster = self.cluster
            cluster_snapshot = ClusterSnapshot(
                dns_service_config=capture("cluster/dns_service", lambda: cluster.dns_service_dump(target_cluster_ip)),
                proxy_config=capture("cluster/proxy_config", cluster.proxy_config_dump),
                proxy_logs=capture("cluster/proxy_logs", cluster.proxy_logs),
            )
        else:
            errors["cluster"] = "no cluster access"

        per_node: dict[str, NodeSnapshot] = {}
        for node in nodes:
            fields = {}
            for key, command in NODE_COMMANDS.items():
                fields[key] = capture(f"{node.node.name}/{key}", _command_capture(node, command, errors, key))
            per_node[node.node.name] = NodeSnapshot(**fields)

        archive_path = self._archive_path(created_at)
        bundle = DiagnosticsBundle(
            created_at=created_at,
            target_cluster_ip=target_cluster_ip,
            cluster_snapshot=cluster_snapshot,
            per_node_snapshots=per_node,
            archive_path=str(archive_path),
            errors=errors,
        )
        try:
            self._write_archive(archive_path, bundle, attempts)
        except OSError as e:
            fallback = Path(tempfile.gettempdir()) / archive_path.name
            logger.warning("Cannot write %s (%s); falling back to %s", archive_path, e, fallback)
            try:
                self._write_archive(fallback, bundle, attempts)
            except OSError as e2:
                logger.error("Diagnostics archive could not be written: %s", e2)
                errors["archive"] = f"{type(e2).__name__}: {e2}"
                return bundle.model_copy(update={"errors": errors})
            return bundle.model_copy(update={"archive_path": str(fallback)})
        logger.info("Diagnostics archive written to %s", archive_path)
        return bundle

    def _archive_path(self, created_at: datetime) -> Path:
        base = Path(self.settings.diagnostics_dir)
        stamp = created_at.strftime("%Y%m%dT%H%M%SZ")
        path = base / f"{ARCHIVE_PREFIX}-{stamp}.tar.gz"
        n = 1
        while path.exists():
            path = base / f"{ARCHIVE_PREFIX}-{stamp}-{n}.tar.gz"
            n += 1
        return path

    def _write_archive(self, path: Path, bundle: DiagnosticsBundle, attempts: Sequence[BaseModel]) -> None:
        root = path.name[: -len(".tar.gz")]
        files: dict[str, str] = {
            "SUMMARY.md": bundle.to_summary_text(),
            "cluster/dns-service.txt": bundle.cluster_snapshot.dns_service_config,
            "cluster/kube-proxy-config.txt": bundle.cluster_snapshot.proxy_config,
            "cluster/kube-proxy-logs.txt": bundle.cluster_snapshot.proxy_logs,
            "attempts.json": json.dumps([a.model_dump(mode="json") for a in attempts], indent=2),
            "errors.json": json.dumps(bundle.errors, indent=2),
        }
        for name, snap in bundle.per_node_snapshots.items():
            for key, value in snap.model_dump().items():
                files[f"nodes/{name}/{key}.txt"] = value
        path.parent.mkdir(parents=True, exist_ok=True)
        mtime = int(bundle.created_at.timestamp())
        with tarfile.open(path, mode="w:gz") as tar:
            for rel_path, text in files.items():
                data = text.encode("utf-8")
                info = tarfile.TarInfo(name=f"{root}/{rel_path}")
                info.size = len(data)
                info.mtime = mtime
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(data))


def _command_capture(node: NodeExecutor, command: str, errors: dict[str, str], key: str) -> Callable[[], str]:
    """Run a node command, keeping its output even when it exits non-zero."""

    def run() -> str:
        result = node.run(command)
        if not result.ok:
            errors[f"{node.node.name}/{key}"] = f"exit {result.exit_code}: {result.stderr.strip()}"
        return result.output

    return run
