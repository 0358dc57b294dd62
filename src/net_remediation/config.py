"""Configuration for the network remediation engine."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Remediation kind value -> Settings flag allowing it
ACTION_FLAGS = {
    "enable_ip_forward": "enable_ip_forward",
    "load_kernel_module": "load_kernel_modules",
    "set_forward_policy_accept": "set_forward_policy",
    "flush_ipvs_table": "flush_ipvs",
    "restart_proxy_service": "restart_proxy",
}


class Settings(BaseSettings):
    """Engine settings loaded from environment and .env, overridable from the CLI."""

    model_config = SettingsConfigDict(
        env_prefix="NET_REMEDIATION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Target
    dns_service_ip: str | None = Field(
        default=None,
        description="ClusterIP of the cluster DNS service to validate against",
    )
    nodes: list[str] = Field(
        default_factory=list,
        description="Nodes to remediate, as 'name' or 'name@address'",
    )
    discover_nodes: bool = Field(
        default=False,
        description="Remediate every node reported by the cluster API instead of the nodes list",
    )

    # Kubernetes
    kubeconfig: Path | None = Field(
        default=None,
        description="Path to kubeconfig; uses in-cluster config, KUBECONFIG or default location if unset",
    )
    context: str | None = Field(default=None, description="Kubernetes context to use")

    # Node command execution
    executor: Literal["local", "ssh", "agent"] = Field(
        default="ssh",
        description="How node commands are executed: local shell, SSH, or a node-agent pod",
    )
    use_sudo: bool = Field(default=True, description="Prefix node commands with 'sudo -n'")
    ssh_user: str = Field(default="root", description="SSH username")
    ssh_key_path: Path | None = Field(default=None, description="SSH private key; agent/default keys if unset")
    ssh_port: int = Field(default=22, ge=1, le=65535)
    ssh_connect_timeout: float = Field(default=10.0, gt=0, description="SSH connect timeout in seconds")
    agent_namespace: str = Field(default="kube-system", description="Namespace of the node-agent DaemonSet")
    agent_label_selector: str = Field(
        default="app=node-agent",
        description="Label selector of the privileged node-agent pods",
    )
    agent_container: str | None = Field(default=None, description="Container to exec into (first if unset)")
    command_timeout: float = Field(default=30.0, gt=0, description="Per-command timeout in seconds")

    # Connectivity probe
    probe_namespace: str = Field(default="default", description="Namespace for the ephemeral probe pod")
    probe_image: str = Field(default="busybox:1.36", description="Image providing nslookup")
    probe_lookup_name: str = Field(
        default="kubernetes.default.svc.cluster.local",
        description="Name resolved by the probe",
    )
    probe_timeout: float = Field(default=10.0, gt=0, description="DNS lookup timeout in seconds")
    probe_ttl_seconds: int = Field(
        default=120,
        ge=10,
        description="activeDeadlineSeconds of the probe pod",
    )

    # Service proxy
    proxy_namespace: str = Field(default="kube-system")
    proxy_configmap: str = Field(default="kube-proxy")
    proxy_configmap_key: str = Field(default="config.conf")
    proxy_label_selector: str = Field(default="k8s-app=kube-proxy")
    proxy_config_path: str | None = Field(
        default=None,
        description="Read the proxy config from this node-local file instead of the ConfigMap",
    )
    proxy_restart_strategy: Literal["pod", "systemd"] = Field(
        default="pod",
        description="Restart kube-proxy by deleting its pod or via systemctl",
    )
    proxy_service_name: str = Field(default="kube-proxy", description="systemd unit for the systemd strategy")
    proxy_ready_timeout: float = Field(default=60.0, gt=0)
    proxy_log_tail_lines: int = Field(default=200, ge=1)
    dns_service_name: str | None = Field(
        default=None,
        description="DNS service name in kube-system; looked up by ClusterIP if unset",
    )
    dns_namespace: str = Field(default="kube-system")

    # Remediation
    required_modules: list[str] = Field(default_factory=lambda: ["br_netfilter", "overlay"])
    ipvs_modules: list[str] = Field(
        default_factory=lambda: ["ip_vs", "ip_vs_rr", "ip_vs_wrr", "ip_vs_sh", "nf_conntrack"],
        description="Additional modules required when kube-proxy runs in ipvs mode",
    )
    enable_ip_forward: bool = Field(default=True, description="Allow the EnableIPForward action")
    load_kernel_modules: bool = Field(default=True, description="Allow the LoadKernelModule action")
    set_forward_policy: bool = Field(default=True, description="Allow the SetForwardPolicyAccept action")
    flush_ipvs: bool = Field(default=True, description="Allow the FlushIPVSTable action")
    restart_proxy: bool = Field(default=True, description="Allow the RestartProxyService action")
    persist_changes: bool = Field(
        default=True,
        description="Persist ip_forward and module loading across reboots",
    )
    dry_run: bool = Field(default=False, description="Inspect and plan only; do not change nodes")

    # Retry loop
    max_attempts: int = Field(default=3, ge=1, le=20, description="Validation attempts before giving up")
    inter_attempt_delay: float = Field(default=10.0, ge=0, description="Seconds between attempts")
    run_timeout: float = Field(default=900.0, gt=0, description="Wall-clock ceiling for one run")
    parallel_nodes: int = Field(default=1, ge=1, description="Nodes remediated concurrently per attempt")
    skip_when_dns_unready: bool = Field(
        default=True,
        description="Skip the dataplane pass while the DNS service has no ready endpoints",
    )

    # Diagnostics
    diagnostics_dir: Path = Field(
        default=Path("artifacts/diagnostics"),
        description="Directory receiving the diagnostics archive on terminal failure",
    )
    diagnostics_timeout: float = Field(
        default=120.0,
        gt=0,
        description="Budget granted to diagnostics collection, even after run_timeout expired",
    )

    def action_enabled(self, kind: str) -> bool:
        """Return whether the given remediation kind may be applied."""
        return bool(getattr(self, ACTION_FLAGS[getattr(kind, "value", kind)]))


def get_settings(**overrides: object) -> Settings:
    """Return validated settings instance."""
    return Settings(**overrides)
