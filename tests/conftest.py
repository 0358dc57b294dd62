"""Shared fakes: in-memory nodes that interpret the engine's shell commands, and a fake cluster."""

from __future__ import annotations

import shlex
from pathlib import Path

import pytest

from net_remediation.config import Settings
from net_remediation.errors import ExecutorError
from net_remediation.execution import NodeExecutor, NodeTarget
from net_remediation.validation import ValidationResult, ValidationStatus

IPVS_HEADER = (
    "IP Virtual Server version 1.2.1 (size=4096)\n"
    "Prot LocalAddress:Port Scheduler Flags\n"
    "  -> RemoteAddress:Port           Forward Weight ActiveConn InActConn\n"
)


class FakeNode(NodeExecutor):
    """A node whose dataplane lives in memory and is driven by the same commands as a real host."""

    def __init__(
        self,
        name: str,
        ip_forward: bool = True,
        modules: tuple[str, ...] = ("br_netfilter", "overlay"),
        forward_policy: str = "ACCEPT",
        ipvs_services: int = 0,
        unloadable: tuple[str, ...] = (),
        unreachable: bool = False,
        proxy_config_file: str | None = None,
    ) -> None:
        super().__init__(NodeTarget(name=name, address=f"10.0.0.{len(name)}"), timeout=5.0)
        self.ip_forward = ip_forward
        self.modules = set(modules)
        self.forward_policy = forward_policy
        self.ipvs_services = ipvs_services
        self.unloadable = set(unloadable)
        self.unreachable = unreachable
        self.proxy_config_file = proxy_config_file
        self.commands: list[str] = []
        self.closed = False

    def _execute(self, command: str, timeout: float) -> tuple[int, str, str]:
        self.commands.append(command)
        if self.unreachable:
            raise ExecutorError(self.node.name, "connection refused")
        argv = shlex.split(command) if "|" not in command and ">" not in command else command.split()
        if command == "sysctl -n net.ipv4.ip_forward":
            return 0, "1\n" if self.ip_forward else "0\n", ""
        if command == "sysctl -w net.ipv4.ip_forward=1":
            self.ip_forward = True
            return 0, "net.ipv4.ip_forward = 1\n", ""
        if command == "ls -1 /sys/module":
            return 0, "\n".join(sorted(self.modules | {"nf_nat", "xt_conntrack"})) + "\n", ""
        if argv[:2] == ["test", "-d"]:
            return (0 if argv[2].rsplit("/", 1)[-1] in self.modules else 1), "", ""
        if argv[0] == "modprobe":
            module = argv[1]
            if module in self.unloadable:
                return 1, "", f"modprobe: FATAL: Module {module} not found in directory /lib/modules\n"
            self.modules.add(module.replace("-", "_"))
            return 0, "", ""
        if command == "iptables -S FORWARD":
            return 0, f"-P FORWARD {self.forward_policy}\n-A FORWARD -j KUBE-FORWARD\n", ""
        if command == "iptables -P FORWARD ACCEPT":
            self.forward_policy = "ACCEPT"
            return 0, "", ""
        if command == "ipvsadm -Ln":
            lines = [f"TCP  10.233.0.{i}:53 rr\n  -> 10.244.1.{i}:53 Masq 1 0 0\n" for i in range(self.ipvs_services)]
            return 0, IPVS_HEADER + "".join(lines), ""
        if command == "ipvsadm --clear":
            self.ipvs_services = 0
            return 0, "", ""
        if argv[:2] == ["systemctl", "restart"]:
            return 0, "", ""
        if argv[:2] == ["systemctl", "is-active"]:
            return 0, "active\n", ""
        if argv[0] == "cat" and self.proxy_config_file is not None:
            return 0, self.proxy_config_file, ""
        return 0, f"output of {command}\n", ""

    def close(self) -> None:
        self.closed = True

    @property
    def mutations(self) -> list[str]:
        prefixes = ("sysctl -w", "modprobe", "iptables -P", "ipvsadm --clear", "systemctl restart")
        return [c for c in self.commands if c.startswith(prefixes)]


class FakeCluster:
    """Duck-typed ClusterClient."""

    def __init__(self, proxy_config: str = "mode: iptables\n", dns_endpoints: int | None = 2) -> None:
        self.proxy_config = proxy_config
        self.dns_endpoints = dns_endpoints
        self.restarted: list[str] = []
        self.core = None

    def ping(self) -> None:
        return None

    def read_proxy_config(self) -> str:
        return self.proxy_config

    def dns_ready_endpoints(self, cluster_ip: str) -> int | None:
        return self.dns_endpoints

    def restart_proxy_pod(self, node_name: str, timeout: float, deadline: object = None) -> tuple[bool, str]:
        self.restarted.append(node_name)
        return True, f"kube-proxy restarted on {node_name}"

    def dns_service_dump(self, cluster_ip: str) -> str:
        return f"service coredns clusterIP={cluster_ip}"

    def proxy_config_dump(self) -> str:
        return self.proxy_config

    def proxy_logs(self) -> str:
        return "I1019 kube-proxy started"


class StubValidator:
    """Returns the given statuses in order, repeating the last one."""

    def __init__(self, *statuses: ValidationStatus) -> None:
        self.statuses = list(statuses) or [ValidationStatus.DNS_TIMEOUT]
        self.calls = 0

    def validate(self, target_cluster_ip: str, timeout: float | None = None) -> ValidationResult:
        status = self.statuses[min(self.calls, len(self.statuses) - 1)]
        self.calls += 1
        return ValidationResult(status=status, raw_output=f"probe {self.calls}: {status.value}")


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        dns_service_ip="10.233.0.3",
        nodes=["node1"],
        inter_attempt_delay=0,
        persist_changes=False,
        diagnostics_dir=tmp_path / "diag",
    )


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()
