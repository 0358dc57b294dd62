"""Read-only measurement of a node's dataplane: proxy mode, forwarding, modules, firewall, IPVS."""

from __future__ import annotations

import logging
import re
import shlex

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from net_remediation.cluster import ClusterClient
from net_remediation.config import Settings
from net_remediation.errors import ExecutorError, InspectionError
from net_remediation.execution import NodeExecutor
from net_remediation.inspection.models import NodeNetworkState, ProxyMode

logger = logging.getLogger(__name__)

IP_FORWARD_READ = "sysctl -n net.ipv4.ip_forward"
MODULES_READ = "ls -1 /sys/module"
FORWARD_POLICY_READ = "iptables -S FORWARD"
IPVS_READ = "ipvsadm -Ln"

# Top-level `mode:` key, JSON or YAML, value optionally quoted
_MODE_RE = re.compile(r"""^\s*["']?mode["']?\s*:\s*["']?([A-Za-z0-9_-]*)["']?\s*,?\s*(?:#.*)?$""", re.MULTILINE)
_POLICY_RE = re.compile(r"^-P\s+FORWARD\s+(\w+)", re.MULTILINE)
_IPVS_SERVICE_RE = re.compile(r"^(?:TCP|UDP|SCTP|FWM)\s+\S+", re.MULTILINE)


def extract_mode(config_text: str | None) -> ProxyMode:
    """
    Extract the kube-proxy mode from its configuration text.

    A missing config, a missing `mode:` line or an empty value all resolve to
    iptables, kube-proxy's own default. A value that is present but neither
    iptables nor ipvs resolves to unknown. Never raises.
    """
    match = _MODE_RE.search(config_text or "")
    value = match.group(1).strip().lower() if match else ""
    if not value:
        return ProxyMode.IPTABLES
    try:
        mode = ProxyMode(value)
    except ValueError:
        return ProxyMode.UNKNOWN
    return mode


def normalize_module(name: str) -> str:
    """/sys/module spells module names with underscores."""
    return name.strip().replace("-", "_")


def parse_ip_forward(output: str) -> bool:
    return output.strip() == "1"


def parse_loaded_modules(output: str) -> set[str]:
    return {normalize_module(line) for line in output.splitlines() if line.strip()}


def parse_forward_policy(output: str) -> str | None:
    """Return the FORWARD chain policy from `iptables -S FORWARD`, e.g. 'ACCEPT'."""
    match = _POLICY_RE.search(output)
    return match.group(1).upper() if match else None


def count_ipvs_services(output: str) -> int:
    """Count virtual services listed by `ipvsadm -Ln`."""
    return len(_IPVS_SERVICE_RE.findall(output))


class DataplaneInspector:
    """Measures NodeNetworkState without mutating the node."""

    def __init__(self, settings: Settings, cluster: ClusterClient | None = None) -> None:
        self.settings = settings
        self.cluster = cluster

    def read_proxy_config(self, node: NodeExecutor) -> str:
        """Proxy config text from the node-local file or the cluster ConfigMap; '' if unavailable."""
        path = self.settings.proxy_config_path
        if path:
            result = node.run(f"cat {shlex.quote(path)}")
            if not result.ok:
                logger.warning("[%s] Cannot read %s: %s", node.node.name, path, result.stderr.strip())
                return ""
            return result.stdout
        if self.cluster is None:
            return ""
        try:
            return self.cluster.read_proxy_config()
        except (ApiException, HTTPError) as e:
            logger.warning("[%s] Cannot read kube-proxy config from the cluster: %s", node.node.name, e)
            return ""

    def required_modules(self, mode: ProxyMode) -> tuple[str, ...]:
        modules = list(self.settings.required_modules)
        if mode == ProxyMode.IPVS:
            modules.extend(self.settings.ipvs_modules)
        seen: dict[str, None] = {}
        for m in modules:
            seen.setdefault(normalize_module(m), None)
        return tuple(seen)

    def inspect(self, node: NodeExecutor) -> NodeNetworkState:
        """Measure the node's dataplane. Raises InspectionError if the node cannot be reached."""
        name = node.node.name
        try:
            config_text = self.read_proxy_config(node)
            mode = extract_mode(config_text)
            if not _MODE_RE.search(config_text or ""):
                logger.info("[%s] No 'mode:' in kube-proxy config; assuming iptables", name)
            elif mode == ProxyMode.UNKNOWN:
                logger.warning("[%s] Unsupported kube-proxy mode in config; IPVS checks disabled", name)

            fwd = node.run(IP_FORWARD_READ)
            if not fwd.ok:
                logger.warning("[%s] Cannot read ip_forward; treating as disabled", name)
            ip_forward = fwd.ok and parse_ip_forward(fwd.stdout)

            required = self.required_modules(mode)
            mods = node.run(MODULES_READ)
            if not mods.ok:
                logger.warning("[%s] Cannot list /sys/module; treating modules as missing", name)
            loaded = parse_loaded_modules(mods.stdout) if mods.ok else set()

            policy_out = node.run(FORWARD_POLICY_READ)
            policy = parse_forward_policy(policy_out.stdout) if policy_out.ok else None
            if policy is None:
                logger.warning("[%s] Cannot determine FORWARD policy; treating as not ACCEPT", name)

            ipvs_entries = 0
            if mode == ProxyMode.IPVS:
                ipvs = node.run(IPVS_READ)
                if ipvs.ok:
                    ipvs_entries = count_ipvs_services(ipvs.stdout)
                else:
                    logger.warning("[%s] ipvsadm unavailable; cannot count IPVS entries", name)
        except ExecutorError as e:
            raise InspectionError(f"Cannot inspect {name}: {e}") from e

        state = NodeNetworkState(
            node_id=name,
            proxy_mode=mode,
            ip_forward_enabled=ip_forward,
            required_modules=required,
            required_modules_loaded=frozenset(m for m in required if m in loaded),
            forward_policy_accept=policy == "ACCEPT",
            ipvs_entry_count=ipvs_entries,
        )
        logger.info("[%s] Inspected: %s", name, state.summary())
        return state
