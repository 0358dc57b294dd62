"""Plan and apply idempotent dataplane corrections on one node."""

from __future__ import annotations

import logging
import shlex

from net_remediation.cluster import ClusterClient
from net_remediation.config import Settings
from net_remediation.deadline import Deadline
from net_remediation.errors import ExecutorError
from net_remediation.execution import NodeExecutor, node_lock
from net_remediation.inspection.inspector import (
    FORWARD_POLICY_READ,
    IP_FORWARD_READ,
    IPVS_READ,
    count_ipvs_services,
    normalize_module,
    parse_forward_policy,
    parse_ip_forward,
)
from net_remediation.inspection.models import NodeNetworkState
from net_remediation.remediation.models import (
    ActionOutcome,
    ActionVerdict,
    NodeRemediation,
    RemediationAction,
    RemediationKind,
)

logger = logging.getLogger(__name__)

SYSCTL_PERSIST_FILE = "/etc/sysctl.d/99-kubernetes-net.conf"
MODULES_PERSIST_FILE = "/etc/modules-load.d/kubernetes.conf"


def plan_actions(state: NodeNetworkState) -> list[RemediationAction]:
    """
    Corrective actions for a measured state, in application order.

    RestartProxyService is not part of the plan: it is appended by the engine
    only when one of these actions actually changed the node.
    """
    actions: list[RemediationAction] = []
    if not state.ip_forward_enabled:
        actions.append(RemediationAction.enable_ip_forward())
    for module in state.missing_modules:
        actions.append(RemediationAction.load_kernel_module(module))
    if not state.forward_policy_accept:
        actions.append(RemediationAction.set_forward_policy_accept())
    if state.needs_ipvs_flush:
        actions.append(RemediationAction.flush_ipvs_table())
    return actions


class RemediationEngine:
    """Applies the decision table to one node, re-checking every precondition live."""

    def __init__(
        self, settings: Settings, cluster: ClusterClient | None = None, deadline: Deadline | None = None
    ) -> None:
        self.settings = settings
        self.cluster = cluster
        self.deadline = deadline

    def remediate(self, node: NodeExecutor, state: NodeNetworkState) -> NodeRemediation:
        """
        Apply the actions needed by state. Failures are recorded and do not stop
        the remaining actions. Returns every outcome; `.applied` lists the changes.
        """
        name = node.node.name
        report = NodeRemediation(node_id=name)
        with node_lock(name):
            for action in plan_actions(state):
                report.outcomes.append(self._apply(node, action))
            touched = {ActionVerdict.CHANGED, ActionVerdict.PLANNED}
            if any(o.verdict in touched for o in report.outcomes):
                report.outcomes.append(self._apply(node, RemediationAction.restart_proxy_service()))
        for outcome in report.outcomes:
            log = logger.warning if outcome.verdict == ActionVerdict.FAILED else logger.info
            log("[%s] %s: %s %s", name, outcome.action, outcome.verdict.value, outcome.message)
        return report

    def _apply(self, node: NodeExecutor, action: RemediationAction) -> ActionOutcome:
        if not self.settings.action_enabled(action.kind):
            return ActionOutcome(action=action, verdict=ActionVerdict.SKIPPED, message="disabled by configuration")
        try:
            if self._satisfied(node, action):
                return ActionOutcome(action=action, verdict=ActionVerdict.ALREADY_SATISFIED)
            if self.settings.dry_run:
                return ActionOutcome(action=action, verdict=ActionVerdict.PLANNED, message="dry run")
            ok, message = self._perform(node, action)
            if action.kind == RemediationKind.RESTART_PROXY_SERVICE:
                converged = ok
            else:
                converged = self._satisfied(node, action)
        except ExecutorError as e:
            return ActionOutcome(action=action, verdict=ActionVerdict.FAILED, message=str(e))
        if not converged:
            return ActionOutcome(action=action, verdict=ActionVerdict.FAILED, message=message or "did not converge")
        if self.settings.persist_changes:
            self._persist(node, action)
        return ActionOutcome(action=action, verdict=ActionVerdict.CHANGED, message=message)

    def _satisfied(self, node: NodeExecutor, action: RemediationAction) -> bool:
        """Live check of the action's target state."""
        if action.kind == RemediationKind.ENABLE_IP_FORWARD:
            result = node.run(IP_FORWARD_READ)
            return result.ok and parse_ip_forward(result.stdout)
        if action.kind == RemediationKind.LOAD_KERNEL_MODULE:
            module = normalize_module(action.module or "")
            return node.run(f"test -d /sys/module/{shlex.quote(module)}").ok
        if action.kind == RemediationKind.SET_FORWARD_POLICY_ACCEPT:
            result = node.run(FORWARD_POLICY_READ)
            return result.ok and parse_forward_policy(result.stdout) == "ACCEPT"
        if action.kind == RemediationKind.FLUSH_IPVS_TABLE:
            result = node.run(IPVS_READ)
            return result.ok and count_ipvs_services(result.stdout) == 0
        # A restart always does work
        return False

    def _perform(self, node: NodeExecutor, action: RemediationAction) -> tuple[bool, str]:
        """Run the corrective command. Returns (success, message)."""
        if action.kind == RemediationKind.ENABLE_IP_FORWARD:
            result = node.run("sysctl -w net.ipv4.ip_forward=1")
        elif action.kind == RemediationKind.LOAD_KERNEL_MODULE:
            result = node.run(f"modprobe {shlex.quote(action.module or '')}")
        elif action.kind == RemediationKind.SET_FORWARD_POLICY_ACCEPT:
            result = node.run("iptables -P FORWARD ACCEPT")
        elif action.kind == RemediationKind.FLUSH_IPVS_TABLE:
            result = node.run("ipvsadm --clear")
        elif action.kind == RemediationKind.RESTART_PROXY_SERVICE:
            return self._restart_proxy(node)
        else:
            return False, f"Unsupported action kind: {action.kind}"
        return result.ok, result.output

    def _restart_proxy(self, node: NodeExecutor) -> tuple[bool, str]:
        s = self.settings
        if s.proxy_restart_strategy == "pod":
            if self.cluster is None:
                return False, "pod restart strategy requires cluster access"
            deadline = self.deadline or node.deadline
            return self.cluster.restart_proxy_pod(node.node.name, s.proxy_ready_timeout, deadline=deadline)
        unit = shlex.quote(s.proxy_service_name)
        restarted = node.run(f"systemctl restart {unit}", timeout=s.proxy_ready_timeout)
        if not restarted.ok:
            return False, restarted.output
        active = node.run(f"systemctl is-active {unit}")
        return active.ok, active.stdout.strip() or active.output

    def _persist(self, node: NodeExecutor, action: RemediationAction) -> None:
        """Make a converged change survive a reboot; failures only warn."""
        if action.kind == RemediationKind.ENABLE_IP_FORWARD:
            command = f"printf 'net.ipv4.ip_forward = 1\\n' > {SYSCTL_PERSIST_FILE}"
        elif action.kind == RemediationKind.LOAD_KERNEL_MODULE:
            module = shlex.quote(action.module or "")
            command = (
                f"grep -qx {module} {MODULES_PERSIST_FILE} 2>/dev/null || "
                f"echo {module} >> {MODULES_PERSIST_FILE}"
            )
        else:
            return
        try:
            result = node.run(command)
        except ExecutorError as e:
            logger.warning("[%s] Could not persist %s: %s", node.node.name, action, e)
            return
        if not result.ok:
            logger.warning("[%s] Could not persist %s: %s", node.node.name, action, result.output)
