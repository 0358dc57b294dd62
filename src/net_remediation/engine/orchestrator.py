"""Orchestrator: validate → inspect → remediate → re-validate, then collect diagnostics on exhaustion."""

from __future__ import annotations

import ipaddress
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack
from enum import Enum
from typing import Sequence

from pydantic import BaseModel, Field

from net_remediation.cluster import ClusterClient
from net_remediation.config import Settings
from net_remediation.deadline import Deadline
from net_remediation.diagnostics import DiagnosticsBundle, DiagnosticsCollector
from net_remediation.errors import ConfigurationError, InspectionError
from net_remediation.execution import NodeExecutor, NodeTarget, build_executor
from net_remediation.inspection import DataplaneInspector, NodeNetworkState
from net_remediation.remediation import ActionOutcome, NodeRemediation, RemediationEngine
from net_remediation.validation import ConnectivityValidator, ValidationResult

logger = logging.getLogger(__name__)


class EngineOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class Attempt(BaseModel):
    """One remediation cycle: the failing validation, what was measured and done, and the re-validation."""

    index: int
    pre_validation: ValidationResult
    node_states: dict[str, NodeNetworkState] = Field(default_factory=dict)
    actions_applied: dict[str, list[ActionOutcome]] = Field(default_factory=dict)
    node_errors: dict[str, str] = Field(default_factory=dict)
    skipped_reason: str | None = None
    post_validation: ValidationResult | None = None


class EngineResult(BaseModel):
    """Result of a full engine run."""

    outcome: EngineOutcome
    attempts: list[Attempt] = Field(default_factory=list)
    final_validation: ValidationResult | None = None
    bundle: DiagnosticsBundle | None = None
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome == EngineOutcome.SUCCESS

    @property
    def archive_path(self) -> str | None:
        return self.bundle.archive_path if self.bundle else None


def check_target(target_cluster_ip: str | None) -> str:
    """Return the normalised target address or raise ConfigurationError."""
    if not target_cluster_ip:
        raise ConfigurationError("No DNS service ClusterIP configured")
    try:
        return str(ipaddress.ip_address(target_cluster_ip.strip()))
    except ValueError as e:
        raise ConfigurationError(f"Invalid DNS service ClusterIP: {target_cluster_ip!r}") from e


class RetryController:
    """Drives the bounded validate/remediate cycle for one invocation."""

    def __init__(
        self,
        validator: ConnectivityValidator,
        inspector: DataplaneInspector,
        engine: RemediationEngine,
        collector: DiagnosticsCollector,
        settings: Settings,
        deadline: Deadline | None = None,
        cluster: ClusterClient | None = None,
    ) -> None:
        self.validator = validator
        self.inspector = inspector
        self.engine = engine
        self.collector = collector
        self.settings = settings
        self.deadline = deadline or Deadline(settings.run_timeout)
        self.cluster = cluster

    def run(
        self,
        target_cluster_ip: str | None,
        nodes: Sequence[NodeExecutor],
        max_attempts: int | None = None,
        inter_attempt_delay: float | None = None,
    ) -> EngineResult:
        """
        Validate; on failure inspect and remediate every node and validate again,
        until success or max_attempts validations have failed.
        """
        target = check_target(target_cluster_ip)
        if not nodes:
            raise ConfigurationError("No nodes supplied")
        max_attempts = max_attempts if max_attempts is not None else self.settings.max_attempts
        delay = inter_attempt_delay if inter_attempt_delay is not None else self.settings.inter_attempt_delay
        if max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be >= 1, got {max_attempts}")

        self.deadline.restart()
        attempts: list[Attempt] = []
        current: Attempt | None = None
        attempt = 0
        while True:
            self.deadline.check_cancelled()
            result = self.validator.validate(target, self.settings.probe_timeout)
            if current is not None:
                current.post_validation = result
                self._log_attempt(current)
            if result.ok:
                logger.info("DNS service %s reachable after %d remediation attempt(s)", target, len(attempts))
                return EngineResult(outcome=EngineOutcome.SUCCESS, attempts=attempts, final_validation=result)
            attempt += 1
            if attempt >= max_attempts:
                reason = f"validation still failing ({result.status.value}) after {attempt} attempt(s)"
                break
            if self.deadline.expired():
                reason = f"deadline exceeded after {attempt} attempt(s)"
                break
            current = Attempt(index=attempt, pre_validation=result)
            attempts.append(current)
            self._remediation_pass(current, target, nodes)
            self.deadline.wait(delay)

        logger.error("Remediation failed: %s; collecting diagnostics", reason)
        self.deadline.extend(self.settings.diagnostics_timeout)
        bundle = self.collector.collect(nodes, target, attempts)
        return EngineResult(
            outcome=EngineOutcome.FAILED,
            attempts=attempts,
            final_validation=result,
            bundle=bundle,
            reason=reason,
        )

    def _remediation_pass(self, attempt: Attempt, target: str, nodes: Sequence[NodeExecutor]) -> None:
        if self.settings.skip_when_dns_unready and self.cluster is not None:
            ready = self.cluster.dns_ready_endpoints(target)
            if ready == 0:
                attempt.skipped_reason = "DNS service has no ready endpoints; dataplane remediation cannot help"
                logger.error("attempt=%d %s", attempt.index, attempt.skipped_reason)
                return

        workers = min(self.settings.parallel_nodes, len(nodes))
        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="remediate") as pool:
                passes = list(pool.map(self._node_pass, nodes))
        else:
            passes = [self._node_pass(node) for node in nodes]

        for name, state, report, error in passes:
            if error is not None:
                attempt.node_errors[name] = error
                continue
            if state is not None:
                attempt.node_states[name] = state
            if report is not None:
                attempt.actions_applied[name] = report.outcomes

    def _node_pass(
        self, node: NodeExecutor
    ) -> tuple[str, NodeNetworkState | None, NodeRemediation | None, str | None]:
        """Measure fresh state and remediate one node."""
        name = node.node.name
        try:
            state = self.inspector.inspect(node)
        except InspectionError as e:
            logger.warning("[%s] %s; skipping node this attempt", name, e)
            return name, None, None, str(e)
        return name, state, self.engine.remediate(node, state), None

    def _log_attempt(self, attempt: Attempt) -> None:
        post = attempt.post_validation.status.value if attempt.post_validation else "-"
        logger.info(
            "attempt=%d pre=%s post=%s nodes=%d errors=%d",
            attempt.index,
            attempt.pre_validation.status.value,
            post,
            len(attempt.node_states),
            len(attempt.node_errors),
        )
        for node_id, outcomes in attempt.actions_applied.items():
            for o in outcomes:
                logger.info("attempt=%d node=%s action=%s verdict=%s", attempt.index, node_id, o.action, o.verdict.value)


def resolve_nodes(settings: Settings, cluster: ClusterClient | None) -> list[NodeTarget]:
    """Nodes from settings, or discovered from the cluster when discover_nodes is set."""
    if settings.discover_nodes:
        if cluster is None:
            raise ConfigurationError("Node discovery requires cluster access")
        nodes = cluster.list_nodes()
    else:
        try:
            nodes = [NodeTarget.parse(spec) for spec in settings.nodes if spec.strip()]
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
    if not nodes:
        raise ConfigurationError("No nodes supplied")
    return nodes


def run_engine(
    settings: Settings,
    cancel_event: threading.Event | None = None,
    cluster: ClusterClient | None = None,
) -> EngineResult:
    """
    Build every component from settings and run one invocation.
    Raises ConfigurationError before the loop and EngineCancelled on cancellation.
    """
    target = check_target(settings.dns_service_ip)
    if not settings.discover_nodes and not any(s.strip() for s in settings.nodes):
        raise ConfigurationError("No nodes supplied")
    deadline = Deadline(settings.run_timeout, cancel_event)
    cluster = cluster or ClusterClient(settings)
    cluster.ping()
    nodes = resolve_nodes(settings, cluster)
    logger.info("Validating %s from %d node(s): %s", target, len(nodes), ", ".join(n.name for n in nodes))

    with ExitStack() as stack:
        executors = [
            stack.enter_context(build_executor(node, settings, core=cluster.core, deadline=deadline))
            for node in nodes
        ]
        controller = RetryController(
            validator=ConnectivityValidator(cluster, settings, deadline=deadline),
            inspector=DataplaneInspector(settings, cluster),
            engine=RemediationEngine(settings, cluster, deadline=deadline),
            collector=DiagnosticsCollector(settings, cluster),
            settings=settings,
            deadline=deadline,
            cluster=cluster,
        )
        return controller.run(target, executors)
