"""Validate in-cluster DNS reachability with an ephemeral probe pod."""

from __future__ import annotations

import logging
import re
import time
import uuid
from contextlib import contextmanager
from typing import Iterator

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from net_remediation.cluster import ClusterClient
from net_remediation.config import Settings
from net_remediation.deadline import Deadline
from net_remediation.validation.models import ValidationResult, ValidationStatus

logger = logging.getLogger(__name__)

PROBE_LABELS = {"app.kubernetes.io/name": "net-remediation-probe"}
EXIT_MARKER = "probe-exit="
# busybox timeout exits 143 (SIGTERM), coreutils timeout exits 124
TIMEOUT_EXIT_CODES = {124, 143}
# Extra time a running probe gets beyond the lookup timeout before it counts as timed out
RUNNING_GRACE_SECONDS = 10.0

_EXIT_RE = re.compile(rf"{EXIT_MARKER}(\d+)")
_ANSWER_RE = re.compile(r"^Name:\s*\S+\s*\n\s*Address(?:\s+\d+)?:\s*\S+", re.MULTILINE | re.IGNORECASE)


def build_probe_pod(name: str, target_cluster_ip: str, settings: Settings, timeout: float) -> client.V1Pod:
    """Pod spec running one bounded nslookup against the DNS ClusterIP."""
    script = (
        f"timeout {max(1, int(timeout))} nslookup {settings.probe_lookup_name} {target_cluster_ip}; "
        f"echo {EXIT_MARKER}$?"
    )
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=name, labels=dict(PROBE_LABELS)),
        spec=client.V1PodSpec(
            restart_policy="Never",
            active_deadline_seconds=settings.probe_ttl_seconds,
            termination_grace_period_seconds=0,
            automount_service_account_token=False,
            containers=[
                client.V1Container(
                    name="probe",
                    image=settings.probe_image,
                    command=["sh", "-c", script],
                )
            ],
        ),
    )


@contextmanager
def probe_pod(cluster: ClusterClient, namespace: str, body: client.V1Pod) -> Iterator[str]:
    """Create the probe pod and delete it on every exit path."""
    name = body.metadata.name
    cluster.create_pod(namespace, body)
    logger.debug("Created probe pod %s/%s", namespace, name)
    try:
        yield name
    finally:
        try:
            cluster.delete_pod(name, namespace)
            logger.debug("Deleted probe pod %s/%s", namespace, name)
        except (ApiException, HTTPError) as e:
            # activeDeadlineSeconds still bounds the pod's lifetime
            logger.error("Failed to delete probe pod %s/%s: %s", namespace, name, e)


def parse_exit_code(output: str) -> int | None:
    match = _EXIT_RE.search(output)
    return int(match.group(1)) if match else None


def classify_probe_output(output: str, exit_code: int | None = None) -> ValidationStatus:
    """
    Map raw nslookup output to a ValidationStatus.

    Any received DNS response counts as success (including NXDOMAIN); anything that
    cannot be classified cleanly is UNKNOWN, never SUCCESS.
    """
    if exit_code is None:
        exit_code = parse_exit_code(output)
    text = output.lower()
    has_answer = bool(_ANSWER_RE.search(output))

    if has_answer and exit_code == 0:
        return ValidationStatus.SUCCESS
    if "no route to host" in text or "network is unreachable" in text or "network unreachable" in text:
        return ValidationStatus.NO_ROUTE
    if "connection refused" in text or "connection reset" in text:
        return ValidationStatus.DNS_REFUSED
    if "timed out" in text or "no servers could be reached" in text or exit_code in TIMEOUT_EXIT_CODES:
        return ValidationStatus.DNS_TIMEOUT
    if "nxdomain" in text or has_answer:
        return ValidationStatus.SUCCESS
    return ValidationStatus.UNKNOWN


class ConnectivityValidator:
    """Launches a probe pod per call and classifies its DNS lookup."""

    def __init__(
        self,
        cluster: ClusterClient,
        settings: Settings,
        deadline: Deadline | None = None,
        poll_interval: float = 1.0,
    ) -> None:
        self.cluster = cluster
        self.settings = settings
        self.deadline = deadline
        self.poll_interval = poll_interval

    def validate(self, target_cluster_ip: str, timeout: float | None = None) -> ValidationResult:
        """Run one probe against target_cluster_ip and return a fresh ValidationResult."""
        timeout = timeout or self.settings.probe_timeout
        namespace = self.settings.probe_namespace
        body = build_probe_pod(f"net-probe-{uuid.uuid4().hex[:8]}", target_cluster_ip, self.settings, timeout)
        try:
            with probe_pod(self.cluster, namespace, body) as name:
                status, raw = self._await_probe(name, namespace, timeout)
        except (ApiException, HTTPError) as e:
            logger.warning("Probe pod API error: %s", e)
            status, raw = ValidationStatus.UNKNOWN, f"probe pod API error: {e}"
        logger.info("Validation against %s: %s", target_cluster_ip, status.value)
        return ValidationResult(status=status, raw_output=raw)

    def _await_probe(self, name: str, namespace: str, timeout: float) -> tuple[ValidationStatus, str]:
        started = time.monotonic()
        running_since: float | None = None
        limit = float(self.settings.probe_ttl_seconds)
        if self.deadline is not None:
            limit = self.deadline.clamp(limit)
        while True:
            if self.deadline is not None:
                self.deadline.check_cancelled()
            pod = self.cluster.read_pod(name, namespace)
            phase = getattr(pod.status, "phase", None) or "Unknown"
            if phase in ("Succeeded", "Failed"):
                output = self.cluster.read_pod_log(name, namespace)
                if not output.strip() and getattr(pod.status, "reason", None) == "DeadlineExceeded":
                    return ValidationStatus.DNS_TIMEOUT, "probe pod exceeded its active deadline"
                return classify_probe_output(output), output
            now = time.monotonic()
            if phase == "Running":
                running_since = running_since or now
                if now - running_since > timeout + RUNNING_GRACE_SECONDS:
                    return ValidationStatus.DNS_TIMEOUT, f"probe still running after {now - running_since:.0f}s"
            if now - started > limit:
                return ValidationStatus.UNKNOWN, f"probe pod did not complete (phase={phase}) within {limit:.0f}s"
            time.sleep(self.poll_interval)
