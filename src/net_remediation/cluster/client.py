"""Kubernetes API boundary: probe pods, kube-proxy, DNS service and node discovery."""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from net_remediation.config import Settings
from net_remediation.deadline import Deadline
from net_remediation.errors import ConfigurationError
from net_remediation.execution.models import NodeTarget

logger = logging.getLogger(__name__)

READY_POLL_INTERVAL = 2.0


def _load_kube_config(kubeconfig_path: str | None, context: str | None) -> client.Configuration:
    """Load in-cluster or kubeconfig-based configuration."""
    try:
        config.load_incluster_config()
        return client.Configuration.get_default_copy()
    except config.ConfigException:
        pass
    kwargs: dict[str, Any] = {}
    if kubeconfig_path:
        kwargs["config_file"] = str(kubeconfig_path)
    if context:
        kwargs["context"] = context
    config.load_kube_config(**kwargs)
    return client.Configuration.get_default_copy()


def _to_json(obj: Any) -> str:
    """Render a kubernetes model object as indented JSON."""
    return json.dumps(client.ApiClient().sanitize_for_serialization(obj), indent=2, default=str)


def _node_address(node: Any) -> str:
    """Pick the InternalIP of a V1Node, falling back to its name."""
    for addr in getattr(node.status, "addresses", None) or []:
        if addr.type == "InternalIP":
            return addr.address
    return node.metadata.name


class ClusterClient:
    """Thin wrapper over CoreV1Api for everything the engine needs from the cluster."""

    def __init__(self, settings: Settings, core: client.CoreV1Api | None = None) -> None:
        self.settings = settings
        if core is None:
            try:
                cfg = _load_kube_config(
                    str(settings.kubeconfig) if settings.kubeconfig else None,
                    settings.context,
                )
            except (config.ConfigException, OSError) as e:
                raise ConfigurationError(f"Cannot load Kubernetes configuration: {e}") from e
            core = client.CoreV1Api(client.ApiClient(cfg))
        self.core = core

    def ping(self) -> None:
        """Fail with ConfigurationError if the cluster API is unreachable."""
        try:
            self.core.list_namespace(limit=1, _request_timeout=self.settings.command_timeout)
        except (ApiException, HTTPError, OSError) as e:
            raise ConfigurationError(f"Cannot reach the cluster API: {e}") from e

    def list_nodes(self) -> list[NodeTarget]:
        """Discover every node with its InternalIP."""
        try:
            nodes = self.core.list_node().items
        except ApiException as e:
            raise ConfigurationError(f"Failed to list nodes: {e.reason}") from e
        return [NodeTarget(name=n.metadata.name, address=_node_address(n)) for n in nodes]

    # Service proxy

    def read_proxy_config(self) -> str:
        """Return the kube-proxy configuration text, or '' when unavailable."""
        s = self.settings
        try:
            cm = self.core.read_namespaced_config_map(name=s.proxy_configmap, namespace=s.proxy_namespace)
        except ApiException as e:
            logger.warning(
                "Failed to read ConfigMap %s/%s: %s", s.proxy_namespace, s.proxy_configmap, e.reason
            )
            return ""
        except HTTPError as e:
            logger.warning(
                "Cluster API unreachable reading ConfigMap %s/%s: %s", s.proxy_namespace, s.proxy_configmap, e
            )
            return ""
        return (cm.data or {}).get(s.proxy_configmap_key, "")

    def proxy_pods(self, node_name: str | None = None) -> list[Any]:
        kwargs: dict[str, Any] = {"label_selector": self.settings.proxy_label_selector}
        if node_name:
            kwargs["field_selector"] = f"spec.nodeName={node_name}"
        return self.core.list_namespaced_pod(namespace=self.settings.proxy_namespace, **kwargs).items

    def restart_proxy_pod(
        self, node_name: str, timeout: float, deadline: Deadline | None = None
    ) -> tuple[bool, str]:
        """
        Delete the kube-proxy pod on node_name and wait for its replacement to be Ready.
        The wait is bounded by the run deadline and raises EngineCancelled on cancellation.
        Returns (success, message).
        """
        ns = self.settings.proxy_namespace
        if deadline is not None:
            deadline.check_cancelled()
            timeout = deadline.clamp(timeout)
        try:
            old = self.proxy_pods(node_name)
            if not old:
                return False, f"No kube-proxy pod found on {node_name}"
            old_names = {p.metadata.name for p in old}
            for name in old_names:
                self.core.delete_namespaced_pod(name=name, namespace=ns)
            expires = time.monotonic() + timeout
            while time.monotonic() < expires:
                for pod in self.proxy_pods(node_name):
                    if pod.metadata.name in old_names or pod.metadata.deletion_timestamp:
                        continue
                    if _pod_ready(pod):
                        return True, f"kube-proxy pod {pod.metadata.name} ready on {node_name}"
                pause = min(READY_POLL_INTERVAL, max(0.0, expires - time.monotonic()))
                if deadline is not None:
                    deadline.wait(pause)
                else:
                    time.sleep(pause)
        except ApiException as e:
            logger.warning("kube-proxy restart on %s failed: %s", node_name, e.reason)
            return False, f"API error: {e.reason}"
        except HTTPError as e:
            logger.warning("kube-proxy restart on %s failed: cluster API unreachable: %s", node_name, e)
            return False, f"cluster API unreachable: {e}"
        return False, f"Replacement kube-proxy pod not ready on {node_name} after {timeout:.0f}s"

    def proxy_logs(self) -> str:
        """Tail of every kube-proxy pod's log."""
        parts = []
        for pod in self.proxy_pods():
            name = pod.metadata.name
            try:
                log = self.core.read_namespaced_pod_log(
                    name=name,
                    namespace=self.settings.proxy_namespace,
                    tail_lines=self.settings.proxy_log_tail_lines,
                    timestamps=True,
                )
            except ApiException as e:
                log = f"(failed to get logs: {e.reason})"
            node = getattr(pod.spec, "node_name", None) or "?"
            parts.append(f"### {name} (node={node})\n{log or '(no logs)'}")
        return "\n\n".join(parts)

    def proxy_config_dump(self) -> str:
        s = self.settings
        cm = self.core.read_namespaced_config_map(name=s.proxy_configmap, namespace=s.proxy_namespace)
        return _to_json(cm)

    # DNS service

    def dns_service(self, cluster_ip: str) -> Any | None:
        """Find the DNS service by configured name, else by ClusterIP."""
        s = self.settings
        if s.dns_service_name:
            try:
                return self.core.read_namespaced_service(name=s.dns_service_name, namespace=s.dns_namespace)
            except ApiException as e:
                if e.status == 404:
                    return None
                raise
        for svc in self.core.list_namespaced_service(namespace=s.dns_namespace).items:
            if svc.spec and svc.spec.cluster_ip == cluster_ip:
                return svc
        return None

    def dns_ready_endpoints(self, cluster_ip: str) -> int | None:
        """Count ready DNS endpoint addresses; None if the service cannot be determined."""
        try:
            svc = self.dns_service(cluster_ip)
            if svc is None:
                return None
            ep = self.core.read_namespaced_endpoints(name=svc.metadata.name, namespace=svc.metadata.namespace)
        except ApiException as e:
            logger.warning("Failed to read DNS endpoints: %s", e.reason)
            return None
        except HTTPError as e:
            logger.warning("Cluster API unreachable reading DNS endpoints: %s", e)
            return None
        return sum(len(subset.addresses or []) for subset in (ep.subsets or []))

    def dns_service_dump(self, cluster_ip: str) -> str:
        svc = self.dns_service(cluster_ip)
        if svc is None:
            return f"(no service with ClusterIP {cluster_ip} in {self.settings.dns_namespace})"
        ep = self.core.read_namespaced_endpoints(name=svc.metadata.name, namespace=svc.metadata.namespace)
        return f"# Service\n{_to_json(svc)}\n\n# Endpoints\n{_to_json(ep)}"

    # Probe pods

    def create_pod(self, namespace: str, body: client.V1Pod) -> None:
        self.core.create_namespaced_pod(namespace=namespace, body=body)

    def read_pod(self, name: str, namespace: str) -> Any:
        return self.core.read_namespaced_pod(name=name, namespace=namespace)

    def read_pod_log(self, name: str, namespace: str) -> str:
        return self.core.read_namespaced_pod_log(name=name, namespace=namespace) or ""

    def delete_pod(self, name: str, namespace: str) -> None:
        """Delete a pod immediately; a missing pod is not an error."""
        try:
            self.core.delete_namespaced_pod(
                name=name,
                namespace=namespace,
                grace_period_seconds=0,
                propagation_policy="Background",
            )
        except ApiException as e:
            if e.status != 404:
                raise


def _pod_ready(pod: Any) -> bool:
    """Return True if pod is running and ready."""
    if getattr(pod.status, "phase", None) != "Running":
        return False
    for c in getattr(pod.status, "conditions", []) or []:
        if c.type == "Ready" and c.status == "True":
            return True
    return False
