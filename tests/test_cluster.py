"""Tests for the Kubernetes API wrapper, against a mocked CoreV1Api."""

import threading
import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError

from net_remediation.cluster import ClusterClient
from net_remediation.deadline import Deadline
from net_remediation.errors import ConfigurationError, EngineCancelled


def _ns(**kwargs):
    return SimpleNamespace(**kwargs)


def _proxy_pod(name, ready=True, deleting=False):
    conditions = [_ns(type="Ready", status="True" if ready else "False")]
    return _ns(
        metadata=_ns(name=name, deletion_timestamp="2026-10-19T10:00:00Z" if deleting else None),
        spec=_ns(node_name="node1"),
        status=_ns(phase="Running", conditions=conditions),
    )


@pytest.fixture
def core():
    return MagicMock()


def test_ping_failure_is_configuration_error(settings, core):
    core.list_namespace.side_effect = ApiException(status=401, reason="Unauthorized")
    with pytest.raises(ConfigurationError, match="cluster API"):
        ClusterClient(settings, core).ping()


def test_list_nodes_prefers_internal_ip(settings, core):
    core.list_node.return_value.items = [
        _ns(
            metadata=_ns(name="node1"),
            status=_ns(addresses=[_ns(type="Hostname", address="node1"), _ns(type="InternalIP", address="192.168.4.61")]),
        ),
        _ns(metadata=_ns(name="node2"), status=_ns(addresses=None)),
    ]
    nodes = ClusterClient(settings, core).list_nodes()
    assert [(n.name, n.address) for n in nodes] == [("node1", "192.168.4.61"), ("node2", "node2")]


def test_read_proxy_config(settings, core):
    core.read_namespaced_config_map.return_value.data = {"config.conf": "mode: ipvs\n"}
    assert ClusterClient(settings, core).read_proxy_config() == "mode: ipvs\n"

    core.read_namespaced_config_map.side_effect = ApiException(status=404, reason="Not Found")
    assert ClusterClient(settings, core).read_proxy_config() == ""


def test_dns_ready_endpoints_by_cluster_ip(settings, core):
    svc = _ns(metadata=_ns(name="coredns", namespace="kube-system"), spec=_ns(cluster_ip="10.233.0.3"))
    other = _ns(metadata=_ns(name="metrics", namespace="kube-system"), spec=_ns(cluster_ip="10.233.0.9"))
    core.list_namespaced_service.return_value.items = [other, svc]
    core.read_namespaced_endpoints.return_value.subsets = [
        _ns(addresses=[_ns(ip="10.233.66.2"), _ns(ip="10.233.67.4")]),
        _ns(addresses=None),
    ]
    cluster = ClusterClient(settings, core)
    assert cluster.dns_ready_endpoints("10.233.0.3") == 2
    core.read_namespaced_endpoints.assert_called_with(name="coredns", namespace="kube-system")
    assert cluster.dns_ready_endpoints("10.233.0.77") is None


def test_restart_proxy_pod_waits_for_replacement(settings, core, monkeypatch):
    monkeypatch.setattr("net_remediation.cluster.client.time.sleep", lambda _: None)
    core.list_namespaced_pod.side_effect = [
        _ns(items=[_proxy_pod("kube-proxy-abcde")]),
        _ns(items=[_proxy_pod("kube-proxy-abcde", deleting=True), _proxy_pod("kube-proxy-fghij", ready=False)]),
        _ns(items=[_proxy_pod("kube-proxy-fghij")]),
    ]
    ok, message = ClusterClient(settings, core).restart_proxy_pod("node1", timeout=30)
    assert ok
    assert "kube-proxy-fghij" in message
    core.delete_namespaced_pod.assert_called_once_with(name="kube-proxy-abcde", namespace="kube-system")


def test_restart_proxy_pod_without_pod(settings, core):
    core.list_namespaced_pod.return_value.items = []
    ok, message = ClusterClient(settings, core).restart_proxy_pod("node1", timeout=30)
    assert not ok
    assert "No kube-proxy pod" in message


def test_delete_pod_ignores_missing(settings, core):
    core.delete_namespaced_pod.side_effect = ApiException(status=404, reason="Not Found")
    ClusterClient(settings, core).delete_pod("net-probe-1", "default")

    core.delete_namespaced_pod.side_effect = ApiException(status=500, reason="Internal Server Error")
    with pytest.raises(ApiException):
        ClusterClient(settings, core).delete_pod("net-probe-1", "default")


def _outage():
    return MaxRetryError(None, "/api/v1/namespaces/kube-system/configmaps/kube-proxy")


def test_api_outage_degrades_instead_of_raising(settings, core):
    core.read_namespaced_config_map.side_effect = _outage()
    core.list_namespaced_service.side_effect = _outage()
    core.list_namespaced_pod.side_effect = _outage()
    cluster = ClusterClient(settings, core)

    assert cluster.read_proxy_config() == ""
    assert cluster.dns_ready_endpoints("10.233.0.3") is None
    ok, message = cluster.restart_proxy_pod("node1", timeout=30)
    assert not ok
    assert "unreachable" in message


def test_restart_proxy_pod_stops_waiting_on_cancellation(settings, core):
    core.list_namespaced_pod.return_value.items = [_proxy_pod("kube-proxy-abcde", ready=False)]
    cancel = threading.Event()
    deadline = Deadline(600, cancel)
    timer = threading.Timer(0.2, cancel.set)
    timer.start()
    started = time.monotonic()
    try:
        with pytest.raises(EngineCancelled):
            ClusterClient(settings, core).restart_proxy_pod("node1", timeout=60, deadline=deadline)
    finally:
        timer.cancel()
    assert time.monotonic() - started < 2.0


def test_restart_proxy_pod_wait_is_bounded_by_run_deadline(settings, core):
    core.list_namespaced_pod.return_value.items = [_proxy_pod("kube-proxy-abcde", ready=False)]
    started = time.monotonic()
    ok, message = ClusterClient(settings, core).restart_proxy_pod("node1", timeout=60, deadline=Deadline(0.3))
    assert not ok
    assert "not ready" in message
    assert time.monotonic() - started < 2.0


def test_restart_proxy_pod_refuses_to_start_when_cancelled(settings, core):
    deadline = Deadline(600)
    deadline.cancel_event.set()
    with pytest.raises(EngineCancelled):
        ClusterClient(settings, core).restart_proxy_pod("node1", timeout=60, deadline=deadline)
    core.delete_namespaced_pod.assert_not_called()
