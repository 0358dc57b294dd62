"""Tests for proxy mode extraction and node dataplane inspection."""

import pytest
from hypothesis import given, settings as hyp_settings, strategies as st

from net_remediation.errors import InspectionError
from net_remediation.inspection import DataplaneInspector, ProxyMode, extract_mode
from net_remediation.inspection.inspector import (
    IPVS_READ,
    count_ipvs_services,
    parse_forward_policy,
    parse_loaded_modules,
)

from conftest import FakeCluster, FakeNode


KUBE_PROXY_IPVS = """\
apiVersion: kubeproxy.config.k8s.io/v1alpha1
bindAddress: 0.0.0.0
clusterCIDR: 10.233.64.0/18
detectLocalMode: ClusterCIDR
ipvs:
  scheduler: rr
  strictARP: false
kind: KubeProxyConfiguration
mode: ipvs
"""


# =============================================================================
# extract_mode
# =============================================================================

@pytest.mark.parametrize(
    "text, expected",
    [
        ('mode: "ipvs"', ProxyMode.IPVS),
        ("mode: iptables", ProxyMode.IPTABLES),
        ("kind: KubeProxyConfiguration\nclusterCIDR: 10.233.64.0/18\n", ProxyMode.IPTABLES),
        ("", ProxyMode.IPTABLES),
    ],
)
def test_extract_mode_required_cases(text, expected):
    assert extract_mode(text) == expected


@pytest.mark.parametrize(
    "text, expected",
    [
        ("mode: 'ipvs'", ProxyMode.IPVS),
        ('mode: ""', ProxyMode.IPTABLES),
        ("mode:", ProxyMode.IPTABLES),
        ("mode: IPVS  # switched for scale", ProxyMode.IPVS),
        ('{"kind": "KubeProxyConfiguration", \n"mode": "ipvs",\n}', ProxyMode.IPVS),
        (KUBE_PROXY_IPVS, ProxyMode.IPVS),
        ("mode: nftables", ProxyMode.UNKNOWN),
        (None, ProxyMode.IPTABLES),
    ],
)
def test_extract_mode_variants(text, expected):
    assert extract_mode(text) == expected


def test_extract_mode_ignores_keys_ending_in_mode():
    assert extract_mode("detectLocalMode: ClusterCIDR\n") == ProxyMode.IPTABLES


@given(text=st.text(max_size=300))
@hyp_settings(max_examples=200)
def test_extract_mode_never_raises(text):
    assert extract_mode(text) in set(ProxyMode)


# =============================================================================
# Parsers
# =============================================================================

def test_parse_forward_policy():
    assert parse_forward_policy("-P FORWARD DROP\n-A FORWARD -j KUBE-FORWARD\n") == "DROP"
    assert parse_forward_policy("-P FORWARD ACCEPT\n") == "ACCEPT"
    assert parse_forward_policy("iptables: command not found") is None


def test_parse_loaded_modules_normalizes_dashes():
    assert parse_loaded_modules("br_netfilter\nip-vs\n\n") == {"br_netfilter", "ip_vs"}


def test_count_ipvs_services_counts_virtual_services_only():
    output = (
        "IP Virtual Server version 1.2.1 (size=4096)\n"
        "Prot LocalAddress:Port Scheduler Flags\n"
        "  -> RemoteAddress:Port           Forward Weight ActiveConn InActConn\n"
        "TCP  10.233.0.1:443 rr\n"
        "  -> 192.168.4.61:6443            Masq    1      3          0\n"
        "UDP  10.233.0.3:53 rr\n"
        "  -> 10.233.66.2:53               Masq    1      0          5\n"
    )
    assert count_ipvs_services(output) == 2
    assert count_ipvs_services("") == 0


# =============================================================================
# DataplaneInspector
# =============================================================================

def test_inspect_compliant_iptables_node(settings):
    node = FakeNode("node1")
    state = DataplaneInspector(settings, FakeCluster()).inspect(node)
    assert state.node_id == "node1"
    assert state.proxy_mode == ProxyMode.IPTABLES
    assert state.ip_forward_enabled is True
    assert state.forward_policy_accept is True
    assert state.missing_modules == []
    assert state.compliant
    assert IPVS_READ not in node.commands


def test_inspect_broken_ipvs_node(settings):
    node = FakeNode("node1", ip_forward=False, forward_policy="DROP", ipvs_services=12, modules=("overlay",))
    state = DataplaneInspector(settings, FakeCluster(proxy_config=KUBE_PROXY_IPVS)).inspect(node)
    assert state.proxy_mode == ProxyMode.IPVS
    assert state.ip_forward_enabled is False
    assert state.forward_policy_accept is False
    assert state.ipvs_entry_count == 12
    # ipvs mode adds the ip_vs module family to the required set
    assert state.missing_modules[:2] == ["br_netfilter", "ip_vs"]
    assert "overlay" in state.required_modules_loaded


def test_inspect_is_read_only(settings):
    node = FakeNode("node1", ip_forward=False, forward_policy="DROP", ipvs_services=3)
    DataplaneInspector(settings, FakeCluster(proxy_config=KUBE_PROXY_IPVS)).inspect(node)
    assert node.mutations == []
    assert node.ipvs_services == 3


def test_inspect_without_mode_falls_back_to_iptables(settings):
    node = FakeNode("node1", ipvs_services=5)
    state = DataplaneInspector(settings, FakeCluster(proxy_config="")).inspect(node)
    assert state.proxy_mode == ProxyMode.IPTABLES
    assert state.ipvs_entry_count == 0


def test_inspect_reads_node_local_config_file(settings):
    settings = settings.model_copy(update={"proxy_config_path": "/var/lib/kube-proxy/config.conf"})
    node = FakeNode("node1", proxy_config_file="mode: ipvs\n", ipvs_services=1)
    state = DataplaneInspector(settings, cluster=None).inspect(node)
    assert state.proxy_mode == ProxyMode.IPVS
    assert state.ipvs_entry_count == 1
    assert node.commands[0] == "cat /var/lib/kube-proxy/config.conf"


def test_inspect_unreachable_node_raises(settings):
    with pytest.raises(InspectionError, match="node1"):
        DataplaneInspector(settings, FakeCluster()).inspect(FakeNode("node1", unreachable=True))
