"""Tests for node executors and their construction."""

import threading
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from net_remediation.deadline import Deadline
from net_remediation.errors import CommandTimeout, EngineCancelled, ExecutorError
from net_remediation.execution import (
    AgentExecutor,
    LocalExecutor,
    NodeTarget,
    SSHExecutor,
    build_executor,
    node_lock,
)

NODE = NodeTarget(name="node1", address="192.168.4.61")


def test_node_target_parse():
    assert NodeTarget.parse("node1@192.168.4.61") == NODE
    assert NodeTarget.parse(" node2 ") == NodeTarget(name="node2", address="node2")
    assert str(NODE) == "node1"
    with pytest.raises(ValueError):
        NodeTarget.parse("@10.0.0.1")


def test_local_executor_captures_output_and_exit_code():
    with LocalExecutor(NODE, timeout=5) as node:
        ok = node.run("echo hello")
        failed = node.run("echo oops >&2; exit 3")
    assert ok.ok and ok.stdout == "hello\n"
    assert not failed.ok
    assert failed.exit_code == 3
    assert failed.output == "oops"


def test_local_executor_timeout():
    with pytest.raises(CommandTimeout) as excinfo:
        LocalExecutor(NODE).run("sleep 5", timeout=0.2)
    assert excinfo.value.node == "node1"
    assert excinfo.value.command == "sleep 5"


def test_sudo_wrapping():
    node = LocalExecutor(NODE, use_sudo=True)
    with patch.object(LocalExecutor, "_execute", return_value=(0, "", "")) as execute:
        result = node.run("iptables -P FORWARD ACCEPT")
    assert execute.call_args.args[0] == "sudo -n sh -c 'iptables -P FORWARD ACCEPT'"
    assert result.command == "iptables -P FORWARD ACCEPT"


def test_deadline_clamps_and_cancels():
    deadline = Deadline(60)
    node = LocalExecutor(NODE, timeout=300, deadline=deadline)
    with patch.object(LocalExecutor, "_execute", return_value=(0, "", "")) as execute:
        node.run("true")
    assert execute.call_args.args[1] <= 60

    deadline.cancel_event.set()
    with pytest.raises(EngineCancelled):
        node.run("true")


def test_exhausted_deadline_refuses_to_run():
    node = LocalExecutor(NODE, deadline=Deadline(0))
    with pytest.raises(CommandTimeout):
        node.run("true")


def test_ssh_connect_failure_is_executor_error():
    with patch("net_remediation.execution.executors.paramiko.SSHClient") as client_cls:
        client_cls.return_value.connect.side_effect = paramiko.AuthenticationException("bad key")
        node = SSHExecutor(NODE, username="root", key_path="/tmp/id_ed25519")
        with pytest.raises(ExecutorError, match="192.168.4.61"):
            node.run("true")
    client_cls.return_value.close.assert_called_once()


def test_ssh_runs_command_on_channel():
    channel = MagicMock()
    channel.recv_ready.side_effect = [True, False, False, False]
    channel.recv.return_value = b"1\n"
    channel.recv_stderr_ready.return_value = False
    channel.exit_status_ready.return_value = True
    channel.recv_exit_status.return_value = 0
    with patch("net_remediation.execution.executors.paramiko.SSHClient") as client_cls:
        transport = client_cls.return_value.get_transport.return_value
        transport.open_session.return_value = channel
        with SSHExecutor(NODE, username="root", poll_interval=0) as node:
            result = node.run("sysctl -n net.ipv4.ip_forward")
    assert result.ok and result.stdout == "1\n"
    channel.exec_command.assert_called_once_with("sysctl -n net.ipv4.ip_forward")
    channel.close.assert_called_once()
    client_cls.return_value.close.assert_called_once()


def test_agent_executor_without_running_pod():
    core = MagicMock()
    core.list_namespaced_pod.return_value.items = []
    node = AgentExecutor(NODE, core=core, namespace="kube-system", label_selector="app=node-agent")
    with pytest.raises(ExecutorError, match="no running agent pod"):
        node.run("true")
    assert core.list_namespaced_pod.call_args.kwargs["field_selector"] == "spec.nodeName=node1"


def test_build_executor_variants(settings):
    local = build_executor(NODE, settings.model_copy(update={"executor": "local"}))
    assert isinstance(local, LocalExecutor)

    ssh = build_executor(NODE, settings)
    assert isinstance(ssh, SSHExecutor)
    assert ssh.username == "root" and ssh.use_sudo

    agent = build_executor(NODE, settings.model_copy(update={"executor": "agent"}), core=MagicMock())
    assert isinstance(agent, AgentExecutor)
    assert not agent.use_sudo

    with pytest.raises(ValueError):
        build_executor(NODE, settings.model_copy(update={"executor": "agent"}))


def test_node_lock_serialises_same_node():
    entered = threading.Event()
    release = threading.Event()
    order = []

    def holder():
        with node_lock("node-x"):
            entered.set()
            release.wait(5)
            order.append("first")

    t = threading.Thread(target=holder)
    t.start()
    entered.wait(5)
    with node_lock("node-y"):
        order.append("other node")
    release.set()
    with node_lock("node-x"):
        order.append("second")
    t.join(5)
    assert order == ["other node", "first", "second"]
