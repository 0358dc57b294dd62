"""Run shell commands on cluster nodes: locally, over SSH, or through a node-agent pod."""

from __future__ import annotations

import logging
import shlex
import socket
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterator

import paramiko
from kubernetes import client
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream

from net_remediation.config import Settings
from net_remediation.deadline import Deadline
from net_remediation.errors import CommandTimeout, ExecutorError
from net_remediation.execution.models import CommandResult, NodeTarget

logger = logging.getLogger(__name__)

# Enter the host's mount, UTS, network and IPC namespaces from a privileged hostPID pod
NSENTER_PREFIX = ["nsenter", "-t", "1", "-m", "-u", "-n", "-i", "--"]


class NodeExecutor(ABC):
    """Runs commands on one node. A non-zero exit code is a result, not an error."""

    def __init__(
        self,
        node: NodeTarget,
        timeout: float = 30.0,
        use_sudo: bool = False,
        deadline: Deadline | None = None,
    ) -> None:
        self.node = node
        self.timeout = timeout
        self.use_sudo = use_sudo
        self.deadline = deadline

    def __enter__(self) -> NodeExecutor:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def run(self, command: str, timeout: float | None = None) -> CommandResult:
        """Run command and return its result; raises ExecutorError / CommandTimeout."""
        effective = timeout if timeout is not None else self.timeout
        if self.deadline is not None:
            self.deadline.check_cancelled()
            effective = self.deadline.clamp(effective)
            if effective <= 0:
                raise CommandTimeout(self.node.name, command, 0.0)
        wrapped = f"sudo -n sh -c {shlex.quote(command)}" if self.use_sudo else command
        logger.debug("[%s] $ %s (timeout=%.1fs)", self.node.name, command, effective)
        start = time.monotonic()
        exit_code, out, err = self._execute(wrapped, effective)
        result = CommandResult(
            node=self.node.name,
            command=command,
            exit_code=exit_code,
            stdout=out,
            stderr=err,
            duration=time.monotonic() - start,
        )
        if not result.ok:
            logger.debug("[%s] exit=%d stderr=%s", self.node.name, exit_code, err.strip())
        return result

    @abstractmethod
    def _execute(self, command: str, timeout: float) -> tuple[int, str, str]:
        """Run the already-wrapped command; return (exit_code, stdout, stderr)."""

    def close(self) -> None:
        """Release any connection held by the executor."""


class LocalExecutor(NodeExecutor):
    """Runs commands in a local shell; for engines running on the node itself."""

    def _execute(self, command: str, timeout: float) -> tuple[int, str, str]:
        try:
            # subprocess.run kills the child on timeout and on any interruption
            proc = subprocess.run(
                ["sh", "-c", command],
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandTimeout(self.node.name, command, timeout) from e
        except OSError as e:
            raise ExecutorError(self.node.name, f"failed to start shell: {e}") from e
        return proc.returncode, proc.stdout or "", proc.stderr or ""


class SSHExecutor(NodeExecutor):
    """Runs commands over a single lazily opened paramiko SSH connection."""

    def __init__(
        self,
        node: NodeTarget,
        username: str,
        key_path: str | None = None,
        port: int = 22,
        connect_timeout: float = 10.0,
        poll_interval: float = 0.1,
        **kwargs: Any,
    ) -> None:
        super().__init__(node, **kwargs)
        self.username = username
        self.key_path = key_path
        self.port = port
        self.connect_timeout = connect_timeout
        self.poll_interval = poll_interval
        self._client: paramiko.SSHClient | None = None

    def _connect(self) -> paramiko.SSHClient:
        if self._client is not None:
            return self._client
        ssh = paramiko.SSHClient()
        ssh.load_system_host_keys()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            ssh.connect(
                hostname=self.node.address,
                port=self.port,
                username=self.username,
                key_filename=self.key_path,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                look_for_keys=self.key_path is None,
                allow_agent=self.key_path is None,
            )
        except (paramiko.SSHException, OSError) as e:
            ssh.close()
            raise ExecutorError(self.node.name, f"SSH connection to {self.node.address} failed: {e}") from e
        self._client = ssh
        return ssh

    def _execute(self, command: str, timeout: float) -> tuple[int, str, str]:
        ssh = self._connect()
        out: list[bytes] = []
        err: list[bytes] = []
        start = time.monotonic()
        channel = None
        try:
            transport = ssh.get_transport()
            if transport is None or not transport.is_active():
                raise paramiko.SSHException("transport is not active")
            channel = transport.open_session(timeout=self.connect_timeout)
            channel.exec_command(command)
            # Drain both streams while waiting so a chatty command cannot fill the window
            while True:
                while channel.recv_ready():
                    out.append(channel.recv(32768))
                while channel.recv_stderr_ready():
                    err.append(channel.recv_stderr(32768))
                if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                    break
                if time.monotonic() - start > timeout:
                    raise CommandTimeout(self.node.name, command, timeout)
                if self.deadline is not None:
                    self.deadline.check_cancelled()
                time.sleep(self.poll_interval)
            exit_code = channel.recv_exit_status()
        except (paramiko.SSHException, socket.timeout, OSError) as e:
            self.close()
            raise ExecutorError(self.node.name, f"SSH command failed: {e}") from e
        finally:
            if channel is not None:
                channel.close()
        return (
            exit_code,
            b"".join(out).decode("utf-8", "replace"),
            b"".join(err).decode("utf-8", "replace"),
        )

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


class AgentExecutor(NodeExecutor):
    """Runs commands through a privileged node-agent pod scheduled on the node."""

    def __init__(
        self,
        node: NodeTarget,
        core: client.CoreV1Api,
        namespace: str,
        label_selector: str,
        container: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(node, **kwargs)
        self._core = core
        self.namespace = namespace
        self.label_selector = label_selector
        self.container = container
        self._pod_name: str | None = None

    def _agent_pod(self) -> str:
        if self._pod_name is not None:
            return self._pod_name
        try:
            pods = self._core.list_namespaced_pod(
                namespace=self.namespace,
                label_selector=self.label_selector,
                field_selector=f"spec.nodeName={self.node.name}",
            )
        except ApiException as e:
            raise ExecutorError(self.node.name, f"failed to list agent pods: {e.reason}") from e
        running = [p for p in pods.items if getattr(p.status, "phase", None) == "Running"]
        if not running:
            raise ExecutorError(
                self.node.name,
                f"no running agent pod matching '{self.label_selector}' in {self.namespace}",
            )
        self._pod_name = running[0].metadata.name
        return self._pod_name

    def _execute(self, command: str, timeout: float) -> tuple[int, str, str]:
        pod = self._agent_pod()
        kwargs: dict[str, Any] = {}
        if self.container:
            kwargs["container"] = self.container
        try:
            resp = stream(
                self._core.connect_get_namespaced_pod_exec,
                pod,
                self.namespace,
                command=NSENTER_PREFIX + ["sh", "-c", command],
                stderr=True,
                stdin=False,
                stdout=True,
                tty=False,
                _preload_content=False,
                **kwargs,
            )
        except ApiException as e:
            raise ExecutorError(self.node.name, f"exec into {pod} failed: {e.reason}") from e

        out: list[str] = []
        err: list[str] = []
        expires = time.monotonic() + timeout
        try:
            while resp.is_open():
                remaining = expires - time.monotonic()
                if remaining <= 0:
                    raise CommandTimeout(self.node.name, command, timeout)
                if self.deadline is not None:
                    self.deadline.check_cancelled()
                resp.update(timeout=min(1.0, remaining))
                if resp.peek_stdout():
                    out.append(resp.read_stdout())
                if resp.peek_stderr():
                    err.append(resp.read_stderr())
            if resp.peek_stdout():
                out.append(resp.read_stdout())
            if resp.peek_stderr():
                err.append(resp.read_stderr())
            exit_code = resp.returncode
        finally:
            resp.close()
        return (exit_code if exit_code is not None else -1), "".join(out), "".join(err)


def build_executor(
    node: NodeTarget,
    settings: Settings,
    core: client.CoreV1Api | None = None,
    deadline: Deadline | None = None,
) -> NodeExecutor:
    """Create the executor variant selected by settings.executor."""
    common: dict[str, Any] = {
        "timeout": settings.command_timeout,
        "use_sudo": settings.use_sudo,
        "deadline": deadline,
    }
    if settings.executor == "local":
        return LocalExecutor(node, **common)
    if settings.executor == "ssh":
        return SSHExecutor(
            node,
            username=settings.ssh_user,
            key_path=str(settings.ssh_key_path.expanduser()) if settings.ssh_key_path else None,
            port=settings.ssh_port,
            connect_timeout=settings.ssh_connect_timeout,
            **common,
        )
    if settings.executor == "agent":
        if core is None:
            raise ValueError("agent executor requires a Kubernetes CoreV1Api client")
        # Already root inside the host namespaces
        common["use_sudo"] = False
        return AgentExecutor(
            node,
            core=core,
            namespace=settings.agent_namespace,
            label_selector=settings.agent_label_selector,
            container=settings.agent_container,
            **common,
        )
    raise ValueError(f"Unsupported executor: {settings.executor}")


_node_locks: dict[str, threading.Lock] = {}
_node_locks_guard = threading.Lock()


@contextmanager
def node_lock(node_id: str) -> Iterator[None]:
    """Serialise mutation passes against the same node across concurrent runs."""
    with _node_locks_guard:
        lock = _node_locks.setdefault(node_id, threading.Lock())
    with lock:
        yield
