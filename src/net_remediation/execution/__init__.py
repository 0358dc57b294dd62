"""Execution layer: run commands on cluster nodes."""

from net_remediation.execution.executors import (
    AgentExecutor,
    LocalExecutor,
    NodeExecutor,
    SSHExecutor,
    build_executor,
    node_lock,
)
from net_remediation.execution.models import CommandResult, NodeTarget

__all__ = [
    "AgentExecutor",
    "CommandResult",
    "LocalExecutor",
    "NodeExecutor",
    "NodeTarget",
    "SSHExecutor",
    "build_executor",
    "node_lock",
]
