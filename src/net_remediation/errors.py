"""Exception hierarchy shared across the engine."""

from __future__ import annotations


class NetRemediationError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(NetRemediationError):
    """Invalid input or unreachable cluster API; raised before any retry loop starts."""


class ExecutorError(NetRemediationError):
    """A node command could not be delivered (transport failure, auth, missing agent pod)."""

    def __init__(self, node: str, message: str) -> None:
        super().__init__(f"{node}: {message}")
        self.node = node


class CommandTimeout(ExecutorError):
    """A node command did not finish within its timeout."""

    def __init__(self, node: str, command: str, timeout: float) -> None:
        super().__init__(node, f"command timed out after {timeout:.1f}s: {command}")
        self.command = command
        self.timeout = timeout


class InspectionError(NetRemediationError):
    """Node state could not be measured at all."""


class EngineCancelled(NetRemediationError):
    """The caller cancelled an in-flight run."""
