"""Structured models for node command execution."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class NodeTarget(BaseModel):
    """A cluster node: its Kubernetes node name and the address used to reach it."""

    model_config = ConfigDict(frozen=True)

    name: str
    address: str

    @classmethod
    def parse(cls, spec: str) -> NodeTarget:
        """Parse 'name' or 'name@address'."""
        name, _, address = spec.strip().partition("@")
        name = name.strip()
        if not name:
            raise ValueError(f"Invalid node spec: {spec!r}")
        return cls(name=name, address=address.strip() or name)

    def __str__(self) -> str:
        return self.name


class CommandResult(BaseModel):
    """Outcome of one command on one node."""

    node: str
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = Field(default=0.0, description="Seconds the command took")

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """stdout and stderr combined, for diagnostics."""
        if self.stderr.strip():
            return f"{self.stdout}\n{self.stderr}".strip()
        return self.stdout.strip()
