"""Structured outputs of the connectivity validator."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ValidationStatus(str, Enum):
    """Classified outcome of one DNS probe."""

    SUCCESS = "success"
    DNS_TIMEOUT = "dns_timeout"
    DNS_REFUSED = "dns_refused"
    NO_ROUTE = "no_route"
    UNKNOWN = "unknown"


class ValidationResult(BaseModel):
    """Result of one validation call. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    status: ValidationStatus
    observed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    raw_output: str = Field(default="", description="Probe output (or the reason there is none)")

    @property
    def ok(self) -> bool:
        return self.status == ValidationStatus.SUCCESS
