"""Wall-clock budget and cancellation token for one engine run."""

from __future__ import annotations

import threading
import time

from net_remediation.errors import EngineCancelled


class Deadline:
    """Tracks the remaining wall-clock budget of a run and its cancellation flag."""

    def __init__(self, seconds: float, cancel_event: threading.Event | None = None) -> None:
        self.seconds = seconds
        self.cancel_event = cancel_event or threading.Event()
        self._expires_at = time.monotonic() + seconds

    def restart(self) -> None:
        """Start a fresh budget of the configured length."""
        self._expires_at = time.monotonic() + self.seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - time.monotonic())

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check_cancelled(self) -> None:
        """Raise EngineCancelled if the caller asked the run to stop."""
        if self.cancel_event.is_set():
            raise EngineCancelled("run cancelled by caller")

    def clamp(self, timeout: float) -> float:
        """Return timeout reduced to what is left of the budget."""
        return min(timeout, self.remaining())

    def extend(self, seconds: float) -> None:
        """Guarantee at least seconds more budget, e.g. for collecting diagnostics."""
        self._expires_at = max(self._expires_at, time.monotonic() + seconds)

    def wait(self, seconds: float) -> None:
        """Sleep up to seconds (bounded by the budget), waking early on cancellation."""
        self.cancel_event.wait(self.clamp(seconds))
        self.check_cancelled()
