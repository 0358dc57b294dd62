"""Engine: the bounded validate → remediate → re-validate loop."""

from net_remediation.engine.orchestrator import (
    Attempt,
    EngineOutcome,
    EngineResult,
    RetryController,
    run_engine,
)
from net_remediation.engine.report import print_result, render_report

__all__ = [
    "Attempt",
    "EngineOutcome",
    "EngineResult",
    "RetryController",
    "print_result",
    "render_report",
    "run_engine",
]
