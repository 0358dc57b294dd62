"""Report templates and Rich rendering of an EngineResult."""

from __future__ import annotations

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from net_remediation.engine.orchestrator import EngineResult
from net_remediation.remediation import ActionVerdict

REPORT_HEADER = """
# Network Remediation Report
"""

REPORT_SECTION_SUCCESS = """
## Result
The cluster DNS service is reachable. {detail}
"""

REPORT_SECTION_FAILURE = """
## Result
Remediation failed: {reason}

**Last validation:** {status}

**Diagnostics archive:** `{archive}`
"""

REPORT_SECTION_ERRORS = """
## Collector errors
{errors}
"""

_VERDICT_STYLE = {
    ActionVerdict.CHANGED: "green",
    ActionVerdict.ALREADY_SATISFIED: "dim",
    ActionVerdict.FAILED: "red",
    ActionVerdict.SKIPPED: "yellow",
    ActionVerdict.PLANNED: "cyan",
}


def render_report(result: EngineResult) -> str:
    """Markdown summary of the run."""
    parts = [REPORT_HEADER]
    if result.succeeded:
        if result.attempts:
            detail = f"Connectivity restored after {len(result.attempts)} remediation attempt(s)."
        else:
            detail = "No remediation was needed."
        parts.append(REPORT_SECTION_SUCCESS.format(detail=detail))
        return "\n".join(parts)
    status = result.final_validation.status.value if result.final_validation else "unknown"
    parts.append(
        REPORT_SECTION_FAILURE.format(reason=result.reason, status=status, archive=result.archive_path or "-")
    )
    if result.bundle and result.bundle.errors:
        errors = "\n".join(f"- {k}: {v}" for k, v in result.bundle.errors.items())
        parts.append(REPORT_SECTION_ERRORS.format(errors=errors))
    return "\n".join(parts)


def attempts_table(result: EngineResult) -> Table:
    table = Table(title="Attempts", show_lines=True)
    table.add_column("#", justify="right")
    table.add_column("Validation")
    table.add_column("Node")
    table.add_column("Actions")
    for attempt in result.attempts:
        post = attempt.post_validation.status.value if attempt.post_validation else "-"
        validation = f"{attempt.pre_validation.status.value} → {post}"
        if attempt.skipped_reason:
            table.add_row(str(attempt.index), validation, "-", f"[yellow]{attempt.skipped_reason}[/yellow]")
            continue
        for node_id, outcomes in attempt.actions_applied.items():
            actions = ", ".join(
                f"[{_VERDICT_STYLE[o.verdict]}]{o.action} ({o.verdict.value})[/]" for o in outcomes
            ) or "[dim]compliant[/dim]"
            table.add_row(str(attempt.index), validation, node_id, actions)
        for node_id, error in attempt.node_errors.items():
            table.add_row(str(attempt.index), validation, node_id, f"[red]{error}[/red]")
    return table


def print_result(result: EngineResult, console: Console | None = None) -> None:
    """Print engine result to console using Rich."""
    c = console or Console()
    style = "green" if result.succeeded else "red"
    c.print(Panel(Markdown(render_report(result)), title="Network Remediation", border_style=style))
    if result.attempts:
        c.print(attempts_table(result))
