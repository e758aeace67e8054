"""
Reporting and output formatting for sync results.

Provides color-coded console output using the Rich library and a JSON
export for automation.
"""

import json
from typing import Any, Dict, Optional

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .synchronizer import EntryOutcome, EntryStatus, SyncReport

_STATUS_STYLES = {
    EntryStatus.ALREADY_CURRENT: ("✅", "green"),
    EntryStatus.UPDATED: ("🔄", "cyan"),
    EntryStatus.FETCHED_NEW: ("📦", "blue"),
    EntryStatus.WOULD_UPDATE: ("🔄", "yellow"),
    EntryStatus.WOULD_FETCH: ("📦", "yellow"),
    EntryStatus.FAILED: ("❌", "red"),
}


class SyncReporter:
    """Formats and displays synchronization results."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def print_outcome(self, outcome: EntryOutcome) -> None:
        """Print the one-line outcome for an entry."""
        icon, color = _STATUS_STYLES[outcome.status]
        line = f"{icon} [bold]{escape(outcome.entry_id)}[/bold] [{color}]{outcome.status.value}[/{color}]"
        if outcome.status in (EntryStatus.UPDATED, EntryStatus.WOULD_UPDATE) and outcome.previous_revision:
            line += f" [dim]{outcome.previous_revision[:12]} → {outcome.revision[:12]}[/dim]"
        elif outcome.status is not EntryStatus.FAILED:
            line += f" [dim]@ {outcome.revision[:40]}[/dim]"
        if outcome.reason:
            line += f"\n   [red]{escape(outcome.reason)}[/red]"
        self.console.print(line, highlight=False)

    def print_report(self, report: SyncReport, verbose: bool = False) -> None:
        """
        Print every outcome followed by a summary.

        Args:
            report: The report to display
            verbose: Also show backend, destination and timing per entry
        """
        for entry_id in sorted(report.outcomes):
            outcome = report.outcomes[entry_id]
            self.print_outcome(outcome)
            if verbose:
                self.console.print(
                    f"   [dim]{outcome.backend} → {outcome.destination} ({outcome.duration_ms} ms)[/dim]",
                    highlight=False,
                )

        self.console.print()
        self._print_summary(report)

    def _print_summary(self, report: SyncReport) -> None:
        title = "📊 Dry-run Summary" if report.dry_run else "📊 Sync Summary"
        table = Table(title=title, box=box.ROUNDED, title_style="bold cyan")
        table.add_column("Outcome", style="bold")
        table.add_column("Count", justify="center")

        for status in EntryStatus:
            count = len(report.by_status(status))
            if count:
                icon, color = _STATUS_STYLES[status]
                table.add_row(f"{icon} {status.value}", f"[{color}]{count}[/{color}]")

        self.console.print(table)

        if report.cancelled:
            self.console.print("⚠️  Run was cancelled", style="bold yellow")
        if report.succeeded:
            self.console.print(
                f"✅ {len(report.outcomes)} entries in sync ({report.duration_ms} ms)",
                style="green",
            )
        else:
            self.console.print(
                f"❌ {len(report.failed_outcomes)} of {len(report.outcomes)} entries failed",
                style="bold red",
            )


def report_to_dict(report: SyncReport) -> Dict[str, Any]:
    """Convert a report into a JSON-serializable mapping."""
    return {
        "run_id": report.run_id,
        "dry_run": report.dry_run,
        "cancelled": report.cancelled,
        "succeeded": report.succeeded,
        "duration_ms": report.duration_ms,
        "summary": report.counts(),
        "entries": {
            entry_id: {
                "status": outcome.status.value,
                "revision": outcome.revision,
                "previous_revision": outcome.previous_revision,
                "destination": outcome.destination,
                "backend": outcome.backend,
                "reason": outcome.reason,
                "duration_ms": outcome.duration_ms,
            }
            for entry_id, outcome in sorted(report.outcomes.items())
        },
    }


def report_to_json(report: SyncReport) -> str:
    return json.dumps(report_to_dict(report), indent=2, ensure_ascii=False)
