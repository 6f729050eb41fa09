"""Run report builders and console reporting helpers.

Responsibilities
----------------
- Aggregate a run's :class:`MigrationResult` list into summary counts via
  :func:`build_summary_record` (pure; no I/O).
- Persist the full report once, atomically, through :func:`finalize` to
  ``<report_dir>/migration-report-<network>-<timestamp>.json``.
- Render a Rich table of the same figures with :func:`emit_console_summary`.

Design Notes
------------
- The console table mirrors the JSON ``summary`` block so the two never
  disagree.
- Reports are written only when a run reaches its end (including cancelled
  runs); fatal aborts leave no report behind.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from rich.console import Console
from rich.table import Table

from CertLedger.AnchorMigration.config import MigrationConfig
from CertLedger.AnchorMigration.errors import get_actionable_error_message
from CertLedger.AnchorMigration.io_utils import atomic_write_text
from CertLedger.AnchorMigration.models import MigrationResult, MigrationStatus, results_by_status

LOGGER = logging.getLogger(__name__)

__all__ = [
    "MigrationReport",
    "build_summary_record",
    "finalize",
    "report_filename",
    "emit_console_summary",
]


@dataclass
class MigrationReport:
    """Report persisted at the end of a run."""

    path: Path
    run_id: Optional[str]
    timestamp: str
    network: str
    options: Dict[str, Any]
    config: Dict[str, Any]
    config_hash: str
    summary: Dict[str, Any]
    results: List[MigrationResult] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "timestamp": self.timestamp,
            "network": self.network,
            "options": self.options,
            "config": self.config,
            "config_hash": self.config_hash,
            "cancelled": self.cancelled,
            "summary": self.summary,
            "results": [result.to_dict() for result in self.results],
        }


def build_summary_record(
    results: Sequence[MigrationResult], *, resumed: int = 0
) -> Dict[str, Any]:
    """Assemble the summary block of a report.

    ``total_cost`` sums receipt cost metrics; failed and skipped results
    contribute zero.
    """

    counts = results_by_status(results)
    error_kinds = Counter(
        result.error_kind or "unknown"
        for result in results
        if result.status is MigrationStatus.FAILED
    )
    return {
        "total": len(results),
        "successful": counts[MigrationStatus.SUCCESS.value],
        "failed": counts[MigrationStatus.FAILED.value],
        "skipped": counts[MigrationStatus.SKIPPED.value],
        "resumed": resumed,
        "retries": sum(result.retries for result in results),
        "total_cost": sum(result.cost_metric for result in results),
        "error_kinds": dict(sorted(error_kinds.items())),
    }


def report_filename(network: str, moment: datetime) -> str:
    """``migration-report-<network>-<timestamp>.json`` with a filename-safe timestamp."""

    stamp = moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    stamp = stamp.replace(":", "-").replace(".", "-")
    return f"migration-report-{network}-{stamp}.json"


def finalize(
    results: Sequence[MigrationResult],
    config: MigrationConfig,
    *,
    report_dir: Optional[Path | str] = None,
    run_id: Optional[str] = None,
    resumed: int = 0,
    cancelled: bool = False,
    now: Optional[datetime] = None,
) -> MigrationReport:
    """Aggregate ``results`` and write the report atomically.

    Args:
        results: Results attempted during this run
        config: Effective configuration (secrets are masked in the report)
        report_dir: Overrides ``config.paths.report_dir``
        run_id: Run identifier stamped on the report
        resumed: Records skipped because an earlier run anchored them
        cancelled: Whether the run stopped on a cancellation request
        now: Timestamp override for deterministic tests

    Returns:
        The written :class:`MigrationReport`
    """

    moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    network = config.network.value
    directory = Path(report_dir if report_dir is not None else config.paths.report_dir)
    report = MigrationReport(
        path=directory / report_filename(network, moment),
        run_id=run_id,
        timestamp=moment.isoformat(),
        network=network,
        options=config.run_options().to_dict(),
        config=config.public_dict(),
        config_hash=config.config_hash(),
        summary=build_summary_record(results, resumed=resumed),
        results=list(results),
        cancelled=cancelled,
    )
    atomic_write_text(
        report.path, json.dumps(report.to_dict(), indent=2, ensure_ascii=False) + "\n"
    )
    LOGGER.info(f"Report saved to {report.path}")
    return report


def emit_console_summary(report: MigrationReport, *, console: Optional[Console] = None) -> None:
    """Pretty-print the report summary and any failures."""

    console = console or Console()
    summary = report.summary

    table = Table(title=f"Migration Summary ({report.network})")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")
    for key in ("total", "successful", "failed", "skipped", "resumed", "retries", "total_cost"):
        table.add_row(key, str(summary.get(key, 0)))
    console.print(table)

    failed = [result for result in report.results if result.status is MigrationStatus.FAILED]
    if failed:
        failures = Table(title="Failed Records")
        failures.add_column("Source ID", style="cyan")
        failures.add_column("Stage", style="yellow")
        failures.add_column("Error", style="red")
        failures.add_column("Suggestion", style="magenta")
        for result in failed:
            message, suggestion = get_actionable_error_message(result.error_kind)
            failures.add_row(result.source_id, result.stage or "-", message, suggestion or "-")
        console.print(failures)

    if report.results and all(result.dry_run for result in report.results):
        console.print("[yellow]DRY RUN: nothing was published or anchored[/yellow]")
    if report.cancelled:
        console.print("[yellow]Run cancelled; rerun to resume from the checkpoint[/yellow]")
    console.print(f"[green]✓ Report saved to: {report.path}[/green]")
