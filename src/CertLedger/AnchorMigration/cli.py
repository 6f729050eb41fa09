"""Typer-based CLI for the anchoring migration."""

from __future__ import annotations

import json
import logging
import signal
import threading
from datetime import datetime
from enum import IntEnum
from pathlib import Path
from typing import Any, Callable, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from CertLedger.AnchorMigration.bootstrap import build_context
from CertLedger.AnchorMigration.checkpoint import CheckpointStore
from CertLedger.AnchorMigration.config import (
    MigrationConfig,
    NetworkName,
    export_config_schema,
    load_config,
    validate_config_file,
)
from CertLedger.AnchorMigration.errors import (
    FatalMigrationError,
    MigrationError,
    get_actionable_error_message,
)
from CertLedger.AnchorMigration.models import MigrationResult, MigrationStatus, results_by_status
from CertLedger.AnchorMigration.report import emit_console_summary, finalize

console = Console()
app = typer.Typer(help="CertLedger anchoring migration")

LOGGER = logging.getLogger(__name__)


class ExitCode(IntEnum):
    """Process exit codes of ``certledger-migrate run``."""

    OK = 0
    RECORD_FAILURES = 1
    STARTUP_FAILURE = 2
    FATAL = 3
    CANCELLED = 130


# ============================================================================
# Setup
# ============================================================================


def _setup_logging(verbose: bool) -> None:
    """Setup logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _build_overrides(
    *,
    network: Optional[NetworkName],
    batch_size: Optional[int],
    dry_run: bool,
    from_date: Optional[datetime],
    courses: Optional[str],
    max_retries: Optional[int],
    workers: Optional[int],
    checkpoint: Optional[Path],
    report_dir: Optional[Path],
) -> dict[str, Any]:
    run: dict[str, Any] = {
        "batch_size": batch_size,
        "max_retries": max_retries,
        "publish_workers": workers,
        "course_ids": courses,
        "from_date": from_date.date().isoformat() if from_date else None,
    }
    if dry_run:
        run["dry_run"] = True
    return {
        "network": network.value if network else None,
        "run": run,
        "paths": {
            "checkpoint": str(checkpoint) if checkpoint else None,
            "report_dir": str(report_dir) if report_dir else None,
        },
    }


def _print_fatal(exc: BaseException) -> None:
    kind = exc.error_kind if isinstance(exc, MigrationError) else type(exc).__name__
    message, suggestion = get_actionable_error_message(kind)
    console.print(f"[red]✗ {message}: {exc}[/red]")
    if suggestion:
        console.print(f"[yellow]→ {suggestion}[/yellow]")


def _result_printer(cfg: MigrationConfig) -> Callable[[MigrationResult], None]:
    def echo(result: MigrationResult) -> None:
        receipt = result.anchor_receipt
        if result.status is MigrationStatus.SUCCESS and receipt is not None:
            console.print(
                f"[green]✓ {result.source_id}[/green] → record "
                f"{receipt.ledger_record_id} (tx {receipt.transaction_ref})"
            )
            console.print(f"    metadata: {cfg.gateway_url(receipt.content_hash)}")
            explorer = cfg.explorer_tx_url(receipt.transaction_ref)
            if explorer:
                console.print(f"    explorer: {explorer}")
        elif result.status is MigrationStatus.SKIPPED:
            console.print(f"[yellow]○ {result.source_id}[/yellow] dry run ({result.content_hash})")
        else:
            console.print(f"[red]✗ {result.source_id}[/red] {result.error_kind}: {result.error}")

    return echo


# ============================================================================
# Commands
# ============================================================================


@app.command()
def run(
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config file",
        envvar="CERTLEDGER_CONFIG",
    ),
    network: Optional[NetworkName] = typer.Option(None, "--network", help="Target ledger network"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", help="Records per batch"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Package only; publish and anchor nothing"),
    from_date: Optional[datetime] = typer.Option(
        None, "--from-date", formats=["%Y-%m-%d"], help="Earliest completion date (YYYY-MM-DD)"
    ),
    courses: Optional[str] = typer.Option(None, "--courses", help="Comma-separated course ids"),
    max_retries: Optional[int] = typer.Option(None, "--max-retries", help="Anchor timeout retries"),
    workers: Optional[int] = typer.Option(None, "--workers", help="Package/publish worker threads"),
    checkpoint: Optional[Path] = typer.Option(None, "--checkpoint", help="Checkpoint JSONL path"),
    report_dir: Optional[Path] = typer.Option(None, "--report-dir", help="Report directory"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose"),
) -> None:
    """Migrate completion records onto the ledger."""
    _setup_logging(verbose)

    overrides = _build_overrides(
        network=network,
        batch_size=batch_size,
        dry_run=dry_run,
        from_date=from_date,
        courses=courses,
        max_retries=max_retries,
        workers=workers,
        checkpoint=checkpoint,
        report_dir=report_dir,
    )
    try:
        cfg = load_config(path=config, cli_overrides=overrides)
        context = build_context(cfg)
    except (FatalMigrationError, ValueError, OSError) as e:
        _print_fatal(e)
        raise typer.Exit(code=ExitCode.STARTUP_FAILURE)

    console.print(
        Panel(
            f"[bold green]✓ Config loaded[/bold green]\n"
            f"Network: {cfg.network.value} (chain {cfg.network_profile().chain_id})\n"
            f"Hash: {cfg.config_hash()[:8]}...\n"
            f"Batch size: {cfg.run.batch_size}  Max retries: {cfg.run.max_retries}\n"
            f"Signer: {context.identity.address}",
            title="CertLedger Migration",
        )
    )
    if cfg.run.dry_run:
        console.print("[yellow]Dry run mode[/yellow]")

    cancel_event = threading.Event()

    def _request_cancel(signum: int, frame: Any) -> None:
        console.print("[yellow]Cancellation requested; finishing the current record...[/yellow]")
        cancel_event.set()

    previous_handler = signal.signal(signal.SIGINT, _request_cancel)
    try:
        with context:
            orchestrator = context.orchestrator(
                on_result=_result_printer(cfg), cancel_event=cancel_event
            )
            outcome = orchestrator.run(cfg.run_options())
    except MigrationError as e:
        _print_fatal(e)
        raise typer.Exit(code=ExitCode.FATAL)
    except Exception as e:
        LOGGER.exception("Run aborted by an unexpected error")
        _print_fatal(e)
        raise typer.Exit(code=ExitCode.FATAL)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    report = finalize(
        outcome.results,
        cfg,
        run_id=outcome.run_id,
        resumed=outcome.resumed,
        cancelled=outcome.cancelled,
    )
    emit_console_summary(report, console=console)

    if outcome.cancelled:
        raise typer.Exit(code=ExitCode.CANCELLED)
    if outcome.has_failures:
        raise typer.Exit(code=ExitCode.RECORD_FAILURES)


@app.command()
def print_config(
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config file",
        envvar="CERTLEDGER_CONFIG",
    ),
    raw: bool = typer.Option(False, "--raw", help="Raw JSON"),
) -> None:
    """Print merged effective config (secrets masked)."""
    try:
        cfg: MigrationConfig = load_config(path=config)
    except ValueError as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        raise typer.Exit(code=ExitCode.STARTUP_FAILURE)

    data = cfg.public_dict()
    if raw:
        typer.echo(json.dumps(data, indent=2))
    else:
        console.print(Panel(json.dumps(data, indent=2), title="Migration Config", expand=False))


@app.command()
def validate_config(
    config: str = typer.Argument(..., help="Path to config file"),
) -> None:
    """Validate a config file."""
    try:
        validate_config_file(config)
        console.print("[green]✓ Config valid[/green]")
    except ValueError as e:
        console.print(f"[red]✗ Invalid: {e}[/red]")
        raise typer.Exit(code=ExitCode.STARTUP_FAILURE)


@app.command()
def schema() -> None:
    """Print the JSON Schema of the configuration."""
    typer.echo(json.dumps(export_config_schema(), indent=2))


@app.command("checkpoint")
def inspect_checkpoint(
    path: Path = typer.Argument(
        Path("state/migration-checkpoint.jsonl"), help="Checkpoint JSONL path"
    ),
) -> None:
    """Summarise a checkpoint log without modifying it."""
    store = CheckpointStore(path)
    try:
        batches = store.batches()
        pending = store.pending_transactions()
    except FatalMigrationError as e:
        _print_fatal(e)
        raise typer.Exit(code=ExitCode.STARTUP_FAILURE)

    table = Table(title=f"Checkpoint {path}")
    table.add_column("Run", style="cyan")
    table.add_column("Batch", style="cyan", justify="right")
    table.add_column("Success", style="green", justify="right")
    table.add_column("Failed", style="red", justify="right")
    table.add_column("Skipped", style="yellow", justify="right")
    for batch in batches:
        counts = results_by_status(batch.results)
        table.add_row(
            batch.run_id[:12],
            str(batch.batch_index),
            str(counts["success"]),
            str(counts["failed"]),
            str(counts["skipped"]),
        )
    console.print(table)
    console.print(f"Anchored records: {len(store.succeeded_ids())}")
    if pending:
        console.print(f"[yellow]Pending transactions awaiting reconciliation: {len(pending)}[/yellow]")
        for source_id, tx_ref in sorted(pending.items()):
            console.print(f"  {source_id}: {tx_ref}")


def main() -> None:
    """Console-script entry point."""
    app()


if __name__ == "__main__":
    main()
