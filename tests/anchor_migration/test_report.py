"""Tests for report aggregation, persistence and console rendering."""

from __future__ import annotations

import io
import json
from datetime import datetime, timezone

from rich.console import Console

from CertLedger.AnchorMigration.config import MigrationConfig
from CertLedger.AnchorMigration.models import AnchorReceipt, MigrationResult, MigrationStatus
from CertLedger.AnchorMigration.report import (
    build_summary_record,
    emit_console_summary,
    finalize,
    report_filename,
)

MOMENT = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _results():
    receipt = AnchorReceipt(
        ledger_record_id="1", transaction_ref="0x1", content_hash="bafkrei1", cost_metric=30000
    )
    return [
        MigrationResult(source_id="a", status=MigrationStatus.SUCCESS, anchor_receipt=receipt, retries=2),
        MigrationResult(
            source_id="b",
            status=MigrationStatus.FAILED,
            error="no address",
            error_kind="AnchorRejected",
            stage="anchoring",
        ),
        MigrationResult(source_id="c", status=MigrationStatus.SKIPPED, dry_run=True),
    ]


def test_summary_counts():
    summary = build_summary_record(_results(), resumed=4)

    assert summary == {
        "total": 3,
        "successful": 1,
        "failed": 1,
        "skipped": 1,
        "resumed": 4,
        "retries": 2,
        "total_cost": 30000,
        "error_kinds": {"AnchorRejected": 1},
    }


def test_empty_summary():
    summary = build_summary_record([])
    assert summary["total"] == 0
    assert summary["total_cost"] == 0


def test_report_filename():
    assert report_filename("polygon", MOMENT) == "migration-report-polygon-2024-05-01T12-00-00-000Z.json"


def test_finalize_writes_report(tmp_path):
    config = MigrationConfig(network="hardhat", content_store={"api_key": "supersecret"})

    report = finalize(
        _results(), config, report_dir=tmp_path / "reports", run_id="run-1", resumed=2, now=MOMENT
    )

    assert report.path == tmp_path / "reports" / "migration-report-hardhat-2024-05-01T12-00-00-000Z.json"
    text = report.path.read_text(encoding="utf-8")
    data = json.loads(text)
    assert data["network"] == "hardhat"
    assert data["run_id"] == "run-1"
    assert data["summary"]["resumed"] == 2
    assert [r["source_id"] for r in data["results"]] == ["a", "b", "c"]
    assert data["results"][0]["anchor_receipt"]["transaction_ref"] == "0x1"
    assert data["options"]["batch_size"] == 10
    assert data["config_hash"] == config.config_hash()
    assert data["config"]["network"] == "hardhat"
    assert data["config"]["content_store"]["api_key"] == "**********"
    assert "supersecret" not in text
    assert list((tmp_path / "reports").iterdir()) == [report.path]


def test_finalize_defaults_to_configured_dir(tmp_path):
    config = MigrationConfig(paths={"report_dir": str(tmp_path / "out")})

    report = finalize([], config, now=MOMENT)

    assert report.path.parent == tmp_path / "out"
    assert report.path.exists()


def test_console_summary_lists_failures(tmp_path):
    report = finalize(_results(), MigrationConfig(), report_dir=tmp_path, now=MOMENT)
    buffer = io.StringIO()

    emit_console_summary(report, console=Console(file=buffer, width=200))

    output = buffer.getvalue()
    assert "Migration Summary" in output
    assert "Failed Records" in output
    assert "Ledger rejected the anchor" in output
    assert str(report.path.name) in output
