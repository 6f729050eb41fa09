"""Shared fixtures for the anchoring migration tests."""

from __future__ import annotations

from pathlib import Path
from typing import List

import pytest

from CertLedger.AnchorMigration.models import SourceRecord
from tests.anchor_migration.fakes import FakeClock, Harness, make_record


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    return Harness(tmp_path=tmp_path)


@pytest.fixture
def twelve_records() -> List[SourceRecord]:
    return [make_record(n) for n in range(1, 13)]


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
