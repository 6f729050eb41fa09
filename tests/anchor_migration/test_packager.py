"""Tests for canonical metadata packaging."""

from __future__ import annotations

import hashlib
import json
import math
from datetime import datetime

import pytest

from CertLedger.AnchorMigration.errors import InvalidRecord
from CertLedger.AnchorMigration.models import ProgressStats
from CertLedger.AnchorMigration.packager import (
    PackagerOptions,
    build_package,
    canonical_json,
    local_content_hash,
)
from tests.anchor_migration.fakes import make_record


def _attributes(package):
    return {a["trait_type"]: a["value"] for a in package.attributes}


class TestBuildPackage:
    def test_is_deterministic(self):
        first = build_package(make_record(1))
        second = build_package(make_record(1))

        assert first.payload == second.payload
        assert first.digest == hashlib.sha256(first.payload).hexdigest()

    def test_payload_is_canonical_json(self):
        package = build_package(make_record(1))
        document = json.loads(package.payload)

        assert canonical_json(document) == package.payload
        assert list(document) == sorted(document)
        assert b", " not in package.payload
        assert b"\": " not in package.payload

    def test_attributes(self):
        package = build_package(make_record(3))
        attributes = _attributes(package)

        assert attributes == {
            "Student Name": "Student 3",
            "Course": "Prompt Engineering",
            "Course ID": "prompt-engineering",
            "Completion Date": "2024-01-04",
            "Source Record ID": "cert-003",
            "Total Score": "87.5",
            "Completed Modules": "3",
        }
        assert package.name == "GroeiMetAI Certificate - Prompt Engineering"
        assert package.description == "Certificate of completion for Prompt Engineering course"
        assert package.filename == "certificate-cert-003.json"

    def test_image_falls_back_to_default(self):
        assert build_package(make_record(1)).image == "ipfs://certificate-template"
        with_proof = build_package(make_record(1, proof_url="https://example.org/c.pdf"))
        assert with_proof.image == "https://example.org/c.pdf"

    def test_options_change_branding(self):
        package = build_package(make_record(1), PackagerOptions(issuer_name="Acme"))
        assert package.name == "Acme Certificate - Prompt Engineering"

    def test_naive_completion_date_is_treated_as_utc(self):
        record = make_record(1, completion_date=datetime(2024, 5, 1, 23, 30))
        assert _attributes(build_package(record))["Completion Date"] == "2024-05-01"

    def test_whole_scores_drop_decimal(self):
        record = make_record(1, progress_stats=ProgressStats(total_score=90.0))
        assert _attributes(build_package(record))["Total Score"] == "90"

    def test_subject_name_is_optional(self):
        record = make_record(1, subject_name=None)
        assert "Student Name" not in _attributes(build_package(record))

    @pytest.mark.parametrize("field", ["subject_id", "course_id", "course_name", "completion_date"])
    def test_missing_required_field(self, field):
        record = make_record(1, **{field: None if field == "completion_date" else ""})

        with pytest.raises(InvalidRecord) as excinfo:
            build_package(record)

        assert excinfo.value.missing == [field]
        assert excinfo.value.source_id == "cert-001"

    def test_unreadable_score(self):
        record = make_record(1, progress_stats=ProgressStats(total_score=math.nan))

        with pytest.raises(InvalidRecord) as excinfo:
            build_package(record)

        assert excinfo.value.missing == ["total_score"]


class TestLocalContentHash:
    def test_cid_v1_raw_shape(self):
        cid = local_content_hash(b"hello")
        assert cid.startswith("bafkrei")
        assert len(cid) == 59
        assert cid == cid.lower()

    def test_identical_bytes_address_identically(self):
        assert local_content_hash(b"x") == local_content_hash(b"x")
        assert local_content_hash(b"x") != local_content_hash(b"y")
