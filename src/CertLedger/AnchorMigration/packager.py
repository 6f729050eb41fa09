"""Canonical certificate metadata packaging.

``build_package`` is a pure function: the same :class:`SourceRecord` always
produces byte-identical payloads, which in turn address identically on the
content store. Canonical form is JSON with sorted keys, compact separators and
UTF-8 encoding.
"""

from __future__ import annotations

import base64
import hashlib
import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from CertLedger.AnchorMigration.errors import InvalidRecord
from CertLedger.AnchorMigration.models import ContentHash, MetadataPackage, SourceRecord

__all__ = ["PackagerOptions", "build_package", "canonical_json", "local_content_hash"]

_REQUIRED_FIELDS = ("id", "subject_id", "course_id", "course_name", "completion_date")

# CIDv1 prefix: version 1, raw codec (0x55), sha2-256 multihash (0x12, 32 bytes)
_CID_V1_RAW_SHA256_PREFIX = bytes([0x01, 0x55, 0x12, 0x20])


@dataclass(frozen=True)
class PackagerOptions:
    """Presentation settings baked into every package."""

    issuer_name: str = "GroeiMetAI"
    default_image: str = "ipfs://certificate-template"


DEFAULT_OPTIONS = PackagerOptions()


def canonical_json(payload: Any) -> bytes:
    """Serialise ``payload`` deterministically."""

    return json.dumps(
        payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def local_content_hash(payload: bytes) -> ContentHash:
    """Compute the CIDv1 (raw, sha2-256, base32) address of ``payload`` offline."""

    digest = hashlib.sha256(payload).digest()
    encoded = base64.b32encode(_CID_V1_RAW_SHA256_PREFIX + digest).decode("ascii")
    return ContentHash("b" + encoded.lower().rstrip("="))


def _missing_fields(record: SourceRecord) -> list[str]:
    missing = []
    for name in _REQUIRED_FIELDS:
        value = getattr(record, name, None)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(name)
    return missing


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _format_score(score: float) -> str:
    # 87.0 -> "87", 87.5 -> "87.5"
    return f"{float(score):g}"


def build_package(record: SourceRecord, options: PackagerOptions = DEFAULT_OPTIONS) -> MetadataPackage:
    """Build the canonical metadata package for ``record``.

    Args:
        record: Source snapshot to package
        options: Issuer branding and fallback image

    Returns:
        MetadataPackage whose ``payload`` is the canonical JSON bytes

    Raises:
        InvalidRecord: If a required field is missing or empty, or the
            total score is unreadable
    """

    missing = _missing_fields(record)
    if missing:
        raise InvalidRecord(
            f"Record {record.id or '<unknown>'} is missing required fields: {', '.join(missing)}",
            source_id=record.id or None,
            missing=missing,
        )
    if not isinstance(record.completion_date, datetime):
        raise InvalidRecord(
            f"Record {record.id} has a non-datetime completion_date",
            source_id=record.id,
            missing=["completion_date"],
        )
    if not math.isfinite(record.progress_stats.total_score):
        raise InvalidRecord(
            f"Record {record.id} has an unreadable total score",
            source_id=record.id,
            missing=["total_score"],
        )

    completed_on = _as_utc(record.completion_date).date().isoformat()
    stats = record.progress_stats
    attributes: list[dict[str, str]] = []
    if record.subject_name:
        attributes.append({"trait_type": "Student Name", "value": record.subject_name})
    attributes.extend(
        [
            {"trait_type": "Course", "value": record.course_name},
            {"trait_type": "Course ID", "value": record.course_id},
            {"trait_type": "Completion Date", "value": completed_on},
            {"trait_type": "Source Record ID", "value": record.id},
            {"trait_type": "Total Score", "value": _format_score(stats.total_score)},
            {"trait_type": "Completed Modules", "value": str(len(stats.completed_modules))},
        ]
    )

    name = f"{options.issuer_name} Certificate - {record.course_name}"
    description = f"Certificate of completion for {record.course_name} course"
    image = record.proof_url or options.default_image
    payload = canonical_json(
        {
            "name": name,
            "description": description,
            "image": image,
            "attributes": attributes,
        }
    )
    return MetadataPackage(
        source_id=record.id,
        name=name,
        description=description,
        image=image,
        attributes=tuple(attributes),
        payload=payload,
        digest=hashlib.sha256(payload).hexdigest(),
    )
