# === NAVMAP v1 ===
# {
#   "module": "CertLedger.AnchorMigration.models",
#   "purpose": "Record, receipt, and result types plus the per-record state machine",
#   "sections": [
#     {"id": "sourcerecord", "name": "SourceRecord", "anchor": "#class-sourcerecord", "kind": "dataclass"},
#     {"id": "metadatapackage", "name": "MetadataPackage", "anchor": "#class-metadatapackage", "kind": "dataclass"},
#     {"id": "anchorreceipt", "name": "AnchorReceipt", "anchor": "#class-anchorreceipt", "kind": "dataclass"},
#     {"id": "migrationresult", "name": "MigrationResult", "anchor": "#class-migrationresult", "kind": "dataclass"},
#     {"id": "recordstate", "name": "RecordState", "anchor": "#class-recordstate", "kind": "enum"},
#     {"id": "advance-state", "name": "advance_state", "anchor": "#function-advance-state", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Record, receipt, and result types for the anchoring migration.

**State Machine (records):**

    PENDING
      ↓
    PACKAGING ──────────────┐
      ↓                     │
    PUBLISHING ─────────────┤
      ↓                     ├→ FAILED
    ANCHORING ──────────────┤
      ├→ SUCCEEDED          │
      └→ SKIPPED (dry run)  │

Terminal states are final. Any stage may fail; a failure ends the record's
state machine without touching the rest of the batch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Mapping, NewType, Optional, Sequence

ContentHash = NewType("ContentHash", str)


class MigrationStatus(str, Enum):
    """Terminal outcome persisted for each attempted record."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class RecordState(str, Enum):
    """Per-record lifecycle states."""

    PENDING = "pending"
    PACKAGING = "packaging"
    PUBLISHING = "publishing"
    ANCHORING = "anchoring"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({RecordState.SUCCEEDED, RecordState.FAILED, RecordState.SKIPPED})

_TRANSITIONS: dict[RecordState, frozenset[RecordState]] = {
    RecordState.PENDING: frozenset({RecordState.PACKAGING}),
    RecordState.PACKAGING: frozenset({RecordState.PUBLISHING, RecordState.FAILED}),
    RecordState.PUBLISHING: frozenset({RecordState.ANCHORING, RecordState.FAILED}),
    RecordState.ANCHORING: frozenset(
        {RecordState.SUCCEEDED, RecordState.FAILED, RecordState.SKIPPED}
    ),
}


def advance_state(current: RecordState, new: RecordState) -> RecordState:
    """Return ``new`` when ``current → new`` is a legal forward transition.

    Raises:
        ValueError: On backward moves or moves out of a terminal state.
    """

    if new not in _TRANSITIONS.get(current, frozenset()):
        raise ValueError(f"Illegal record state transition {current.value} -> {new.value}")
    return new


@dataclass(frozen=True)
class ProgressStats:
    """Course progress snapshot attached to a completion record."""

    completed_modules: tuple[str, ...] = ()
    total_score: float = 0.0


@dataclass(frozen=True)
class SourceRecord:
    """Immutable snapshot of a completion certificate in the source store."""

    id: str
    subject_id: str
    course_id: str
    course_name: str
    completion_date: Optional[datetime]
    proof_url: Optional[str] = None
    progress_stats: ProgressStats = field(default_factory=ProgressStats)
    subject_name: Optional[str] = None


@dataclass(frozen=True)
class SourceFilter:
    """Eligibility filter handed to the source store."""

    from_date: Optional[date] = None
    course_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class MetadataPackage:
    """Canonical metadata derived from a :class:`SourceRecord`."""

    source_id: str
    name: str
    description: str
    image: str
    attributes: tuple[Mapping[str, str], ...]
    payload: bytes
    digest: str

    @property
    def filename(self) -> str:
        return f"certificate-{self.source_id}.json"


@dataclass(frozen=True)
class AnchorReceipt:
    """Confirmation of an anchored record; immutable once created."""

    ledger_record_id: str
    transaction_ref: str
    content_hash: str
    cost_metric: int
    confirmed: bool = True
    network: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ledger_record_id": self.ledger_record_id,
            "transaction_ref": self.transaction_ref,
            "content_hash": self.content_hash,
            "cost_metric": self.cost_metric,
            "confirmed": self.confirmed,
            "network": self.network,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AnchorReceipt":
        return cls(
            ledger_record_id=str(data["ledger_record_id"]),
            transaction_ref=str(data["transaction_ref"]),
            content_hash=str(data["content_hash"]),
            cost_metric=int(data.get("cost_metric", 0)),
            confirmed=bool(data.get("confirmed", True)),
            network=data.get("network"),
        )


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class MigrationResult:
    """Outcome of one attempted source record.

    Attributes:
        source_id: Idempotency key (source record id)
        status: Terminal :class:`MigrationStatus`
        anchor_receipt: Receipt for ``success`` results, otherwise ``None``
        error: Human-readable error message (failed results only)
        error_kind: Stable error class name (failed results only)
        stage: Record state in which the failure happened
        content_hash: Published (or locally computed) content address
        retries: Anchor retries consumed by this record
        dry_run: ``True`` when produced by the no-op transport
        pending_tx_ref: Submitted but unconfirmed transaction awaiting reconciliation
    """

    source_id: str
    status: MigrationStatus
    anchor_receipt: Optional[AnchorReceipt] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    stage: Optional[str] = None
    content_hash: Optional[str] = None
    retries: int = 0
    dry_run: bool = False
    pending_tx_ref: Optional[str] = None
    finished_at: str = field(default_factory=_utc_timestamp)

    @property
    def cost_metric(self) -> int:
        return self.anchor_receipt.cost_metric if self.anchor_receipt else 0

    def is_success(self) -> bool:
        return self.status is MigrationStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "status": self.status.value,
            "anchor_receipt": self.anchor_receipt.to_dict() if self.anchor_receipt else None,
            "error": self.error,
            "error_kind": self.error_kind,
            "stage": self.stage,
            "content_hash": self.content_hash,
            "retries": self.retries,
            "dry_run": self.dry_run,
            "pending_tx_ref": self.pending_tx_ref,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MigrationResult":
        """Rebuild a result from its checkpoint form.

        Raises:
            KeyError: When ``source_id`` or ``status`` is missing
            ValueError: When ``status`` is not a known value
        """

        receipt = data.get("anchor_receipt")
        return cls(
            source_id=str(data["source_id"]),
            status=MigrationStatus(data["status"]),
            anchor_receipt=AnchorReceipt.from_dict(receipt) if receipt else None,
            error=data.get("error"),
            error_kind=data.get("error_kind"),
            stage=data.get("stage"),
            content_hash=data.get("content_hash"),
            retries=int(data.get("retries", 0)),
            dry_run=bool(data.get("dry_run", False)),
            pending_tx_ref=data.get("pending_tx_ref"),
            finished_at=str(data.get("finished_at") or _utc_timestamp()),
        )


@dataclass(frozen=True)
class RunOptions:
    """Options for a single orchestrator run."""

    batch_size: int = 10
    dry_run: bool = False
    from_date: Optional[date] = None
    course_ids: tuple[str, ...] = ()
    max_retries: int = 3
    inter_record_delay: float = 2.0
    publish_workers: int = 1

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.inter_record_delay < 0:
            raise ValueError("inter_record_delay must be >= 0")
        if self.publish_workers < 1:
            raise ValueError("publish_workers must be >= 1")

    @property
    def source_filter(self) -> SourceFilter:
        return SourceFilter(from_date=self.from_date, course_ids=tuple(self.course_ids))

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_size": self.batch_size,
            "dry_run": self.dry_run,
            "from_date": self.from_date.isoformat() if self.from_date else None,
            "course_ids": list(self.course_ids),
            "max_retries": self.max_retries,
            "inter_record_delay": self.inter_record_delay,
            "publish_workers": self.publish_workers,
        }


@dataclass
class RunOutcome:
    """What the orchestrator hands back once a run stops."""

    run_id: str
    results: list[MigrationResult] = field(default_factory=list)
    batches: list[int] = field(default_factory=list)
    resumed: int = 0
    cancelled: bool = False

    def count(self, status: MigrationStatus) -> int:
        return sum(1 for result in self.results if result.status is status)

    @property
    def has_failures(self) -> bool:
        return self.count(MigrationStatus.FAILED) > 0


def results_by_status(results: Sequence[MigrationResult]) -> dict[str, int]:
    """Count results per status, always including every status key."""

    totals = {status.value: 0 for status in MigrationStatus}
    for result in results:
        totals[result.status.value] += 1
    return totals
