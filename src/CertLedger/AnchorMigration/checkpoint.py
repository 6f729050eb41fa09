# === NAVMAP v1 ===
# {
#   "module": "CertLedger.AnchorMigration.checkpoint",
#   "purpose": "Append-only JSONL checkpoint of per-batch migration results",
#   "sections": [
#     {"id": "checkpointbatch", "name": "CheckpointBatch", "anchor": "class-checkpointbatch", "kind": "dataclass"},
#     {"id": "checkpointstore", "name": "CheckpointStore", "anchor": "class-checkpointstore", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Durable checkpoint log.

Each completed batch becomes exactly one JSONL line::

    {"record_type": "batch", "schema_version": 1, "run_id": "...",
     "batch_index": 0, "timestamp": "...", "results": [{...}, ...]}

Lines are appended, flushed and fsynced; existing lines are never rewritten.
Loading is strict: an unparsable line, a missing field, an unknown status or
a second ``success`` for the same source id raises
:class:`CheckpointCorruption` and nothing is repaired automatically.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Sequence, Set

from CertLedger.AnchorMigration.errors import CheckpointCorruption
from CertLedger.AnchorMigration.io_utils import ensure_parent_exists
from CertLedger.AnchorMigration.models import MigrationResult, MigrationStatus

LOGGER = logging.getLogger(__name__)

CHECKPOINT_SCHEMA_VERSION = 1

__all__ = ["CHECKPOINT_SCHEMA_VERSION", "CheckpointBatch", "CheckpointStore"]


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class CheckpointBatch:
    """One parsed checkpoint line."""

    run_id: str
    batch_index: int
    timestamp: str
    results: tuple[MigrationResult, ...]


class CheckpointStore:
    """Thread-safe append-only checkpoint backed by a JSONL file."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def append(
        self,
        results: Sequence[MigrationResult],
        *,
        batch_index: int,
        run_id: str,
    ) -> None:
        """Durably append one batch of results.

        Empty batches are not written.
        """

        if not results:
            return
        payload: Dict[str, Any] = {
            "record_type": "batch",
            "schema_version": CHECKPOINT_SCHEMA_VERSION,
            "run_id": run_id,
            "batch_index": batch_index,
            "timestamp": _utc_timestamp(),
            "results": [result.to_dict() for result in results],
        }
        line = json.dumps(payload, sort_keys=True, ensure_ascii=False) + "\n"
        with self._lock:
            ensure_parent_exists(self.path)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line)
                handle.flush()
                os.fsync(handle.fileno())
        LOGGER.debug(
            f"Checkpointed batch {batch_index} ({len(results)} result(s)) to {self.path}"
        )

    def batches(self) -> List[CheckpointBatch]:
        """Parse every line of the checkpoint.

        Raises:
            CheckpointCorruption: On any line that cannot be trusted
        """

        if not self.path.exists():
            return []
        parsed: List[CheckpointBatch] = []
        succeeded: Set[str] = set()
        with self.path.open("r", encoding="utf-8") as handle:
            for line_number, raw in enumerate(handle, start=1):
                if not raw.strip():
                    continue
                batch = self._parse_line(raw, line_number)
                for result in batch.results:
                    if result.status is MigrationStatus.SUCCESS:
                        if result.source_id in succeeded:
                            raise CheckpointCorruption(
                                f"Duplicate success for {result.source_id} at line {line_number}",
                                path=self.path,
                                line_number=line_number,
                            )
                        succeeded.add(result.source_id)
                parsed.append(batch)
        return parsed

    def _parse_line(self, raw: str, line_number: int) -> CheckpointBatch:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CheckpointCorruption(
                f"Unparsable checkpoint line {line_number}: {exc}",
                path=self.path,
                line_number=line_number,
            ) from exc
        if not isinstance(data, dict) or data.get("record_type") != "batch":
            raise CheckpointCorruption(
                f"Checkpoint line {line_number} is not a batch record",
                path=self.path,
                line_number=line_number,
            )
        version = data.get("schema_version")
        if version != CHECKPOINT_SCHEMA_VERSION:
            raise CheckpointCorruption(
                f"Unsupported checkpoint schema version {version!r} at line {line_number}",
                path=self.path,
                line_number=line_number,
            )
        try:
            results = tuple(MigrationResult.from_dict(item) for item in data["results"])
            return CheckpointBatch(
                run_id=str(data["run_id"]),
                batch_index=int(data["batch_index"]),
                timestamp=str(data.get("timestamp", "")),
                results=results,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise CheckpointCorruption(
                f"Malformed checkpoint line {line_number}: {exc!r}",
                path=self.path,
                line_number=line_number,
            ) from exc

    def load(self) -> List[MigrationResult]:
        """Return every checkpointed result in append order."""

        return [result for batch in self.batches() for result in batch.results]

    def succeeded_ids(self) -> Set[str]:
        return {r.source_id for r in self.load() if r.status is MigrationStatus.SUCCESS}

    def pending_transactions(self) -> Dict[str, str]:
        """Map source ids to submitted-but-unconfirmed transaction refs.

        Only the latest live result per source id counts; a later result
        without a reference (or a success) clears an earlier one. Dry-run
        results never touch the ledger and leave references as they are.
        """

        pending: Dict[str, str] = {}
        for result in self.load():
            if result.dry_run:
                continue
            if result.status is MigrationStatus.FAILED and result.pending_tx_ref:
                pending[result.source_id] = result.pending_tx_ref
            else:
                pending.pop(result.source_id, None)
        return pending
