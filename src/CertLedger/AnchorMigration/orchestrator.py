# === NAVMAP v1 ===
# {
#   "module": "CertLedger.AnchorMigration.orchestrator",
#   "purpose": "Drive eligible records through package, publish and anchor in checkpointed batches",
#   "sections": [
#     {"id": "batchorchestrator", "name": "BatchOrchestrator", "anchor": "class-batchorchestrator", "kind": "class"},
#     {"id": "chunked", "name": "chunked", "anchor": "function-chunked", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Batch orchestration for the anchoring migration.

Responsibilities
----------------
- Stream eligible records from the :class:`SourceRecordReader`, skipping ids
  the checkpoint already lists as ``success``.
- Partition the stream into fixed-size batches and move each record through
  PACKAGING → PUBLISHING → ANCHORING with :func:`advance_state`.
- Retry anchor attempts that time out with bounded exponential backoff,
  carrying a submitted-but-unconfirmed transaction reference into the next
  attempt instead of submitting again.
- Append each batch's results to the checkpoint before the next batch starts.

Concurrency
-----------
With ``publish_workers > 1`` packaging and publishing run on a bounded
``ThreadPoolExecutor``. Anchoring always happens on the calling thread, one
record at a time, in batch order; the signing identity is claimed by that
thread and refuses use from any other.

Cancellation
------------
``cancel_event`` is checked between records. The record in flight finishes
(including its confirmation wait and retries); results gathered so far in the
batch are checkpointed and the run stops.
An unexpected error mid-batch also checkpoints the records that already
settled before it propagates.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set

from CertLedger.AnchorMigration.checkpoint import CheckpointStore
from CertLedger.AnchorMigration.errors import AnchorTimeout, RecordError, log_record_failure
from CertLedger.AnchorMigration.ledger import SigningIdentity
from CertLedger.AnchorMigration.models import (
    AnchorReceipt,
    ContentHash,
    MigrationResult,
    MigrationStatus,
    RecordState,
    RunOptions,
    RunOutcome,
    SourceRecord,
    advance_state,
)
from CertLedger.AnchorMigration.packager import DEFAULT_OPTIONS, PackagerOptions, build_package
from CertLedger.AnchorMigration.retry import OperationType, create_retry_policy
from CertLedger.AnchorMigration.source import SourceRecordReader
from CertLedger.AnchorMigration.transport import AnchorTransport

LOGGER = logging.getLogger(__name__)

ResultCallback = Callable[[MigrationResult], None]

__all__ = ["BatchOrchestrator", "chunked"]


def chunked(records: Iterable[SourceRecord], size: int) -> Iterator[List[SourceRecord]]:
    """Yield consecutive lists of at most ``size`` records."""

    if size < 1:
        raise ValueError("size must be >= 1")
    iterator = iter(records)
    while True:
        batch = list(itertools.islice(iterator, size))
        if not batch:
            return
        yield batch


@dataclass
class _Prepared:
    """Outcome of packaging and publishing one record."""

    record: SourceRecord
    state: RecordState
    content_hash: Optional[ContentHash] = None
    error: Optional[RecordError] = None


class BatchOrchestrator:
    """Runs the migration over every eligible record.

    Attributes:
        reader: Source of eligible records in ascending completion order
        transport: Live or dry-run side-effect boundary
        checkpoint: Append-only result log
        identity: Signer handle; claimed by the thread calling :meth:`run`
    """

    def __init__(
        self,
        reader: SourceRecordReader,
        transport: AnchorTransport,
        checkpoint: CheckpointStore,
        identity: SigningIdentity,
        *,
        packager_options: PackagerOptions = DEFAULT_OPTIONS,
        on_result: Optional[ResultCallback] = None,
        cancel_event: Optional[threading.Event] = None,
        backoff_base_s: float = 2.0,
        backoff_max_s: float = 60.0,
        sleep: Optional[Callable[[float], None]] = None,
        run_id: Optional[str] = None,
    ) -> None:
        self.reader = reader
        self.transport = transport
        self.checkpoint = checkpoint
        self.identity = identity
        self.packager_options = packager_options
        self.on_result = on_result
        self.cancel_event = cancel_event or threading.Event()
        self.backoff_base_s = backoff_base_s
        self.backoff_max_s = backoff_max_s
        self._sleep = sleep or time.sleep
        self.run_id = run_id or uuid.uuid4().hex

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def run(self, options: RunOptions) -> RunOutcome:
        """Process every eligible record and return the run outcome.

        Raises:
            CheckpointCorruption: If the existing checkpoint cannot be trusted
            SourceUnavailable: If the source store fails mid-run
        """

        self.identity.claim()
        done = self.checkpoint.succeeded_ids()
        pending = self.checkpoint.pending_transactions()
        outcome = RunOutcome(run_id=self.run_id)
        if done:
            LOGGER.info(f"Resuming: {len(done)} record(s) already anchored")
        if pending:
            LOGGER.info(f"Reconciling {len(pending)} pending transaction(s) from the checkpoint")

        eligible = self._skip_done(self.reader.fetch_eligible(options.source_filter), done, outcome)
        executor = (
            ThreadPoolExecutor(max_workers=options.publish_workers, thread_name_prefix="publish")
            if options.publish_workers > 1
            else None
        )
        try:
            for batch_index, batch in enumerate(chunked(eligible, options.batch_size)):
                if self.cancelled:
                    outcome.cancelled = True
                    break
                LOGGER.info(f"Batch {batch_index}: {len(batch)} record(s)")
                results: List[MigrationResult] = []
                try:
                    self._process_batch(batch, options, pending, executor, results)
                except Exception:
                    if results:
                        LOGGER.error(
                            f"Batch {batch_index} aborted; checkpointing "
                            f"{len(results)} finished record(s)"
                        )
                        self.checkpoint.append(
                            results, batch_index=batch_index, run_id=self.run_id
                        )
                    raise
                self.checkpoint.append(results, batch_index=batch_index, run_id=self.run_id)
                outcome.results.extend(results)
                outcome.batches.append(len(results))
                if len(results) < len(batch):
                    outcome.cancelled = True
                    break
        finally:
            if executor is not None:
                executor.shutdown(wait=True, cancel_futures=True)

        if outcome.cancelled:
            LOGGER.warning(
                f"Run {self.run_id} cancelled after {len(outcome.results)} record(s)"
            )
        LOGGER.info(
            f"Run {self.run_id} finished: "
            f"{outcome.count(MigrationStatus.SUCCESS)} success, "
            f"{outcome.count(MigrationStatus.FAILED)} failed, "
            f"{outcome.count(MigrationStatus.SKIPPED)} skipped, "
            f"{outcome.resumed} resumed"
        )
        return outcome

    def _skip_done(
        self, records: Iterable[SourceRecord], done: Set[str], outcome: RunOutcome
    ) -> Iterator[SourceRecord]:
        for record in records:
            if record.id in done:
                outcome.resumed += 1
                continue
            yield record

    def _process_batch(
        self,
        batch: List[SourceRecord],
        options: RunOptions,
        pending: Dict[str, str],
        executor: Optional[ThreadPoolExecutor],
        results: List[MigrationResult],
    ) -> None:
        """Append each finished record to ``results`` as soon as it settles."""

        futures: List[Future] = []
        if executor is not None:
            futures = [executor.submit(self._prepare, record) for record in batch]
        try:
            for position, record in enumerate(batch):
                if self.cancelled:
                    break
                prepared = futures[position].result() if futures else self._prepare(record)
                pending_tx_ref = None if self.transport.dry_run else pending.pop(record.id, None)
                result = self._finish(prepared, options, pending_tx_ref)
                results.append(result)
                if self.on_result is not None:
                    self.on_result(result)
        finally:
            for future in futures:
                future.cancel()

    def _prepare(self, record: SourceRecord) -> _Prepared:
        state = advance_state(RecordState.PENDING, RecordState.PACKAGING)
        try:
            package = build_package(record, self.packager_options)
            state = advance_state(state, RecordState.PUBLISHING)
            content_hash = self.transport.publish(package)
        except RecordError as exc:
            return _Prepared(record=record, state=state, error=exc)
        return _Prepared(record=record, state=state, content_hash=content_hash)

    def _finish(
        self, prepared: _Prepared, options: RunOptions, pending_tx_ref: Optional[str]
    ) -> MigrationResult:
        record = prepared.record
        if prepared.error is not None:
            advance_state(prepared.state, RecordState.FAILED)
            return self._failed(record, prepared.state, prepared.error)

        state = advance_state(prepared.state, RecordState.ANCHORING)
        content_hash = prepared.content_hash
        tx_ref = pending_tx_ref
        attempts = 0
        receipt: Optional[AnchorReceipt] = None
        policy = create_retry_policy(
            OperationType.ANCHOR,
            max_attempts=options.max_retries + 1,
            base_delay_s=self.backoff_base_s,
            max_delay_s=self.backoff_max_s,
            sleep=self._sleep,
        )
        try:
            for attempt in policy:
                with attempt:
                    attempts += 1
                    try:
                        receipt = self.transport.anchor(
                            record, content_hash, self.identity, pending_tx_ref=tx_ref
                        )
                    except AnchorTimeout as exc:
                        tx_ref = exc.tx_ref
                        raise
        except RecordError as exc:
            advance_state(state, RecordState.FAILED)
            return self._failed(
                record,
                state,
                exc,
                content_hash=content_hash,
                retries=attempts - 1,
                pending_tx_ref=tx_ref if isinstance(exc, AnchorTimeout) else None,
            )

        if receipt is None:
            advance_state(state, RecordState.SKIPPED)
            return MigrationResult(
                source_id=record.id,
                status=MigrationStatus.SKIPPED,
                content_hash=content_hash,
                retries=attempts - 1,
                dry_run=self.transport.dry_run,
            )

        advance_state(state, RecordState.SUCCEEDED)
        LOGGER.info(
            f"Anchored {record.id}: record={receipt.ledger_record_id} "
            f"tx={receipt.transaction_ref} retries={attempts - 1}"
        )
        self.transport.pace(options.inter_record_delay)
        return MigrationResult(
            source_id=record.id,
            status=MigrationStatus.SUCCESS,
            anchor_receipt=receipt,
            content_hash=content_hash,
            retries=attempts - 1,
        )

    def _failed(
        self,
        record: SourceRecord,
        stage: RecordState,
        error: RecordError,
        *,
        content_hash: Optional[str] = None,
        retries: int = 0,
        pending_tx_ref: Optional[str] = None,
    ) -> MigrationResult:
        log_record_failure(
            LOGGER, source_id=record.id, stage=stage.value, error=error, retries=retries
        )
        return MigrationResult(
            source_id=record.id,
            status=MigrationStatus.FAILED,
            error=str(error),
            error_kind=error.error_kind,
            stage=stage.value,
            content_hash=content_hash,
            retries=retries,
            dry_run=self.transport.dry_run,
            pending_tx_ref=pending_tx_ref,
        )
