# === NAVMAP v1 ===
# {
#   "module": "CertLedger.AnchorMigration.anchor",
#   "purpose": "Submit anchoring transactions and block until they confirm or time out",
#   "sections": [
#     {"id": "anchor-key", "name": "anchor_key", "anchor": "function-anchor-key", "kind": "function"},
#     {"id": "ledgeranchorwriter", "name": "LedgerAnchorWriter", "anchor": "class-ledgeranchorwriter", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Ledger anchor writer.

One call to :meth:`LedgerAnchorWriter.anchor` is one anchor *attempt*:

1. Resolve the subject's address through the :class:`SubjectDirectory`
   (rejected before any ledger traffic when unresolved).
2. Submit the transaction with the identity's next nonce, unless the caller
   passes the reference of a transaction submitted by an earlier attempt.
3. Poll the relay until the transaction is confirmed, rejected, dropped, or
   the confirmation timeout elapses.

Outcomes:
  - CONFIRMED → :class:`AnchorReceipt`
  - REJECTED  → :class:`AnchorRejected` (permanent)
  - DROPPED   → :class:`AnchorTimeout` without ``tx_ref`` (next attempt resubmits);
    the identity restarts its nonce sequence at the dropped nonce
  - timeout   → :class:`AnchorTimeout` with ``tx_ref`` (next attempt re-awaits)

Retrying ``AnchorTimeout`` is the orchestrator's job; this module never
sleeps between attempts.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional

import httpx

from CertLedger.AnchorMigration.errors import (
    AnchorRejected,
    AnchorTimeout,
    PermissionDenied,
)
from CertLedger.AnchorMigration.idempotency import op_key
from CertLedger.AnchorMigration.ledger import (
    LedgerClient,
    SigningIdentity,
    SubjectDirectory,
    TransactionState,
)
from CertLedger.AnchorMigration.models import AnchorReceipt, SourceRecord
from CertLedger.AnchorMigration.ratelimit import RequestLimiter

LOGGER = logging.getLogger(__name__)

__all__ = ["LedgerAnchorWriter", "anchor_key"]


def anchor_key(source_id: str, content_hash: str) -> str:
    """Idempotency key sent with every submission for ``source_id``."""

    return op_key("ANCHOR", source_id, content_hash=content_hash)


class LedgerAnchorWriter:
    """Anchors content hashes on one ledger network.

    Attributes:
        ledger: Relay client for the target network
        directory: Subject → address mapping
        confirmation_timeout_s: Longest wait for a confirmation per attempt
        poll_interval_s: Delay between status polls
        network: Network name stamped on receipts
    """

    def __init__(
        self,
        ledger: LedgerClient,
        directory: SubjectDirectory,
        *,
        confirmation_timeout_s: float = 300.0,
        poll_interval_s: float = 2.0,
        network: Optional[str] = None,
        limiter: Optional[RequestLimiter] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ledger = ledger
        self.directory = directory
        self.confirmation_timeout_s = confirmation_timeout_s
        self.poll_interval_s = poll_interval_s
        self.network = network
        self._submitted_nonces: Dict[str, int] = {}
        self.limiter = limiter
        self._clock = clock
        self._sleep = sleep

    def ensure_capability(self, identity: SigningIdentity) -> None:
        """Check the anchor capability once at startup.

        Raises:
            PermissionDenied: If the signer cannot anchor on this network
        """

        if not self.ledger.has_anchor_capability(identity.address):
            raise PermissionDenied(
                f"Signer {identity.address} lacks the anchor capability on {self.network}",
                address=identity.address,
            )
        LOGGER.info(f"Signer {identity.address} holds the anchor capability")

    def anchor(
        self,
        record: SourceRecord,
        content_hash: str,
        identity: SigningIdentity,
        *,
        pending_tx_ref: Optional[str] = None,
    ) -> AnchorReceipt:
        """Anchor ``content_hash`` for ``record`` and wait for confirmation.

        Args:
            record: Record being anchored
            content_hash: Published content address
            identity: Signer handle owned by the caller
            pending_tx_ref: Transaction submitted by an earlier attempt;
                when given, it is awaited instead of submitting again

        Raises:
            AnchorRejected: Permanent failure
            AnchorTimeout: Confirmation not observed in time
        """

        tx_ref = pending_tx_ref
        if tx_ref is None:
            tx_ref = self._submit(record, content_hash, identity)
        else:
            LOGGER.info(f"Re-awaiting pending transaction {tx_ref} for {record.id}")
        return self._await_confirmation(record, content_hash, tx_ref, identity)

    def _submit(self, record: SourceRecord, content_hash: str, identity: SigningIdentity) -> str:
        subject_address = self.directory.resolve(record.subject_id, source_id=record.id)
        if record.completion_date is None:
            raise AnchorRejected(
                f"Record {record.id} has no completion date", source_id=record.id
            )
        if self.limiter is not None:
            self.limiter.acquire()

        nonce = identity.reserve_nonce()
        try:
            tx_ref = self.ledger.submit_anchor(
                identity,
                nonce=nonce,
                subject_address=subject_address,
                course_id=record.course_id,
                course_name=record.course_name,
                completion_timestamp=int(record.completion_date.timestamp()),
                content_hash=content_hash,
                idempotency_key=anchor_key(record.id, content_hash),
            )
        except (AnchorRejected, AnchorTimeout) as exc:
            exc.source_id = exc.source_id or record.id
            raise
        except httpx.HTTPError as exc:
            raise AnchorTimeout(
                f"Submission for {record.id} was not acknowledged: {exc}",
                source_id=record.id,
            ) from exc
        identity.commit_nonce(nonce)
        self._submitted_nonces[tx_ref] = nonce
        LOGGER.info(f"Submitted anchor for {record.id}: tx={tx_ref} nonce={nonce}")
        return tx_ref

    def _await_confirmation(
        self,
        record: SourceRecord,
        content_hash: str,
        tx_ref: str,
        identity: SigningIdentity,
    ) -> AnchorReceipt:
        started = self._clock()
        deadline = started + self.confirmation_timeout_s
        while True:
            try:
                status = self.ledger.get_transaction(tx_ref)
            except httpx.HTTPError as exc:
                LOGGER.warning(f"Status poll for {tx_ref} failed: {exc}")
                status = None

            if status is not None:
                if status.state is TransactionState.CONFIRMED:
                    if status.record_id is None:
                        raise AnchorRejected(
                            f"Confirmation of {tx_ref} carries no ledger record id",
                            source_id=record.id,
                            tx_ref=tx_ref,
                            reason="missing_record_id",
                        )
                    return AnchorReceipt(
                        ledger_record_id=status.record_id,
                        transaction_ref=tx_ref,
                        content_hash=content_hash,
                        cost_metric=status.cost,
                        confirmed=True,
                        network=self.network,
                    )
                if status.state is TransactionState.REJECTED:
                    raise AnchorRejected(
                        f"Transaction {tx_ref} for {record.id} was rejected: {status.reason}",
                        source_id=record.id,
                        tx_ref=tx_ref,
                        reason=status.reason,
                    )
                if status.state is TransactionState.DROPPED:
                    self._rewind_nonce(identity, tx_ref)
                    raise AnchorTimeout(
                        f"Transaction {tx_ref} for {record.id} was dropped",
                        source_id=record.id,
                        waited_s=self._clock() - started,
                    )

            now = self._clock()
            if now >= deadline:
                raise AnchorTimeout(
                    f"Transaction {tx_ref} for {record.id} unconfirmed after "
                    f"{self.confirmation_timeout_s:.0f}s",
                    source_id=record.id,
                    tx_ref=tx_ref,
                    waited_s=now - started,
                )
            self._sleep(min(self.poll_interval_s, deadline - now))

    def _rewind_nonce(self, identity: SigningIdentity, tx_ref: str) -> None:
        """Give the nonce of dropped ``tx_ref`` back to the identity.

        References carried over from an earlier run have no known nonce; the
        relay's view of the account is used instead.
        """

        nonce = self._submitted_nonces.pop(tx_ref, None)
        if nonce is None:
            nonce = self.ledger.get_nonce(identity.address)
        LOGGER.info(f"Transaction {tx_ref} dropped; nonce sequence restarts at {nonce}")
        identity.reset_nonce(nonce)
