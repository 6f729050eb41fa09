"""Side-effect boundary between the orchestrator and external services.

The transport is selected once at startup:

- :class:`LiveTransport` publishes through :class:`ContentStorePublisher`,
  anchors through :class:`LedgerAnchorWriter`, and sleeps between anchors.
- :class:`DryRunTransport` computes the content address locally, anchors
  nothing (``anchor`` returns ``None``), and never sleeps.

The orchestrator never inspects a dry-run flag; a ``None`` receipt is what
turns a record into a ``skipped`` result.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Protocol

from CertLedger.AnchorMigration.anchor import LedgerAnchorWriter
from CertLedger.AnchorMigration.content_store import ContentStorePublisher
from CertLedger.AnchorMigration.ledger import SigningIdentity
from CertLedger.AnchorMigration.models import (
    AnchorReceipt,
    ContentHash,
    MetadataPackage,
    SourceRecord,
)
from CertLedger.AnchorMigration.packager import local_content_hash

LOGGER = logging.getLogger(__name__)

__all__ = ["AnchorTransport", "LiveTransport", "DryRunTransport"]


class AnchorTransport(Protocol):
    """What the orchestrator needs to move a packaged record outward."""

    dry_run: bool

    def publish(self, package: MetadataPackage) -> ContentHash:
        ...

    def anchor(
        self,
        record: SourceRecord,
        content_hash: str,
        identity: SigningIdentity,
        *,
        pending_tx_ref: Optional[str] = None,
    ) -> Optional[AnchorReceipt]:
        ...

    def pace(self, delay_s: float) -> None:
        ...


class LiveTransport:
    """Side-effecting transport used for real migrations."""

    dry_run = False

    def __init__(
        self,
        publisher: ContentStorePublisher,
        writer: LedgerAnchorWriter,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.publisher = publisher
        self.writer = writer
        self._sleep = sleep

    def publish(self, package: MetadataPackage) -> ContentHash:
        return self.publisher.publish(package)

    def anchor(
        self,
        record: SourceRecord,
        content_hash: str,
        identity: SigningIdentity,
        *,
        pending_tx_ref: Optional[str] = None,
    ) -> Optional[AnchorReceipt]:
        return self.writer.anchor(record, content_hash, identity, pending_tx_ref=pending_tx_ref)

    def pace(self, delay_s: float) -> None:
        if delay_s > 0:
            self._sleep(delay_s)


class DryRunTransport:
    """No-op transport: nothing leaves the process."""

    dry_run = True

    def publish(self, package: MetadataPackage) -> ContentHash:
        content_hash = local_content_hash(package.payload)
        LOGGER.info(f"DRY RUN: would publish {package.filename} as {content_hash}")
        return content_hash

    def anchor(
        self,
        record: SourceRecord,
        content_hash: str,
        identity: SigningIdentity,
        *,
        pending_tx_ref: Optional[str] = None,
    ) -> Optional[AnchorReceipt]:
        LOGGER.info(
            f"DRY RUN: would anchor {record.id} (subject={record.subject_id}, "
            f"course={record.course_id}, hash={content_hash})"
        )
        return None

    def pace(self, delay_s: float) -> None:
        return None
