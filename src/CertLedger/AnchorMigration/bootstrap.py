# === NAVMAP v1 ===
# {
#   "module": "CertLedger.AnchorMigration.bootstrap",
#   "purpose": "Wire configuration into stores, clients, transport and orchestrator",
#   "sections": [
#     {"id": "migrationcontext", "name": "MigrationContext", "anchor": "#class-migrationcontext", "kind": "class"},
#     {"id": "build-context", "name": "build_context", "anchor": "#function-build-context", "kind": "function"},
#     {"id": "run-from-config", "name": "run_from_config", "anchor": "#function-run-from-config", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Bootstrap for the anchoring migration.

**Purpose**
-----------
Coordinates startup in a fixed order so every fatal condition surfaces
before the first write:

1. Load and verify the checkpoint (corruption aborts here)
2. Build the source reader
3. In live mode only:
   a. authenticate against the pinning service
   b. read the signer's next nonce from the ledger relay
   c. load the subject directory
   d. verify the signer holds the anchor capability
4. Select the transport (live or dry run) once
5. Build the :class:`BatchOrchestrator`

Dry run performs steps 1, 2, 4 and 5 only and opens no network connection.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

import httpx

from CertLedger.AnchorMigration.anchor import LedgerAnchorWriter
from CertLedger.AnchorMigration.checkpoint import CheckpointStore
from CertLedger.AnchorMigration.config import MigrationConfig
from CertLedger.AnchorMigration.content_store import ContentStorePublisher, PinningClient
from CertLedger.AnchorMigration.ledger import (
    ZERO_ADDRESS,
    HttpLedgerClient,
    SigningIdentity,
    SubjectDirectory,
    is_valid_address,
)
from CertLedger.AnchorMigration.models import MigrationResult, RunOutcome
from CertLedger.AnchorMigration.orchestrator import BatchOrchestrator
from CertLedger.AnchorMigration.ratelimit import RequestLimiter
from CertLedger.AnchorMigration.source import (
    HttpSourceStore,
    SourceRecordReader,
    SourceStore,
    SqliteSourceStore,
)
from CertLedger.AnchorMigration.transport import AnchorTransport, DryRunTransport, LiveTransport

LOGGER = logging.getLogger(__name__)

__all__ = [
    "HttpClients",
    "MigrationContext",
    "build_context",
    "build_source_store",
    "run_from_config",
]


def _secret(value: Any) -> Optional[str]:
    return value.get_secret_value() if value is not None else None


@dataclass
class HttpClients:
    """Optional pre-built httpx clients; tests pass ``MockTransport``-backed ones."""

    source: Optional[httpx.Client] = None
    content_store: Optional[httpx.Client] = None
    ledger: Optional[httpx.Client] = None


@dataclass
class MigrationContext:
    """Everything a run needs, built from one :class:`MigrationConfig`."""

    config: MigrationConfig
    reader: SourceRecordReader
    transport: AnchorTransport
    checkpoint: CheckpointStore
    identity: SigningIdentity
    _closers: List[Callable[[], None]] = field(default_factory=list, repr=False)

    def close(self) -> None:
        while self._closers:
            self._closers.pop()()

    def __enter__(self) -> "MigrationContext":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def orchestrator(
        self,
        *,
        on_result: Optional[Callable[[MigrationResult], None]] = None,
        cancel_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> BatchOrchestrator:
        return BatchOrchestrator(
            self.reader,
            self.transport,
            self.checkpoint,
            self.identity,
            packager_options=self.config.packager_options(),
            on_result=on_result,
            cancel_event=cancel_event,
            backoff_base_s=self.config.ledger.backoff_base_s,
            backoff_max_s=self.config.ledger.backoff_max_s,
            sleep=sleep,
            run_id=self.config.run_id,
        )


def build_source_store(config: MigrationConfig, client: Optional[httpx.Client] = None) -> SourceStore:
    """Instantiate the configured source backend."""

    source = config.source
    if source.backend == "http":
        return HttpSourceStore(
            source.url or "",
            token=_secret(source.token),
            timeout_s=source.timeout_s,
            client=client,
        )
    return SqliteSourceStore(source.path)


def _build_live_transport(
    config: MigrationConfig,
    identity_address: str,
    clients: HttpClients,
    closers: List[Callable[[], None]],
    sleep: Callable[[float], None],
) -> tuple[LiveTransport, SigningIdentity]:
    store_cfg = config.content_store
    pinning = PinningClient(
        store_cfg.api_url,
        api_key=_secret(store_cfg.api_key),
        secret_api_key=_secret(store_cfg.secret_api_key),
        timeout_s=store_cfg.timeout_s,
        cid_version=store_cfg.cid_version,
        client=clients.content_store,
    )
    closers.append(pinning.close)
    pinning.authenticate()

    ledger_cfg = config.ledger
    profile = config.network_profile()
    credential = _secret(ledger_cfg.signer_credential)
    ledger = HttpLedgerClient(
        profile.relay_url,
        chain_id=profile.chain_id,
        contract_address=profile.contract_address,
        credential=credential,
        timeout_s=ledger_cfg.timeout_s,
        submit_attempts=ledger_cfg.submit_retry.max_attempts,
        confirmations=ledger_cfg.confirmations,
        client=clients.ledger,
    )
    closers.append(ledger.close)
    identity = SigningIdentity(
        address=identity_address,
        credential=credential,
        next_nonce=ledger.get_nonce(identity_address),
    )

    directory = SubjectDirectory.from_file(config.directory.path)
    writer = LedgerAnchorWriter(
        ledger,
        directory,
        confirmation_timeout_s=ledger_cfg.confirmation_timeout_s,
        poll_interval_s=ledger_cfg.poll_interval_s,
        network=config.network.value,
        limiter=RequestLimiter(
            "ledger",
            ledger_cfg.rate_limit.rates,
            max_delay_ms=ledger_cfg.rate_limit.max_delay_ms,
        ),
        sleep=sleep,
    )
    writer.ensure_capability(identity)

    publisher = ContentStorePublisher(
        pinning,
        max_attempts=store_cfg.retry.max_attempts,
        base_delay_s=store_cfg.retry.base_delay_s,
        max_delay_s=store_cfg.retry.max_delay_s,
        retry_statuses=store_cfg.retry.retry_statuses,
        limiter=RequestLimiter(
            "content_store",
            store_cfg.rate_limit.rates,
            max_delay_ms=store_cfg.rate_limit.max_delay_ms,
        ),
        sleep=sleep,
    )
    return LiveTransport(publisher, writer, sleep=sleep), identity


def build_context(
    config: MigrationConfig,
    *,
    clients: Optional[HttpClients] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> MigrationContext:
    """Run the startup sequence and return a ready :class:`MigrationContext`.

    Raises:
        CheckpointCorruption: If the checkpoint cannot be trusted
        AuthenticationFailed: If a collaborator rejects our credentials (live)
        PermissionDenied: If the signer lacks the anchor capability (live)
        ValueError: On configuration problems (signer address, directory file)
    """

    clients = clients or HttpClients()
    closers: List[Callable[[], None]] = []

    checkpoint = CheckpointStore(config.paths.checkpoint)
    existing = checkpoint.load()
    LOGGER.info(f"Checkpoint {checkpoint.path}: {len(existing)} result(s) on record")

    store = build_source_store(config, client=clients.source)
    if isinstance(store, HttpSourceStore):
        closers.append(store.close)
    reader = SourceRecordReader(store, page_size=config.source.page_size)

    try:
        if config.run.dry_run:
            LOGGER.info("DRY RUN: using the no-op transport; no network calls will be made")
            transport: AnchorTransport = DryRunTransport()
            identity = SigningIdentity(address=config.ledger.signer_address or ZERO_ADDRESS)
        else:
            address = config.ledger.signer_address
            if not is_valid_address(address):
                raise ValueError(f"ledger.signer_address is missing or invalid: {address!r}")
            transport, identity = _build_live_transport(config, address, clients, closers, sleep)
    except BaseException:
        for closer in reversed(closers):
            closer()
        raise

    LOGGER.info(
        f"Bootstrap complete: network={config.network.value} "
        f"dry_run={config.run.dry_run} config_hash={config.config_hash()[:12]}"
    )
    return MigrationContext(
        config=config,
        reader=reader,
        transport=transport,
        checkpoint=checkpoint,
        identity=identity,
        _closers=closers,
    )


def run_from_config(
    config: MigrationConfig,
    *,
    clients: Optional[HttpClients] = None,
    on_result: Optional[Callable[[MigrationResult], None]] = None,
    cancel_event: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RunOutcome:
    """Bootstrap and execute one migration run."""

    with build_context(config, clients=clients, sleep=sleep) as context:
        orchestrator = context.orchestrator(
            on_result=on_result, cancel_event=cancel_event, sleep=sleep
        )
        return orchestrator.run(config.run_options())
