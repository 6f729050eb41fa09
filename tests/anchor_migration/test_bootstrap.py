"""Startup sequence and end-to-end runs over mocked HTTP collaborators."""

from __future__ import annotations

import json

import httpx
import pytest
import yaml

from CertLedger.AnchorMigration.bootstrap import HttpClients, build_context, run_from_config
from CertLedger.AnchorMigration.config import MigrationConfig
from CertLedger.AnchorMigration.errors import (
    AuthenticationFailed,
    CheckpointCorruption,
    PermissionDenied,
)
from CertLedger.AnchorMigration.models import MigrationStatus
from CertLedger.AnchorMigration.transport import DryRunTransport, LiveTransport
from tests.anchor_migration.fakes import (
    CERTIFICATE_ROWS,
    SIGNER,
    SleepRecorder,
    address_for,
    write_certificates_db,
)

PINNING = "https://pinning.test"
RELAY = "https://relay.test"


class FakeServices:
    """Records every request sent to the pinning service and the relay."""

    def __init__(
        self, *, auth_status: int = 200, capable: bool = True, busy_submits: int = 0
    ) -> None:
        self.auth_status = auth_status
        self.capable = capable
        self.busy_submits = busy_submits
        self.pinning_requests: list[httpx.Request] = []
        self.relay_requests: list[httpx.Request] = []
        self.anchor_bodies: list[dict] = []

    def pinning(self, request: httpx.Request) -> httpx.Response:
        self.pinning_requests.append(request)
        if request.url.path == "/data/testAuthentication":
            return httpx.Response(self.auth_status, json={})
        if request.url.path == "/pinning/pinFileToIPFS":
            return httpx.Response(200, json={"IpfsHash": f"bafkreipinned{len(self.pinning_requests)}"})
        return httpx.Response(404)

    def relay(self, request: httpx.Request) -> httpx.Response:
        self.relay_requests.append(request)
        path = request.url.path
        if path == f"/v1/accounts/{SIGNER}/nonce":
            return httpx.Response(200, json={"nonce": 4})
        if path == f"/v1/capabilities/{SIGNER}":
            return httpx.Response(200, json={"anchor": self.capable})
        if path == "/v1/anchors" and self.busy_submits:
            self.busy_submits -= 1
            return httpx.Response(429, json={"error": "signer queue full"})
        if path == "/v1/anchors":
            self.anchor_bodies.append(json.loads(request.read()))
            return httpx.Response(202, json={"tx_ref": f"0xt{len(self.anchor_bodies)}"})
        if path.startswith("/v1/transactions/"):
            return httpx.Response(200, json={"status": "confirmed", "record_id": "42", "cost": 25000})
        return httpx.Response(404)

    def clients(self) -> HttpClients:
        return HttpClients(
            content_store=httpx.Client(base_url=PINNING, transport=httpx.MockTransport(self.pinning)),
            ledger=httpx.Client(base_url=RELAY, transport=httpx.MockTransport(self.relay)),
        )


@pytest.fixture
def live_config(tmp_path):
    db = write_certificates_db(tmp_path / "certificates.sqlite", CERTIFICATE_ROWS)
    directory = tmp_path / "subjects.yaml"
    directory.write_text(yaml.safe_dump({"subjects": {"u1": address_for(1)}}), encoding="utf-8")
    return MigrationConfig(
        network="hardhat",
        run={"batch_size": 5, "inter_record_delay_s": 0.5},
        source={"path": str(db)},
        content_store={"api_url": PINNING},
        ledger={"signer_address": SIGNER, "networks": {"hardhat": {"relay_url": RELAY}}},
        directory={"path": str(directory)},
        paths={
            "checkpoint": str(tmp_path / "state" / "checkpoint.jsonl"),
            "report_dir": str(tmp_path / "reports"),
        },
    )


class TestLiveRun:
    def test_end_to_end(self, live_config, tmp_path):
        services = FakeServices()
        sleeps = SleepRecorder()

        outcome = run_from_config(live_config, clients=services.clients(), sleep=sleeps)

        by_id = {result.source_id: result for result in outcome.results}
        assert [r.source_id for r in outcome.results] == ["c1", "c2"]
        assert by_id["c1"].status is MigrationStatus.SUCCESS
        assert by_id["c1"].anchor_receipt.ledger_record_id == "42"
        assert by_id["c1"].anchor_receipt.cost_metric == 25000
        assert by_id["c1"].anchor_receipt.network == "hardhat"
        assert by_id["c2"].status is MigrationStatus.FAILED
        assert by_id["c2"].error_kind == "AnchorRejected"

        assert len(services.anchor_bodies) == 1
        body = services.anchor_bodies[0]
        assert body["nonce"] == 4
        assert body["subject_address"] == address_for(1)
        assert body["content_hash"] == "bafkreipinned2"
        assert all(r.headers["X-Chain-Id"] == "31337" for r in services.relay_requests)
        assert sleeps.calls == [0.5]
        assert (tmp_path / "state" / "checkpoint.jsonl").exists()

    def test_busy_relay_is_retried_with_backoff(self, live_config):
        services = FakeServices(busy_submits=1)
        sleeps = SleepRecorder()

        outcome = run_from_config(live_config, clients=services.clients(), sleep=sleeps)

        first = outcome.results[0]
        assert first.status is MigrationStatus.SUCCESS
        assert first.retries == 1
        assert [body["nonce"] for body in services.anchor_bodies] == [4]
        assert sleeps.calls == [2.0, 0.5]

    def test_context_uses_live_transport(self, live_config):
        with build_context(live_config, clients=FakeServices().clients()) as context:
            assert isinstance(context.transport, LiveTransport)
            assert context.identity.address == SIGNER
            assert context.identity.next_nonce == 4


class TestStartupFailures:
    def test_authentication_failure_stops_before_ledger(self, live_config):
        services = FakeServices(auth_status=401)

        with pytest.raises(AuthenticationFailed) as excinfo:
            build_context(live_config, clients=services.clients())

        assert excinfo.value.service == "content_store"
        assert services.relay_requests == []

    def test_missing_capability(self, live_config, tmp_path):
        services = FakeServices(capable=False)

        with pytest.raises(PermissionDenied):
            run_from_config(live_config, clients=services.clients())

        assert not any(r.url.path == "/v1/anchors" for r in services.relay_requests)
        assert not (tmp_path / "state" / "checkpoint.jsonl").exists()

    def test_invalid_signer(self, live_config):
        config = live_config.model_copy(
            update={"ledger": live_config.ledger.model_copy(update={"signer_address": "0x1234"})}
        )
        services = FakeServices()

        with pytest.raises(ValueError):
            build_context(config, clients=services.clients())

        assert services.pinning_requests == []

    def test_corrupt_checkpoint_aborts_before_network(self, live_config, tmp_path):
        checkpoint = tmp_path / "state" / "checkpoint.jsonl"
        checkpoint.parent.mkdir(parents=True)
        checkpoint.write_text("{not json\n", encoding="utf-8")
        services = FakeServices()

        with pytest.raises(CheckpointCorruption):
            build_context(live_config, clients=services.clients())

        assert services.pinning_requests == []
        assert services.relay_requests == []


class TestDryRun:
    def test_no_network_traffic(self, live_config):
        config = live_config.model_copy(
            update={"run": live_config.run.model_copy(update={"dry_run": True})}
        )
        services = FakeServices()
        sleeps = SleepRecorder()

        outcome = run_from_config(config, clients=services.clients(), sleep=sleeps)

        assert [r.status for r in outcome.results] == [MigrationStatus.SKIPPED] * 2
        assert all(r.dry_run and r.content_hash for r in outcome.results)
        assert services.pinning_requests == []
        assert services.relay_requests == []
        assert sleeps.calls == []

    def test_dry_run_context(self, live_config):
        config = live_config.model_copy(
            update={"run": live_config.run.model_copy(update={"dry_run": True})}
        )

        with build_context(config) as context:
            assert isinstance(context.transport, DryRunTransport)
