"""Tests for the ledger anchor writer."""

from __future__ import annotations

import httpx
import pytest

from CertLedger.AnchorMigration.anchor import LedgerAnchorWriter, anchor_key
from CertLedger.AnchorMigration.errors import AnchorRejected, AnchorTimeout, PermissionDenied
from CertLedger.AnchorMigration.ledger import HttpLedgerClient, SigningIdentity, SubjectDirectory
from tests.anchor_migration.fakes import SIGNER, FakeLedger, address_for, make_record

RELAY = "https://relay.test"


def _writer(ledger, fake_clock, **kwargs) -> LedgerAnchorWriter:
    directory = kwargs.pop("directory", SubjectDirectory({"user-1": address_for(1)}))
    return LedgerAnchorWriter(
        ledger,
        directory,
        confirmation_timeout_s=kwargs.pop("confirmation_timeout_s", 10.0),
        poll_interval_s=2.0,
        network="mumbai",
        clock=fake_clock,
        sleep=fake_clock.sleep,
        **kwargs,
    )


@pytest.fixture
def identity():
    return SigningIdentity(address=SIGNER, next_nonce=3)


class TestAnchor:
    def test_confirmed_anchor_returns_receipt(self, fake_clock, identity):
        ledger = FakeLedger()
        record = make_record(1)

        receipt = _writer(ledger, fake_clock).anchor(record, "bafkreiexample", identity)

        assert receipt.transaction_ref == "0xtx0001"
        assert receipt.ledger_record_id == "record-1"
        assert receipt.cost_metric == 21000
        assert receipt.network == "mumbai"
        submission = ledger.submissions[0]
        assert submission["nonce"] == 3
        assert submission["subject_address"] == address_for(1)
        assert submission["completion_timestamp"] == int(record.completion_date.timestamp())
        assert submission["idempotency_key"] == anchor_key("cert-001", "bafkreiexample")
        assert identity.next_nonce == 4

    def test_polls_until_confirmed(self, fake_clock, identity):
        ledger = FakeLedger(poll_script={address_for(1): ["pending", "pending"]})

        _writer(ledger, fake_clock).anchor(make_record(1), "bafkreiexample", identity)

        assert len(ledger.polls) == 3
        assert fake_clock.sleeps == [2.0, 2.0]

    def test_timeout_carries_transaction_reference(self, fake_clock, identity):
        ledger = FakeLedger(poll_script={address_for(1): ["pending"] * 100})

        with pytest.raises(AnchorTimeout) as excinfo:
            _writer(ledger, fake_clock, confirmation_timeout_s=5.0).anchor(
                make_record(1), "bafkreiexample", identity
            )

        assert excinfo.value.tx_ref == "0xtx0001"
        assert excinfo.value.source_id == "cert-001"
        assert fake_clock.sleeps == [2.0, 2.0, 1.0]
        assert len(ledger.submissions) == 1

    def test_pending_reference_is_awaited_not_resubmitted(self, fake_clock, identity):
        ledger = FakeLedger()
        writer = _writer(ledger, fake_clock)
        tx_ref = ledger.submit_anchor(identity, subject_address=address_for(1))

        receipt = writer.anchor(make_record(1), "bafkreiexample", identity, pending_tx_ref=tx_ref)

        assert receipt.transaction_ref == tx_ref
        assert len(ledger.submissions) == 1
        assert identity.next_nonce == 3

    def test_rejected_transaction(self, fake_clock, identity):
        ledger = FakeLedger(poll_script={address_for(1): ["rejected"]})

        with pytest.raises(AnchorRejected) as excinfo:
            _writer(ledger, fake_clock).anchor(make_record(1), "bafkreiexample", identity)

        assert excinfo.value.tx_ref == "0xtx0001"
        assert excinfo.value.reason == "execution reverted"

    def test_dropped_transaction_clears_reference(self, fake_clock, identity):
        ledger = FakeLedger(poll_script={address_for(1): ["dropped"]})

        with pytest.raises(AnchorTimeout) as excinfo:
            _writer(ledger, fake_clock).anchor(make_record(1), "bafkreiexample", identity)

        assert excinfo.value.tx_ref is None
        assert [s["nonce"] for s in ledger.submissions] == [3]
        assert identity.next_nonce == 3

    def test_dropped_carried_reference_resyncs_nonce(self, fake_clock, identity):
        ledger = FakeLedger(nonce=1)

        with pytest.raises(AnchorTimeout):
            _writer(ledger, fake_clock).anchor(
                make_record(1), "bafkreiexample", identity, pending_tx_ref="0xold"
            )

        assert ledger.submissions == []
        assert identity.next_nonce == 1

    def test_unregistered_subject_never_reaches_ledger(self, fake_clock, identity):
        ledger = FakeLedger()

        with pytest.raises(AnchorRejected) as excinfo:
            _writer(ledger, fake_clock, directory=SubjectDirectory({})).anchor(
                make_record(1), "bafkreiexample", identity
            )

        assert excinfo.value.reason == "unregistered_subject"
        assert ledger.submissions == []
        assert identity.next_nonce == 3


class TestRelayAnswers:
    def _relay_writer(self, handler, fake_clock) -> LedgerAnchorWriter:
        http = httpx.Client(base_url=RELAY, transport=httpx.MockTransport(handler))
        return _writer(HttpLedgerClient(RELAY, chain_id=80001, client=http), fake_clock)

    def test_unreadable_poll_is_polled_again(self, fake_clock, identity):
        replies = [
            httpx.Response(202, json={"tx_ref": "0xabc"}),
            httpx.Response(200, text="<html>"),
            httpx.Response(200, json={"status": "confirmed", "record_id": "9", "cost": 1}),
        ]

        receipt = self._relay_writer(lambda request: replies.pop(0), fake_clock).anchor(
            make_record(1), "bafkreiexample", identity
        )

        assert receipt.ledger_record_id == "9"
        assert fake_clock.sleeps == [2.0]

    def test_unreadable_acknowledgement_is_transient(self, fake_clock, identity):
        writer = self._relay_writer(lambda request: httpx.Response(202, text="<html>"), fake_clock)

        with pytest.raises(AnchorTimeout) as excinfo:
            writer.anchor(make_record(1), "bafkreiexample", identity)

        assert excinfo.value.tx_ref is None
        assert excinfo.value.source_id == "cert-001"
        assert identity.next_nonce == 3

    @pytest.mark.parametrize("status", [408, 429])
    def test_busy_relay_is_transient(self, fake_clock, identity, status):
        writer = self._relay_writer(
            lambda request: httpx.Response(status, json={"error": "slow down"}), fake_clock
        )

        with pytest.raises(AnchorTimeout) as excinfo:
            writer.anchor(make_record(1), "bafkreiexample", identity)

        assert excinfo.value.tx_ref is None
        assert identity.next_nonce == 3


class TestCapability:
    def test_capable_signer(self, fake_clock, identity):
        _writer(FakeLedger(capable=True), fake_clock).ensure_capability(identity)

    def test_missing_capability(self, fake_clock, identity):
        with pytest.raises(PermissionDenied) as excinfo:
            _writer(FakeLedger(capable=False), fake_clock).ensure_capability(identity)
        assert excinfo.value.address == SIGNER
