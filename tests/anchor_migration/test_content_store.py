"""Tests for the pinning client and content store publisher (httpx.MockTransport)."""

from __future__ import annotations

import json

import httpx
import pytest

from CertLedger.AnchorMigration.content_store import ContentStorePublisher, PinningClient
from CertLedger.AnchorMigration.errors import AuthenticationFailed, PublishError
from CertLedger.AnchorMigration.packager import build_package
from tests.anchor_migration.fakes import SleepRecorder, make_record

API = "https://pin.test"


def _client(handler) -> PinningClient:
    http = httpx.Client(base_url=API, transport=httpx.MockTransport(handler))
    return PinningClient(API, api_key="key", secret_api_key="secret", client=http)


class TestPinningClient:
    def test_authenticate_sends_credentials(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["key"] = request.headers.get("pinata_api_key")
            seen["secret"] = request.headers.get("pinata_secret_api_key")
            return httpx.Response(200, json={"message": "Congratulations!"})

        _client(handler).authenticate()

        assert seen == {"path": "/data/testAuthentication", "key": "key", "secret": "secret"}

    @pytest.mark.parametrize("status", [401, 403, 500])
    def test_authenticate_rejects(self, status):
        client = _client(lambda request: httpx.Response(status))

        with pytest.raises(AuthenticationFailed) as excinfo:
            client.authenticate()
        assert excinfo.value.service == "content_store"

    def test_authenticate_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(AuthenticationFailed):
            _client(handler).authenticate()

    def test_store_uploads_canonical_bytes(self):
        package = build_package(make_record(1))
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["path"] = request.url.path
            captured["body"] = request.read()
            return httpx.Response(200, json={"IpfsHash": "bafkreiexample", "PinSize": 10})

        cid = _client(handler).store(package)

        assert cid == "bafkreiexample"
        assert captured["path"] == "/pinning/pinFileToIPFS"
        assert package.payload in captured["body"]
        assert b"certificate-cert-001.json" in captured["body"]
        assert json.dumps({"cidVersion": 1}).encode() in captured["body"]

    def test_store_without_hash_is_an_error(self):
        client = _client(lambda request: httpx.Response(200, json={}))

        with pytest.raises(ValueError):
            client.store(build_package(make_record(1)))


class TestPublisher:
    def test_retries_transient_statuses(self):
        statuses = [503, 429, 200]
        calls = []

        def handler(request):
            status = statuses[len(calls)]
            calls.append(status)
            if status == 200:
                return httpx.Response(200, json={"IpfsHash": "bafkreiok"})
            return httpx.Response(status)

        sleeps = SleepRecorder()
        publisher = ContentStorePublisher(_client(handler), max_attempts=4, sleep=sleeps)

        assert publisher.publish(build_package(make_record(1))) == "bafkreiok"
        assert calls == [503, 429, 200]
        assert sleeps.calls == [1.0, 2.0]

    def test_permanent_status_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"error": "bad file"})

        publisher = ContentStorePublisher(_client(handler), sleep=SleepRecorder())

        with pytest.raises(PublishError) as excinfo:
            publisher.publish(build_package(make_record(1)))

        assert len(calls) == 1
        assert excinfo.value.status_code == 400
        assert excinfo.value.attempts == 1
        assert excinfo.value.source_id == "cert-001"

    def test_exhausted_retries(self):
        publisher = ContentStorePublisher(
            _client(lambda request: httpx.Response(502)), max_attempts=3, sleep=SleepRecorder()
        )

        with pytest.raises(PublishError) as excinfo:
            publisher.publish(build_package(make_record(1)))

        assert excinfo.value.attempts == 3
        assert excinfo.value.status_code == 502

    def test_transport_errors_are_retried_then_wrapped(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        publisher = ContentStorePublisher(_client(handler), max_attempts=2, sleep=SleepRecorder())

        with pytest.raises(PublishError) as excinfo:
            publisher.publish(build_package(make_record(1)))
        assert excinfo.value.status_code is None
        assert excinfo.value.attempts == 2
