"""Content-addressed storage publisher (IPFS via a Pinata-style pinning API).

Responsibilities
----------------
- :class:`PinningClient` speaks the pinning HTTP API: ``testAuthentication``
  for the startup credential check and ``pinFileToIPFS`` for uploads.
- :class:`ContentStorePublisher` adds bounded retries (Tenacity) and request
  pacing (pyrate-limiter) around uploads and converts terminal failures into
  :class:`PublishError`.

Design Notes
------------
- Packages are uploaded as files containing their canonical bytes, so the
  returned CID is a function of those bytes alone. ``pinJSONToIPFS`` would
  re-serialise the document server-side and break that property.
- Identical bytes address identically, but the network call itself is not
  de-duplicated; the orchestrator consults the checkpoint to avoid re-publishing
  records that already succeeded.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Collection, Optional

import httpx

from CertLedger.AnchorMigration.errors import AuthenticationFailed, PublishError
from CertLedger.AnchorMigration.models import ContentHash, MetadataPackage
from CertLedger.AnchorMigration.ratelimit import RequestLimiter
from CertLedger.AnchorMigration.retry import (
    DEFAULT_RETRY_STATUSES,
    OperationType,
    create_retry_policy,
)

LOGGER = logging.getLogger(__name__)

__all__ = ["PinningClient", "ContentStorePublisher"]


class PinningClient:
    """Thin httpx wrapper around the pinning service endpoints."""

    def __init__(
        self,
        api_url: str,
        *,
        api_key: Optional[str] = None,
        secret_api_key: Optional[str] = None,
        timeout_s: float = 30.0,
        cid_version: int = 1,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._client = client or httpx.Client(base_url=api_url, timeout=timeout_s)
        if api_key:
            self._client.headers["pinata_api_key"] = api_key
        if secret_api_key:
            self._client.headers["pinata_secret_api_key"] = secret_api_key
        self.cid_version = cid_version

    def close(self) -> None:
        self._client.close()

    def authenticate(self) -> None:
        """Verify credentials once at startup.

        Raises:
            AuthenticationFailed: On any non-2xx answer or transport failure
        """

        try:
            response = self._client.get("/data/testAuthentication")
        except httpx.HTTPError as exc:
            raise AuthenticationFailed(
                f"Pinning service unreachable: {exc}", service="content_store"
            ) from exc
        if response.status_code >= 400:
            raise AuthenticationFailed(
                f"Pinning service rejected credentials (HTTP {response.status_code})",
                service="content_store",
            )
        LOGGER.info("Pinning service authentication successful")

    def store(self, package: MetadataPackage) -> ContentHash:
        """Upload the package bytes and return the pinned CID.

        Raises:
            httpx.HTTPStatusError: On non-2xx responses
            httpx.TransportError: On network failures
            ValueError: If the response carries no hash
        """

        pin_metadata = {
            "name": f"certificate-{package.source_id}",
            "keyvalues": {"sourceId": package.source_id, "sha256": package.digest},
        }
        response = self._client.post(
            "/pinning/pinFileToIPFS",
            files={"file": (package.filename, package.payload, "application/json")},
            data={
                "pinataMetadata": json.dumps(pin_metadata, sort_keys=True),
                "pinataOptions": json.dumps({"cidVersion": self.cid_version}),
            },
        )
        response.raise_for_status()
        body: dict[str, Any] = response.json()
        ipfs_hash = body.get("IpfsHash")
        if not ipfs_hash:
            raise ValueError("Pinning response did not include IpfsHash")
        return ContentHash(str(ipfs_hash))


class ContentStorePublisher:
    """Publishes metadata packages with bounded retries.

    Attributes:
        client: Object exposing ``store(package) -> ContentHash``
        limiter: Optional request limiter shared by all uploads
    """

    def __init__(
        self,
        client: PinningClient,
        *,
        max_attempts: int = 4,
        base_delay_s: float = 1.0,
        max_delay_s: float = 30.0,
        retry_statuses: Collection[int] = DEFAULT_RETRY_STATUSES,
        limiter: Optional[RequestLimiter] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.client = client
        self.limiter = limiter
        self._max_attempts = max_attempts
        self._base_delay_s = base_delay_s
        self._max_delay_s = max_delay_s
        self._retry_statuses = frozenset(retry_statuses)
        self._sleep = sleep

    def publish(self, package: MetadataPackage) -> ContentHash:
        """Upload ``package`` and return its content hash.

        Raises:
            PublishError: When retries are exhausted or the service refuses
                the upload with a non-retryable status
            RateLimitExceeded: When no upload capacity frees up in time
        """

        policy = create_retry_policy(
            OperationType.PUBLISH,
            max_attempts=self._max_attempts,
            base_delay_s=self._base_delay_s,
            max_delay_s=self._max_delay_s,
            retry_statuses=self._retry_statuses,
            sleep=self._sleep,
        )
        attempts = 0
        try:
            for attempt in policy:
                with attempt:
                    attempts += 1
                    if self.limiter is not None:
                        self.limiter.acquire()
                    content_hash = self.client.store(package)
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise PublishError(
                f"Upload of {package.source_id} failed with HTTP {status} after {attempts} attempt(s)",
                source_id=package.source_id,
                status_code=status,
                attempts=attempts,
            ) from exc
        except httpx.TransportError as exc:
            raise PublishError(
                f"Upload of {package.source_id} failed after {attempts} attempt(s): {exc}",
                source_id=package.source_id,
                attempts=attempts,
            ) from exc
        except ValueError as exc:
            raise PublishError(
                f"Upload of {package.source_id} returned an unusable response: {exc}",
                source_id=package.source_id,
                attempts=attempts,
            ) from exc

        LOGGER.debug(f"Published {package.source_id} → {content_hash} ({attempts} attempt(s))")
        return content_hash
