# === NAVMAP v1 ===
# {
#   "module": "CertLedger.AnchorMigration.ledger",
#   "purpose": "Ledger collaborators: signing identity, subject directory, relay client",
#   "sections": [
#     {"id": "signingidentity", "name": "SigningIdentity", "anchor": "class-signingidentity", "kind": "dataclass"},
#     {"id": "subjectdirectory", "name": "SubjectDirectory", "anchor": "class-subjectdirectory", "kind": "class"},
#     {"id": "transactionstatus", "name": "TransactionStatus", "anchor": "class-transactionstatus", "kind": "dataclass"},
#     {"id": "ledgerclient", "name": "LedgerClient", "anchor": "class-ledgerclient", "kind": "protocol"},
#     {"id": "httpledgerclient", "name": "HttpLedgerClient", "anchor": "class-httpledgerclient", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Ledger collaborators used by the anchor writer.

- :class:`SigningIdentity` is the explicit handle for the signer address,
  credential and nonce sequence. It is owned by one thread (the
  orchestrator's) and refuses use from any other thread.
- :class:`SubjectDirectory` is the pre-registered mapping from subject ids to
  ledger addresses. Subjects without a valid registered address are rejected
  before any ledger call is made; there is no default address.
- :class:`HttpLedgerClient` talks to the anchoring relay of a network over
  HTTP. Confirmation is observed by polling transaction status.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol

import httpx
import yaml

from CertLedger.AnchorMigration.errors import AnchorRejected, AnchorTimeout, AuthenticationFailed
from CertLedger.AnchorMigration.retry import OperationType, create_retry_policy

LOGGER = logging.getLogger(__name__)

__all__ = [
    "SigningIdentity",
    "SubjectDirectory",
    "TransactionState",
    "TransactionStatus",
    "LedgerClient",
    "HttpLedgerClient",
    "is_valid_address",
    "ZERO_ADDRESS",
]

ZERO_ADDRESS = "0x" + "0" * 40
_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
# Busy relay answers; retried by the anchor policy
_BUSY_STATUSES = frozenset({408, 429})


def is_valid_address(address: Optional[str]) -> bool:
    """Return True for a well-formed, non-zero 20-byte hex address."""

    return bool(address) and bool(_ADDRESS_RE.match(address)) and address.lower() != ZERO_ADDRESS


@dataclass
class SigningIdentity:
    """Signer handle with an explicit nonce sequence.

    The first thread that calls :meth:`claim` becomes the owner; every later
    nonce operation from a different thread raises ``RuntimeError``.
    """

    address: str
    credential: Optional[str] = field(default=None, repr=False)
    next_nonce: int = 0
    _owner: Optional[int] = field(default=None, repr=False, compare=False)

    def claim(self) -> None:
        current = threading.get_ident()
        if self._owner is not None and self._owner != current:
            raise RuntimeError(f"Signing identity {self.address} is owned by another thread")
        self._owner = current

    def _check_owner(self) -> None:
        if self._owner is not None and self._owner != threading.get_ident():
            raise RuntimeError(f"Signing identity {self.address} used outside its owner thread")

    def reserve_nonce(self) -> int:
        self._check_owner()
        return self.next_nonce

    def commit_nonce(self, used: int) -> None:
        """Advance past ``used`` once the relay accepted the submission."""

        self._check_owner()
        if used != self.next_nonce:
            raise RuntimeError(f"Nonce {used} committed out of order (expected {self.next_nonce})")
        self.next_nonce = used + 1

    def reset_nonce(self, nonce: int) -> None:
        """Restart the sequence at ``nonce`` after its transaction was dropped."""

        self._check_owner()
        if nonce < 0:
            raise ValueError(f"Nonce must be >= 0, got {nonce}")
        self.next_nonce = nonce


class SubjectDirectory:
    """Pre-registered subject → ledger address mapping."""

    def __init__(self, entries: Mapping[str, str]) -> None:
        self._entries = {str(k): str(v) for k, v in entries.items()}

    def __len__(self) -> int:
        return len(self._entries)

    @classmethod
    def from_file(cls, path: Path | str) -> "SubjectDirectory":
        """Load a YAML or JSON directory.

        The file holds either a flat ``{subject_id: address}`` mapping or the
        same mapping under a top-level ``subjects`` key.

        Raises:
            ValueError: If the file is missing or not a mapping
        """

        p = Path(path)
        if not p.exists():
            raise ValueError(f"Subject directory not found: {p}")
        text = p.read_text(encoding="utf-8")
        try:
            if p.suffix.lower() == ".json":
                data = json.loads(text)
            else:
                data = yaml.safe_load(text) or {}
        except (json.JSONDecodeError, yaml.YAMLError) as exc:
            raise ValueError(f"Invalid subject directory {p}: {exc}") from exc
        if isinstance(data, dict) and isinstance(data.get("subjects"), dict):
            data = data["subjects"]
        if not isinstance(data, dict):
            raise ValueError(f"Subject directory {p} must be a mapping")
        directory = cls(data)
        invalid = [k for k, v in directory._entries.items() if not is_valid_address(v)]
        if invalid:
            LOGGER.warning(
                f"Subject directory {p} has {len(invalid)} invalid address(es); "
                "those subjects will be rejected"
            )
        LOGGER.info(f"Loaded {len(directory)} subject address(es) from {p}")
        return directory

    def resolve(self, subject_id: str, *, source_id: Optional[str] = None) -> str:
        """Return the registered address for ``subject_id``.

        Raises:
            AnchorRejected: If no valid address is registered
        """

        address = self._entries.get(subject_id)
        if address is None:
            raise AnchorRejected(
                f"No ledger address registered for subject {subject_id}",
                source_id=source_id,
                reason="unregistered_subject",
            )
        if not is_valid_address(address):
            raise AnchorRejected(
                f"Registered address for subject {subject_id} is invalid: {address}",
                source_id=source_id,
                reason="invalid_address",
            )
        return address


class TransactionState(str, Enum):
    """Relay-reported transaction lifecycle."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    DROPPED = "dropped"


@dataclass(frozen=True)
class TransactionStatus:
    """Snapshot of a submitted transaction."""

    tx_ref: str
    state: TransactionState
    record_id: Optional[str] = None
    cost: int = 0
    reason: Optional[str] = None


class LedgerClient(Protocol):
    """Operations the anchor writer needs from a ledger network."""

    def has_anchor_capability(self, address: str) -> bool:
        ...

    def get_nonce(self, address: str) -> int:
        ...

    def submit_anchor(
        self,
        identity: SigningIdentity,
        *,
        nonce: int,
        subject_address: str,
        course_id: str,
        course_name: str,
        completion_timestamp: int,
        content_hash: str,
        idempotency_key: str,
    ) -> str:
        ...

    def get_transaction(self, tx_ref: str) -> TransactionStatus:
        ...


class HttpLedgerClient:
    """Client for a network's anchoring relay.

    Endpoints:
        GET  /v1/capabilities/{address}     → {"anchor": bool}
        GET  /v1/accounts/{address}/nonce   → {"nonce": int}
        POST /v1/anchors                    → {"tx_ref": str}
        GET  /v1/transactions/{tx_ref}      → {"status", "record_id", "cost", "reason"}
    """

    def __init__(
        self,
        relay_url: str,
        *,
        chain_id: int,
        contract_address: str = "",
        credential: Optional[str] = None,
        timeout_s: float = 30.0,
        submit_attempts: int = 3,
        confirmations: int = 2,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._client = client or httpx.Client(base_url=relay_url, timeout=timeout_s)
        self._client.headers["X-Chain-Id"] = str(chain_id)
        if credential:
            self._client.headers["Authorization"] = f"Bearer {credential}"
        self.chain_id = chain_id
        self.contract_address = contract_address
        self._submit_attempts = submit_attempts
        self.confirmations = confirmations

    def close(self) -> None:
        self._client.close()

    def _startup_get(self, path: str) -> dict[str, Any]:
        try:
            response = self._client.get(path)
        except httpx.HTTPError as exc:
            raise AuthenticationFailed(f"Ledger relay unreachable: {exc}", service="ledger") from exc
        if response.status_code in (401, 403):
            raise AuthenticationFailed(
                f"Ledger relay rejected credentials (HTTP {response.status_code})", service="ledger"
            )
        if response.status_code >= 400:
            raise AuthenticationFailed(
                f"Ledger relay error on {path} (HTTP {response.status_code})", service="ledger"
            )
        try:
            return _json_mapping(response)
        except ValueError as exc:
            raise AuthenticationFailed(
                f"Ledger relay sent an unreadable answer on {path}: {exc}", service="ledger"
            ) from exc

    def has_anchor_capability(self, address: str) -> bool:
        return bool(self._startup_get(f"/v1/capabilities/{address}").get("anchor", False))

    def get_nonce(self, address: str) -> int:
        payload = self._startup_get(f"/v1/accounts/{address}/nonce")
        try:
            return int(payload.get("nonce", 0))
        except (TypeError, ValueError) as exc:
            raise AuthenticationFailed(
                f"Ledger relay sent a non-numeric nonce for {address}: {payload.get('nonce')!r}",
                service="ledger",
            ) from exc

    def submit_anchor(
        self,
        identity: SigningIdentity,
        *,
        nonce: int,
        subject_address: str,
        course_id: str,
        course_name: str,
        completion_timestamp: int,
        content_hash: str,
        idempotency_key: str,
    ) -> str:
        """Submit an anchoring transaction and return its reference.

        Raises:
            AnchorRejected: On 4xx answers (invalid input, unauthorised signer)
            AnchorTimeout: When the relay acknowledges with an unreadable body
            httpx.HTTPError: On 408/429, or when transport/5xx failures
                outlast the retry policy
        """

        body = {
            "signer": identity.address,
            "nonce": nonce,
            "contract": self.contract_address,
            "subject_address": subject_address,
            "course_id": course_id,
            "course_name": course_name,
            "completion_timestamp": completion_timestamp,
            "content_hash": content_hash,
            "confirmations": self.confirmations,
        }
        policy = create_retry_policy(OperationType.SUBMIT, max_attempts=self._submit_attempts)
        for attempt in policy:
            with attempt:
                response = self._client.post(
                    "/v1/anchors", json=body, headers={"Idempotency-Key": idempotency_key}
                )
                status = response.status_code
                if 400 <= status < 500 and status not in _BUSY_STATUSES:
                    reason = _error_reason(response)
                    raise AnchorRejected(
                        f"Relay refused anchor (HTTP {status}): {reason}",
                        reason=reason,
                    )
                response.raise_for_status()
        try:
            tx_ref = _json_mapping(response).get("tx_ref")
        except ValueError as exc:
            raise AnchorTimeout(
                f"Relay acknowledged the anchor with an unreadable body: {exc}"
            ) from exc
        if not tx_ref:
            raise AnchorRejected("Relay accepted the anchor without a transaction reference")
        return str(tx_ref)

    def get_transaction(self, tx_ref: str) -> TransactionStatus:
        """Fetch the current state of ``tx_ref``.

        Unknown references are dropped. An unreadable answer counts as a
        failed poll and reports the transaction as still pending.
        """

        response = self._client.get(f"/v1/transactions/{tx_ref}")
        if response.status_code == 404:
            return TransactionStatus(tx_ref=tx_ref, state=TransactionState.DROPPED)
        response.raise_for_status()
        try:
            payload = _json_mapping(response)
            cost = int(payload.get("cost") or 0)
        except (TypeError, ValueError) as exc:
            LOGGER.warning(f"Unreadable status for {tx_ref}: {exc}")
            return TransactionStatus(tx_ref=tx_ref, state=TransactionState.PENDING)
        try:
            state = TransactionState(str(payload.get("status", "pending")).lower())
        except ValueError:
            LOGGER.warning(f"Unknown transaction status {payload.get('status')!r} for {tx_ref}")
            state = TransactionState.PENDING
        record_id = payload.get("record_id")
        return TransactionStatus(
            tx_ref=tx_ref,
            state=state,
            record_id=str(record_id) if record_id is not None else None,
            cost=cost,
            reason=payload.get("reason"),
        )


def _json_mapping(response: httpx.Response) -> dict[str, Any]:
    """Decode a JSON object body; anything else raises ``ValueError``."""

    payload = response.json()
    if not isinstance(payload, dict):
        raise ValueError(f"expected a JSON object, got {type(payload).__name__}")
    return payload


def _error_reason(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict):
        return str(payload.get("error") or payload.get("reason") or payload)
    return str(payload)
