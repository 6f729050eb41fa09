# === NAVMAP v1 ===
# {
#   "module": "CertLedger.AnchorMigration.errors",
#   "purpose": "Error taxonomy and logging helpers for the anchoring migration.",
#   "sections": [
#     {"id": "migrationerror", "name": "MigrationError", "anchor": "class-migrationerror", "kind": "class"},
#     {"id": "fatalmigrationerror", "name": "FatalMigrationError", "anchor": "class-fatalmigrationerror", "kind": "class"},
#     {"id": "recorderror", "name": "RecordError", "anchor": "class-recorderror", "kind": "class"},
#     {"id": "get-actionable-error-message", "name": "get_actionable_error_message", "anchor": "function-get-actionable-error-message", "kind": "function"},
#     {"id": "log-record-failure", "name": "log_record_failure", "anchor": "function-log-record-failure", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Error taxonomy and logging helpers for the anchoring migration.

Responsibilities
----------------
- Split failures into two families: :class:`FatalMigrationError` subclasses
  abort the run before any further writes, :class:`RecordError` subclasses are
  caught at the orchestrator boundary and turned into ``failed`` results.
- Carry enough metadata (source id, transaction reference, HTTP status) for
  the checkpoint and the report to explain what happened without re-running.
- Translate error kinds into operator hints via
  :func:`get_actionable_error_message`.
- Centralise per-record failure logging through :func:`log_record_failure`.

Design Notes
------------
- ``error_kind`` is the stable string persisted in checkpoints and reports;
  it equals the class name so resumed runs can be audited with plain ``grep``.
- ``retryable`` is informational; retry decisions live in :mod:`.retry`.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

__all__ = (
    "MigrationError",
    "FatalMigrationError",
    "RecordError",
    "SourceUnavailable",
    "PermissionDenied",
    "AuthenticationFailed",
    "CheckpointCorruption",
    "InvalidRecord",
    "PublishError",
    "AnchorRejected",
    "AnchorTimeout",
    "RateLimitExceeded",
    "get_actionable_error_message",
    "log_record_failure",
)

LOGGER = logging.getLogger(__name__)


class MigrationError(Exception):
    """Base class for every error raised by the anchoring pipeline."""

    retryable: bool = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}

    @property
    def error_kind(self) -> str:
        return type(self).__name__


# ---------------------------------------------------------------------------
# Fatal errors
# ---------------------------------------------------------------------------


class FatalMigrationError(MigrationError):
    """Aborts the run; requires operator attention before restarting."""


class SourceUnavailable(FatalMigrationError):
    """Raised when the source-of-truth store cannot be reached."""


class PermissionDenied(FatalMigrationError):
    """Raised when the signing identity lacks the anchor capability."""

    def __init__(self, message: str, *, address: str | None = None) -> None:
        super().__init__(message, details={"address": address})
        self.address = address


class AuthenticationFailed(FatalMigrationError):
    """Raised when a collaborator rejects our credentials at startup."""

    def __init__(self, message: str, *, service: str) -> None:
        super().__init__(message, details={"service": service})
        self.service = service


class CheckpointCorruption(FatalMigrationError):
    """Raised when the checkpoint log cannot be trusted."""

    def __init__(self, message: str, *, path: Path, line_number: int | None = None) -> None:
        super().__init__(message, details={"path": str(path), "line_number": line_number})
        self.path = path
        self.line_number = line_number


# ---------------------------------------------------------------------------
# Per-record errors
# ---------------------------------------------------------------------------


class RecordError(MigrationError):
    """Failure scoped to a single source record."""

    def __init__(
        self,
        message: str,
        *,
        source_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.source_id = source_id


class InvalidRecord(RecordError):
    """Raised by the packager when required fields are missing or malformed."""

    def __init__(self, message: str, *, source_id: str | None = None, missing: list[str] | None = None):
        super().__init__(message, source_id=source_id, details={"missing": list(missing or [])})
        self.missing = list(missing or [])


class PublishError(RecordError):
    """Raised when the content store rejects or keeps failing an upload."""

    def __init__(
        self,
        message: str,
        *,
        source_id: str | None = None,
        status_code: int | None = None,
        attempts: int = 1,
    ) -> None:
        super().__init__(
            message,
            source_id=source_id,
            details={"status_code": status_code, "attempts": attempts},
        )
        self.status_code = status_code
        self.attempts = attempts


class AnchorRejected(RecordError):
    """Permanent anchoring failure (bad address, unauthorised signer, reverted)."""

    def __init__(
        self,
        message: str,
        *,
        source_id: str | None = None,
        tx_ref: str | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message, source_id=source_id, details={"tx_ref": tx_ref, "reason": reason})
        self.tx_ref = tx_ref
        self.reason = reason


class AnchorTimeout(RecordError):
    """Transient anchoring failure; the transaction may still confirm later.

    ``tx_ref`` is set when a transaction was submitted but not confirmed within
    the confirmation window. Callers must re-await that reference rather than
    submitting a second transaction for the same record.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        source_id: str | None = None,
        tx_ref: str | None = None,
        waited_s: float | None = None,
    ) -> None:
        super().__init__(message, source_id=source_id, details={"tx_ref": tx_ref, "waited_s": waited_s})
        self.tx_ref = tx_ref
        self.waited_s = waited_s


class RateLimitExceeded(RecordError):
    """Raised when a bounded wait for rate-limit capacity elapses."""

    def __init__(self, message: str, *, bucket: str, waited_ms: int) -> None:
        super().__init__(message, details={"bucket": bucket, "waited_ms": waited_ms})
        self.bucket = bucket
        self.waited_ms = waited_ms


_SUGGESTIONS: dict[str, tuple[str, str | None]] = {
    "SourceUnavailable": (
        "Source store unreachable",
        "Check the source backend path/URL and network access, then rerun; no records were written",
    ),
    "PermissionDenied": (
        "Signer lacks anchor capability",
        "Grant the anchoring role to the signer address or rerun with --dry-run",
    ),
    "AuthenticationFailed": (
        "Collaborator authentication failed",
        "Verify the pinning API key/secret and the ledger relay credential",
    ),
    "CheckpointCorruption": (
        "Checkpoint log is corrupt",
        "Inspect the reported line manually; the pipeline never repairs checkpoints",
    ),
    "InvalidRecord": (
        "Source record incomplete",
        "Fix the record in the source store; it will be retried on the next run",
    ),
    "PublishError": (
        "Metadata upload failed",
        "Check pinning service status and quotas; the record is retried on resume",
    ),
    "AnchorRejected": (
        "Ledger rejected the anchor",
        "Register a valid ledger address for the subject or inspect the revert reason",
    ),
    "AnchorTimeout": (
        "Anchor not confirmed in time",
        "Look up the pending transaction reference before resubmitting",
    ),
    "RateLimitExceeded": (
        "Rate limit wait exhausted",
        "Lower the batch size or raise the configured rate window",
    ),
}


def get_actionable_error_message(error_kind: str | None) -> tuple[str, str | None]:
    """Map an ``error_kind`` to a short message and an operator suggestion.

    Examples:
        >>> get_actionable_error_message("AnchorRejected")[0]
        'Ledger rejected the anchor'
        >>> get_actionable_error_message("Nope")
        ('Unexpected failure (Nope)', None)
    """

    if error_kind in _SUGGESTIONS:
        return _SUGGESTIONS[error_kind]
    return (f"Unexpected failure ({error_kind})", None)


def log_record_failure(
    logger: logging.Logger,
    *,
    source_id: str,
    stage: str,
    error: BaseException,
    retries: int = 0,
) -> None:
    """Emit a structured warning describing a per-record failure."""

    error_kind = error.error_kind if isinstance(error, MigrationError) else type(error).__name__
    message, suggestion = get_actionable_error_message(error_kind)
    extra = {
        "source_id": source_id,
        "stage": stage,
        "error_kind": error_kind,
        "retries": retries,
        "suggestion": suggestion,
    }
    if isinstance(error, MigrationError):
        extra["details"] = error.details
    logger.warning(
        "Record %s failed at %s: %s (%s)",
        source_id,
        stage,
        message,
        error,
        extra={"migration": extra},
    )
