"""Operation-aware retry policies using Tenacity predicates.

Each network-bound operation of the pipeline gets its own retry semantics:

- READ: idempotent source page fetches; same transient set as PUBLISH.
- PUBLISH: transport errors, 429 and 5xx are retried with exponential
  backoff; any other HTTP status is permanent.
- SUBMIT: relay submission transport errors and 5xx are retried. Submissions
  carry an idempotency key so a retried POST cannot anchor twice.
- ANCHOR: only :class:`AnchorTimeout` is retried, with exponential backoff,
  ``max_retries`` times after the first attempt. ``AnchorRejected`` is never
  retried.

Usage:
    policy = create_retry_policy(OperationType.ANCHOR, max_attempts=4)
    for attempt in policy:
        with attempt:
            receipt = writer.anchor(record, content_hash, identity)

Callers own the translation of the final exception (e.g. wrapping an
``httpx.HTTPStatusError`` into ``PublishError``); policies only decide
whether another attempt is made.
"""

from __future__ import annotations

import logging
import time
from enum import Enum, auto
from typing import Callable, Collection, Optional

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from CertLedger.AnchorMigration.errors import AnchorTimeout

logger = logging.getLogger(__name__)

DEFAULT_RETRY_STATUSES: frozenset[int] = frozenset({429, 500, 502, 503, 504})


class OperationType(Enum):
    """Operation type for contextual retry decisions."""

    READ = auto()  # Source store page fetch
    PUBLISH = auto()  # Content store upload
    SUBMIT = auto()  # Ledger relay submission (idempotent via key)
    ANCHOR = auto()  # Full anchor attempt incl. confirmation wait


def is_transient_http_error(
    exc: BaseException, retry_statuses: Collection[int] = DEFAULT_RETRY_STATUSES
) -> bool:
    """Return True for network failures worth another attempt."""

    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in retry_statuses
    return isinstance(exc, httpx.TransportError)


def _predicate_for(
    operation: OperationType, retry_statuses: Collection[int]
) -> Callable[[BaseException], bool]:
    if operation is OperationType.ANCHOR:
        return lambda exc: isinstance(exc, AnchorTimeout)
    if operation is OperationType.SUBMIT:
        # busy relay answers (408/429) go through the anchor backoff instead
        statuses = frozenset(s for s in retry_statuses if s >= 500)
        return lambda exc: is_transient_http_error(exc, statuses)
    return lambda exc: is_transient_http_error(exc, retry_statuses)


def create_retry_policy(
    operation: OperationType,
    *,
    max_attempts: int,
    base_delay_s: float = 1.0,
    max_delay_s: float = 30.0,
    retry_statuses: Collection[int] = DEFAULT_RETRY_STATUSES,
    sleep: Optional[Callable[[float], None]] = None,
) -> Retrying:
    """Create an operation-aware Tenacity retry policy.

    Args:
        operation: Operation type (PUBLISH, SUBMIT, ANCHOR)
        max_attempts: Total attempts including the first one
        base_delay_s: Exponential backoff multiplier
        max_delay_s: Ceiling for a single backoff wait
        retry_statuses: HTTP statuses treated as transient (PUBLISH/SUBMIT)
        sleep: Sleep function; tests pass a recorder to avoid real waits

    Returns:
        Configured Tenacity Retrying object that re-raises the last error
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    return Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay_s, max=max_delay_s),
        retry=retry_if_exception(_predicate_for(operation, retry_statuses)),
        before_sleep=before_sleep_log(logger, logging.WARNING, exc_info=False),
        sleep=sleep or time.sleep,
        reraise=True,
    )


__all__ = [
    "DEFAULT_RETRY_STATUSES",
    "OperationType",
    "create_retry_policy",
    "is_transient_http_error",
]
