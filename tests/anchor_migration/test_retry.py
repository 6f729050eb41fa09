"""Tests for operation-aware retry policies."""

from __future__ import annotations

import httpx
import pytest

from CertLedger.AnchorMigration.errors import AnchorRejected, AnchorTimeout
from CertLedger.AnchorMigration.retry import (
    OperationType,
    create_retry_policy,
    is_transient_http_error,
)


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://relay.test/anchors")
    return httpx.HTTPStatusError(
        "boom", request=request, response=httpx.Response(status, request=request)
    )


def _run(policy, failures):
    """Raise each exception in ``failures`` in turn, then succeed."""

    attempts = []
    for attempt in policy:
        with attempt:
            attempts.append(len(attempts) + 1)
            if len(attempts) <= len(failures):
                raise failures[len(attempts) - 1]
    return attempts


@pytest.mark.parametrize(
    "exc,expected",
    [
        (_status_error(503), True),
        (_status_error(429), True),
        (_status_error(404), False),
        (httpx.ConnectError("down"), True),
        (ValueError("nope"), False),
    ],
)
def test_transient_classification(exc, expected):
    assert is_transient_http_error(exc) is expected


def test_publish_retries_transient_with_backoff():
    sleeps = []
    policy = create_retry_policy(OperationType.PUBLISH, max_attempts=4, sleep=sleeps.append)

    attempts = _run(policy, [_status_error(502), httpx.ReadTimeout("slow")])

    assert attempts == [1, 2, 3]
    assert sleeps == [1.0, 2.0]


def test_publish_does_not_retry_client_errors():
    policy = create_retry_policy(OperationType.PUBLISH, max_attempts=4, sleep=lambda s: None)

    with pytest.raises(httpx.HTTPStatusError):
        _run(policy, [_status_error(400)])


def test_submit_leaves_429_to_the_limiter():
    policy = create_retry_policy(OperationType.SUBMIT, max_attempts=3, sleep=lambda s: None)

    with pytest.raises(httpx.HTTPStatusError):
        _run(policy, [_status_error(429)])

    assert _run(
        create_retry_policy(OperationType.SUBMIT, max_attempts=3, sleep=lambda s: None),
        [_status_error(500)],
    ) == [1, 2]


def test_anchor_retries_only_timeouts():
    sleeps = []
    policy = create_retry_policy(
        OperationType.ANCHOR, max_attempts=3, base_delay_s=2.0, max_delay_s=60.0, sleep=sleeps.append
    )

    with pytest.raises(AnchorTimeout):
        _run(policy, [AnchorTimeout("t1"), AnchorTimeout("t2"), AnchorTimeout("t3")])

    assert sleeps == [2.0, 4.0]


def test_anchor_never_retries_rejections():
    policy = create_retry_policy(OperationType.ANCHOR, max_attempts=5, sleep=lambda s: None)

    with pytest.raises(AnchorRejected):
        _run(policy, [AnchorRejected("reverted")])


def test_backoff_is_capped():
    sleeps = []
    policy = create_retry_policy(
        OperationType.ANCHOR, max_attempts=6, base_delay_s=2.0, max_delay_s=5.0, sleep=sleeps.append
    )

    _run(policy, [AnchorTimeout("t")] * 5)

    assert sleeps == [2.0, 4.0, 5.0, 5.0, 5.0]


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        create_retry_policy(OperationType.READ, max_attempts=0)
