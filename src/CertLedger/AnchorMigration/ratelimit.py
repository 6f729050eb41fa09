"""Request pacing for the pinning API and ledger relay.

Wraps a pyrate-limiter :class:`Limiter` with a bounded blocking wait: callers
block until a token is available or ``max_delay_ms`` elapses, in which case
:class:`RateLimitExceeded` fails the current record. The fixed pause between
anchors lives in the transport; this module only enforces rolling windows
such as ``50/HOUR``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence

from pyrate_limiter import Limiter, Rate

from CertLedger.AnchorMigration.errors import RateLimitExceeded

LOGGER = logging.getLogger(__name__)

_UNIT_MS = {
    "SECOND": 1000,
    "MINUTE": 60_000,
    "HOUR": 3_600_000,
    "DAY": 86_400_000,
}

_POLL_INTERVAL_S = 0.05


def parse_rates(rate_strings: Sequence[str]) -> list[Rate]:
    """Parse rate strings like ``"180/MINUTE"`` into pyrate-limiter rates.

    Raises:
        ValueError: If a rate string is malformed or uses an unknown unit
    """

    parsed: list[Rate] = []
    for rate_str in rate_strings:
        limit_part, _, unit_part = rate_str.partition("/")
        unit = unit_part.strip().upper()
        if unit not in _UNIT_MS:
            raise ValueError(f"Unknown rate unit in '{rate_str}'")
        parsed.append(Rate(int(limit_part.strip()), _UNIT_MS[unit]))
    return parsed


class RequestLimiter:
    """Blocking token-bucket gate for one external service."""

    def __init__(
        self,
        name: str,
        rates: Sequence[str],
        *,
        max_delay_ms: int = 3_600_000,
        now: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.name = name
        self.max_delay_ms = max_delay_ms
        self._now = now
        self._sleep = sleep
        parsed = parse_rates(rates)
        self._limiter: Limiter | None = (
            Limiter(parsed, raise_when_fail=False, max_delay=None) if parsed else None
        )

    @property
    def enabled(self) -> bool:
        return self._limiter is not None

    def acquire(self) -> int:
        """Block until capacity is available and return the wait in ms.

        Raises:
            RateLimitExceeded: If no capacity appears within ``max_delay_ms``
        """

        if self._limiter is None:
            return 0

        start = self._now()
        if self._limiter.try_acquire(self.name, weight=1):
            return 0

        waited_ms = 0
        while waited_ms < self.max_delay_ms:
            remaining_s = (self.max_delay_ms - waited_ms) / 1000
            self._sleep(min(_POLL_INTERVAL_S, remaining_s))
            waited_ms = int((self._now() - start) * 1000)
            if self._limiter.try_acquire(self.name, weight=1):
                LOGGER.debug(f"{self.name}: acquired after {waited_ms}ms")
                return waited_ms

        LOGGER.warning(f"{self.name}: no capacity after {waited_ms}ms")
        raise RateLimitExceeded(
            f"Rate limit for {self.name} not released within {self.max_delay_ms}ms",
            bucket=self.name,
            waited_ms=waited_ms,
        )


__all__ = ["RequestLimiter", "parse_rates"]
