"""Per-host spacing between task starts.

Tasks aimed at the same host are kept at least ``interval`` seconds apart,
start to start, whatever the overall concurrency allows. Each caller reserves
the next free start time for its host before sleeping, so concurrent callers
for one host line up one interval apart instead of all waking together.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

from scrape_scheduler.logging import get_logger

from .cancellation import CancellationToken, sleep
from .window import Clock

logger = get_logger(__name__)


@dataclass(frozen=True)
class DomainStats:
    """Request count and last dispatch time for one host."""

    domain: str
    requests: int
    last_request_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_request_at"] = (
            self.last_request_at.isoformat() if self.last_request_at else None
        )
        return data


class DomainSpacer:
    """Enforces a minimum start-to-start interval per host.

    Usage:
        spacer = DomainSpacer()
        await spacer.wait_turn("example.com", interval=2.0, token=job.token)
        spacer.record_request("example.com")
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or time.monotonic
        self._next_start: dict[str, float] = {}
        self._requests: dict[str, int] = {}
        self._last_request_at: dict[str, datetime] = {}

    async def wait_turn(
        self,
        domain: str | None,
        interval: float,
        token: CancellationToken | None = None,
    ) -> float:
        """Reserve the next start slot for ``domain`` and sleep until it.

        Args:
            domain: Host the task targets (None = no spacing)
            interval: Minimum seconds between starts for this host
            token: Optional cancellation token that ends the sleep

        Returns:
            Seconds spent waiting

        Raises:
            CancellationError: If ``token`` is tripped while waiting
        """
        if domain is None:
            return 0.0
        now = self._clock()
        start = max(now, self._next_start.get(domain, now))
        self._next_start[domain] = start + max(0.0, interval)
        wait = start - now
        if wait > 0:
            logger.debug("Spacing requests to {}: waiting {:.2f}s", domain, wait)
            await sleep(wait, token)
        return wait

    def record_request(self, domain: str | None) -> None:
        """Count a dispatched request against ``domain``."""
        if domain is None:
            return
        self._requests[domain] = self._requests.get(domain, 0) + 1
        self._last_request_at[domain] = datetime.now(UTC)

    def get_domain_stats(self) -> list[DomainStats]:
        """Per-host request counts, busiest first."""
        stats = [
            DomainStats(domain, count, self._last_request_at.get(domain))
            for domain, count in self._requests.items()
        ]
        return sorted(stats, key=lambda s: (-s.requests, s.domain))

    def reset(self) -> None:
        self._next_start.clear()
        self._requests.clear()
        self._last_request_at.clear()
