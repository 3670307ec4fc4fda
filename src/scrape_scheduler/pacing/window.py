"""Rolling-window admission counter (burst limiting).

Keeps the timestamps of recent admissions in a deque, so no more than
``max_per_window`` admissions happen inside any span of ``window_seconds``.
A rejected admission reports the exact clock time at which the oldest
admission leaves the window.

Besides the window itself the counter supports forced waits: when a target
answers "429 Too Many Requests" with a Retry-After hint the scheduler blocks
all admissions until that moment.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from scrape_scheduler.logging import get_logger

from .cancellation import CancellationToken, sleep

logger = get_logger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class Admission:
    """Outcome of a single admission attempt."""

    admitted: bool
    retry_at: float | None = None
    """Clock time at which admission may succeed (rejections only)."""

    @classmethod
    def accept(cls) -> Admission:
        return cls(admitted=True)

    @classmethod
    def reject_until(cls, retry_at: float) -> Admission:
        return cls(admitted=False, retry_at=retry_at)


@dataclass(frozen=True)
class RateWindow:
    """Point-in-time view of the rolling window."""

    window_start: float
    count_in_window: int
    window_size_ms: int
    max_per_window: int

    @property
    def remaining(self) -> int:
        """Admissions still available in the current window."""
        return max(0, self.max_per_window - self.count_in_window)


class WindowedRateCounter:
    """Caps admissions per rolling time window.

    Usage:
        counter = WindowedRateCounter(max_per_window=10, window_seconds=60.0)

        admission = counter.try_admit()
        if not admission.admitted:
            ...  # wait until admission.retry_at

        # or simply
        await counter.wait_for_admission(token)
    """

    def __init__(
        self,
        max_per_window: int,
        window_seconds: float,
        *,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the counter.

        Args:
            max_per_window: Admissions allowed in any rolling window (>= 1)
            window_seconds: Window length in seconds (> 0)
            clock: Monotonic clock in seconds (injectable for tests)

        Raises:
            ValueError: If a bound is out of range
        """
        if max_per_window < 1:
            raise ValueError(f"max_per_window must be >= 1, got {max_per_window}")
        if window_seconds <= 0:
            raise ValueError(f"window_seconds must be > 0, got {window_seconds}")
        self._max = max_per_window
        self._window = window_seconds
        self._clock = clock or time.monotonic
        self._admissions: deque[float] = deque()
        self._blocked_until: float | None = None
        self._total_admitted = 0
        self._total_rejected = 0

    @property
    def max_per_window(self) -> int:
        return self._max

    @property
    def window_seconds(self) -> float:
        return self._window

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------
    def try_admit(self) -> Admission:
        """Admit one request if the window (and any forced wait) allows it.

        Returns:
            Admission; rejected admissions carry ``retry_at``
        """
        now = self._clock()

        if self._blocked_until is not None:
            if now < self._blocked_until:
                self._total_rejected += 1
                return Admission.reject_until(self._blocked_until)
            self._blocked_until = None

        self._prune(now)
        if len(self._admissions) >= self._max:
            self._total_rejected += 1
            return Admission.reject_until(self._admissions[0] + self._window)

        self._admissions.append(now)
        self._total_admitted += 1
        return Admission.accept()

    async def wait_for_admission(self, token: CancellationToken | None = None) -> None:
        """Suspend until admitted.

        Args:
            token: Optional cancellation token that abandons the wait

        Raises:
            CancellationError: If ``token`` is tripped while waiting
        """
        while True:
            admission = self.try_admit()
            if admission.admitted:
                return
            now = self._clock()
            retry_at = admission.retry_at if admission.retry_at is not None else now
            wait = max(0.0, retry_at - now)
            logger.debug("Burst limit reached, waiting {:.2f}s for admission", wait)
            await sleep(wait, token)

    def _prune(self, now: float) -> None:
        cutoff = now - self._window
        while self._admissions and self._admissions[0] <= cutoff:
            self._admissions.popleft()

    # -------------------------------------------------------------------------
    # Forced Wait
    # -------------------------------------------------------------------------
    def block_for(self, seconds: float) -> None:
        """Reject every admission for the next ``seconds``.

        Use this when a rate-limited response is received. An existing longer
        block is kept.

        Args:
            seconds: Number of seconds to block
        """
        self.block_until(self._clock() + max(0.0, seconds))

    def block_until(self, until: float) -> None:
        """Reject every admission until clock time ``until``."""
        if self._blocked_until is not None and self._blocked_until >= until:
            return
        self._blocked_until = until
        logger.info(
            "Admissions blocked for {:.1f}s", max(0.0, until - self._clock())
        )

    def clear_block(self) -> None:
        """Clear any forced wait."""
        self._blocked_until = None

    @property
    def blocked_remaining(self) -> float:
        """Seconds left in a forced wait (0 if none)."""
        if self._blocked_until is None:
            return 0.0
        return max(0.0, self._blocked_until - self._clock())

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------
    @property
    def requests_in_window(self) -> int:
        """Admissions inside the current rolling window."""
        self._prune(self._clock())
        return len(self._admissions)

    def snapshot(self) -> RateWindow:
        """Current window state."""
        now = self._clock()
        self._prune(now)
        return RateWindow(
            window_start=self._admissions[0] if self._admissions else now,
            count_in_window=len(self._admissions),
            window_size_ms=round(self._window * 1000),
            max_per_window=self._max,
        )

    def get_stats(self) -> dict[str, float | int]:
        """Counter statistics for monitoring."""
        return {
            "requests_in_window": self.requests_in_window,
            "max_per_window": self._max,
            "window_seconds": self._window,
            "total_admitted": self._total_admitted,
            "total_rejected": self._total_rejected,
            "blocked_remaining": round(self.blocked_remaining, 2),
        }
