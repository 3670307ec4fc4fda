"""Adaptive throttling from task outcome history.

The throttle counts successes and failures in fixed evaluation windows of K
outcomes and adjusts two knobs: the concurrency ceiling and the delay before
each task starts.

Algorithm (per evaluation window):
    ratio = failures / K
    ratio > high_watermark -> ceiling -= step, delay *= backoff_factor
    ratio < low_watermark  -> calm streak += 1; after M calm windows:
                              ceiling += step, delay /= backoff_factor
    otherwise              -> calm streak reset

Two watermarks give hysteresis so the ceiling does not oscillate. Recovery
never takes the delay below the configured starting delay.

At each evaluation the delay is also nudged by the average of the last 100
response times: slow servers (average above slow_response_ms) add
slow_response_step_ms up to response_delay_cap_ms, fast ones (average below
fast_response_ms) subtract fast_response_step_ms down to
response_delay_floor_ms.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from scrape_scheduler.config import ThrottleConfig
from scrape_scheduler.logging import get_logger

logger = get_logger(__name__)

# Most recent response times kept for pacing
RESPONSE_SAMPLE_SIZE = 100


@dataclass(frozen=True)
class ThrottleState:
    """Snapshot of the throttle's knobs and counters."""

    current_concurrency_limit: int
    current_delay_ms: float
    recent_successes: int = 0
    recent_failures: int = 0
    calm_windows: int = 0
    last_adjustment_at: float | None = None

    @property
    def current_delay_seconds(self) -> float:
        return self.current_delay_ms / 1000


AdjustCallback = Callable[[ThrottleState], None]


class AdaptiveThrottle:
    """Scales concurrency and inter-task delay with the observed failure ratio.

    Usage:
        throttle = AdaptiveThrottle(max_concurrent=5, initial_delay_ms=500)
        throttle.on_adjust(lambda state: gate.set_capacity(state.current_concurrency_limit))

        # After every task settles
        throttle.record(result.success, result.duration_ms)
    """

    def __init__(
        self,
        max_concurrent: int,
        initial_delay_ms: float = 0.0,
        config: ThrottleConfig | None = None,
    ) -> None:
        """Initialize the throttle.

        Args:
            max_concurrent: Configured concurrency maximum (ceiling never exceeds it)
            initial_delay_ms: Starting inter-task delay
            config: Throttle tuning (defaults to ThrottleConfig())

        Raises:
            ValueError: If max_concurrent < 1
        """
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self._config = config or ThrottleConfig()
        self._max_concurrent = max_concurrent
        self._initial_delay_ms = self._clamp_delay(initial_delay_ms)

        self._limit = max_concurrent
        self._delay_ms = self._initial_delay_ms
        self._successes = 0
        self._failures = 0
        self._calm_windows = 0
        self._response_times: deque[float] = deque(maxlen=RESPONSE_SAMPLE_SIZE)
        self._last_adjustment_at: float | None = None
        self._callbacks: list[AdjustCallback] = []

    @property
    def config(self) -> ThrottleConfig:
        return self._config

    @property
    def max_concurrent(self) -> int:
        """The originally configured concurrency maximum."""
        return self._max_concurrent

    @property
    def current_concurrency_limit(self) -> int:
        return self._limit

    @property
    def current_delay_ms(self) -> float:
        return self._delay_ms

    @property
    def current_delay_seconds(self) -> float:
        return self._delay_ms / 1000

    @property
    def average_response_ms(self) -> float | None:
        """Mean of the recent response times, or None before any were recorded."""
        if not self._response_times:
            return None
        return sum(self._response_times) / len(self._response_times)

    @property
    def state(self) -> ThrottleState:
        return ThrottleState(
            current_concurrency_limit=self._limit,
            current_delay_ms=self._delay_ms,
            recent_successes=self._successes,
            recent_failures=self._failures,
            calm_windows=self._calm_windows,
            last_adjustment_at=self._last_adjustment_at,
        )

    # -------------------------------------------------------------------------
    # Callbacks
    # -------------------------------------------------------------------------
    def on_adjust(self, callback: AdjustCallback) -> None:
        """Register a callback that receives the new state after each adjustment."""
        self._callbacks.append(callback)

    def _notify(self) -> None:
        state = self.state
        for callback in self._callbacks:
            try:
                callback(state)
            except Exception as e:
                logger.warning("Throttle callback error: {}", e)

    # -------------------------------------------------------------------------
    # Outcome Recording
    # -------------------------------------------------------------------------
    def record(self, success: bool, duration_ms: float | None = None) -> None:
        """Record one task outcome; evaluates after every K outcomes.

        Args:
            success: Whether the task succeeded
            duration_ms: Time the task took, kept for response-time pacing
        """
        if success:
            self._successes += 1
        else:
            self._failures += 1
        if duration_ms is not None:
            self._response_times.append(max(0.0, duration_ms))
        if self._successes + self._failures >= self._config.evaluation_window:
            self._evaluate()

    def record_success(self, duration_ms: float | None = None) -> None:
        self.record(True, duration_ms)

    def record_failure(self, duration_ms: float | None = None) -> None:
        self.record(False, duration_ms)

    def _evaluate(self) -> None:
        total = self._successes + self._failures
        ratio = self._failures / total
        self._successes = 0
        self._failures = 0
        previous = (self._limit, self._delay_ms)

        if ratio > self._config.high_watermark:
            self._calm_windows = 0
            self._back_off(ratio)
        elif ratio < self._config.low_watermark:
            self._calm_windows += 1
            if self._calm_windows >= self._config.recovery_windows:
                self._calm_windows = 0
                self._recover()
        else:
            self._calm_windows = 0

        self._pace_by_response_time()
        self._adjusted(previous)

    def _back_off(self, ratio: float) -> None:
        previous = (self._limit, self._delay_ms)
        self._limit = max(1, self._limit - self._config.concurrency_step)
        if self._delay_ms <= 0:
            self._delay_ms = self._clamp_delay(self._config.initial_backoff_delay_ms)
        else:
            self._delay_ms = self._clamp_delay(self._delay_ms * self._config.backoff_factor)
        logger.warning(
            "Failure ratio {:.0%} above {:.0%}: concurrency {} -> {}, delay {:.0f}ms -> {:.0f}ms",
            ratio,
            self._config.high_watermark,
            previous[0],
            self._limit,
            previous[1],
            self._delay_ms,
        )

    def _recover(self) -> None:
        previous = (self._limit, self._delay_ms)
        self._limit = min(self._max_concurrent, self._limit + self._config.concurrency_step)
        delay = self._delay_ms / self._config.backoff_factor
        if delay < self._config.initial_backoff_delay_ms or delay < self._initial_delay_ms:
            # Recovery never undercuts the configured delay
            delay = self._initial_delay_ms
        self._delay_ms = self._clamp_delay(delay)
        if previous == (self._limit, self._delay_ms):
            return
        logger.info(
            "Failure ratio calm for {} windows: concurrency {} -> {}, delay {:.0f}ms -> {:.0f}ms",
            self._config.recovery_windows,
            previous[0],
            self._limit,
            previous[1],
            self._delay_ms,
        )

    def _pace_by_response_time(self) -> None:
        """Nudge the delay toward slow or fast servers once enough samples exist."""
        if len(self._response_times) <= self._config.min_response_samples:
            return
        average = sum(self._response_times) / len(self._response_times)
        config = self._config
        before = self._delay_ms

        if average > config.slow_response_ms and self._delay_ms < config.response_delay_cap_ms:
            delay = min(
                float(config.response_delay_cap_ms),
                self._delay_ms + config.slow_response_step_ms,
            )
            self._delay_ms = self._clamp_delay(delay)
            reason = "slow"
        else:
            floor = max(float(config.response_delay_floor_ms), self._initial_delay_ms)
            if average >= config.fast_response_ms or self._delay_ms <= floor:
                return
            self._delay_ms = self._clamp_delay(
                max(floor, self._delay_ms - config.fast_response_step_ms)
            )
            reason = "fast"

        if self._delay_ms != before:
            logger.info(
                "Average response {:.0f}ms is {}: delay {:.0f}ms -> {:.0f}ms",
                average,
                reason,
                before,
                self._delay_ms,
            )

    def _adjusted(self, previous: tuple[int, float]) -> None:
        if previous == (self._limit, self._delay_ms):
            return
        self._last_adjustment_at = time.monotonic()
        self._notify()

    def _clamp_delay(self, delay_ms: float) -> float:
        return max(
            float(self._config.min_delay_ms),
            min(float(delay_ms), float(self._config.max_delay_ms)),
        )

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------
    def reset(self) -> None:
        """Restore the configured ceiling and delay and clear counters."""
        previous = (self._limit, self._delay_ms)
        self._limit = self._max_concurrent
        self._delay_ms = self._initial_delay_ms
        self._successes = 0
        self._failures = 0
        self._calm_windows = 0
        self._response_times.clear()
        self._adjusted(previous)

    def get_stats(self) -> dict[str, float | int | None]:
        """Throttle statistics for monitoring."""
        return {
            "current_concurrency_limit": self._limit,
            "max_concurrent": self._max_concurrent,
            "current_delay_ms": round(self._delay_ms, 2),
            "recent_successes": self._successes,
            "recent_failures": self._failures,
            "calm_windows": self._calm_windows,
            "average_response_ms": (
                round(self.average_response_ms, 2)
                if self.average_response_ms is not None
                else None
            ),
        }
