"""Bounded retries with exponential backoff and jitter.

Each task gets up to ``max_retries + 1`` attempts. Between attempt n and
n + 1 the coordinator waits::

    min(base * multiplier ** (n - 1), cap) + uniform(0, jitter)

Jitter keeps tasks that failed together from retrying in lockstep. Only
retryable errors consume further attempts; terminal errors end the task on
their first occurrence.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, TypeVar

from scrape_scheduler.config import SchedulerConfig
from scrape_scheduler.exceptions import (
    CancellationError,
    ClosedError,
    RateLimitedError,
    SlotTimeoutError,
    TerminalValidationError,
    TransientNetworkError,
)
from scrape_scheduler.logging import bind_task
from scrape_scheduler.tasks import Task, TaskResult

from .cancellation import CancellationToken, sleep

T = TypeVar("T")

BeforeAttempt = Callable[[CancellationToken | None], Awaitable[None]]
RateLimitListener = Callable[[RateLimitedError], None]


class ErrorKind(StrEnum):
    """How the retry coordinator treats an error."""

    RETRYABLE = "retryable"
    TERMINAL = "terminal"
    CANCELLED = "cancelled"


_TERMINAL_TYPES: tuple[type[BaseException], ...] = (
    TerminalValidationError,
    ClosedError,
    ValueError,
    TypeError,
    KeyError,
    NotImplementedError,
)


def classify_error(error: BaseException) -> ErrorKind:
    """Classify an error as retryable, terminal or cancelled.

    Unknown exception types are treated as retryable: a flaky collaborator
    is far more common than a deterministic bug that only retries can hit.

    Args:
        error: Exception raised by an attempt

    Returns:
        ErrorKind for the error
    """
    if isinstance(error, CancellationError | asyncio.CancelledError):
        return ErrorKind.CANCELLED
    if isinstance(error, TransientNetworkError | SlotTimeoutError):
        return ErrorKind.RETRYABLE
    if isinstance(error, _TERMINAL_TYPES):
        return ErrorKind.TERMINAL
    # TimeoutError, ConnectionError and other OSErrors land here too
    return ErrorKind.RETRYABLE


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters, in seconds."""

    max_retries: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    delay_cap: float = 10.0
    jitter: float = 0.5

    @classmethod
    def from_config(cls, config: SchedulerConfig) -> RetryPolicy:
        return cls(
            max_retries=config.max_retries,
            base_delay=config.retry_base_delay_ms / 1000,
            multiplier=config.retry_backoff_multiplier,
            delay_cap=config.retry_delay_cap_ms / 1000,
            jitter=config.retry_jitter_ms / 1000,
        )

    def backoff(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        exp = min(self.base_delay * self.multiplier ** max(attempt - 1, 0), self.delay_cap)
        if self.jitter <= 0:
            return exp
        return exp + (rng or random).uniform(0, self.jitter)


class RetryCoordinator:
    """Runs one task with bounded, backed-off retries.

    Usage:
        coordinator = RetryCoordinator(RetryPolicy(max_retries=2))
        result = await coordinator.execute(task)
        if not result.success:
            print(result.error, result.attempt_count)
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        default_timeout: float | None = None,
        before_attempt: BeforeAttempt | None = None,
        on_rate_limited: RateLimitListener | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            policy: Backoff parameters (defaults to RetryPolicy())
            default_timeout: Per-attempt timeout for tasks without their own
            before_attempt: Awaited before every attempt (e.g. rate admission)
            on_rate_limited: Called with each RateLimitedError seen
            rng: Random source for jitter (injectable for tests)
        """
        self._policy = policy or RetryPolicy()
        self._default_timeout = default_timeout
        self._before_attempt = before_attempt
        self._on_rate_limited = on_rate_limited
        self._rng = rng or random.Random()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def execute(
        self,
        task: Task[T],
        token: CancellationToken | None = None,
        *,
        job_id: str | None = None,
    ) -> TaskResult[Any]:
        """Run ``task`` until it succeeds, fails terminally or runs out of attempts.

        Never raises for errors raised by the task itself; asyncio task
        cancellation still propagates.

        Args:
            task: Task to execute
            token: Optional cancellation token for backoff/admission waits
            job_id: Owning job, for log context

        Returns:
            TaskResult with the final outcome and attempt count
        """
        log = bind_task(task.id, job_id)
        max_retries = self._policy.max_retries if task.max_retries is None else task.max_retries
        timeout = task.timeout_seconds if task.timeout_seconds is not None else self._default_timeout
        started = time.monotonic()
        attempt = 0

        while True:
            try:
                if self._before_attempt is not None:
                    await self._before_attempt(token)
            except Exception as e:
                # Admission was abandoned (cancellation) before the attempt ran
                return TaskResult.from_error(
                    task, e, attempt_count=attempt, duration_ms=_elapsed_ms(started)
                )

            attempt += 1
            try:
                value = await self._run_attempt(task, timeout)
            except Exception as e:
                if isinstance(e, RateLimitedError) and self._on_rate_limited is not None:
                    self._on_rate_limited(e)
                kind = classify_error(e)
                if kind is not ErrorKind.RETRYABLE or attempt > max_retries:
                    if kind is ErrorKind.RETRYABLE:
                        log.error(
                            "{} failed after {} attempts: {}", task.display_name, attempt, e
                        )
                    else:
                        log.warning("{} failed ({}): {}", task.display_name, kind.value, e)
                    return TaskResult.from_error(
                        task, e, attempt_count=attempt, duration_ms=_elapsed_ms(started)
                    )

                delay = self._policy.backoff(attempt, self._rng)
                if isinstance(e, RateLimitedError) and e.retry_after:
                    delay = max(delay, e.retry_after)

                log.warning(
                    "{} failed (attempt {}/{}): {}; retrying in {:.2f}s",
                    task.display_name,
                    attempt,
                    max_retries + 1,
                    e,
                    delay,
                )
                try:
                    await sleep(delay, token)
                except CancellationError as cancel_error:
                    return TaskResult.from_error(
                        task,
                        cancel_error,
                        attempt_count=attempt,
                        duration_ms=_elapsed_ms(started),
                    )
                continue

            if attempt > 1:
                log.info("{} succeeded on attempt {}", task.display_name, attempt)
            return TaskResult.from_value(
                task, value, attempt_count=attempt, duration_ms=_elapsed_ms(started)
            )

    async def _run_attempt(self, task: Task[T], timeout: float | None) -> T:
        if timeout is None:
            return await task.execute()
        return await asyncio.wait_for(task.execute(), timeout)


def _elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000
