"""Shared test helpers: fast configs, a fake clock and canned tasks."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from scrape_scheduler.config import SchedulerConfig, ThrottleConfig
from scrape_scheduler.tasks import Task, TaskPriority


# -----------------------------------------------------------------------------
# Config Helpers
# -----------------------------------------------------------------------------
def fast_config(**overrides: Any) -> SchedulerConfig:
    """SchedulerConfig with every pacing delay disabled unless overridden."""
    values: dict[str, Any] = {
        "max_concurrent": 3,
        "delay_ms": 0,
        "burst_limit": 1000,
        "time_window_ms": 1000,
        "max_retries": 2,
        "retry_base_delay_ms": 0,
        "retry_delay_cap_ms": 0,
        "retry_jitter_ms": 0,
        "batch_size": None,
        "delay_between_batches_ms": 0,
        "acquire_timeout_ms": None,
        "task_timeout_ms": None,
    }
    values.update(overrides)
    return SchedulerConfig.model_validate(values)


def quiet_throttle(**overrides: Any) -> ThrottleConfig:
    """ThrottleConfig that only reacts after many outcomes."""
    values: dict[str, Any] = {"evaluation_window": 1000}
    values.update(overrides)
    return ThrottleConfig.model_validate(values)


# -----------------------------------------------------------------------------
# Clock
# -----------------------------------------------------------------------------
class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# -----------------------------------------------------------------------------
# Task Helpers
# -----------------------------------------------------------------------------
def value_task(
    value: Any = "ok",
    *,
    delay: float = 0.0,
    label: str | None = None,
    priority: int = TaskPriority.NORMAL,
    domain: str | None = None,
) -> Task[Any]:
    """Task that returns ``value`` after ``delay`` seconds."""

    async def run() -> Any:
        if delay:
            await asyncio.sleep(delay)
        return value

    return Task(execute=run, label=label, priority=priority, domain=domain)


def failing_task(
    error_factory: Callable[[], BaseException],
    *,
    calls: list[int] | None = None,
    max_retries: int | None = None,
) -> Task[Any]:
    """Task that always raises a fresh error; appends to ``calls`` per attempt."""

    async def run() -> Any:
        if calls is not None:
            calls.append(1)
        raise error_factory()

    return Task(execute=run, max_retries=max_retries)


def flaky_task(failures: int, error_factory: Callable[[], BaseException], value: Any = "ok") -> Task[Any]:
    """Task that fails ``failures`` times, then returns ``value``."""
    state = {"attempts": 0}

    async def run() -> Any:
        state["attempts"] += 1
        if state["attempts"] <= failures:
            raise error_factory()
        return value

    return Task(execute=run)


class ConcurrencyTracker:
    """Tracks how many wrapped coroutines run at once."""

    def __init__(self) -> None:
        self.current = 0
        self.peak = 0
        self.started = 0

    def task(self, *, delay: float = 0.01, value: Any = "ok") -> Task[Any]:
        async def run() -> Any:
            self.current += 1
            self.started += 1
            self.peak = max(self.peak, self.current)
            try:
                await asyncio.sleep(delay)
            finally:
                self.current -= 1
            return value

        return Task(execute=run)

    def tasks(self, count: int, *, delay: float = 0.01) -> list[Task[Any]]:
        return [self.task(delay=delay, value=i) for i in range(count)]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


