"""Adaptive, rate-limited scheduler for scraping work.

The scheduler composes the pacing primitives into one facade:

- ConcurrencyGate bounds in-flight tasks (resized by the throttle)
- DomainSpacer keeps starts against one host apart
- WindowedRateCounter caps admissions per rolling window
- AdaptiveThrottle tunes ceiling and inter-task delay from outcomes
- RetryCoordinator retries retryable failures with backoff and jitter
- BatchOrchestrator and JobRegistry run and track batches as jobs

Pipeline for one task::

    acquire slot -> host spacing -> throttle delay -> [rate admission -> attempt]*
        -> release -> record outcome
"""

from __future__ import annotations

import asyncio
import random
import time
from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass
from typing import Any, Self, TypeVar

from scrape_scheduler.config import SchedulerConfig, ThrottleConfig, get_settings
from scrape_scheduler.exceptions import (
    CancellationError,
    ClosedError,
    RateLimitedError,
    SlotTimeoutError,
)
from scrape_scheduler.logging import bind_task, get_logger
from scrape_scheduler.tasks import Task, TaskResult

from .batch import BatchOrchestrator, BatchResult
from .cancellation import CancellationToken, sleep
from .domains import DomainSpacer, DomainStats
from .gate import ConcurrencyGate
from .jobs import Job, JobRegistry, JobSnapshot, JobStatus
from .retry import RetryCoordinator, RetryPolicy
from .throttle import AdaptiveThrottle, ThrottleState
from .window import Clock, WindowedRateCounter

logger = get_logger(__name__)

T = TypeVar("T")

# Most recent slot waits kept for the average
WAIT_SAMPLE_SIZE = 100


@dataclass(frozen=True)
class SchedulerStatus:
    """Live view of the scheduler."""

    active_count: int
    queued_count: int
    current_concurrency_limit: int
    max_concurrent: int
    current_delay_ms: float
    requests_in_window: int
    burst_limit: int
    rate_limited_for_seconds: float
    running_jobs: int
    total_completed: int
    total_failed: int
    is_closed: bool
    accepting_jobs: bool = True
    average_wait_ms: float = 0.0
    average_request_ms: float = 0.0
    estimated_seconds_remaining: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


class ScrapeScheduler:
    """Runs scraping tasks under concurrency, rate and retry policy.

    Usage:
        async with ScrapeScheduler(SchedulerConfig.for_domain("news")) as scheduler:
            result = await scheduler.run_task(Task(execute=lambda: fetch(url)))

            snapshot = scheduler.submit_job(tasks, name="nightly sweep")
            done = await scheduler.wait_for_job(snapshot.job_id)
            print(done.summary)
    """

    def __init__(
        self,
        config: SchedulerConfig | None = None,
        throttle_config: ThrottleConfig | None = None,
        *,
        registry: JobRegistry | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            config: Scheduling parameters (defaults to settings.scheduler)
            throttle_config: Throttle tuning (defaults to settings.throttle)
            registry: Job registry to use (a fresh one by default)
            clock: Monotonic clock for the rate window (injectable for tests)
            rng: Random source for retry jitter (injectable for tests)
        """
        if config is None or throttle_config is None:
            settings = get_settings()
            config = config or settings.scheduler
            throttle_config = throttle_config or settings.throttle
        self._config = config

        self._gate = ConcurrencyGate(config.max_concurrent)
        self._rate_counter = WindowedRateCounter(
            config.burst_limit, config.time_window_ms / 1000, clock=clock
        )
        self._throttle = AdaptiveThrottle(config.max_concurrent, config.delay_ms, throttle_config)
        self._throttle.on_adjust(self._on_throttle_adjust)
        self._retry = RetryCoordinator(
            RetryPolicy.from_config(config),
            default_timeout=_seconds(config.task_timeout_ms),
            before_attempt=self._rate_counter.wait_for_admission,
            on_rate_limited=self._on_rate_limited,
            rng=rng,
        )
        self._registry = registry or JobRegistry()
        self._orchestrator = BatchOrchestrator(
            self,
            batch_size=config.batch_size,
            delay_between_batches=config.delay_between_batches_ms / 1000,
        )
        self._acquire_timeout = _seconds(config.acquire_timeout_ms)
        self._spacer = DomainSpacer()

        # State
        self._accepting = True
        self._closed = False
        self._job_tasks: dict[str, asyncio.Task[None]] = {}

        # Statistics
        self._total_completed = 0
        self._total_failed = 0
        self._wait_times: deque[float] = deque(maxlen=WAIT_SAMPLE_SIZE)

        logger.info(
            "Scheduler ready (max_concurrent={}, delay={}ms, burst={}/{}ms)",
            config.max_concurrent,
            config.delay_ms,
            config.burst_limit,
            config.time_window_ms,
        )

    # -------------------------------------------------------------------------
    # Components
    # -------------------------------------------------------------------------
    @property
    def config(self) -> SchedulerConfig:
        return self._config

    @property
    def gate(self) -> ConcurrencyGate:
        return self._gate

    @property
    def rate_counter(self) -> WindowedRateCounter:
        return self._rate_counter

    @property
    def throttle(self) -> AdaptiveThrottle:
        return self._throttle

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    @property
    def spacer(self) -> DomainSpacer:
        return self._spacer

    @property
    def concurrency_limit(self) -> int:
        """Current concurrency ceiling set by the throttle."""
        return self._throttle.current_concurrency_limit

    @property
    def is_closed(self) -> bool:
        """Whether shutdown has finished and every task is rejected."""
        return self._closed

    @property
    def is_accepting(self) -> bool:
        """Whether new jobs may be created."""
        return self._accepting

    # -------------------------------------------------------------------------
    # Single Tasks
    # -------------------------------------------------------------------------
    async def run_task(
        self,
        task: Task[T],
        token: CancellationToken | None = None,
        *,
        job_id: str | None = None,
    ) -> TaskResult[Any]:
        """Run one task through the full pipeline.

        Never raises for task failures: closed scheduler, slot timeout,
        cancellation and exhausted retries all come back as failed results.

        Args:
            task: Task to run
            token: Optional cancellation token (a job's token for batch work)
            job_id: Owning job, for log context

        Returns:
            TaskResult with the final outcome
        """
        log = bind_task(task.id, job_id)
        if self._closed:
            log.debug("Rejecting {}: scheduler closed", task.display_name)
            return self._settle(TaskResult.from_error(task, ClosedError("Scheduler is closed")))

        entered = time.monotonic()
        try:
            slot = await self._gate.acquire(
                timeout=self._acquire_timeout, token=token, priority=task.priority
            )
        except (ClosedError, SlotTimeoutError, CancellationError) as e:
            log.debug("{} never acquired a slot: {}", task.display_name, e)
            return self._settle(TaskResult.from_error(task, e))

        async with slot:
            try:
                await self._spacer.wait_turn(task.domain, self._domain_interval(), token)
                await sleep(self._throttle.current_delay_seconds, token)
            except CancellationError as e:
                result = TaskResult.from_error(task, e)
            else:
                self._wait_times.append((time.monotonic() - entered) * 1000)
                self._spacer.record_request(task.domain)
                result = await self._retry.execute(task, token, job_id=job_id)

        return self._settle(result)

    def _domain_interval(self) -> float:
        """Seconds between starts against one host at the current delay."""
        return self._throttle.current_delay_seconds * self._config.domain_interval_multiplier

    def _settle(self, result: TaskResult[Any]) -> TaskResult[Any]:
        if result.success:
            self._total_completed += 1
        else:
            self._total_failed += 1

        # Only outcomes of attempts that actually ran say anything about the target
        if result.attempt_count > 0 and not isinstance(result.error, CancellationError):
            self._throttle.record(
                result.success, result.duration_ms if result.success else None
            )
        return result

    # -------------------------------------------------------------------------
    # Batches and Jobs
    # -------------------------------------------------------------------------
    async def run_batch(
        self,
        tasks: Sequence[Task[Any]],
        name: str | None = None,
    ) -> JobSnapshot:
        """Run a batch as a job and wait for it to finish.

        Args:
            tasks: Tasks to run
            name: Display name for the job

        Returns:
            Final JobSnapshot (results in submission order)

        Raises:
            ClosedError: If the scheduler is closed
        """
        job = self._create_job(tasks, name)
        await self._orchestrator.run(tasks, job)
        return job.snapshot()

    async def run_batch_detailed(
        self,
        tasks: Sequence[Task[T]],
        name: str | None = None,
    ) -> tuple[JobSnapshot, BatchResult[T]]:
        """Like run_batch, also returning the orchestrator's BatchResult.

        The BatchResult keeps results that settled after a cancellation,
        which the job itself drops.
        """
        job = self._create_job(tasks, name)
        batch = await self._orchestrator.run(tasks, job)
        return job.snapshot(), batch

    def submit_job(
        self,
        tasks: Sequence[Task[Any]],
        name: str | None = None,
    ) -> JobSnapshot:
        """Start a batch in the background (fire-and-forget).

        Must be called from a running event loop.

        Returns:
            Snapshot of the new pending job; poll get_job or wait_for_job

        Raises:
            ClosedError: If the scheduler is closed
        """
        job = self._create_job(tasks, name)
        background = asyncio.create_task(self._run_job(job, list(tasks)), name=job.id)
        self._job_tasks[job.id] = background
        background.add_done_callback(lambda _: self._job_tasks.pop(job.id, None))
        return job.snapshot()

    def resubmit_remaining(self, job_id: str, name: str | None = None) -> JobSnapshot:
        """Submit the tasks a finished job never started as a new job.

        Raises:
            NotFoundError: If the job is unknown
            ValueError: If the job is still running or nothing is left
        """
        job = self._registry.get(job_id)
        if not job.is_done:
            raise ValueError(f"Job {job_id} is still {job.status}")
        if not job.not_started:
            raise ValueError(f"Job {job_id} has no un-started tasks")
        return self.submit_job(job.not_started, name or f"{job.name} (resumed)")

    async def wait_for_job(self, job_id: str, timeout: float | None = None) -> JobSnapshot:
        """Wait until a submitted job's background run has finished.

        Args:
            job_id: Job to wait for
            timeout: Maximum seconds to wait (None = indefinitely)

        Returns:
            Final JobSnapshot

        Raises:
            NotFoundError: If the job is unknown
            TimeoutError: If the job is still running after ``timeout``
        """
        job = self._registry.get(job_id)
        background = self._job_tasks.get(job_id)
        if background is not None:
            _, pending = await asyncio.wait({background}, timeout=timeout)
            if pending:
                raise TimeoutError(f"Job {job_id} still running after {timeout}s")
        return job.snapshot()

    def get_job(self, job_id: str) -> JobSnapshot:
        """Snapshot of a job (NotFoundError if unknown)."""
        return self._registry.snapshot(job_id)

    def list_jobs(self, statuses: Iterable[JobStatus | str] | None = None) -> list[JobSnapshot]:
        """Snapshots of known jobs, optionally filtered by status."""
        return self._registry.list_jobs(statuses)

    def cancel_job(self, job_id: str, reason: str = "cancelled by caller") -> JobSnapshot:
        """Cancel a job cooperatively.

        No new chunk is dispatched and pending waits end at once; tasks
        already executing finish but their results are not recorded.
        Cancelling a finished job is a no-op.
        """
        return self._registry.cancel(job_id, reason)

    def _create_job(self, tasks: Sequence[Task[Any]], name: str | None) -> Job:
        if not self._accepting:
            raise ClosedError("Scheduler is not accepting new jobs")
        return self._registry.create(len(tasks), name)

    async def _run_job(self, job: Job, tasks: list[Task[Any]]) -> None:
        try:
            await self._orchestrator.run(tasks, job)
        except Exception as e:
            # Already recorded on the job by the orchestrator
            logger.debug("Background job {} ended with error: {}", job.id, e)

    # -------------------------------------------------------------------------
    # Feedback
    # -------------------------------------------------------------------------
    def _on_throttle_adjust(self, state: ThrottleState) -> None:
        self._gate.set_capacity(state.current_concurrency_limit)

    def _on_rate_limited(self, error: RateLimitedError) -> None:
        if error.retry_after:
            logger.info("Target asked to back off for {:.1f}s", error.retry_after)
            self._rate_counter.block_for(error.retry_after)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    async def shutdown(self, wait: bool = True, timeout: float = 30.0) -> None:
        """Stop accepting work and wind down running jobs.

        New jobs are refused at once. Tasks keep running until the wait is
        over; only then are leftover jobs cancelled, the gate closed and
        every further task rejected.

        Args:
            wait: If True, let running jobs finish (up to ``timeout``) first
            timeout: Maximum seconds to wait for running jobs
        """
        if not self._accepting:
            return
        self._accepting = False

        running = list(self._job_tasks.values())
        if wait and running:
            logger.info("Waiting for {} running jobs...", len(running))
            await asyncio.wait(running, timeout=timeout)

        for job_id, background in list(self._job_tasks.items()):
            if background.done():
                continue
            self._registry.cancel(job_id, "scheduler shutdown")
            background.cancel()
        leftover = [t for t in running if not t.done()]
        if leftover:
            await asyncio.gather(*leftover, return_exceptions=True)

        self._closed = True
        self._gate.close()
        logger.info(
            "Scheduler stopped (completed={}, failed={})",
            self._total_completed,
            self._total_failed,
        )

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------
    def get_status(self) -> SchedulerStatus:
        """Current live status, including timing averages and a completion estimate."""
        average_request_ms = self._throttle.average_response_ms or 0.0
        return SchedulerStatus(
            active_count=self._gate.active_count,
            queued_count=self._gate.queued_count,
            current_concurrency_limit=self._throttle.current_concurrency_limit,
            max_concurrent=self._throttle.max_concurrent,
            current_delay_ms=self._throttle.current_delay_ms,
            requests_in_window=self._rate_counter.requests_in_window,
            burst_limit=self._rate_counter.max_per_window,
            rate_limited_for_seconds=round(self._rate_counter.blocked_remaining, 2),
            running_jobs=sum(1 for t in self._job_tasks.values() if not t.done()),
            total_completed=self._total_completed,
            total_failed=self._total_failed,
            is_closed=self._closed,
            accepting_jobs=self._accepting,
            average_wait_ms=round(self.average_wait_ms, 2),
            average_request_ms=round(average_request_ms, 2),
            estimated_seconds_remaining=round(self._estimate_remaining(average_request_ms), 2),
        )

    @property
    def average_wait_ms(self) -> float:
        """Mean time recent tasks spent between submission and their first attempt."""
        if not self._wait_times:
            return 0.0
        return sum(self._wait_times) / len(self._wait_times)

    def _estimate_remaining(self, average_request_ms: float) -> float:
        """Seconds until the current backlog drains at the current pace."""
        running = self._registry.list_jobs([JobStatus.RUNNING])
        backlog = max(self._gate.queued_count, sum(job.remaining for job in running))
        per_task_ms = average_request_ms + self._throttle.current_delay_ms
        return backlog * per_task_ms / 1000 / max(1, self._throttle.current_concurrency_limit)

    def get_domain_stats(self) -> list[DomainStats]:
        """Request counts and last dispatch time per host, busiest first."""
        return self._spacer.get_domain_stats()

    def get_stats(self) -> dict[str, Any]:
        """Scheduler statistics for monitoring.

        Returns:
            Dict with the status plus gate, rate window and throttle details
        """
        return {
            **self.get_status().to_dict(),
            "gate_capacity": self._gate.capacity,
            "rate_window": self._rate_counter.get_stats(),
            "throttle": self._throttle.get_stats(),
            "domains": [stats.to_dict() for stats in self.get_domain_stats()],
            "jobs": len(self._registry),
        }


def _seconds(ms: int | None) -> float | None:
    return ms / 1000 if ms is not None else None
