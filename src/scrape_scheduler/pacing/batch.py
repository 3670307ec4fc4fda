"""Chunked batch execution on top of the scheduler.

A batch is ordered by task priority and split into chunks no larger than the
current concurrency ceiling (and the configured batch size). Each chunk is
dispatched in full and awaited before the next begins, with an optional pause
in between. The ceiling is re-read for every chunk, so a throttle adjustment
mid-batch changes the size of the following chunks.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from contextlib import AbstractContextManager, nullcontext
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

from scrape_scheduler.exceptions import CancellationError
from scrape_scheduler.logging import get_logger, job_context
from scrape_scheduler.tasks import Task, TaskResult

from .cancellation import CancellationToken, sleep
from .jobs import Job

logger = get_logger(__name__)

T = TypeVar("T")


class TaskRunner(Protocol):
    """What the orchestrator needs from the scheduler."""

    @property
    def concurrency_limit(self) -> int: ...

    async def run_task(
        self,
        task: Task[Any],
        token: CancellationToken | None = None,
        *,
        job_id: str | None = None,
    ) -> TaskResult[Any]: ...


@dataclass
class BatchResult(Generic[T]):
    """Result of a batch operation."""

    results: list[TaskResult[T]] = field(default_factory=list)
    """Results of every dispatched task, in submission order."""

    not_started: list[Task[T]] = field(default_factory=list)
    """Tasks never dispatched because the batch was cancelled."""

    chunk_sizes: list[int] = field(default_factory=list)
    cancelled: bool = False

    @property
    def total_count(self) -> int:
        """Number of tasks that produced a result."""
        return len(self.results)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def all_succeeded(self) -> bool:
        """Whether every task ran and succeeded."""
        return not self.not_started and all(r.success for r in self.results)

    @property
    def chunk_count(self) -> int:
        return len(self.chunk_sizes)

    @property
    def succeeded(self) -> list[T | None]:
        """Values of the successful tasks."""
        return [r.value for r in self.results if r.success]

    @property
    def failed(self) -> list[TaskResult[T]]:
        """Results of the failed tasks."""
        return [r for r in self.results if not r.success]


class BatchOrchestrator:
    """Runs a list of tasks in ceiling-sized chunks.

    Usage:
        orchestrator = BatchOrchestrator(scheduler, batch_size=10, delay_between_batches=5.0)
        job = registry.create(total=len(tasks))
        result = await orchestrator.run(tasks, job)

        print(f"{result.success_count}/{len(tasks)} succeeded in {result.chunk_count} chunks")
    """

    def __init__(
        self,
        runner: TaskRunner,
        *,
        batch_size: int | None = None,
        delay_between_batches: float = 0.0,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            runner: Executes single tasks and exposes the concurrency ceiling
            batch_size: Upper bound on chunk size (None = ceiling only)
            delay_between_batches: Seconds to pause between chunks
        """
        if batch_size is not None and batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self._runner = runner
        self._batch_size = batch_size
        self._delay = max(0.0, delay_between_batches)

    def chunk_size(self) -> int:
        """Size of the next chunk: the ceiling, capped by the batch size."""
        size = max(1, self._runner.concurrency_limit)
        if self._batch_size is not None:
            size = min(size, self._batch_size)
        return size

    async def run(
        self,
        tasks: Sequence[Task[T]],
        job: Job | None = None,
    ) -> BatchResult[T]:
        """Execute all tasks chunk by chunk.

        Tasks are dispatched by priority (lower first, ties in submission
        order). When a job is given it is marked running, receives every
        result by submission index and is completed at the end unless it was
        cancelled (or failed) in the meantime. Cancellation stops dispatch
        before the next chunk; the remaining tasks are reported as not started.

        Args:
            tasks: Tasks to run
            job: Optional job tracking this batch

        Returns:
            BatchResult with results in submission order
        """
        result: BatchResult[T] = BatchResult()
        token = job.token if job is not None else None
        order = sorted(range(len(tasks)), key=lambda i: tasks[i].priority)
        settled: dict[int, TaskResult[T]] = {}

        if job is not None:
            job.mark_running()

        position = 0
        context: AbstractContextManager[Any] = (
            job_context(job.id) if job is not None else nullcontext()
        )
        with context:
            try:
                while position < len(order):
                    if token is not None and token.cancelled:
                        break

                    chunk = order[position : position + self.chunk_size()]
                    logger.debug(
                        "Dispatching chunk {} ({} tasks, {}/{} done)",
                        len(result.chunk_sizes) + 1,
                        len(chunk),
                        position,
                        len(tasks),
                    )
                    settled.update(await self._run_chunk(tasks, chunk, job))
                    result.chunk_sizes.append(len(chunk))
                    position += len(chunk)

                    if position < len(order) and self._delay > 0:
                        try:
                            await sleep(self._delay, token)
                        except CancellationError:
                            break

                result.results = [settled[i] for i in sorted(settled)]
                result.not_started = [tasks[i] for i in order[position:]]
                result.cancelled = token is not None and token.cancelled
                if job is not None:
                    job.not_started = [
                        tasks[i] for i in sorted(settled) if _never_attempted(settled[i])
                    ] + list(result.not_started)
                    if not result.cancelled:
                        job.complete()

            except Exception as e:
                logger.exception("Batch execution failed")
                if job is not None:
                    job.fail(str(e))
                raise

            if result.cancelled:
                logger.info(
                    "Batch stopped after {} chunks; {} tasks not started",
                    result.chunk_count,
                    len(result.not_started),
                )
        return result

    async def _run_chunk(
        self,
        tasks: Sequence[Task[T]],
        chunk: Sequence[int],
        job: Job | None,
    ) -> dict[int, TaskResult[T]]:
        """Dispatch a whole chunk and wait for every task in it to settle.

        Returns:
            Results keyed by submission index
        """
        token = job.token if job is not None else None
        job_id = job.id if job is not None else None

        async def run_one(index: int) -> TaskResult[T]:
            result = await self._runner.run_task(tasks[index], token, job_id=job_id)
            if job is not None:
                job.record(index, result)
            return result

        outcomes = await asyncio.gather(
            *(run_one(index) for index in chunk),
            return_exceptions=True,
        )

        results: dict[int, TaskResult[T]] = {}
        for index, outcome in zip(chunk, outcomes, strict=True):
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, Exception):
                # run_task reports task errors as results; this is a runner fault
                logger.error("Runner raised for {}: {}", tasks[index].display_name, outcome)
                failure = TaskResult.from_error(tasks[index], outcome)
                if job is not None:
                    job.record(index, failure)
                results[index] = failure
            else:
                results[index] = outcome
        return results


def _never_attempted(result: TaskResult[Any]) -> bool:
    """Whether a dispatched task was cancelled before its first attempt."""
    return (
        not result.success
        and result.attempt_count == 0
        and isinstance(result.error, CancellationError)
    )
