"""Job lifecycle and progress tracking for batch and bulk operations.

State machine::

    pending -> running -> completed | failed | cancelled
    pending -> cancelled | failed

Each job reaches exactly one terminal state; once there, further
transitions are ignored and late results are dropped. Cancellation is
cooperative: the job's CancellationToken is tripped so no new chunk is
dispatched and pending waits end promptly, but task executions already in
flight run to completion.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from scrape_scheduler.exceptions import NotFoundError
from scrape_scheduler.logging import bind_job, get_logger
from scrape_scheduler.tasks import Task, TaskResult

from .cancellation import CancellationToken

logger = get_logger(__name__)


class JobStatus(StrEnum):
    """Lifecycle state of a job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


@dataclass(frozen=True)
class JobSnapshot:
    """Immutable view of a job for callers and progress observers."""

    job_id: str
    name: str
    status: JobStatus
    progress: int
    total: int
    succeeded: int
    failed: int
    results: tuple[TaskResult[Any], ...] = ()
    error: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    elapsed_seconds: float = 0.0
    not_started: int = 0
    """Tasks never dispatched because the job ended first."""

    @property
    def settled(self) -> int:
        """Tasks that have produced a result."""
        return self.succeeded + self.failed

    @property
    def remaining(self) -> int:
        """Tasks without a result yet."""
        return max(0, self.total - self.settled)

    @property
    def success_rate(self) -> float:
        """Success rate percentage (0-100)."""
        if self.settled == 0:
            return 100.0
        return (self.succeeded / self.settled) * 100

    @property
    def summary(self) -> dict[str, Any]:
        """Aggregate counts without the per-task results."""
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "remaining": self.remaining,
            "not_started": self.not_started,
            "success_rate": round(self.success_rate, 1),
            "elapsed_seconds": round(self.elapsed_seconds, 2),
        }

    def to_dict(self, include_results: bool = True) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {
            "job_id": self.job_id,
            "name": self.name,
            "status": self.status.value,
            "progress": self.progress,
            "summary": self.summary,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }
        if include_results:
            data["results"] = [r.to_dict() for r in self.results]
        return data


ProgressCallback = Callable[[JobSnapshot], None]


@dataclass
class Job:
    """A logical batch or bulk operation.

    Usage:
        job = registry.create(total=len(tasks), name="news sweep")
        job.on_progress(lambda snap: print(f"{snap.progress}%"))
        job.mark_running()
        job.record(0, result)
        job.complete()
    """

    id: str
    total: int
    name: str = "job"
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    started_at: datetime | None = None
    ended_at: datetime | None = None
    error: str | None = None
    token: CancellationToken = field(default_factory=CancellationToken)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    not_started: list[Task[Any]] = field(default_factory=list, repr=False)
    _results: dict[int, TaskResult[Any]] = field(default_factory=dict, repr=False)
    _callbacks: list[ProgressCallback] = field(default_factory=list, repr=False)
    _start_time: float | None = field(default=None, repr=False)
    _end_time: float | None = field(default=None, repr=False)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------
    @property
    def is_done(self) -> bool:
        """Whether the job reached a terminal state."""
        return self.status.is_terminal

    @property
    def is_cancelled(self) -> bool:
        return self.status is JobStatus.CANCELLED

    @property
    def results(self) -> list[TaskResult[Any]]:
        """Results recorded so far, in submission order."""
        return [self._results[i] for i in sorted(self._results)]

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self._results.values() if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self._results.values() if not r.success)

    @property
    def elapsed_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        end = self._end_time if self._end_time is not None else time.monotonic()
        return end - self._start_time

    # -------------------------------------------------------------------------
    # Callbacks
    # -------------------------------------------------------------------------
    def on_progress(self, callback: ProgressCallback) -> None:
        """Register a callback that receives a JobSnapshot on every change."""
        self._callbacks.append(callback)

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for callback in self._callbacks:
            try:
                callback(snapshot)
            except Exception as e:
                logger.warning("Progress callback error: {}", e)

    # -------------------------------------------------------------------------
    # State Management
    # -------------------------------------------------------------------------
    def mark_running(self) -> bool:
        """Transition pending -> running. Returns False if not pending."""
        if self.status is not JobStatus.PENDING:
            return False
        self.status = JobStatus.RUNNING
        self.started_at = datetime.now(UTC)
        self._start_time = time.monotonic()
        bind_job(self.id).info("Started {} (total={})", self.name, self.total)
        self._notify()
        return True

    def record(self, index: int, result: TaskResult[Any]) -> bool:
        """Record the result of the task at position ``index``.

        Progress is recomputed on every call and never decreases.

        Returns:
            False if the job is already terminal and the result was dropped
        """
        if self.is_done:
            bind_job(self.id).debug(
                "Dropping result for {} after job became {}", result.task_id, self.status
            )
            return False
        self._results[index] = result
        if self.total > 0:
            self.progress = max(self.progress, (len(self._results) * 100) // self.total)
        if not result.success:
            bind_job(self.id).warning(
                "{} item failed: {}", self.name, result.error
            )
        self._notify()
        return True

    def complete(self) -> bool:
        """Mark the job as completed."""
        if not self._finish(JobStatus.COMPLETED):
            return False
        self.progress = 100
        bind_job(self.id).info(
            "Completed {}: {} succeeded, {} failed in {:.1f}s",
            self.name,
            self.succeeded,
            self.failed,
            self.elapsed_seconds,
        )
        self._notify()
        return True

    def fail(self, error: str) -> bool:
        """Mark the job as failed.

        Args:
            error: Error message describing the failure
        """
        if not self._finish(JobStatus.FAILED):
            return False
        self.error = error
        self.token.cancel(f"job {self.id} failed")
        bind_job(self.id).error("Failed {}: {}", self.name, error)
        self._notify()
        return True

    def cancel(self, reason: str = "cancelled by caller") -> bool:
        """Cancel the job cooperatively.

        Returns:
            False if the job was already terminal
        """
        if not self._finish(JobStatus.CANCELLED):
            return False
        self.token.cancel(reason)
        bind_job(self.id).info(
            "Cancelled {} at {}/{}", self.name, len(self._results), self.total
        )
        self._notify()
        return True

    def _finish(self, status: JobStatus) -> bool:
        if self.is_done:
            bind_job(self.id).debug(
                "Ignoring transition to {}: job already {}", status, self.status
            )
            return False
        self.status = status
        self.ended_at = datetime.now(UTC)
        self._end_time = time.monotonic()
        return True

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------
    def snapshot(self) -> JobSnapshot:
        """Get the current job state as an immutable snapshot."""
        results = self.results
        succeeded = sum(1 for r in results if r.success)
        return JobSnapshot(
            job_id=self.id,
            name=self.name,
            status=self.status,
            progress=self.progress,
            total=self.total,
            succeeded=succeeded,
            failed=len(results) - succeeded,
            results=tuple(results),
            error=self.error,
            started_at=self.started_at,
            ended_at=self.ended_at,
            elapsed_seconds=self.elapsed_seconds,
            not_started=len(self.not_started),
        )


def new_job_id() -> str:
    """Generate a unique job id."""
    return f"job_{uuid.uuid4().hex[:12]}"


class JobRegistry:
    """In-memory index of jobs by id.

    Usage:
        registry = JobRegistry()
        job = registry.create(total=10, name="bulk")
        registry.cancel(job.id)
        registry.snapshot(job.id).status  # JobStatus.CANCELLED
    """

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def create(self, total: int, name: str | None = None) -> Job:
        """Register a new pending job.

        Args:
            total: Number of tasks the job will run
            name: Display name (defaults to the id)

        Returns:
            The pending Job
        """
        if total < 0:
            raise ValueError(f"total must be >= 0, got {total}")
        job_id = new_job_id()
        job = Job(id=job_id, total=total, name=name or job_id)
        self._jobs[job_id] = job
        logger.debug("Registered {} ({} tasks)", job_id, total)
        return job

    def get(self, job_id: str) -> Job:
        """Look up a job.

        Raises:
            NotFoundError: If the id is unknown
        """
        try:
            return self._jobs[job_id]
        except KeyError:
            raise NotFoundError(job_id) from None

    def snapshot(self, job_id: str) -> JobSnapshot:
        """Snapshot of a job by id (NotFoundError if unknown)."""
        return self.get(job_id).snapshot()

    def cancel(self, job_id: str, reason: str = "cancelled by caller") -> JobSnapshot:
        """Cancel a job by id.

        Cancelling a job that is already terminal is a no-op.

        Returns:
            Snapshot after the cancellation attempt
        """
        job = self.get(job_id)
        job.cancel(reason)
        return job.snapshot()

    def list_jobs(self, statuses: Iterable[JobStatus | str] | None = None) -> list[JobSnapshot]:
        """Snapshots of all jobs, oldest first, optionally filtered by status."""
        wanted = {JobStatus(s) for s in statuses} if statuses is not None else None
        jobs = sorted(self._jobs.values(), key=lambda j: j.created_at)
        return [j.snapshot() for j in jobs if wanted is None or j.status in wanted]

    def prune(self) -> int:
        """Forget every finished job.

        Returns:
            Number of jobs removed
        """
        finished = [job_id for job_id, job in self._jobs.items() if job.is_done]
        for job_id in finished:
            del self._jobs[job_id]
        return len(finished)
