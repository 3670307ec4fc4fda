"""Units of work and their results.

A Task wraps an opaque async callable (fetch, render, extract...) that the
scheduler runs without looking inside. A TaskResult captures the final
outcome after retries, so callers never have to catch per-task exceptions.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum
from typing import Any, Generic, TypeVar
from urllib.parse import urlsplit

T = TypeVar("T")


class TaskPriority(IntEnum):
    """Dispatch priority. Lower values run first."""

    HIGH = 1
    NORMAL = 2
    LOW = 3


def new_task_id() -> str:
    """Generate a short unique task id."""
    return f"task_{uuid.uuid4().hex[:12]}"


@dataclass
class Task(Generic[T]):
    """An opaque asynchronous unit of work.

    ``execute`` is a factory: every call must return a fresh awaitable, since
    retries invoke it once per attempt.

    Usage:
        task = Task(execute=lambda: fetcher.fetch(url), label=url)
        result = await scheduler.run_task(task)
    """

    execute: Callable[[], Awaitable[T]]
    """Factory producing the awaitable for one attempt."""

    id: str = field(default_factory=new_task_id)
    """Opaque task identifier."""

    max_retries: int | None = None
    """Retry budget for this task (None = scheduler default)."""

    timeout_seconds: float | None = None
    """Per-attempt operation timeout (None = scheduler default)."""

    label: str | None = None
    """Human-readable description, e.g. the URL being scraped."""

    priority: int = TaskPriority.NORMAL
    """Dispatch priority (lower first); ties keep submission order."""

    domain: str | None = None
    """Host the task talks to, for per-domain spacing (None = unspaced)."""

    submitted_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    """When the task was created."""

    @property
    def display_name(self) -> str:
        """Label if set, otherwise the id."""
        return self.label or self.id

    @classmethod
    def for_url(
        cls,
        url: str,
        execute: Callable[[], Awaitable[T]],
        **kwargs: Any,
    ) -> Task[T]:
        """Task labelled with ``url`` and spaced per its host."""
        try:
            host = urlsplit(url).hostname
        except ValueError:
            host = None
        return cls(execute=execute, label=url, domain=host, **kwargs)


@dataclass
class TaskResult(Generic[T]):
    """Final outcome of one task after all attempts."""

    task_id: str
    """Id of the task this result belongs to."""

    success: bool
    """True if an attempt succeeded."""

    value: T | None = None
    """Value returned by the successful attempt."""

    error: BaseException | None = None
    """Last error if every attempt failed."""

    attempt_count: int = 0
    """Attempts actually made (0 if the task never started)."""

    duration_ms: float = 0.0
    """Wall time from first attempt to settlement."""

    label: str | None = None
    """Label copied from the task."""

    @property
    def error_type(self) -> str | None:
        """Class name of the error, if any."""
        return type(self.error).__name__ if self.error is not None else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization.

        The value is included as-is when it is a JSON primitive and as its
        ``to_dict()`` when it provides one; otherwise it is stringified.
        """
        result: dict[str, Any] = {
            "task_id": self.task_id,
            "success": self.success,
            "attempt_count": self.attempt_count,
            "duration_ms": round(self.duration_ms, 2),
        }
        if self.label is not None:
            result["label"] = self.label
        if self.success:
            result["value"] = _jsonable(self.value)
        if self.error is not None:
            result["error"] = str(self.error)
            result["error_type"] = self.error_type
        return result

    @classmethod
    def from_value(
        cls,
        task: Task[T],
        value: T,
        *,
        attempt_count: int,
        duration_ms: float,
    ) -> TaskResult[T]:
        """Create a result for a successful task."""
        return cls(
            task_id=task.id,
            success=True,
            value=value,
            attempt_count=attempt_count,
            duration_ms=duration_ms,
            label=task.label,
        )

    @classmethod
    def from_error(
        cls,
        task: Task[Any],
        error: BaseException,
        *,
        attempt_count: int = 0,
        duration_ms: float = 0.0,
    ) -> TaskResult[Any]:
        """Create a result for a failed or abandoned task."""
        return cls(
            task_id=task.id,
            success=False,
            error=error,
            attempt_count=attempt_count,
            duration_ms=duration_ms,
            label=task.label,
        )


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, str | int | float | bool | list | dict):
        return value
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return str(value)
