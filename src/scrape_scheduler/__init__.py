"""Adaptive, rate-limited concurrency scheduler for web scraping."""

from .config import DomainPreset, SchedulerConfig, ThrottleConfig
from .exceptions import (
    CancellationError,
    ClosedError,
    NotFoundError,
    RateLimitedError,
    SchedulerError,
    SlotTimeoutError,
    TerminalValidationError,
    TransientNetworkError,
)
from .pacing import DomainStats, JobSnapshot, JobStatus, SchedulerStatus, ScrapeScheduler
from .tasks import Task, TaskPriority, TaskResult

__version__ = "0.1.0"

__all__ = [
    "CancellationError",
    "ClosedError",
    "DomainPreset",
    "DomainStats",
    "JobSnapshot",
    "JobStatus",
    "NotFoundError",
    "RateLimitedError",
    "SchedulerConfig",
    "SchedulerError",
    "SchedulerStatus",
    "ScrapeScheduler",
    "SlotTimeoutError",
    "Task",
    "TaskPriority",
    "TaskResult",
    "TerminalValidationError",
    "ThrottleConfig",
    "TransientNetworkError",
    "__version__",
]
