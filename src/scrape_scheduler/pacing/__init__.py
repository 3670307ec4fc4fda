"""Concurrency, rate and retry control for scraping work.

Components:
- ConcurrencyGate: Priority-ordered slot gate resized at runtime
- WindowedRateCounter: Rolling-window burst limiting with forced waits
- AdaptiveThrottle: Ceiling and delay tuning from failure ratios and response times
- DomainSpacer: Minimum start-to-start spacing per host
- RetryCoordinator: Bounded retries with backoff and jitter
- BatchOrchestrator: Ceiling-sized chunked batch execution
- JobRegistry: Job lifecycle and progress tracking
- ScrapeScheduler: Facade composing all of the above
"""

from .batch import BatchOrchestrator, BatchResult
from .cancellation import CancellationToken
from .domains import DomainSpacer, DomainStats
from .gate import ConcurrencyGate, ConcurrencySlot
from .jobs import Job, JobRegistry, JobSnapshot, JobStatus, ProgressCallback
from .retry import ErrorKind, RetryCoordinator, RetryPolicy, classify_error
from .scheduler import SchedulerStatus, ScrapeScheduler
from .throttle import AdaptiveThrottle, ThrottleState
from .window import Admission, RateWindow, WindowedRateCounter

__all__ = [
    # Batch execution
    "BatchOrchestrator",
    "BatchResult",
    # Cancellation
    "CancellationToken",
    # Per-host spacing
    "DomainSpacer",
    "DomainStats",
    # Concurrency
    "ConcurrencyGate",
    "ConcurrencySlot",
    # Jobs
    "Job",
    "JobRegistry",
    "JobSnapshot",
    "JobStatus",
    "ProgressCallback",
    # Retries
    "ErrorKind",
    "RetryCoordinator",
    "RetryPolicy",
    "classify_error",
    # Scheduling
    "SchedulerStatus",
    "ScrapeScheduler",
    # Throttling
    "AdaptiveThrottle",
    "ThrottleState",
    # Rate limiting
    "Admission",
    "RateWindow",
    "WindowedRateCounter",
]
