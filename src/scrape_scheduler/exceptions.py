"""Scheduler exceptions."""


class SchedulerError(Exception):
    """Base exception for scrape scheduler errors."""

    pass


class TransientNetworkError(SchedulerError):
    """Base class for unit-of-work errors that should be retried.

    Timeouts, connection resets and throttled responses raised by a unit
    of work should subclass (or be translated into) this exception so the
    retry coordinator treats them as recoverable.
    """

    pass


class RateLimitedError(TransientNetworkError):
    """Raised when the target answered with a rate-limited response (429)."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TerminalValidationError(SchedulerError):
    """Raised for malformed input or validation failures (never retried)."""

    pass


class ClosedError(SchedulerError):
    """Raised when work is admitted after the scheduler was shut down."""

    pass


class NotFoundError(SchedulerError):
    """Raised when a job id is unknown to the registry."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class CancellationError(SchedulerError):
    """Raised when a task is abandoned because its job was cancelled."""

    pass


class SlotTimeoutError(SchedulerError, TimeoutError):
    """Raised when waiting for a concurrency slot exceeds the configured bound."""

    def __init__(self, waited_seconds: float) -> None:
        super().__init__(f"No concurrency slot freed within {waited_seconds:.1f}s")
        self.waited_seconds = waited_seconds
