"""Logging setup on top of loguru.

Every module logs through ``get_logger(__name__)``. Records from the
scheduler carry ``job_id`` and ``task_id`` extras (see ``bind_job``,
``bind_task`` and ``job_context``), which the console sink renders after the
module name:

    12:00:01 | WARNING  | scrape_scheduler.pacing.retry job=job_1a2b task=t-3 - Retrying ...

Standard library loggers (httpx, httpcore, asyncio) are routed into loguru so
all output shares one format.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from loguru import logger

if TYPE_CHECKING:
    from loguru import Contextualizer, Logger, Record

LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

_CONSOLE_HEAD = "<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | <cyan>"
_CONSOLE_TAIL = " - <level>{message}</level>\n{exception}"
_FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | "
    "{extra} | {message}"
)

# Extras shown on the console, with their labels
_SCOPE_FIELDS = (("job_id", "job"), ("task_id", "task"))

# httpx logs every request at INFO; these stay quiet unless debugging
_HTTP_LOGGERS = ("httpx", "httpcore")


class InterceptHandler(logging.Handler):
    """Forwards standard library log records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Skip logging's own frames so loguru reports the real call site
        frame = logging.currentframe()
        depth = 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def resolve_level(level: LogLevel, *, verbose: bool = False, quiet: bool = False) -> LogLevel:
    """Apply the CLI overrides to the configured level. Verbose beats quiet."""
    if verbose:
        return "DEBUG"
    if quiet:
        return "WARNING"
    return level


def _console_format(record: Record) -> str:
    extra = record["extra"]
    source = "{extra[name]}" if "name" in extra else "{name}"
    scope = "".join(
        f" <dim>{label}={{extra[{key}]}}</dim>" for key, label in _SCOPE_FIELDS if key in extra
    )
    return _CONSOLE_HEAD + source + "</cyan>" + scope + _CONSOLE_TAIL


def setup_logging(
    level: LogLevel = "INFO",
    *,
    verbose: bool = False,
    quiet: bool = False,
    log_file: Path | None = None,
    rotation: str = "10 MB",
    retention: str = "7 days",
    serialize: bool = False,
) -> Logger:
    """Replace loguru's sinks with the scheduler's console (and file) sinks.

    Args:
        level: Base log level from config
        verbose: Log at DEBUG regardless of ``level``
        quiet: Log at WARNING regardless of ``level``
        log_file: Optional path for a rotated file sink that records everything
        rotation: When to rotate the log file (e.g. "10 MB", "1 day")
        retention: How long to keep rotated files
        serialize: Write the file sink as JSON lines

    Returns:
        The configured logger
    """
    effective = resolve_level(level, verbose=verbose, quiet=quiet)

    logger.remove()
    logger.add(
        sys.stderr,
        level=effective,
        format=_console_format,
        colorize=True,
        backtrace=True,
        diagnose=True,
    )
    if log_file:
        logger.add(
            log_file,
            level="DEBUG",
            format=_FILE_FORMAT,
            rotation=rotation,
            retention=retention,
            compression="gz",
            serialize=serialize,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    http_level = logging.DEBUG if effective in ("TRACE", "DEBUG") else logging.WARNING
    for name in _HTTP_LOGGERS:
        logging.getLogger(name).setLevel(http_level)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    return logger


def get_logger(name: str) -> Logger:
    """Logger with the module name bound (use ``get_logger(__name__)``)."""
    return logger.bind(name=name)


def bind_job(job_id: str) -> Logger:
    """Logger for job lifecycle messages."""
    return logger.bind(name="jobs", job_id=job_id)


def bind_task(task_id: str, job_id: str | None = None) -> Logger:
    """Logger for one task, tagged with its job when it belongs to one."""
    if job_id is None:
        return logger.bind(name="tasks", task_id=task_id)
    return logger.bind(name="tasks", task_id=task_id, job_id=job_id)


def job_context(job_id: str) -> Contextualizer:
    """Tag every record logged inside the block with ``job_id``.

    Usage:
        with job_context(job.id):
            logger.debug("Dispatching chunk")  # carries job_id
    """
    return logger.contextualize(job_id=job_id)
