"""Tests for logging configuration."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
from loguru import logger

from scrape_scheduler.logging import (
    bind_job,
    bind_task,
    get_logger,
    job_context,
    resolve_level,
    setup_logging,
)

if TYPE_CHECKING:
    from collections.abc import Generator


@pytest.fixture(autouse=True)
def _clean_sinks() -> Generator[None, None, None]:
    """Start and finish every test without loguru sinks."""
    logger.remove()
    yield
    logger.remove()


@pytest.fixture
def extras() -> Generator[list[str], None, None]:
    """Collect ``{extra} | {message}`` lines from every record."""
    lines: list[str] = []
    handler_id = logger.add(lambda msg: lines.append(str(msg)), format="{extra} | {message}")
    yield lines
    logger.remove(handler_id)


class TestResolveLevel:
    """Tests for CLI level overrides."""

    def test_configured_level_by_default(self) -> None:
        assert resolve_level("ERROR") == "ERROR"

    def test_verbose_forces_debug(self) -> None:
        assert resolve_level("WARNING", verbose=True) == "DEBUG"

    def test_quiet_forces_warning(self) -> None:
        assert resolve_level("DEBUG", quiet=True) == "WARNING"

    def test_verbose_beats_quiet(self) -> None:
        assert resolve_level("INFO", verbose=True, quiet=True) == "DEBUG"


class TestConsoleSink:
    """Tests for the stderr sink installed by setup_logging."""

    def test_filters_below_level(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Records below the configured level are dropped."""
        setup_logging(level="INFO")

        get_logger("tests.console").debug("hidden detail")
        get_logger("tests.console").info("visible line")

        err = capsys.readouterr().err
        assert "visible line" in err
        assert "hidden detail" not in err
        assert "tests.console" in err

    def test_quiet_hides_info(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Quiet mode only shows warnings and above."""
        setup_logging(level="DEBUG", quiet=True)

        get_logger("tests.console").info("routine")
        get_logger("tests.console").warning("attention")

        err = capsys.readouterr().err
        assert "attention" in err
        assert "routine" not in err

    def test_renders_job_and_task_scope(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Task records show their job and task ids after the source."""
        setup_logging(level="DEBUG")

        bind_task("task_42", job_id="job_abc123").info("Attempt failed")

        err = capsys.readouterr().err
        assert "job=job_abc123" in err
        assert "task=task_42" in err
        assert "Attempt failed" in err

    def test_unscoped_records_have_no_scope(self, capsys: pytest.CaptureFixture[str]) -> None:
        setup_logging(level="INFO")

        get_logger("tests.console").info("plain")

        err = capsys.readouterr().err
        assert "job=" not in err
        assert "task=" not in err

    def test_verbose_shows_debug(self, capsys: pytest.CaptureFixture[str]) -> None:
        setup_logging(level="WARNING", verbose=True)

        get_logger("tests.console").debug("debug message")

        assert "debug message" in capsys.readouterr().err

    def test_writes_file_sink(self, tmp_path: Path) -> None:
        """The file sink records everything, including DEBUG."""
        log_file = tmp_path / "scheduler.log"
        setup_logging(level="WARNING", log_file=log_file)

        get_logger("tests.file").debug("Test file message")

        assert "Test file message" in log_file.read_text()


class TestInterceptHandler:
    """Tests for stdlib logging interception."""

    def test_stdlib_records_reach_loguru(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Records from stdlib loggers use the loguru console format."""
        setup_logging(level="DEBUG")

        logging.getLogger("test_stdlib_intercept").warning("Hello from stdlib")

        assert "Hello from stdlib" in capsys.readouterr().err

    def test_httpx_logging_quiet_by_default(self) -> None:
        """httpx request logs are suppressed below DEBUG."""
        setup_logging(level="INFO")

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("httpcore").level == logging.WARNING

    def test_httpx_logging_verbose(self) -> None:
        """Verbose mode lets httpx request logs through; asyncio stays quiet."""
        setup_logging(level="INFO", verbose=True)

        assert logging.getLogger("httpx").level == logging.DEBUG
        assert logging.getLogger("asyncio").level == logging.WARNING


class TestContextBinding:
    """Tests for context binding helpers."""

    def test_get_logger_binds_name(self, extras: list[str]) -> None:
        get_logger("my_test_module").info("Test message")

        assert any("my_test_module" in line for line in extras)

    def test_bind_job(self, extras: list[str]) -> None:
        bind_job("job_abc123").info("Test job message")

        assert any("job_abc123" in line for line in extras)

    def test_bind_task_without_job(self, extras: list[str]) -> None:
        """bind_task omits job_id when not given."""
        bind_task("task_7").info("Standalone task")

        output = "".join(extras)
        assert "task_7" in output
        assert "job_id" not in output

    def test_job_context_tags_records(self, extras: list[str]) -> None:
        """Records inside job_context carry the job id; records after it do not."""
        log = get_logger("tests.context")

        with job_context("job_ctx1"):
            log.info("inside")
        log.info("outside")

        inside = next(line for line in extras if "inside" in line)
        outside = next(line for line in extras if "outside" in line)
        assert "job_ctx1" in inside
        assert "job_ctx1" not in outside


class TestLogLevels:
    """Tests for log level handling."""

    @pytest.mark.parametrize("level", ["DEBUG", "INFO", "WARNING", "ERROR"])
    def test_log_level_accepted(self, level: str, capsys: pytest.CaptureFixture[str]) -> None:
        """Every level installs a working console sink."""
        setup_logging(level=level)  # type: ignore[arg-type]

        get_logger("tests.levels").critical("always shown")

        assert "always shown" in capsys.readouterr().err
