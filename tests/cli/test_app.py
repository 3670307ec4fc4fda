"""Tests for the scrapesched CLI commands."""

import json
from collections.abc import Iterator
from pathlib import Path
from typing import Any
from unittest.mock import patch

import httpx
import pytest
from loguru import logger
from typer.testing import CliRunner

from scrape_scheduler import __version__
from scrape_scheduler.cli.app import app
from scrape_scheduler.fetch import HttpFetcher

runner = CliRunner()

FAST = ["--delay-ms", "0", "--retries", "0"]
FAST_BATCH = [*FAST, "--batch-delay-ms", "0"]


def _handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/missing":
        return httpx.Response(404)
    return httpx.Response(
        200,
        text=f"<title>Page {request.url.path}</title>",
        headers={"content-type": "text/html"},
    )


@pytest.fixture(autouse=True)
def _reset_logging_state() -> Iterator[None]:
    """Drop handlers bound to the runner's captured streams."""
    yield
    logger.remove()


@pytest.fixture
def mock_fetcher() -> Iterator[Any]:
    """Route every HttpFetcher built by the CLI through a mock transport."""
    transport = httpx.MockTransport(_handler)
    with patch(
        "scrape_scheduler.cli.app.HttpFetcher",
        side_effect=lambda **kwargs: HttpFetcher(transport=transport, **kwargs),
    ) as mock_class:
        yield mock_class


class TestGlobalFlags:
    """Tests for global CLI flags."""

    def test_version(self) -> None:
        """--version prints the version and exits cleanly."""
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_help_shows_verbose_and_quiet(self) -> None:
        """Main help lists the logging flags."""
        result = runner.invoke(app, ["--help"])

        assert "--verbose" in result.stdout
        assert "--quiet" in result.stdout


class TestConfigCommand:
    """Tests for the 'config' command."""

    def test_prints_settings_json(self) -> None:
        """Effective settings are printed as JSON."""
        result = runner.invoke(app, ["config"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["scheduler"]["max_concurrent"] == 3
        assert data["throttle"]["evaluation_window"] == 20

    def test_reflects_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Nested environment overrides show up in the output."""
        monkeypatch.setenv("SCHEDULER__BURST_LIMIT", "42")

        result = runner.invoke(app, ["config"])

        assert json.loads(result.stdout)["scheduler"]["burst_limit"] == 42


class TestFetchCommand:
    """Tests for the 'fetch' command."""

    def test_text_output(self, mock_fetcher: Any) -> None:
        """A successful fetch prints status and title."""
        result = runner.invoke(app, ["fetch", "https://example.com/home", *FAST])

        assert result.exit_code == 0
        assert "200" in result.stdout
        assert "Page /home" in result.stdout
        mock_fetcher.assert_called_once()

    def test_json_output(self, mock_fetcher: Any) -> None:
        """JSON output is the serialized task result."""
        result = runner.invoke(
            app, ["-q", "fetch", "https://example.com/home", *FAST, "--format", "json"]
        )

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["success"] is True
        assert data["value"]["title"] == "Page /home"
        assert data["attempt_count"] == 1

    def test_failure_exits_nonzero(self, mock_fetcher: Any) -> None:
        """A terminal HTTP error exits with code 1."""
        result = runner.invoke(app, ["fetch", "https://example.com/missing", *FAST])

        assert result.exit_code == 1
        assert "Error" in result.stdout
        assert "404" in result.stdout

    def test_invalid_url(self, mock_fetcher: Any) -> None:
        """Invalid URLs fail without retrying."""
        result = runner.invoke(app, ["-q", "fetch", "not-a-url", *FAST, "--format", "json"])

        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["error_type"] == "TerminalValidationError"

    def test_preset_option(self, mock_fetcher: Any) -> None:
        """Presets are accepted by name."""
        result = runner.invoke(
            app, ["fetch", "https://example.com/", "--preset", "news", *FAST]
        )

        assert result.exit_code == 0

    def test_unknown_preset_rejected(self) -> None:
        """Unknown preset names are a usage error."""
        result = runner.invoke(app, ["fetch", "https://example.com/", "--preset", "social"])

        assert result.exit_code == 2


class TestBatchCommand:
    """Tests for the 'batch' command."""

    def test_requires_urls(self) -> None:
        """Running without URLs or a file is an error."""
        result = runner.invoke(app, ["batch"])

        assert result.exit_code == 1
        assert "No URLs" in result.stdout

    def test_text_summary(self, mock_fetcher: Any) -> None:
        """Text output summarizes successes and lists failures."""
        result = runner.invoke(
            app,
            [
                "batch",
                "https://example.com/a",
                "https://example.com/missing",
                "https://example.com/b",
                *FAST_BATCH,
            ],
        )

        assert result.exit_code == 0
        assert "Batch Completed" in result.stdout
        assert "Succeeded" in result.stdout
        assert "https://example.com/missing" in result.stdout

    def test_text_summary_lists_hosts(self, mock_fetcher: Any) -> None:
        """Batches spanning several hosts report requests per host."""
        result = runner.invoke(
            app,
            [
                "batch",
                "https://a.example.com/1",
                "https://a.example.com/2",
                "https://b.example.com/1",
                *FAST_BATCH,
            ],
        )

        assert result.exit_code == 0
        assert "Requests per host" in result.stdout
        assert "a.example.com" in result.stdout
        assert "b.example.com" in result.stdout

    def test_json_output(self, mock_fetcher: Any) -> None:
        """JSON output is the job snapshot in submission order."""
        urls = [f"https://example.com/p{i}" for i in range(5)]

        result = runner.invoke(
            app, ["-q", "batch", *urls, *FAST_BATCH, "-c", "2", "-b", "2", "--format", "json"]
        )

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["status"] == "completed"
        assert data["progress"] == 100
        assert data["summary"]["succeeded"] == 5
        assert [r["label"] for r in data["results"]] == urls

    def test_reads_url_file(self, mock_fetcher: Any, tmp_path: Path) -> None:
        """URLs are read from --file, skipping comments and blanks."""
        url_file = tmp_path / "urls.txt"
        url_file.write_text(
            "# seeds\nhttps://example.com/one\n\nhttps://example.com/two\n",
            encoding="utf-8",
        )

        result = runner.invoke(
            app, ["-q", "batch", "--file", str(url_file), *FAST_BATCH, "--format", "json"]
        )

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["summary"]["total"] == 2
