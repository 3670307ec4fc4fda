"""Tests for the httpx-backed fetcher."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from email.utils import format_datetime

import httpx
import pytest

from scrape_scheduler.exceptions import (
    RateLimitedError,
    TerminalValidationError,
    TransientNetworkError,
)
from scrape_scheduler.fetch import FetchedPage, HttpFetcher, parse_retry_after
from scrape_scheduler.pacing import ScrapeScheduler
from scrape_scheduler.tasks import TaskPriority
from tests.helpers import fast_config, quiet_throttle

PAGE = "<html><head><title> Example &amp; Co </title></head><body>hi</body></html>"


def _fetcher(transport: httpx.MockTransport) -> HttpFetcher:
    return HttpFetcher(user_agent="test-agent/1.0", transport=transport)


def _transport(
    status: int, text: str = "", headers: dict[str, str] | None = None
) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, text=text, headers=headers)

    return httpx.MockTransport(handler)


class TestFetch:
    @pytest.mark.asyncio
    async def test_success_returns_page(self) -> None:
        """A 200 response becomes a FetchedPage."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text=PAGE, headers={"content-type": "text/html"})

        async with _fetcher(httpx.MockTransport(handler)) as fetcher:
            page = await fetcher.fetch("https://example.com/")

        assert isinstance(page, FetchedPage)
        assert page.status_code == 200
        assert page.title == "Example & Co"
        assert page.content_type == "text/html"
        assert page.size_bytes == len(PAGE)
        assert seen[0].headers["user-agent"] == "test-agent/1.0"

    @pytest.mark.asyncio
    async def test_rate_limited_carries_retry_after(self) -> None:
        """429 raises RateLimitedError with the Retry-After hint."""
        async with _fetcher(_transport(429, headers={"retry-after": "12"})) as fetcher:
            with pytest.raises(RateLimitedError) as exc_info:
                await fetcher.fetch("https://example.com/")

        assert exc_info.value.retry_after == 12.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [408, 500, 502, 503, 504])
    async def test_server_errors_are_transient(self, status: int) -> None:
        """5xx responses are retryable."""
        async with _fetcher(_transport(status)) as fetcher:
            with pytest.raises(TransientNetworkError):
                await fetcher.fetch("https://example.com/")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 403, 404, 410])
    async def test_client_errors_are_terminal(self, status: int) -> None:
        """Other 4xx responses are not retried."""
        async with _fetcher(_transport(status)) as fetcher:
            with pytest.raises(TerminalValidationError):
                await fetcher.fetch("https://example.com/")

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self) -> None:
        """Transport timeouts are retryable."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        async with _fetcher(httpx.MockTransport(handler)) as fetcher:
            with pytest.raises(TransientNetworkError, match="Timed out"):
                await fetcher.fetch("https://example.com/")

    @pytest.mark.asyncio
    async def test_connect_error_is_transient(self) -> None:
        """Connection failures are retryable."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with _fetcher(httpx.MockTransport(handler)) as fetcher:
            with pytest.raises(TransientNetworkError):
                await fetcher.fetch("https://example.com/")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", ["not a url", "ftp://example.com/file", "https://"])
    async def test_invalid_url_is_terminal(self, url: str) -> None:
        """Non-http(s) or hostless URLs fail without a request."""
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200)

        async with _fetcher(httpx.MockTransport(handler)) as fetcher:
            with pytest.raises(TerminalValidationError):
                await fetcher.fetch(url)

        assert calls == []

    def test_task_for_labels_with_url(self) -> None:
        """task_for builds a labelled task with per-task overrides."""
        fetcher = _fetcher(_transport(200))
        task = fetcher.task_for("https://example.com/a", max_retries=5, timeout_seconds=2.0)

        assert task.label == "https://example.com/a"
        assert task.max_retries == 5
        assert task.timeout_seconds == 2.0
        assert task.domain == "example.com"
        assert task.priority == TaskPriority.NORMAL

    def test_task_for_priority(self) -> None:
        fetcher = _fetcher(_transport(200))

        task = fetcher.task_for("https://example.com/seed", priority=TaskPriority.HIGH)

        assert task.priority == TaskPriority.HIGH


class TestFetchedPage:
    def test_missing_title(self) -> None:
        """Pages without a title element report None."""
        page = FetchedPage(
            url="https://example.com/",
            final_url="https://example.com/",
            status_code=200,
            content_type="text/plain",
            text="plain body",
            response_time_ms=3.0,
        )

        assert page.title is None
        assert "text" not in page.to_dict()
        assert page.to_dict(include_body=True)["text"] == "plain body"

    def _html_page(self, text: str) -> FetchedPage:
        return FetchedPage(
            url="https://example.com/",
            final_url="https://example.com/",
            status_code=200,
            content_type="text/html",
            text=text,
            response_time_ms=3.0,
        )

    def test_title_skips_inline_svg_titles(self) -> None:
        """Icon titles inside <svg> do not shadow the document title."""
        page = self._html_page(
            "<html><body><svg><title>cart icon</title></svg>"
            "<title>Shop \n  Front</title></body></html>"
        )

        assert page.title == "Shop Front"

    def test_only_svg_title_is_none(self) -> None:
        page = self._html_page("<svg><title>logo</title></svg><p>no document title</p>")

        assert page.title is None

    def test_title_decodes_entities(self) -> None:
        page = self._html_page("<head><title>Caf&eacute; Menu</title></head>")

        assert page.title == "Caf\u00e9 Menu"


class TestParseRetryAfter:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [(None, None), ("", None), ("30", 30.0), (" 1.5 ", 1.5), ("-4", 0.0), ("soon", None)],
    )
    def test_values(self, value: str | None, expected: float | None) -> None:
        """Delta-seconds values parse; garbage is ignored."""
        assert parse_retry_after(value) == expected

    def test_http_date(self) -> None:
        """HTTP dates become seconds from now."""
        when = datetime.now(UTC) + timedelta(seconds=120)

        seconds = parse_retry_after(format_datetime(when, usegmt=True))

        assert seconds is not None
        assert 100 < seconds <= 120

    def test_past_http_date_is_zero(self) -> None:
        """Dates in the past clamp to zero."""
        when = datetime.now(UTC) - timedelta(hours=1)

        assert parse_retry_after(format_datetime(when, usegmt=True)) == 0.0


class TestFetchThroughScheduler:
    @pytest.mark.asyncio
    async def test_server_error_retried_then_succeeds(self) -> None:
        """A transient 503 is retried and the page returned."""
        responses = iter([httpx.Response(503), httpx.Response(200, text=PAGE)])

        def handler(request: httpx.Request) -> httpx.Response:
            return next(responses)

        async with _fetcher(httpx.MockTransport(handler)) as fetcher:
            async with ScrapeScheduler(fast_config(), quiet_throttle()) as scheduler:
                result = await scheduler.run_task(fetcher.task_for("https://example.com/"))

        assert result.success is True
        assert result.attempt_count == 2
        assert result.value.title == "Example & Co"

    @pytest.mark.asyncio
    async def test_batch_mixes_outcomes(self) -> None:
        """Each URL settles independently inside one job."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/missing":
                return httpx.Response(404)
            return httpx.Response(200, text=PAGE)

        urls = ["https://example.com/a", "https://example.com/missing", "https://example.com/b"]
        async with _fetcher(httpx.MockTransport(handler)) as fetcher:
            async with ScrapeScheduler(fast_config(), quiet_throttle()) as scheduler:
                snapshot = await scheduler.run_batch([fetcher.task_for(u) for u in urls])

        assert snapshot.succeeded == 2
        assert snapshot.failed == 1
        assert [r.label for r in snapshot.results] == urls
        assert snapshot.results[1].attempt_count == 1
        assert snapshot.results[1].error_type == "TerminalValidationError"
