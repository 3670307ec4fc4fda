"""HTTP fetch unit of work built on httpx.

HttpFetcher turns a URL into a FetchedPage and translates transport and
status failures into the scheduler's error taxonomy, so retries and
rate-limit back-off work without the scheduler knowing about HTTP.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
from bs4 import BeautifulSoup

from scrape_scheduler.config import get_settings
from scrape_scheduler.exceptions import (
    RateLimitedError,
    SchedulerError,
    TerminalValidationError,
    TransientNetworkError,
)
from scrape_scheduler.logging import get_logger
from scrape_scheduler.tasks import Task, TaskPriority

logger = get_logger(__name__)

RETRYABLE_STATUSES = frozenset({408, 500, 502, 503, 504})
RATE_LIMIT_STATUSES = frozenset({429})


@dataclass
class FetchedPage:
    """A successfully fetched page."""

    url: str
    final_url: str
    status_code: int
    content_type: str | None
    text: str
    response_time_ms: float
    fetched_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def size_bytes(self) -> int:
        return len(self.text.encode("utf-8"))

    @property
    def title(self) -> str | None:
        """Text of the document <title>, ignoring titles of inline SVG images."""
        soup = BeautifulSoup(self.text, "html.parser")
        for tag in soup.find_all("title"):
            if tag.find_parent("svg") is not None:
                continue
            return " ".join(tag.get_text(" ", strip=True).split()) or None
        return None

    def to_dict(self, include_body: bool = False) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {
            "url": self.url,
            "final_url": self.final_url,
            "status_code": self.status_code,
            "content_type": self.content_type,
            "title": self.title,
            "size_bytes": self.size_bytes,
            "response_time_ms": round(self.response_time_ms, 2),
            "fetched_at": self.fetched_at.isoformat(),
        }
        if include_body:
            data["text"] = self.text
        return data


class HttpFetcher:
    """Fetches pages over HTTP for use as scheduler tasks.

    Usage:
        async with HttpFetcher() as fetcher:
            tasks = [fetcher.task_for(url) for url in urls]
            snapshot = await scheduler.run_batch(tasks)

    Or without context manager:
        fetcher = HttpFetcher()
        page = await fetcher.fetch("https://example.com")
        await fetcher.close()
    """

    def __init__(
        self,
        *,
        user_agent: str | None = None,
        timeout: float = 30.0,
        follow_redirects: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the fetcher.

        Args:
            user_agent: User-Agent header (defaults to settings.user_agent)
            timeout: httpx timeout in seconds for each request
            follow_redirects: Whether redirects are followed
            transport: Custom httpx transport (e.g. httpx.MockTransport in tests)
        """
        self._user_agent = user_agent or get_settings().user_agent
        self._timeout = timeout
        self._follow_redirects = follow_redirects
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def _http(self) -> httpx.AsyncClient:
        """Get or create the httpx client instance."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"User-Agent": self._user_agent},
                timeout=self._timeout,
                follow_redirects=self._follow_redirects,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> HttpFetcher:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------
    async def fetch(self, url: str) -> FetchedPage:
        """Fetch one URL.

        Raises:
            TerminalValidationError: Invalid URL or a non-retryable 4xx status
            RateLimitedError: 429 response (carries the Retry-After hint)
            TransientNetworkError: Timeouts, transport errors and 5xx statuses
        """
        _validate_url(url)
        started = time.monotonic()
        try:
            response = await self._http.get(url)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Timed out fetching {url}: {e}") from e
        except httpx.InvalidURL as e:
            raise TerminalValidationError(f"Invalid URL {url!r}: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Transport error fetching {url}: {e}") from e

        elapsed_ms = (time.monotonic() - started) * 1000
        if response.is_success:
            logger.debug("Fetched {} ({}) in {:.0f}ms", url, response.status_code, elapsed_ms)
            return FetchedPage(
                url=url,
                final_url=str(response.url),
                status_code=response.status_code,
                content_type=response.headers.get("content-type"),
                text=response.text,
                response_time_ms=elapsed_ms,
            )
        raise self._handle_status(url, response)

    def task_for(
        self,
        url: str,
        *,
        max_retries: int | None = None,
        timeout_seconds: float | None = None,
        priority: int = TaskPriority.NORMAL,
    ) -> Task[FetchedPage]:
        """Build a scheduler Task that fetches ``url``, spaced per host."""
        return Task.for_url(
            url,
            lambda: self.fetch(url),
            max_retries=max_retries,
            timeout_seconds=timeout_seconds,
            priority=priority,
        )

    def _handle_status(self, url: str, response: httpx.Response) -> SchedulerError:
        """Convert an unsuccessful response to a scheduler exception."""
        status = response.status_code

        if status in RATE_LIMIT_STATUSES:
            retry_after = parse_retry_after(response.headers.get("retry-after"))
            return RateLimitedError(f"Rate limited by {url} ({status})", retry_after=retry_after)
        elif status in RETRYABLE_STATUSES:
            return TransientNetworkError(f"Server error from {url} ({status})")
        elif 400 <= status < 500:
            return TerminalValidationError(f"Request to {url} rejected ({status})")
        else:
            # 1xx/3xx that survived redirect handling
            return TerminalValidationError(f"Unexpected status {status} from {url}")


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header (delta seconds or HTTP date) into seconds."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug("Ignoring unparseable Retry-After header: {!r}", value)
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


def _validate_url(url: str) -> None:
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as e:
        raise TerminalValidationError(f"Invalid URL {url!r}: {e}") from e
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise TerminalValidationError(f"Invalid URL {url!r}: expected an http(s) URL")
