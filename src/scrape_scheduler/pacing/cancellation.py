"""Cooperative cancellation for scheduler suspension points.

A CancellationToken is tripped when a job is cancelled. Waiting for a slot,
waiting for rate admission, retry backoff and inter-chunk delays all wait
through the token, so they end promptly with CancellationError instead of
running out their full duration. Work that is already executing is never
interrupted by the token.
"""

from __future__ import annotations

import asyncio
from typing import Any, TypeVar

from scrape_scheduler.exceptions import CancellationError

T = TypeVar("T")


class CancellationToken:
    """Trip-once cancellation signal shared by the waits of one job.

    Usage:
        token = CancellationToken()

        async def worker() -> None:
            await token.sleep(5.0)  # raises CancellationError once cancelled

        token.cancel("user requested")
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason = "cancelled"
        self._waiters: set[asyncio.Future[Any]] = set()

    @property
    def cancelled(self) -> bool:
        """Whether the token has been tripped."""
        return self._cancelled

    @property
    def reason(self) -> str:
        """Reason given to cancel()."""
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Trip the token and wake every pending wait.

        Args:
            reason: Message carried by the resulting CancellationError
        """
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        for waiter in list(self._waiters):
            if not waiter.done():
                waiter.cancel()
        self._waiters.clear()

    def raise_if_cancelled(self) -> None:
        """Raise CancellationError if the token has been tripped."""
        if self._cancelled:
            raise CancellationError(self._reason)

    async def wait_on(self, future: asyncio.Future[T]) -> T:
        """Await a future, abandoning it if the token is tripped first.

        Args:
            future: Future to wait for

        Returns:
            The future's result

        Raises:
            CancellationError: If the token was tripped while waiting
            asyncio.CancelledError: If the awaiting task itself was cancelled
        """
        self.raise_if_cancelled()
        self._waiters.add(future)
        try:
            return await future
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            if self._cancelled and future.cancelled():
                raise CancellationError(self._reason) from None
            raise
        finally:
            self._waiters.discard(future)

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless the token is tripped first."""
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        loop = asyncio.get_running_loop()
        future: asyncio.Future[None] = loop.create_future()
        handle = loop.call_later(seconds, _resolve, future)
        try:
            await self.wait_on(future)
        finally:
            handle.cancel()


def _resolve(future: asyncio.Future[None]) -> None:
    if not future.done():
        future.set_result(None)


async def sleep(seconds: float, token: CancellationToken | None = None) -> None:
    """Sleep, optionally abandoning the sleep when ``token`` is tripped."""
    if token is None:
        if seconds > 0:
            await asyncio.sleep(seconds)
        return
    await token.sleep(seconds)
