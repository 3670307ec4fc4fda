"""Priority-ordered concurrency gate with idempotent, capability-style slots.

Unlike a bare ``asyncio.Semaphore`` the gate:
- hands out ConcurrencySlot tokens whose release is idempotent, so a double
  release cannot free a permit twice,
- admits waiters by priority, then strictly in arrival order,
- can be resized at runtime by the adaptive throttle,
- fails queued and future acquisitions with ClosedError after close(),
- bounds the total wait for a slot and honours job cancellation without
  leaking a permit that was granted while the waiter gave up.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from typing import Any

from scrape_scheduler.exceptions import ClosedError, SlotTimeoutError
from scrape_scheduler.logging import get_logger
from scrape_scheduler.tasks import TaskPriority

from .cancellation import CancellationToken

logger = get_logger(__name__)


class ConcurrencySlot:
    """One execution permit held by a running task.

    Usage:
        slot = await gate.acquire()
        async with slot:
            await do_work()
        # or: try/finally slot.release()
    """

    def __init__(self, gate: ConcurrencyGate, slot_id: int) -> None:
        self._gate = gate
        self._slot_id = slot_id
        self._released = False
        self.acquired_at = time.monotonic()

    @property
    def slot_id(self) -> int:
        """Sequence number of this slot."""
        return self._slot_id

    @property
    def released(self) -> bool:
        """Whether the permit has been handed back."""
        return self._released

    def release(self) -> None:
        """Hand the permit back to the gate. Repeated calls are no-ops."""
        if self._released:
            logger.warning("Slot {} released more than once; ignoring", self._slot_id)
            return
        self._released = True
        self._gate._release_permit()

    async def __aenter__(self) -> ConcurrencySlot:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.release()


class ConcurrencyGate:
    """Caps the number of simultaneously in-flight units of work.

    Usage:
        gate = ConcurrencyGate(capacity=3)
        slot = await gate.acquire(timeout=60.0)
        try:
            await fetch(url)
        finally:
            slot.release()
    """

    def __init__(self, capacity: int) -> None:
        """Initialize the gate.

        Args:
            capacity: Maximum concurrent permits (must be >= 1)

        Raises:
            ValueError: If capacity < 1
        """
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._active = 0
        # Heap of (priority, arrival, future)
        self._waiters: list[tuple[int, int, asyncio.Future[None]]] = []
        self._arrivals = itertools.count()
        self._closed = False
        self._ids = itertools.count(1)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------
    @property
    def capacity(self) -> int:
        """Current permit capacity."""
        return self._capacity

    @property
    def active_count(self) -> int:
        """Permits currently held."""
        return self._active

    @property
    def queued_count(self) -> int:
        """Callers waiting for a permit."""
        return sum(1 for _, _, waiter in self._waiters if not waiter.done())

    @property
    def is_closed(self) -> bool:
        """Whether close() has been called."""
        return self._closed

    # -------------------------------------------------------------------------
    # Acquire / Release
    # -------------------------------------------------------------------------
    async def acquire(
        self,
        timeout: float | None = None,
        token: CancellationToken | None = None,
        priority: int = TaskPriority.NORMAL,
    ) -> ConcurrencySlot:
        """Wait for a free permit.

        Args:
            timeout: Maximum seconds to wait (None = wait indefinitely)
            token: Optional cancellation token that abandons the wait
            priority: Queue position class; lower values are admitted first

        Returns:
            A ConcurrencySlot that must be released exactly once

        Raises:
            ClosedError: If the gate is (or becomes) closed
            SlotTimeoutError: If no permit freed within ``timeout``
            CancellationError: If ``token`` is tripped while waiting
        """
        if self._closed:
            raise ClosedError("Concurrency gate is closed")
        if token is not None:
            token.raise_if_cancelled()

        # Fast path only when nobody is queued, so no newcomer overtakes a waiter
        if self._active < self._capacity and not self._waiters:
            self._active += 1
            return ConcurrencySlot(self, next(self._ids))

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        entry = (priority, next(self._arrivals), waiter)
        heapq.heappush(self._waiters, entry)
        started = time.monotonic()
        try:
            waited = waiter if token is None else token.wait_on(waiter)
            if timeout is not None:
                await asyncio.wait_for(waited, timeout)
            else:
                await waited
        except asyncio.TimeoutError:
            self._abandon(entry)
            raise SlotTimeoutError(time.monotonic() - started) from None
        except BaseException:
            self._abandon(entry)
            raise

        return ConcurrencySlot(self, next(self._ids))

    def _abandon(self, entry: tuple[int, int, asyncio.Future[None]]) -> None:
        """Drop a waiter that gave up, returning a permit granted in the race."""
        waiter = entry[2]
        if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
            # Permit was handed over but nobody will use it
            self._release_permit()
            return
        if not waiter.done():
            waiter.cancel()
        try:
            self._waiters.remove(entry)
        except ValueError:
            return
        heapq.heapify(self._waiters)

    def _release_permit(self) -> None:
        if self._active <= 0:
            logger.error("Permit released with no active permits; clamping at zero")
            self._active = 0
        else:
            self._active -= 1
        self._wake_waiters()

    def _wake_waiters(self) -> None:
        while self._waiters and self._active < self._capacity:
            _, _, waiter = heapq.heappop(self._waiters)
            if waiter.done():
                continue
            self._active += 1
            waiter.set_result(None)

    # -------------------------------------------------------------------------
    # Reconfiguration / Shutdown
    # -------------------------------------------------------------------------
    def set_capacity(self, capacity: int) -> None:
        """Resize the gate.

        Shrinking never revokes held permits; it only stops handing out new
        ones until the active count drops below the new capacity.

        Args:
            capacity: New capacity (values below 1 are clamped to 1)
        """
        capacity = max(1, capacity)
        if capacity == self._capacity:
            return
        logger.debug("Concurrency capacity {} -> {}", self._capacity, capacity)
        self._capacity = capacity
        self._wake_waiters()

    def close(self) -> None:
        """Close the gate and fail every queued acquisition with ClosedError."""
        if self._closed:
            return
        self._closed = True
        pending = 0
        waiters, self._waiters = self._waiters, []
        for _, _, waiter in waiters:
            if not waiter.done():
                waiter.set_exception(ClosedError("Concurrency gate closed while waiting"))
                pending += 1
        logger.info("Concurrency gate closed ({} waiters rejected)", pending)
