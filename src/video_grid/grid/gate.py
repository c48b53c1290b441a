"""Cooperative cancellation and the admission gate that bounds in-flight jobs."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from types import TracebackType

from video_grid.core.exceptions import JobCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """A one-way flag checked at every phase boundary and yield point.

    A token may be linked to a parent; cancelling the parent cancels every
    child that consults it.
    """

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._cancelled = False
        self._parent = parent

    @property
    def cancelled(self) -> bool:
        """Return whether this token or any ancestor has been cancelled."""
        if self._cancelled:
            return True
        return self._parent is not None and self._parent.cancelled

    def cancel(self) -> None:
        """Raise the cancellation flag.  Idempotent."""
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        """Raise ``JobCancelled`` if the flag is up.

        Raises:
            JobCancelled: If the token has been cancelled.
        """
        if self.cancelled:
            msg = "Job cancelled"
            raise JobCancelled(msg)


async def checkpoint(token: CancellationToken | None) -> None:
    """Check for cancellation, then yield once to the event loop.

    Args:
        token: The job's cancellation token, or ``None`` for uncancellable work.

    Raises:
        JobCancelled: If *token* is cancelled (checked before and after the yield).
    """
    if token is not None:
        token.raise_if_cancelled()
    await asyncio.sleep(0)
    if token is not None:
        token.raise_if_cancelled()


class AdmissionGate:
    """Counting gate with a FIFO wait queue and a cancel-all switch.

    At most ``limit`` holders at once.  A released slot is handed directly
    to the oldest waiter.  ``cancel_all()`` closes the gate: every queued
    waiter and every later ``acquire()`` raises ``JobCancelled``; slots
    already held are unaffected and must still be released.

    The gate keeps counters (``acquired_total``, ``released_total``,
    ``peak``) so callers can verify the bound.

    Args:
        limit: Maximum number of simultaneous holders (>= 1).
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            msg = f"Gate limit must be >= 1, got {limit}"
            raise ValueError(msg)
        self._limit = limit
        self._in_use = 0
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._closed = False
        self.acquired_total = 0
        self.released_total = 0
        self.peak = 0

    @property
    def limit(self) -> int:
        """Return the maximum number of simultaneous holders."""
        return self._limit

    @property
    def in_use(self) -> int:
        """Return the number of slots currently held."""
        return self._in_use

    @property
    def waiting(self) -> int:
        """Return the number of queued waiters."""
        return len(self._waiters)

    @property
    def closed(self) -> bool:
        """Return whether ``cancel_all()`` has been called."""
        return self._closed

    def _grant(self) -> None:
        self._in_use += 1
        self.acquired_total += 1
        self.peak = max(self.peak, self._in_use)

    async def acquire(self) -> None:
        """Wait for a free slot.

        Raises:
            JobCancelled: If the gate is closed before a slot is granted.
        """
        if self._closed:
            msg = "Admission gate closed"
            raise JobCancelled(msg)
        if self._in_use < self._limit and not self._waiters:
            self._grant()
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                # Slot was handed over just before the task was cancelled.
                self.release()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        """Give a slot back, handing it to the oldest live waiter if any.

        Raises:
            RuntimeError: If called more times than ``acquire()`` succeeded.
        """
        if self._in_use <= 0:
            msg = "AdmissionGate.release() called without a held slot"
            raise RuntimeError(msg)
        self._in_use -= 1
        self.released_total += 1

        while self._waiters and not self._closed:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._grant()
            waiter.set_result(None)
            break

    def cancel_all(self) -> None:
        """Close the gate and fail every queued waiter with ``JobCancelled``."""
        self._closed = True
        drained = 0
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(JobCancelled("Admission gate closed"))
                drained += 1
        if drained:
            logger.debug("Admission gate closed, %d waiter(s) released", drained)

    async def __aenter__(self) -> AdmissionGate:
        await self.acquire()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
