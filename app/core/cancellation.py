"""Run-scoped cooperative cancellation.

A ``CancellationToken`` is created per pipeline run (or per ad-hoc generation
call) and handed down to every awaitable that may block on the network or on an
artificial delay. Firing the token never raises in the caller; the blocked
operation observes it and settles with ``Cancelled``.
"""

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from app.core.exceptions import Cancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._timer: asyncio.TimerHandle | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason or "Operation cancelled"

    def cancel(self, reason: str | None = None) -> None:
        """Fire the token. Subsequent calls keep the first reason."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        logger.debug("Cancellation token fired: %s", self.reason)

    def cancel_after(self, seconds: float) -> None:
        """Fire the token after ``seconds`` unless it fires earlier."""
        loop = asyncio.get_running_loop()
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(seconds, self.cancel, f"Timed out after {seconds}s")

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self.reason)

    async def wait(self) -> None:
        await self._event.wait()


async def run_cancellable(aw: Awaitable[T], token: CancellationToken | None) -> T:
    """Await ``aw`` unless ``token`` fires first.

    When the token fires the underlying task is cancelled (which unwinds any
    ``async with`` blocks it holds, closing HTTP connections) and ``Cancelled``
    is raised.
    """
    if token is None:
        return await aw
    if token.cancelled:
        # Close an un-started coroutine so it does not warn about never being awaited
        if asyncio.iscoroutine(aw):
            aw.close()
        raise Cancelled(token.reason)

    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        waiter.cancel()
        raise

    if not token.cancelled:
        waiter.cancel()
        return task.result()

    if not task.done():
        task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    raise Cancelled(token.reason)
