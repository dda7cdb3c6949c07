"""Per-session cooperative cancellation token."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from engram.errors import ExtractionCancelledError

T = TypeVar("T")


class CancellationToken:
    """
    One-shot cancellation signal threaded through every suspending call of a run.

    A token is never reused: once cancelled it stays cancelled, and a
    processor restart always allocates a new one.
    """

    __slots__ = ("_event", "reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Signal cancellation. Later calls keep the first reason."""
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExtractionCancelledError(f"Cancelled: {self.reason}")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await *awaitable* unless the token is cancelled first.

        On cancellation the in-flight work is cancelled and
        ``ExtractionCancelledError`` is raised.
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work in done:
            return work.result()
        work.cancel()
        await asyncio.wait({work})
        raise ExtractionCancelledError(f"Cancelled: {self.reason}")
