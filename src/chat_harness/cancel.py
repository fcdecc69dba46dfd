"""Cooperative cancellation token threaded through one turn."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from chat_harness.errors import RequestCancelledError

_logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """Single-shot cancellation flag.

    ``cancel()`` may be called from any coroutine on the same loop.
    Network awaits go through :meth:`race` so an in-flight request is
    abandoned as soon as the token fires.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "") -> None:
        if not self._event.is_set():
            _logger.info("Cancellation requested%s", f": {reason}" if reason else "")
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelledError()

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, aw: Awaitable[T]) -> T:
        """Await *aw*, aborting it with RequestCancelledError if cancelled first."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise RequestCancelledError()

    async def sleep(self, delay: float) -> None:
        """``asyncio.sleep`` that wakes early and raises when cancelled."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise RequestCancelledError()


async def race(token: CancelToken | None, aw: Awaitable[T]) -> T:
    """Await *aw* under *token* (plain await when there is no token)."""
    if token is None:
        return await aw
    return await token.race(aw)


def check(token: CancelToken | None) -> None:
    if token is not None:
        token.raise_if_cancelled()


async def sleep(token: CancelToken | None, delay: float) -> None:
    if token is None:
        await asyncio.sleep(delay)
    else:
        await token.sleep(delay)
