"""
Cancellation tokens and guarded awaits.

A `CancellationToken` is created by the caller of a provider operation
and may be fired at any time. `guarded()` races an awaitable against the
token and an optional per-call timeout, whichever fires first. The
losing side is always cancelled, so no timer or waiter outlives the
call.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")


class RequestCancelled(Exception):
    """Raised when a cancellation token fires before or during an operation."""


class CancellationToken:
    """
    One-shot cancellation signal shared between a caller and an operation.

    Firing the token is idempotent. Operations observe it either by
    polling `cancelled` / `raise_if_cancelled()` before dispatching work,
    or by awaiting through `guarded()` / `sleep()`.
    """

    def __init__(self) -> None:
        self._cancelled = False
        # Built on first await so a token can be created outside a running loop.
        self._event: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._event is not None:
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise RequestCancelled("The operation was cancelled.")

    def _waiter(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        return self._event

    async def wait(self) -> None:
        await self._waiter().wait()

    async def sleep(self, delay: float) -> None:
        """
        Sleep for `delay` seconds unless the token fires first.

        Raises:
            RequestCancelled: If the token is already fired or fires
                during the sleep.
        """
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._waiter().wait(), timeout=max(delay, 0.0))
        except asyncio.TimeoutError:
            return
        raise RequestCancelled("The operation was cancelled.")


async def guarded(
    awaitable: Awaitable[T],
    token: Optional[CancellationToken] = None,
    timeout: Optional[float] = None,
) -> T:
    """
    Await `awaitable` unless the token fires or the timeout elapses first.

    Args:
        awaitable: The operation to run.
        token: Optional external cancellation token.
        timeout: Optional per-call bound in seconds. `None` or a value
            <= 0 disables the timer.

    Returns:
        The awaitable's result.

    Raises:
        RequestCancelled: If the token fired first.
        TimeoutError: If the timeout elapsed first.
    """
    if timeout is not None and timeout <= 0:
        timeout = None

    if token is not None and token.cancelled:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise RequestCancelled("The operation was cancelled.")

    if token is None and timeout is None:
        return await awaitable

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait()) if token is not None else None
    pending = {task} if waiter is None else {task, waiter}

    try:
        done, _ = await asyncio.wait(
            pending, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
        if task in done:
            return task.result()
        if waiter is not None and waiter in done:
            raise RequestCancelled("The operation was cancelled.")
        raise TimeoutError(f"Operation timed out after {timeout:g}s")
    finally:
        if waiter is not None and not waiter.done():
            waiter.cancel()
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
