"""
Bounded retry with exponential backoff.

`RetryExecutor.execute` runs an async operation up to `max_retries + 1`
times. Between attempts it sleeps `min(initial_delay * factor**n,
max_delay)` seconds (optionally with full jitter). A cancellation token
is checked before every attempt and interrupts the backoff sleep.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional, TypeVar

from planchat.core.cancellation import CancellationToken, RequestCancelled
from planchat.core.errors import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

ShouldRetry = Callable[[BaseException, int], bool]
OnRetry = Callable[[int, float, BaseException], None]


def _default_should_retry(error: BaseException, attempt: int) -> bool:
    return is_retryable(error)


@dataclass(frozen=True)
class RetryPolicy:
    initial_delay: float = 1.0
    max_delay: float = 30.0
    factor: float = 2.0
    jitter: bool = True
    should_retry: ShouldRetry = _default_should_retry
    on_retry: Optional[OnRetry] = None

    @classmethod
    def from_config(cls, cfg: Optional[dict]) -> "RetryPolicy":
        cfg = cfg or {}
        return cls(
            initial_delay=float(cfg.get("initial_delay", 1.0)),
            max_delay=float(cfg.get("max_delay", 30.0)),
            factor=float(cfg.get("factor", 2.0)),
            jitter=bool(cfg.get("jitter", True)),
        )

    def delay_for(self, retry_number: int) -> float:
        """Backoff before retry number `retry_number` (0 for the first retry)."""
        delay = min(self.initial_delay * (self.factor ** retry_number), self.max_delay)
        if self.jitter:
            delay = random.random() * delay
        return delay


class RetryExecutor:
    """
    Runs fallible async operations under a `RetryPolicy`.

    The last error is re-raised unchanged; callers attach provider and
    operation context themselves.
    """

    def __init__(self, policy: Optional[RetryPolicy] = None) -> None:
        self.policy = policy or RetryPolicy()

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        max_retries: int = 3,
        cancellation: Optional[CancellationToken] = None,
    ) -> T:
        max_retries = max(0, int(max_retries))
        for attempt in range(max_retries + 1):
            if cancellation is not None and cancellation.cancelled:
                raise RequestCancelled("The operation was cancelled.")
            try:
                return await operation()
            except RequestCancelled:
                raise
            except Exception as exc:  # noqa: BLE001
                if attempt == max_retries or not self.policy.should_retry(exc, attempt):
                    raise
                delay = self.policy.delay_for(attempt)
                logger.debug(
                    "Retrying (attempt %d of %d) in %.2fs after: %s",
                    attempt + 1,
                    max_retries,
                    delay,
                    exc,
                )
                if self.policy.on_retry is not None:
                    self.policy.on_retry(attempt + 1, delay, exc)
                if cancellation is not None:
                    await cancellation.sleep(delay)
                else:
                    await asyncio.sleep(delay)
        # The loop always returns or raises.
        raise AssertionError("unreachable")


async def retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    cancellation: Optional[CancellationToken] = None,
    **policy: Any,
) -> T:
    """
    Convenience wrapper: `retry(op, max_retries=3, initial_delay=0.5)`.

    Keyword arguments other than `max_retries` and `cancellation` are
    `RetryPolicy` fields.
    """
    executor = RetryExecutor(replace(RetryPolicy(), **policy))
    return await executor.execute(operation, max_retries=max_retries, cancellation=cancellation)
