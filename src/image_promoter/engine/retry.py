"""Retry strategies with exponential backoff and jitter.

The scheduler wraps every edge attempt in a ``RetryContext``. Only errors
``is_retryable`` accepts (``TransientError`` and its subclasses) are tried
again; everything else fails the edge on the first attempt. Retry is always
bounded by ``max_retries``.

Example:
    >>> strategy = ExponentialBackoff(max_retries=5, base_delay=1.0, max_delay=60.0)
    >>> for attempt in range(5):
    ...     delay = strategy.next_delay(attempt)
"""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from image_promoter.core.errors import get_retry_after, is_retryable

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(UTC)


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int, error: Exception | None = None) -> float:
        """Delay in seconds before retry number ``attempt`` (zero-based)."""
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """True if another attempt is allowed after ``attempt`` failures."""
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) +/- jitter.
    A server-provided ``retry_after`` (429 responses) replaces the computed
    delay when it is longer, still capped at ``max_delay``.

    Attributes:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier
        jitter: Add randomness to prevent thundering herd
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25

    def next_delay(self, attempt: int, error: Exception | None = None) -> float:
        delay = min(self.base_delay * (self.multiplier**attempt), self.max_delay)

        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))

        requested = get_retry_after(error) if error is not None else None
        if requested is not None:
            delay = min(max(delay, requested), self.max_delay)
        return delay

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        if attempt >= self.max_retries:
            return False
        return error is None or is_retryable(error)


@dataclass
class NoRetry(RetryStrategy):
    """No retry - fail immediately."""

    def next_delay(self, attempt: int, error: Exception | None = None) -> float:
        return 0.0

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        return False


@dataclass
class RetryContext:
    """Retry state for one unit of work.

    Example:
        >>> ctx = RetryContext(ExponentialBackoff(max_retries=3))
        >>> await ctx.run_async(operation)
    """

    strategy: RetryStrategy
    on_retry: Callable[[int, Exception, float], None] | None = None
    attempt: int = field(default=0, init=False)
    errors: list[tuple[int, Exception, datetime]] = field(default_factory=list, init=False)

    @property
    def attempts(self) -> int:
        return self.attempt

    async def run_async(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await ``func`` until it succeeds or the strategy gives up.

        Raises:
            The last exception once retries are exhausted or the error is
            not retryable.
        """
        while True:
            self.attempt += 1
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                self.errors.append((self.attempt, e, utcnow()))

                # attempt counts tries made so far; retries made = attempt - 1
                if not self.strategy.should_retry(self.attempt - 1, e):
                    raise

                delay = self.strategy.next_delay(self.attempt - 1, e)
                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)
                await asyncio.sleep(delay)
