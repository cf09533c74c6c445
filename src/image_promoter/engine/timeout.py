"""Per-attempt deadlines for edge operations.

Timeouts are scoped to a single attempt, never to a whole run: a slow copy
times out, is retried under a fresh deadline, and siblings are unaffected.
Run-wide limits are expressed as a cancellation deadline in the scheduler.

Example:
    >>> await run_with_timeout_async(lambda: transfers.copy(edge, mode), 300.0, edge.label)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from image_promoter.core.errors import AttemptTimeoutError

T = TypeVar("T")


async def run_with_timeout_async(
    func: Callable[[], Awaitable[T]],
    seconds: float | None,
    operation: str = "operation",
) -> T:
    """Await ``func()`` with a deadline.

    Args:
        func: Zero-argument coroutine factory
        seconds: Deadline in seconds; None disables the deadline
        operation: Name used in the error message

    Raises:
        AttemptTimeoutError: The deadline passed; the coroutine was cancelled
        ValueError: If seconds <= 0
    """
    if seconds is None:
        return await func()
    if seconds <= 0:
        raise ValueError(f"Timeout must be positive, got {seconds}")

    start = time.monotonic()
    try:
        async with asyncio.timeout(seconds):
            return await func()
    except TimeoutError as e:
        # asyncio.timeout converts its own CancelledError into TimeoutError
        elapsed = time.monotonic() - start
        raise AttemptTimeoutError(seconds, operation=operation, cause=e).with_context(
            elapsed=round(elapsed, 3)
        ) from e
