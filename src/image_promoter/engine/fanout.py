"""Bounded fan-out for independent async registry calls.

Inventory collection, security scans and manifest-list checks all need
the same shape: run N independent coroutines, at most K at a time, and
collect every outcome (value or exception) without letting one failure
cancel the rest. The edge scheduler has extra needs (retry, gating,
cancellation) and lives in ``scheduler.py``.

ARCHITECTURE
────────────
::

    Fanout(max_concurrency)
      ├── .add(name, coroutine_fn, arg)  ─ enqueue work item
      ├── .run_all()                     ─ asyncio.gather + semaphore
      └── FanoutResult                   ─ succeeded / failed / items

Example::

    fanout = Fanout(max_concurrency=5, label="inventory")
    for rc in registries:
        fanout.add(rc.name, reader.read_inventory, rc)
    result = await fanout.run_all()
    for item in result.failures():
        ...
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from image_promoter.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class FanoutItem:
    """A single item in a fan-out."""

    name: str
    handler: Callable[[Any], Awaitable[Any]]
    arg: Any = None
    status: str = "pending"
    result: Any = None
    error: Exception | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


@dataclass
class FanoutResult:
    """Aggregate result of running a fan-out."""

    items: list[FanoutItem]
    started_at: datetime
    completed_at: datetime

    @property
    def succeeded(self) -> int:
        return sum(1 for i in self.items if i.status == "completed")

    @property
    def failed(self) -> int:
        return sum(1 for i in self.items if i.status == "failed")

    @property
    def total(self) -> int:
        return len(self.items)

    def failures(self) -> list[FanoutItem]:
        return [i for i in self.items if i.status == "failed"]

    def results(self) -> dict[str, Any]:
        """name -> result for every completed item."""
        return {i.name: i.result for i in self.items if i.status == "completed"}


class Fanout:
    """Semaphore-bounded concurrent execution of independent coroutines.

    Parameters
    ----------
    max_concurrency : int
        Maximum simultaneous coroutines (default 10).
    label : str
        Name used in log events.
    """

    def __init__(self, max_concurrency: int = 10, label: str = "fanout") -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self._max_concurrency = max_concurrency
        self._label = label
        self._items: list[FanoutItem] = []

    def add(
        self,
        name: str,
        handler: Callable[[Any], Awaitable[Any]],
        arg: Any = None,
    ) -> Fanout:
        """Add an item; returns ``self`` for fluent chaining."""
        self._items.append(FanoutItem(name=name, handler=handler, arg=arg))
        return self

    async def run_all(self) -> FanoutResult:
        """Execute all items concurrently, bounded by ``max_concurrency``."""
        sem = asyncio.Semaphore(self._max_concurrency)
        started_at = datetime.now(UTC)

        logger.debug(
            "fanout.start",
            label=self._label,
            items=len(self._items),
            max_concurrency=self._max_concurrency,
        )

        async def _run_one(item: FanoutItem) -> None:
            async with sem:
                item.started_at = datetime.now(UTC)
                item.status = "running"
                try:
                    item.result = await item.handler(item.arg)
                    item.status = "completed"
                except Exception as e:
                    item.status = "failed"
                    item.error = e
                    logger.warning(
                        "fanout.item_failed",
                        label=self._label,
                        name=item.name,
                        error=str(e),
                    )
                item.completed_at = datetime.now(UTC)

        await asyncio.gather(*[_run_one(item) for item in self._items])

        result = FanoutResult(
            items=self._items,
            started_at=started_at,
            completed_at=datetime.now(UTC),
        )
        logger.debug(
            "fanout.complete",
            label=self._label,
            succeeded=result.succeeded,
            failed=result.failed,
        )
        return result
