"""Per-edge results and the aggregate run report.

Edges themselves are immutable; the scheduler records what happened to each
one in a separate ``EdgeResult``. ``RunReport`` is what drivers return and
what ``AggregateRunError`` carries when the run did not fully succeed.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

from image_promoter.core.errors import PromoterError, RegistryAccessError
from image_promoter.engine.edges import PromotionEdge
from image_promoter.registry.models import RegistryName


class EdgeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # dependency did not succeed
    CANCELLED = "cancelled"  # never dispatched
    PLANNED = "planned"  # dry run


@dataclass(frozen=True)
class EdgeResult:
    edge: PromotionEdge
    status: EdgeStatus
    attempts: int = 0
    error: PromoterError | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "edge": self.edge.label,
            "op": self.edge.op.value,
            "destination": self.edge.dst_registry.name,
            "image": self.edge.dst_image,
            "digest": self.edge.digest,
            "tag": self.edge.tag,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": str(self.error) if self.error else None,
        }


@dataclass(frozen=True)
class RunReport:
    """Outcome of scheduling an edge set.

    ``ok`` is True only when every edge succeeded (or was planned in a dry
    run), the run was not cancelled, and every destination was reachable.
    """

    results: Mapping[PromotionEdge, EdgeResult]
    dry_run: bool = False
    cancelled: bool = False
    unreachable: Mapping[RegistryName, RegistryAccessError] = field(
        default_factory=lambda: MappingProxyType({})
    )
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def edges(self) -> frozenset[PromotionEdge]:
        return frozenset(self.results)

    def count(self, status: EdgeStatus) -> int:
        return sum(1 for r in self.results.values() if r.status == status)

    @property
    def ok(self) -> bool:
        if self.cancelled or self.unreachable:
            return False
        good = EdgeStatus.PLANNED if self.dry_run else EdgeStatus.SUCCEEDED
        return all(r.status == good for r in self.results.values())

    def summary(self) -> dict[str, Any]:
        return {
            "edges": len(self.results),
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
            "unreachable": sorted(self.unreachable),
            **{s.value: self.count(s) for s in EdgeStatus},
        }

    def describe_failures(self) -> str:
        parts = []
        for status in (EdgeStatus.FAILED, EdgeStatus.SKIPPED, EdgeStatus.CANCELLED):
            n = self.count(status)
            if n:
                parts.append(f"{n} {status.value}")
        if self.unreachable:
            parts.append(f"{len(self.unreachable)} unreachable destination(s)")
        return ", ".join(parts) or "no failures"
