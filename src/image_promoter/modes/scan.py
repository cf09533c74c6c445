"""Security scan mode.

Scans the source side of every promotion edge before anything is copied.
Each unique (source registry, image, digest) is scanned once no matter how
many destinations or tags the edges fan out to. Verify-parent edges add no
content of their own and are not scanned.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from image_promoter.core.errors import PromoterError
from image_promoter.core.logging import get_logger
from image_promoter.engine.edges import EdgeOp, PromotionEdge
from image_promoter.engine.fanout import Fanout
from image_promoter.engine.retry import NoRetry, RetryContext, RetryStrategy
from image_promoter.registry.contracts import VulnerabilityScanner
from image_promoter.registry.models import Digest, ImageName, RegistryName, ScanReport, Severity

logger = get_logger(__name__)

ScanTarget = tuple[RegistryName, ImageName, Digest]


def scan_targets(edges: Iterable[PromotionEdge]) -> list[ScanTarget]:
    """Unique source references behind ``edges``, sorted."""
    return sorted(
        {(e.src_registry, e.src_image, e.digest) for e in edges if e.op is not EdgeOp.VERIFY_PARENT}
    )


@dataclass(frozen=True)
class SecurityScanReport:
    """Scan results for one run.

    ``errors`` maps a reference (``registry/image@digest``) to the error that
    kept it from being scanned. An unscanned image counts as a failure.
    """

    threshold: Severity
    reports: tuple[ScanReport, ...] = ()
    errors: Mapping[str, PromoterError] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def failing(self) -> tuple[ScanReport, ...]:
        return tuple(r for r in self.reports if r.at_or_above(self.threshold))

    @property
    def ok(self) -> bool:
        return not self.failing and not self.errors

    def summary(self) -> dict[str, Any]:
        return {
            "scanned": len(self.reports),
            "failing": len(self.failing),
            "errors": len(self.errors),
            "threshold": self.threshold.value,
        }

    def describe_failures(self) -> str:
        parts = []
        if self.failing:
            parts.append(f"{len(self.failing)} image(s) with {self.threshold.value} or worse findings")
        if self.errors:
            parts.append(f"{len(self.errors)} image(s) could not be scanned")
        return ", ".join(parts) or "no failures"


async def scan_edges(
    scanner: VulnerabilityScanner,
    edges: Iterable[PromotionEdge],
    threshold: Severity,
    *,
    max_concurrency: int = 10,
    retry: RetryStrategy | None = None,
) -> SecurityScanReport:
    """Scan the source image of every edge with bounded concurrency."""
    strategy = retry or NoRetry()
    fanout = Fanout(max_concurrency=max_concurrency, label="scan")

    async def _scan(target: ScanTarget) -> ScanReport:
        return await RetryContext(strategy=strategy).run_async(scanner.scan, *target)

    for target in scan_targets(edges):
        registry, image, digest = target
        fanout.add(f"{registry}/{image}@{digest}", _scan, target)
    result = await fanout.run_all()

    reports = tuple(result.results().values())
    errors: dict[str, PromoterError] = {}
    for item in result.failures():
        error = item.error
        if not isinstance(error, PromoterError):
            error = PromoterError(str(error), cause=error)
        errors[item.name] = error

    report = SecurityScanReport(
        threshold=threshold,
        reports=tuple(sorted(reports, key=lambda r: r.reference)),
        errors=MappingProxyType(errors),
    )
    for failing in report.failing:
        logger.warning(
            "scan.threshold_exceeded",
            reference=failing.reference,
            findings=[v.id for v in failing.at_or_above(threshold)],
        )
    logger.info("scan.complete", **report.summary())
    return report
