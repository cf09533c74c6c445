"""Manifest-list consistency checks.

A multi-architecture parent is only usable if every child digest it
references resolves in the same image at the same registry. This mode reads
one registry and reports every parent that breaks that rule. It is
read-only.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from image_promoter.core.logging import get_logger
from image_promoter.engine.edges import ManifestListFinding, find_manifest_list_findings
from image_promoter.registry.models import RegistryInventory, RegistryName

logger = get_logger(__name__)


@dataclass(frozen=True)
class ManifestListReport:
    registry: RegistryName
    parents_checked: int
    findings: tuple[ManifestListFinding, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.findings

    @property
    def broken_parents(self) -> int:
        return len({(f.image, f.parent) for f in self.findings})

    def summary(self) -> dict[str, Any]:
        return {
            "registry": self.registry,
            "parents_checked": self.parents_checked,
            "broken_parents": self.broken_parents,
            "missing_children": len(self.findings),
        }

    def describe_failures(self) -> str:
        if self.ok:
            return "no failures"
        return (
            f"{self.broken_parents} manifest list(s) at {self.registry} reference "
            f"{len(self.findings)} missing child digest(s)"
        )


def check_inventory(inventory: RegistryInventory) -> ManifestListReport:
    findings = tuple(find_manifest_list_findings(inventory))
    for finding in findings:
        logger.warning(
            "manifest_lists.missing_child",
            registry=finding.registry,
            image=finding.image,
            parent=finding.parent,
            child=finding.missing_child,
        )
    report = ManifestListReport(
        registry=inventory.registry,
        parents_checked=len(inventory.manifest_lists),
        findings=findings,
    )
    logger.info("manifest_lists.checked", **report.summary())
    return report
