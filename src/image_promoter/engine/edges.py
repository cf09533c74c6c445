"""
Promotion edge computation.

An edge is one mutation a destination registry needs so that it agrees with
the desired state. ``compute_edges`` is a pure function of a ``SyncContext``:
no I/O, no suspension points, same input → same edge set.

Rules, per desired (image, digest, tag) and destination:

    (image, digest) absent at destination   → COPY_WITH_TAG
    digest present, tag missing             → ADD_TAG
    exact (digest, tag) already present     → nothing
    destination content not desired         → never touched

Manifest lists:
    When the source inventory says a desired digest is a multi-architecture
    parent, every child digest missing at the destination gets an untagged
    COPY_WITH_TAG edge (``tag=None``), and a single VERIFY_PARENT edge is
    added for the parent. The VERIFY_PARENT edge depends on every child and
    parent edge computed for that (destination, image, parent); the
    scheduler only dispatches it after all of them succeed.

    ::

        child copy ──┐
        child copy ──┼──▶ VERIFY_PARENT(parent)
        parent tags ─┘

Edges are frozen dataclasses stored in a ``frozenset``; two manifests
requesting the identical mutation collapse to one edge.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum

from image_promoter.core.logging import get_logger
from image_promoter.engine.sync import PromotionTarget, SyncContext
from image_promoter.registry.models import (
    Digest,
    ImageName,
    RegistryContext,
    RegistryInventory,
    RegistryName,
    Tag,
)

logger = get_logger(__name__)


class EdgeOp(str, Enum):
    """The kind of mutation an edge performs."""

    COPY_WITH_TAG = "copy_with_tag"
    ADD_TAG = "add_tag"
    VERIFY_PARENT = "verify_parent"


@dataclass(frozen=True)
class PromotionEdge:
    """A single required mutation. Identity is the full tuple."""

    src_registry: RegistryName
    src_image: ImageName
    digest: Digest
    dst_registry: RegistryContext
    dst_image: ImageName
    tag: Tag | None
    op: EdgeOp

    @property
    def label(self) -> str:
        ref = f"{self.dst_registry.name}/{self.dst_image}"
        ref += f":{self.tag}" if self.tag else f"@{self.digest}"
        return f"{self.op.value} {self.src_registry}/{self.src_image}@{self.digest} -> {ref}"

    @property
    def target(self) -> tuple[RegistryName, ImageName, Digest, Tag | None]:
        """The destination slot this edge writes."""
        return (self.dst_registry.name, self.dst_image, self.digest, self.tag)


@dataclass(frozen=True)
class EdgePlan:
    """Computed edges plus the dependency map the scheduler needs."""

    edges: frozenset[PromotionEdge]
    dependencies: Mapping[PromotionEdge, frozenset[PromotionEdge]]
    children: Mapping[PromotionEdge, frozenset[Digest]]

    def __len__(self) -> int:
        return len(self.edges)

    def sorted(self) -> list[PromotionEdge]:
        return sorted(self.edges, key=_sort_key)


def _sort_key(edge: PromotionEdge) -> tuple:
    return (
        edge.dst_registry.name,
        edge.dst_image,
        edge.op == EdgeOp.VERIFY_PARENT,
        edge.digest,
        edge.tag or "",
        edge.op.value,
    )


def compute_edges(ctx: SyncContext) -> EdgePlan:
    """Diff desired state against destination inventories.

    Destinations listed in ``ctx.unreachable`` are skipped; the caller
    reports them separately.
    """
    edges: set[PromotionEdge] = set()
    dependencies: dict[PromotionEdge, set[PromotionEdge]] = defaultdict(set)
    children: dict[PromotionEdge, frozenset[Digest]] = {}

    for target in ctx.targets:
        if target.destination.name in ctx.unreachable:
            continue
        _target_edges(
            target,
            ctx.inventory(target.source.name),
            ctx.inventory(target.destination.name),
            edges,
            dependencies,
            children,
        )

    logger.info("edges.computed", edges=len(edges), parents=len(children))
    return EdgePlan(
        edges=frozenset(edges),
        dependencies={k: frozenset(v) for k, v in dependencies.items()},
        children=children,
    )


def _target_edges(
    target: PromotionTarget,
    source: RegistryInventory,
    dest: RegistryInventory,
    edges: set[PromotionEdge],
    dependencies: dict[PromotionEdge, set[PromotionEdge]],
    children: dict[PromotionEdge, frozenset[Digest]],
) -> None:
    dst = target.destination

    for image in sorted(target.images):
        dmap = target.images[image]
        for digest in sorted(dmap):

            def edge(d: Digest, tag: Tag | None, op: EdgeOp) -> PromotionEdge:
                return PromotionEdge(
                    src_registry=target.source.name,
                    src_image=image,
                    digest=d,
                    dst_registry=dst,
                    dst_image=image,
                    tag=tag,
                    op=op,
                )

            produced: list[PromotionEdge] = []
            present = dest.has_digest(image, digest)
            existing_tags = dest.tags_of(image, digest)

            if not dmap[digest] and not present:
                produced.append(edge(digest, None, EdgeOp.COPY_WITH_TAG))
            for tag in sorted(dmap[digest]):
                if tag in existing_tags:
                    continue
                moved_from = dest.digest_for_tag(image, tag)
                if moved_from is not None:
                    logger.warning(
                        "edges.tag_move",
                        registry=dst.name,
                        image=image,
                        tag=tag,
                        current=moved_from,
                        desired=digest,
                    )
                op = EdgeOp.ADD_TAG if present else EdgeOp.COPY_WITH_TAG
                produced.append(edge(digest, tag, op))

            child_digests = source.children_of(image, digest)
            if child_digests is not None:
                for child in sorted(child_digests):
                    if not dest.has_digest(image, child):
                        produced.append(edge(child, None, EdgeOp.COPY_WITH_TAG))
                if produced:
                    parent = edge(digest, None, EdgeOp.VERIFY_PARENT)
                    dependencies[parent].update(produced)
                    children[parent] = child_digests
                    produced.append(parent)

            edges.update(produced)


def group_by_destination(
    edges: Iterable[PromotionEdge],
) -> dict[RegistryName, list[PromotionEdge]]:
    """Group edges by destination registry, each group sorted."""
    groups: dict[RegistryName, list[PromotionEdge]] = defaultdict(list)
    for e in edges:
        groups[e.dst_registry.name].append(e)
    return {name: sorted(group, key=_sort_key) for name, group in sorted(groups.items())}


def find_manifest_list_findings(inventory: RegistryInventory) -> list[ManifestListFinding]:
    """Child digests referenced by a parent that do not exist at the registry."""
    findings: list[ManifestListFinding] = []
    for (image, parent), child_digests in sorted(inventory.manifest_lists.items()):
        for child in sorted(child_digests):
            if not inventory.has_digest(image, child):
                findings.append(
                    ManifestListFinding(
                        registry=inventory.registry,
                        image=image,
                        parent=parent,
                        missing_child=child,
                    )
                )
    return findings


@dataclass(frozen=True)
class ManifestListFinding:
    """A manifest-list parent whose child does not resolve."""

    registry: RegistryName
    image: ImageName
    parent: Digest
    missing_child: Digest

    def __str__(self) -> str:
        return (
            f"{self.registry}/{self.image}@{self.parent} references missing child "
            f"{self.missing_child}"
        )
