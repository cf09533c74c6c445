"""Sync context: merged desired state plus observed inventories.

``build_sync_context`` is the only place the engine reads registries before
execution. It merges manifests into one desired state per (source,
destination) pair, reads every registry any manifest names, and freezes the
result. Edge computation is a pure function of the returned ``SyncContext``;
there is no mid-run refresh, so writes made to a registry by someone else
during the run are not observed.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType

from image_promoter.core.errors import (
    AuthError,
    ManifestConflictError,
    RegistryAccessError,
    ValidationError,
)
from image_promoter.core.logging import get_logger
from image_promoter.core.settings import PromoterSettings
from image_promoter.engine.fanout import Fanout
from image_promoter.registry.contracts import InventoryReader
from image_promoter.registry.models import (
    Digest,
    ImageMap,
    ImageName,
    Manifest,
    RegistryContext,
    RegistryInventory,
    RegistryName,
    Tag,
    freeze_image_map,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class PromotionTarget:
    """Desired state for one (source, destination) registry pair."""

    source: RegistryContext
    destination: RegistryContext
    images: ImageMap


@dataclass(frozen=True)
class SyncContext:
    """Immutable snapshot a run computes edges from.

    Attributes:
        targets: Merged desired state, one entry per (source, destination)
        inventories: Observed state of every reachable registry
        unreachable: Destinations that could not be read; no edges are
            computed for them and the run reports failure
        settings: Run configuration
    """

    targets: tuple[PromotionTarget, ...]
    inventories: Mapping[RegistryName, RegistryInventory]
    settings: PromoterSettings
    unreachable: Mapping[RegistryName, RegistryAccessError] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @property
    def use_service_account(self) -> bool:
        return self.settings.use_service_account

    def inventory(self, registry: RegistryName) -> RegistryInventory:
        return self.inventories[registry]

    @property
    def registries(self) -> tuple[RegistryContext, ...]:
        seen: dict[RegistryName, RegistryContext] = {}
        for target in self.targets:
            seen.setdefault(target.source.name, target.source)
            seen.setdefault(target.destination.name, target.destination)
        return tuple(seen.values())


def merge_manifests(
    manifests: Sequence[Manifest],
    settings: PromoterSettings,
) -> tuple[PromotionTarget, ...]:
    """Merge manifests into one desired state per (source, destination).

    Tags for the same digest are unioned. A tag can only point at one digest
    per destination image, so two declarations of the same (destination,
    image, tag) with different digests are a conflict.

    Raises:
        ValidationError: A manifest names the wrong source registry
        ManifestConflictError: Two declarations disagree on a tag
    """
    merged: dict[tuple[RegistryName, RegistryName], dict[ImageName, dict[Digest, set[Tag]]]] = (
        defaultdict(lambda: defaultdict(lambda: defaultdict(set)))
    )
    contexts: dict[RegistryName, RegistryContext] = {}
    tag_owner: dict[tuple[RegistryName, ImageName, Tag], Digest] = {}
    wanted = set(settings.destination_registries)

    for manifest in manifests:
        try:
            source = manifest.source
        except LookupError as e:
            raise ValidationError(str(e), field="registries") from e
        if settings.source_registry and source.name != settings.source_registry:
            raise ValidationError(
                f"manifest {manifest.filepath or '<inline>'} promotes from {source.name!r}, "
                f"expected {settings.source_registry!r}",
                field="registries",
            )
        contexts.setdefault(source.name, source)

        for destination in manifest.destinations:
            if wanted and destination.name not in wanted:
                continue
            contexts.setdefault(destination.name, destination)
            images = merged[(source.name, destination.name)]
            for entry in manifest.images:
                for digest, tag in entry.pairs():
                    key = (destination.name, entry.name, tag)
                    owner = tag_owner.setdefault(key, digest)
                    if owner != digest:
                        raise ManifestConflictError(
                            destination.name, entry.name, tag, (owner, digest)
                        )
                    images[entry.name][digest].add(tag)
                # Digests declared without tags still have to be promoted.
                for digest in entry.dmap:
                    images[entry.name].setdefault(digest, set())

    return tuple(
        PromotionTarget(
            source=contexts[src],
            destination=contexts[dst],
            images=freeze_image_map(images),
        )
        for (src, dst), images in sorted(merged.items())
    )


async def build_sync_context(
    settings: PromoterSettings,
    manifests: Sequence[Manifest],
    reader: InventoryReader,
) -> SyncContext:
    """Merge manifests and collect the inventory of every named registry.

    Raises:
        ManifestConflictError: Manifests disagree
        AuthError: Credentials were rejected by any registry
        RegistryAccessError: The source registry of any manifest is unreachable
        ValidationError: A desired digest does not exist in its source
    """
    targets = merge_manifests(manifests, settings)

    # Every registry named by any manifest, even ones with nothing to do yet.
    wanted_images: dict[RegistryName, set[ImageName]] = defaultdict(set)
    wanted_digests: dict[RegistryName, dict[ImageName, set[Digest]]] = defaultdict(
        lambda: defaultdict(set)
    )
    contexts: dict[RegistryName, RegistryContext] = {}
    sources: set[RegistryName] = set()
    for manifest in manifests:
        names = {entry.name for entry in manifest.images}
        for rc in manifest.registries:
            contexts.setdefault(rc.name, rc)
            wanted_images[rc.name] |= names
            for entry in manifest.images:
                wanted_digests[rc.name][entry.name].update(entry.dmap)
            if rc.src:
                sources.add(rc.name)

    fanout = Fanout(max_concurrency=settings.max_concurrency, label="inventory")
    for name in sorted(contexts):
        rc = contexts[name]
        fanout.add(
            name,
            lambda rc, images=sorted(wanted_images[name]), digests=wanted_digests[name]: (
                reader.read_inventory(rc, images, digests=digests)
            ),
            rc,
        )
    result = await fanout.run_all()

    inventories: dict[RegistryName, RegistryInventory] = {}
    unreachable: dict[RegistryName, RegistryAccessError] = {}
    for item in result.items:
        name = RegistryName(item.name)
        if item.status == "completed":
            inventories[name] = item.result
            continue
        error = item.error
        if isinstance(error, AuthError):
            raise error.with_context(registry=name)
        if not isinstance(error, RegistryAccessError):
            error = RegistryAccessError(name, f"reading {name!r} failed: {error}", cause=error)
        if name in sources:
            raise error
        logger.error("sync.destination_unreachable", registry=name, error=str(error))
        unreachable[name] = error

    _check_source_digests(targets, inventories)

    logger.info(
        "sync.context_ready",
        registries=len(inventories),
        unreachable=sorted(unreachable),
        targets=len(targets),
    )
    return SyncContext(
        targets=targets,
        inventories=MappingProxyType(inventories),
        settings=settings,
        unreachable=MappingProxyType(unreachable),
    )


def _check_source_digests(
    targets: Sequence[PromotionTarget],
    inventories: Mapping[RegistryName, RegistryInventory],
) -> None:
    """Every desired digest must already exist in its source registry."""
    for target in targets:
        source_inv = inventories[target.source.name]
        for image, dmap in target.images.items():
            for digest in dmap:
                if not source_inv.has_digest(image, digest):
                    raise ValidationError(
                        f"{image}@{digest} does not exist in source {target.source.name!r}",
                        field="images",
                    ).with_context(registry=target.source.name, image=image, digest=digest)
