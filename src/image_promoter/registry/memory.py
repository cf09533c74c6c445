"""In-memory registry fixture.

``InMemoryRegistry`` satisfies every contract in ``registry.contracts`` and
keeps all registries in plain dictionaries. It is what the test suite runs
the engine against. Failures are injected per digest so scheduler
behaviour (retry, fail-soft, gating) can be exercised deterministically.

Example::

    fake = InMemoryRegistry()
    fake.put("gcr.io/staging", "foo", DIGEST_A, tags=["v1", "latest"])
    fake.fail("gcr.io/prod", DIGEST_A, NetworkError("reset"), times=2)
    inventory = await fake.read_inventory(RegistryContext("gcr.io/staging", src=True))
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING

from image_promoter.core.errors import (
    AuthError,
    EdgeExecutionError,
    RegistryAccessError,
)
from image_promoter.registry.contracts import CopyMode
from image_promoter.registry.models import (
    Digest,
    ImageName,
    RegistryContext,
    RegistryInventory,
    RegistryName,
    ScanReport,
    Tag,
    Vulnerability,
    freeze_image_map,
)

if TYPE_CHECKING:
    from image_promoter.engine.edges import PromotionEdge


class InMemoryRegistry:
    """Dictionary-backed registries with failure injection.

    Attributes:
        calls: Every transfer call made, as (method, edge) in call order
        unreachable: Registry names whose reads raise RegistryAccessError
        rejected: Registry names whose credential activation fails
        latency: Seconds each transfer call sleeps, to exercise concurrency
        max_in_flight: Highest number of concurrent transfer calls observed
    """

    def __init__(self, latency: float = 0.0) -> None:
        self._images: dict[RegistryName, dict[ImageName, dict[Digest, set[Tag]]]] = defaultdict(
            lambda: defaultdict(dict)
        )
        self._lists: dict[RegistryName, dict[tuple[ImageName, Digest], frozenset[Digest]]] = (
            defaultdict(dict)
        )
        self._failures: dict[tuple[RegistryName, Digest], list[Exception]] = defaultdict(list)
        self._vulns: dict[Digest, tuple[Vulnerability, ...]] = {}
        self.calls: list[tuple[str, PromotionEdge]] = []
        self.scans: list[tuple[RegistryName, ImageName, Digest]] = []
        self.unreachable: set[RegistryName] = set()
        self.rejected: set[RegistryName] = set()
        self.activated: list[RegistryName] = []
        self.latency = latency
        self.in_flight = 0
        self.max_in_flight = 0

    # ── Seeding ──────────────────────────────────────────────────────

    def put(
        self,
        registry: str,
        image: str,
        digest: str,
        tags: Iterable[str] = (),
        children: Iterable[str] | None = None,
    ) -> InMemoryRegistry:
        """Store a digest (and optionally its manifest-list children)."""
        reg, img, dig = RegistryName(registry), ImageName(image), Digest(digest)
        self._images[reg][img].setdefault(dig, set()).update(Tag(t) for t in tags)
        if children is not None:
            self._lists[reg][(img, dig)] = frozenset(Digest(c) for c in children)
        return self

    def fail(
        self,
        registry: str,
        digest: str,
        error: Exception,
        times: int = 1,
    ) -> InMemoryRegistry:
        """Make the next ``times`` transfers of ``digest`` into ``registry`` raise."""
        self._failures[(RegistryName(registry), Digest(digest))].extend([error] * times)
        return self

    def vulnerable(self, digest: str, *vulns: Vulnerability) -> InMemoryRegistry:
        self._vulns[Digest(digest)] = tuple(vulns)
        return self

    # ── Inspection ───────────────────────────────────────────────────

    def tags(self, registry: str, image: str, digest: str) -> frozenset[Tag]:
        return frozenset(self._images[RegistryName(registry)][ImageName(image)].get(Digest(digest), ()))

    def has(self, registry: str, image: str, digest: str) -> bool:
        return Digest(digest) in self._images[RegistryName(registry)][ImageName(image)]

    # ── InventoryReader ──────────────────────────────────────────────

    async def read_inventory(
        self,
        registry: RegistryContext,
        images: Iterable[ImageName] | None = None,
        digests: Mapping[ImageName, Iterable[Digest]] | None = None,
    ) -> RegistryInventory:
        if registry.name in self.unreachable:
            raise RegistryAccessError(registry.name)
        stored = self._images[registry.name]
        names = sorted(stored) if images is None else sorted(set(images))
        return RegistryInventory(
            registry=registry.name,
            images=freeze_image_map({n: stored[n] for n in names if stored.get(n)}),
            manifest_lists={
                k: v for k, v in self._lists[registry.name].items() if k[0] in names
            },
        )

    # ── TransferExecutor ─────────────────────────────────────────────

    async def copy(self, edge: PromotionEdge, mode: CopyMode) -> None:
        await self._enter("copy", edge)
        try:
            source = self._images[edge.src_registry][edge.src_image]
            if edge.digest not in source:
                raise EdgeExecutionError(
                    f"{edge.src_registry}/{edge.src_image}@{edge.digest} not found in source"
                )
            dest = self._images[edge.dst_registry.name][edge.dst_image]
            dest.setdefault(edge.digest, set())
            children = self._lists[edge.src_registry].get((edge.src_image, edge.digest))
            if children is not None:
                self._lists[edge.dst_registry.name][(edge.dst_image, edge.digest)] = children
            if edge.tag is not None:
                self._move_tag(edge)
        finally:
            self._exit()

    async def add_tag(self, edge: PromotionEdge) -> None:
        await self._enter("add_tag", edge)
        try:
            if not self.has(edge.dst_registry.name, edge.dst_image, edge.digest):
                raise EdgeExecutionError(
                    f"cannot tag {edge.dst_image}@{edge.digest}; digest is not at destination"
                )
            self._move_tag(edge)
        finally:
            self._exit()

    async def verify_parent(self, edge: PromotionEdge, children: frozenset[Digest]) -> None:
        await self._enter("verify_parent", edge)
        try:
            registry, image = edge.dst_registry.name, edge.dst_image
            missing = [d for d in (edge.digest, *sorted(children)) if not self.has(registry, image, d)]
            if missing:
                raise EdgeExecutionError(
                    f"{registry}/{image}@{edge.digest} does not resolve: missing {', '.join(missing)}"
                )
        finally:
            self._exit()

    # ── VulnerabilityScanner ─────────────────────────────────────────

    async def scan(self, registry: RegistryName, image: ImageName, digest: Digest) -> ScanReport:
        self.scans.append((registry, image, digest))
        return ScanReport(
            registry=registry,
            image=image,
            digest=digest,
            vulnerabilities=self._vulns.get(digest, ()),
        )

    # ── CredentialActivator ──────────────────────────────────────────

    async def activate(self, registries: Iterable[RegistryContext]) -> None:
        for rc in registries:
            if rc.name in self.rejected:
                raise AuthError(
                    f"could not activate {rc.service_account or 'default credentials'}"
                ).with_context(registry=rc.name)
            self.activated.append(rc.name)

    # ── Private helpers ──────────────────────────────────────────────

    async def _enter(self, method: str, edge: PromotionEdge) -> None:
        self.calls.append((method, edge))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.latency:
                await asyncio.sleep(self.latency)
            queued = self._failures.get((edge.dst_registry.name, edge.digest))
            if queued:
                raise queued.pop(0)
        except BaseException:
            self.in_flight -= 1
            raise

    def _exit(self) -> None:
        self.in_flight -= 1

    def _move_tag(self, edge: PromotionEdge) -> None:
        dest = self._images[edge.dst_registry.name][edge.dst_image]
        for tags in dest.values():
            tags.discard(edge.tag)
        dest[edge.digest].add(edge.tag)
