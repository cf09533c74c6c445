"""Registry domain models.

Defines the data structures shared by every part of the promoter:
- RegistryContext: a registry plus its role and identity
- ImageEntry / Manifest: desired state as declared by manifest files
- RegistryInventory: observed state of one registry
- ScanReport / Vulnerability / Severity: security scan results

All models are frozen; they are built once per run and never mutated.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import NewType

RegistryName = NewType("RegistryName", str)
ImageName = NewType("ImageName", str)
Digest = NewType("Digest", str)
Tag = NewType("Tag", str)

# Image -> digest -> tags; the shape shared by manifests and inventories.
DigestTags = Mapping[Digest, frozenset[Tag]]
ImageMap = Mapping[ImageName, DigestTags]

DIGEST_RE = re.compile(r"^sha256:[0-9a-f]{64}$")
TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
IMAGE_RE = re.compile(r"^[a-z0-9]+(?:[._-][a-z0-9]+)*(?:/[a-z0-9]+(?:[._-][a-z0-9]+)*)*$")


def is_valid_digest(value: str) -> bool:
    return bool(DIGEST_RE.match(value))


def is_valid_tag(value: str) -> bool:
    return bool(TAG_RE.match(value))


def is_valid_image_name(value: str) -> bool:
    return bool(IMAGE_RE.match(value))


def freeze_image_map(images: Mapping[str, Mapping[str, Iterable[str]]]) -> ImageMap:
    """Copy a nested image mapping into read-only containers."""
    return MappingProxyType(
        {
            ImageName(name): MappingProxyType(
                {Digest(d): frozenset(Tag(t) for t in tags) for d, tags in dmap.items()}
            )
            for name, dmap in images.items()
        }
    )


@dataclass(frozen=True)
class RegistryContext:
    """A registry as referenced by a manifest.

    ``name`` is the registry host plus path prefix, e.g.
    ``us-docker.pkg.dev/k8s-artifacts-prod/images``.
    """

    name: RegistryName
    service_account: str | None = None
    src: bool = False

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class ImageEntry:
    """One image of a manifest: digest -> tags declared for it."""

    name: ImageName
    dmap: DigestTags

    def pairs(self) -> Iterable[tuple[Digest, Tag]]:
        """Every (digest, tag) pair, sorted for deterministic iteration."""
        for digest in sorted(self.dmap):
            for tag in sorted(self.dmap[digest]):
                yield digest, tag


@dataclass(frozen=True)
class Manifest:
    """Desired state declared by one manifest file.

    Exactly one registry has ``src=True``; every other registry is a
    promotion destination for every image in ``images``.
    """

    registries: tuple[RegistryContext, ...]
    images: tuple[ImageEntry, ...]
    filepath: str | None = None

    @property
    def source(self) -> RegistryContext:
        for rc in self.registries:
            if rc.src:
                return rc
        raise LookupError(f"manifest {self.filepath or '<inline>'} has no source registry")

    @property
    def destinations(self) -> tuple[RegistryContext, ...]:
        return tuple(rc for rc in self.registries if not rc.src)


@dataclass(frozen=True)
class RegistryInventory:
    """Observed contents of a single registry.

    Attributes:
        registry: Registry the inventory was read from
        images: image -> digest -> tags, as observed
        manifest_lists: (image, parent digest) -> child digests, for every
            multi-architecture parent seen
    """

    registry: RegistryName
    images: ImageMap = field(default_factory=lambda: MappingProxyType({}))
    manifest_lists: Mapping[tuple[ImageName, Digest], frozenset[Digest]] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def digests(self, image: ImageName) -> DigestTags:
        return self.images.get(image, MappingProxyType({}))

    def has_digest(self, image: ImageName, digest: Digest) -> bool:
        return digest in self.digests(image)

    def tags_of(self, image: ImageName, digest: Digest) -> frozenset[Tag]:
        return self.digests(image).get(digest, frozenset())

    def digest_for_tag(self, image: ImageName, tag: Tag) -> Digest | None:
        for digest, tags in self.digests(image).items():
            if tag in tags:
                return digest
        return None

    def children_of(self, image: ImageName, digest: Digest) -> frozenset[Digest] | None:
        """Child digests if ``digest`` is a manifest list, else None."""
        return self.manifest_lists.get((image, digest))


class Severity(str, Enum):
    """Vulnerability severity, ordered from least to most severe."""

    UNKNOWN = "UNKNOWN"
    NEGLIGIBLE = "NEGLIGIBLE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return list(Severity).index(self)

    def at_least(self, other: Severity) -> bool:
        return self.rank >= other.rank


@dataclass(frozen=True)
class Vulnerability:
    id: str
    severity: Severity
    package: str = ""
    fixed_version: str | None = None


@dataclass(frozen=True)
class ScanReport:
    """Vulnerabilities found in one source image."""

    registry: RegistryName
    image: ImageName
    digest: Digest
    vulnerabilities: tuple[Vulnerability, ...] = ()

    def at_or_above(self, threshold: Severity) -> tuple[Vulnerability, ...]:
        return tuple(v for v in self.vulnerabilities if v.severity.at_least(threshold))

    @property
    def reference(self) -> str:
        return f"{self.registry}/{self.image}@{self.digest}"
