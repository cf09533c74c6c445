"""
Capability contracts between the promotion engine and registries.

The engine never talks to a registry directly. It is constructed with
objects satisfying these protocols; ``HttpRegistryClient`` is the network
implementation and ``InMemoryRegistry`` the fixture implementation used by
tests and dry demos. Both satisfy all four protocols, but callers are free
to mix implementations (e.g. a real reader with a stub scanner).

Architecture:
    ::

        contracts.py
        ├── InventoryReader      : observed images/digests/tags of a registry
        ├── TransferExecutor     : copy, retag, verify manifest lists
        ├── VulnerabilityScanner : scan one source image
        └── CredentialActivator  : make credentials usable before any read

Errors:
    Implementations raise ``image_promoter.core.errors`` types. Anything
    retryable must be a ``TransientError`` subclass; the scheduler treats
    every other exception as permanent for that edge.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import Enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from image_promoter.registry.models import (
    Digest,
    ImageName,
    RegistryContext,
    RegistryInventory,
    RegistryName,
    ScanReport,
)

if TYPE_CHECKING:
    from image_promoter.engine.edges import PromotionEdge


class CopyMode(str, Enum):
    """How content moves from source to destination."""

    # Registry-side blob mount; needs an identity both registries accept.
    DIRECT = "direct"
    # Blobs stream through the promoter process.
    PULL_PUSH = "pull_push"


@runtime_checkable
class InventoryReader(Protocol):
    """Reads the observed contents of a registry."""

    async def read_inventory(
        self,
        registry: RegistryContext,
        images: Iterable[ImageName] | None = None,
        digests: Mapping[ImageName, Iterable[Digest]] | None = None,
    ) -> RegistryInventory:
        """Return the inventory of ``registry``.

        Args:
            registry: Registry to read
            images: Restrict to these image names; None lists every image
            digests: Digests the caller needs resolved per image, tagged or
                not. Readers that cannot list untagged digests look these up
                individually.

        Raises:
            RegistryAccessError: The registry cannot be reached
            AuthError: Credentials were rejected
        """
        ...


@runtime_checkable
class TransferExecutor(Protocol):
    """Applies single promotion edges to a destination registry."""

    async def copy(self, edge: PromotionEdge, mode: CopyMode) -> None:
        """Copy ``edge.digest`` and, if ``edge.tag`` is set, tag it."""
        ...

    async def add_tag(self, edge: PromotionEdge) -> None:
        """Point ``edge.tag`` at ``edge.digest``, which already exists."""
        ...

    async def verify_parent(self, edge: PromotionEdge, children: frozenset[Digest]) -> None:
        """Check the parent and every child resolve at the destination."""
        ...


@runtime_checkable
class VulnerabilityScanner(Protocol):
    async def scan(self, registry: RegistryName, image: ImageName, digest: Digest) -> ScanReport:
        ...


@runtime_checkable
class CredentialActivator(Protocol):
    async def activate(self, registries: Iterable[RegistryContext]) -> None:
        """Make credentials for ``registries`` usable.

        Raises:
            AuthError: An identity could not be activated
        """
        ...


__all__ = [
    "CopyMode",
    "InventoryReader",
    "TransferExecutor",
    "VulnerabilityScanner",
    "CredentialActivator",
]
