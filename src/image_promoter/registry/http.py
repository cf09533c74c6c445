"""Docker Registry HTTP API v2 client.

``HttpRegistryClient`` is the network-backed implementation of the
``InventoryReader`` and ``TransferExecutor`` contracts, built on a shared
``httpx.AsyncClient`` so connections are pooled per registry host.

Registry names carry a host and an optional path prefix::

    us-docker.pkg.dev/k8s-artifacts-prod/images   + image "kube-proxy"
    └── host ───────┘ └─ prefix ──────────────┘
    → repository "k8s-artifacts-prod/images/kube-proxy"

Status mapping (the scheduler retries only TransientError subclasses):

    transport failure / timeout / 5xx   → NetworkError
    429                                 → RateLimitError (honours Retry-After)
    401                                 → TransientAuthError
    403                                 → AuthError
    404 on a source object              → EdgeExecutionError

Copy modes:
    DIRECT      cross-repository blob mount (same host only; other hosts
                fall back to streaming)
    PULL_PUSH   every missing blob is streamed source → promoter → destination
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urljoin

import httpx

from image_promoter.core.errors import (
    AuthError,
    EdgeExecutionError,
    NetworkError,
    PromoterError,
    RateLimitError,
    RegistryAccessError,
    TransientAuthError,
)
from image_promoter.core.logging import get_logger
from image_promoter.registry.contracts import CopyMode
from image_promoter.registry.models import (
    Digest,
    ImageName,
    RegistryContext,
    RegistryInventory,
    RegistryName,
    Tag,
    freeze_image_map,
)

if TYPE_CHECKING:
    from image_promoter.engine.edges import PromotionEdge

logger = get_logger(__name__)

OCI_INDEX = "application/vnd.oci.image.index.v1+json"
DOCKER_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"

LIST_TYPES = (OCI_INDEX, DOCKER_LIST)
MANIFEST_ACCEPT = ", ".join((OCI_INDEX, DOCKER_LIST, OCI_MANIFEST, DOCKER_MANIFEST))


def split_registry(name: str) -> tuple[str, str]:
    """``host/prefix`` → (host, prefix)."""
    host, _, prefix = name.partition("/")
    return host, prefix.strip("/")


def repository(registry: str, image: str) -> str:
    _, prefix = split_registry(registry)
    return f"{prefix}/{image}" if prefix else image


@dataclass(frozen=True)
class FetchedManifest:
    body: bytes
    media_type: str
    digest: Digest

    @property
    def is_list(self) -> bool:
        return self.media_type in LIST_TYPES

    def parsed(self) -> dict[str, Any]:
        return json.loads(self.body)

    def children(self) -> frozenset[Digest]:
        return frozenset(Digest(m["digest"]) for m in self.parsed().get("manifests", []))

    def blobs(self) -> list[Digest]:
        doc = self.parsed()
        blobs = [Digest(doc["config"]["digest"])] if "config" in doc else []
        blobs.extend(Digest(layer["digest"]) for layer in doc.get("layers", []))
        return blobs


class HttpRegistryClient:
    """Registry v2 client implementing inventory reads and transfers.

    Parameters
    ----------
    token : str | None
        Bearer token sent to every registry.
    client : httpx.AsyncClient | None
        Injected client (tests pass one with ``httpx.MockTransport``).
    scheme : str
        ``https`` unless talking to a local plain-HTTP registry.
    tag_concurrency : int
        Parallel manifest lookups while reading one image's tags.
    """

    def __init__(
        self,
        token: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        scheme: str = "https",
        timeout: float = 60.0,
        tag_concurrency: int = 8,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        self._client.headers.update(headers)
        self._scheme = scheme
        self._tag_sem = asyncio.Semaphore(tag_concurrency)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> HttpRegistryClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    # ── Low-level ────────────────────────────────────────────────────

    def _url(self, registry: str, path: str) -> str:
        host, _ = split_registry(registry)
        return f"{self._scheme}://{host}/v2/{path}"

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"{method} {url} timed out", cause=e) from e
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {url} failed: {e}", cause=e) from e

        status = resp.status_code
        if status == 429:
            retry_after = resp.headers.get("Retry-After")
            raise RateLimitError(
                f"{method} {url} rate limited",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status == 401:
            raise TransientAuthError(f"{method} {url} unauthorized")
        if status == 403:
            raise AuthError(f"{method} {url} forbidden")
        if status >= 500:
            raise NetworkError(f"{method} {url} returned {status}")
        return resp

    async def _get_manifest(self, registry: str, image: str, ref: str) -> FetchedManifest | None:
        url = self._url(registry, f"{repository(registry, image)}/manifests/{ref}")
        resp = await self._request("GET", url, headers={"Accept": MANIFEST_ACCEPT})
        if resp.status_code == 404:
            return None
        _expect(resp, 200)
        media_type = resp.headers.get("Content-Type", "").split(";")[0].strip()
        if not media_type:
            media_type = json.loads(resp.content).get("mediaType", DOCKER_MANIFEST)
        digest = resp.headers.get("Docker-Content-Digest")
        if not digest:
            digest = "sha256:" + hashlib.sha256(resp.content).hexdigest()
        return FetchedManifest(body=resp.content, media_type=media_type, digest=Digest(digest))

    async def _manifest_exists(self, registry: str, image: str, ref: str) -> bool:
        url = self._url(registry, f"{repository(registry, image)}/manifests/{ref}")
        resp = await self._request("HEAD", url, headers={"Accept": MANIFEST_ACCEPT})
        return resp.status_code == 200

    async def _blob_exists(self, registry: str, image: str, digest: Digest) -> bool:
        url = self._url(registry, f"{repository(registry, image)}/blobs/{digest}")
        resp = await self._request("HEAD", url)
        return resp.status_code == 200

    async def _put_manifest(self, registry: str, image: str, ref: str, manifest: FetchedManifest) -> None:
        url = self._url(registry, f"{repository(registry, image)}/manifests/{ref}")
        resp = await self._request(
            "PUT", url, content=manifest.body, headers={"Content-Type": manifest.media_type}
        )
        _expect(resp, 200, 201)

    # ── InventoryReader ──────────────────────────────────────────────

    async def read_inventory(
        self,
        registry: RegistryContext,
        images: Iterable[ImageName] | None = None,
        digests: Mapping[ImageName, Iterable[Digest]] | None = None,
    ) -> RegistryInventory:
        wanted = digests or {}
        try:
            names = sorted(set(images)) if images is not None else await self._catalog(registry.name)
            collected: dict[str, dict[Digest, set[Tag]]] = {}
            lists: dict[tuple[ImageName, Digest], frozenset[Digest]] = {}
            for name in names:
                image = ImageName(name)
                dmap = await self._read_image(registry.name, image, wanted.get(image, ()), lists)
                if dmap:
                    collected[name] = dmap
        except (AuthError, TransientAuthError) as e:
            raise AuthError(f"credentials rejected by {registry.name}", cause=e).with_context(
                registry=registry.name
            ) from e
        except (PromoterError, ValueError, KeyError, TypeError) as e:
            # Malformed bodies (HTML error pages, truncated JSON) count as an unreadable registry.
            raise RegistryAccessError(registry.name, f"reading {registry.name} failed: {e}", cause=e) from e

        logger.debug("http.inventory_read", registry=registry.name, images=len(collected))
        return RegistryInventory(
            registry=registry.name,
            images=freeze_image_map(collected),
            manifest_lists=lists,
        )

    async def _catalog(self, registry: RegistryName) -> list[str]:
        _, prefix = split_registry(registry)
        url: str | None = self._url(registry, "_catalog?n=1000")
        repos: list[str] = []
        while url:
            resp = await self._request("GET", url)
            _expect(resp, 200)
            repos.extend(resp.json().get("repositories") or [])
            url = _next_link(resp, url)
        if not prefix:
            return sorted(repos)
        lead = prefix + "/"
        return sorted(r[len(lead):] for r in repos if r.startswith(lead))

    async def _read_image(
        self,
        registry: RegistryName,
        image: ImageName,
        wanted: Iterable[Digest],
        lists: dict[tuple[ImageName, Digest], frozenset[Digest]],
    ) -> dict[Digest, set[Tag]]:
        """Map every digest of ``image`` to its tags.

        Tagged digests come from ``tags/list``. GCR and Artifact Registry also
        return a ``manifest`` map there that covers untagged digests; other
        registries never list them, so each wanted digest not seen yet is
        fetched by reference.
        """
        listing = await self._tags_list(registry, image)
        if listing is None:
            return {}
        tags, by_digest = listing

        dmap: dict[Digest, set[Tag]] = {}
        manifests: list[FetchedManifest] = []
        if by_digest:
            list_digests = []
            for digest, info in by_digest.items():
                dmap.setdefault(Digest(digest), set()).update(Tag(t) for t in info.get("tag") or [])
                if info.get("mediaType") in LIST_TYPES:
                    list_digests.append(digest)
            manifests.extend(m for m in await self._fetch_all(registry, image, list_digests) if m)
        else:
            for tag, manifest in zip(tags, await self._fetch_all(registry, image, tags)):
                if manifest is None:
                    continue
                dmap.setdefault(manifest.digest, set()).add(Tag(tag))
                manifests.append(manifest)

        unseen = sorted(d for d in set(wanted) if d not in dmap)
        for manifest in await self._fetch_all(registry, image, unseen):
            if manifest is None:
                continue
            dmap.setdefault(manifest.digest, set())
            manifests.append(manifest)

        for manifest in manifests:
            if not manifest.is_list or (image, manifest.digest) in lists:
                continue
            children = manifest.children()
            lists[(image, manifest.digest)] = children
            for child in sorted(children):
                if child not in dmap and await self._manifest_exists(registry, image, child):
                    dmap.setdefault(child, set())
        return dmap

    async def _tags_list(
        self, registry: RegistryName, image: ImageName
    ) -> tuple[list[str], dict[str, dict[str, Any]]] | None:
        url: str | None = self._url(registry, f"{repository(registry, image)}/tags/list")
        tags: list[str] = []
        by_digest: dict[str, dict[str, Any]] = {}
        while url:
            resp = await self._request("GET", url)
            if resp.status_code == 404:
                return None
            _expect(resp, 200)
            body = resp.json()
            tags.extend(body.get("tags") or [])
            by_digest.update(body.get("manifest") or {})
            url = _next_link(resp, url)
        return tags, by_digest

    async def _fetch_all(
        self, registry: RegistryName, image: ImageName, refs: Sequence[str]
    ) -> list[FetchedManifest | None]:
        async def _fetch(ref: str) -> FetchedManifest | None:
            async with self._tag_sem:
                return await self._get_manifest(registry, image, ref)

        return list(await asyncio.gather(*(_fetch(r) for r in refs)))

    # ── TransferExecutor ─────────────────────────────────────────────

    async def copy(self, edge: PromotionEdge, mode: CopyMode) -> None:
        dst = edge.dst_registry.name
        await self._copy_digest(edge, edge.digest, mode)
        if edge.tag is not None:
            manifest = await self._get_manifest(edge.src_registry, edge.src_image, edge.digest)
            if manifest is None:
                raise EdgeExecutionError(f"{edge.src_registry}/{edge.src_image}@{edge.digest} vanished")
            await self._put_manifest(dst, edge.dst_image, edge.tag, manifest)

    async def _copy_digest(self, edge: PromotionEdge, digest: Digest, mode: CopyMode) -> None:
        dst = edge.dst_registry.name
        if await self._manifest_exists(dst, edge.dst_image, digest):
            return
        manifest = await self._get_manifest(edge.src_registry, edge.src_image, digest)
        if manifest is None:
            raise EdgeExecutionError(
                f"{edge.src_registry}/{edge.src_image}@{digest} not found in source"
            )
        if manifest.is_list:
            # The registry rejects an index whose children are unknown.
            for child in sorted(manifest.children()):
                await self._copy_digest(edge, child, mode)
        else:
            for blob in manifest.blobs():
                await self._copy_blob(edge, blob, mode)
        await self._put_manifest(dst, edge.dst_image, digest, manifest)
        logger.debug("http.manifest_copied", edge=edge.label, digest=digest, mode=mode.value)

    async def _copy_blob(self, edge: PromotionEdge, blob: Digest, mode: CopyMode) -> None:
        dst, src = edge.dst_registry.name, edge.src_registry
        if await self._blob_exists(dst, edge.dst_image, blob):
            return
        uploads = self._url(dst, f"{repository(dst, edge.dst_image)}/blobs/uploads/")

        same_host = split_registry(dst)[0] == split_registry(src)[0]
        if mode is CopyMode.DIRECT and same_host:
            resp = await self._request(
                "POST",
                uploads,
                params={"mount": blob, "from": repository(src, edge.src_image)},
            )
            if resp.status_code == 201:
                return
            _expect(resp, 202)
            location = resp.headers["Location"]
        else:
            resp = await self._request("POST", uploads)
            _expect(resp, 202)
            location = resp.headers["Location"]

        await self._stream_blob(edge, blob, urljoin(uploads, location))

    async def _stream_blob(self, edge: PromotionEdge, blob: Digest, location: str) -> None:
        src_url = self._url(edge.src_registry, f"{repository(edge.src_registry, edge.src_image)}/blobs/{blob}")
        async with self._client.stream("GET", src_url) as source:
            if source.status_code == 404:
                raise EdgeExecutionError(f"blob {blob} missing from {edge.src_registry}/{edge.src_image}")
            if source.status_code >= 500 or source.status_code == 429:
                raise NetworkError(f"GET {src_url} returned {source.status_code}")
            _expect(source, 200)
            headers = {"Content-Type": "application/octet-stream"}
            if "Content-Length" in source.headers:
                headers["Content-Length"] = source.headers["Content-Length"]
            sep = "&" if "?" in location else "?"
            resp = await self._request(
                "PUT",
                f"{location}{sep}digest={blob}",
                content=source.aiter_bytes(),
                headers=headers,
            )
            _expect(resp, 201)

    async def add_tag(self, edge: PromotionEdge) -> None:
        dst = edge.dst_registry.name
        manifest = await self._get_manifest(dst, edge.dst_image, edge.digest)
        if manifest is None:
            raise EdgeExecutionError(f"cannot tag {dst}/{edge.dst_image}@{edge.digest}; it does not exist")
        await self._put_manifest(dst, edge.dst_image, edge.tag or edge.digest, manifest)

    async def verify_parent(self, edge: PromotionEdge, children: frozenset[Digest]) -> None:
        dst = edge.dst_registry.name
        missing = [
            d
            for d in (edge.digest, *sorted(children))
            if not await self._manifest_exists(dst, edge.dst_image, d)
        ]
        if missing:
            raise EdgeExecutionError(
                f"{dst}/{edge.dst_image}@{edge.digest} does not resolve: missing {', '.join(missing)}"
            )


def _expect(resp: httpx.Response, *codes: int) -> None:
    if resp.status_code not in codes:
        raise EdgeExecutionError(
            f"{resp.request.method} {resp.request.url} returned {resp.status_code}"
        )


def _next_link(resp: httpx.Response, current: str) -> str | None:
    link = resp.links.get("next")
    if not link or not link.get("url"):
        return None
    return urljoin(current, link["url"])
