"""Pydantic models for promotion manifest YAML.

Parses manifest files into the frozen ``Manifest`` model the engine works
with. The ``images`` section has the same shape as YAML snapshot output, so
a snapshot of a registry can be fed back in as the image list of a later
manifest.

Example YAML::

    registries:
      - name: gcr.io/k8s-staging-foo
        src: true
      - name: us-docker.pkg.dev/k8s-artifacts-prod/images
        service-account: promoter@k8s-artifacts-prod.iam.gserviceaccount.com
    images:
      - name: foo
        dmap:
          "sha256:9c3b...": ["v1.0.0", "latest"]

Usage::

    manifest = parse_manifest(text, filepath="manifests/foo/promoter-manifest.yaml")
    manifests = load_manifests(["a.yaml", "b.yaml"])
    images = parse_images(snapshot_yaml)
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from image_promoter.core.errors import ValidationError
from image_promoter.registry.models import (
    ImageEntry,
    ImageName,
    Manifest,
    RegistryContext,
    RegistryName,
    freeze_image_map,
    is_valid_digest,
    is_valid_image_name,
    is_valid_tag,
)


class RegistrySpec(BaseModel):
    """One entry of the ``registries`` section."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str = Field(..., min_length=1)
    service_account: str | None = Field(default=None, alias="service-account")
    src: bool = False

    @field_validator("name")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class ImageSpec(BaseModel):
    """One entry of the ``images`` section (also a snapshot row)."""

    model_config = ConfigDict(extra="forbid")

    name: str
    dmap: dict[str, list[str]] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _valid_name(cls, v: str) -> str:
        if not is_valid_image_name(v):
            raise ValueError(f"invalid image name {v!r}")
        return v

    @field_validator("dmap", mode="before")
    @classmethod
    def _none_tags_as_empty(cls, v: Any) -> Any:
        # ``"sha256:...": ~`` and ``"sha256:...": []`` both mean "no tags"
        if isinstance(v, dict):
            return {k: (t if t is not None else []) for k, t in v.items()}
        return v

    @field_validator("dmap")
    @classmethod
    def _valid_dmap(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        for digest, tags in v.items():
            if not is_valid_digest(digest):
                raise ValueError(f"invalid digest {digest!r}")
            for tag in tags:
                if not is_valid_tag(tag):
                    raise ValueError(f"invalid tag {tag!r} for {digest}")
            if len(set(tags)) != len(tags):
                raise ValueError(f"duplicate tags for {digest}")
        return v

    def to_entry(self) -> ImageEntry:
        frozen = freeze_image_map({self.name: self.dmap})
        return ImageEntry(name=ImageName(self.name), dmap=frozen[ImageName(self.name)])


class ManifestSpec(BaseModel):
    """A whole promoter manifest document."""

    model_config = ConfigDict(extra="forbid")

    registries: list[RegistrySpec] = Field(..., min_length=2)
    images: list[ImageSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def _one_source(self) -> ManifestSpec:
        sources = [r.name for r in self.registries if r.src]
        if len(sources) != 1:
            raise ValueError(f"exactly one source registry required, found {len(sources)}")
        names = [r.name for r in self.registries]
        if len(set(names)) != len(names):
            raise ValueError("registry names must be unique")
        images = [i.name for i in self.images]
        if len(set(images)) != len(images):
            raise ValueError("image names must be unique within a manifest")
        return self

    def to_manifest(self, filepath: str | None = None) -> Manifest:
        return Manifest(
            registries=tuple(
                RegistryContext(
                    name=RegistryName(r.name),
                    service_account=r.service_account,
                    src=r.src,
                )
                for r in self.registries
            ),
            images=tuple(i.to_entry() for i in self.images),
            filepath=filepath,
        )


def _load_yaml(text: str, source: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ValidationError(f"{source}: not valid YAML: {e}", cause=e) from e


def _invalid(source: str, e: pydantic.ValidationError) -> ValidationError:
    first = e.errors()[0]
    loc = ".".join(str(p) for p in first.get("loc", ()))
    return ValidationError(f"{source}: {loc or '<root>'}: {first.get('msg')}", field=loc or None, cause=e)


def parse_manifest(text: str, filepath: str | None = None) -> Manifest:
    """Parse one manifest document.

    Raises:
        ValidationError: Malformed YAML or schema violation
    """
    source = filepath or "<manifest>"
    data = _load_yaml(text, source)
    try:
        spec = ManifestSpec.model_validate(data)
    except pydantic.ValidationError as e:
        raise _invalid(source, e) from e
    return spec.to_manifest(filepath)


def load_manifest(path: str | Path) -> Manifest:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ValidationError(f"cannot read manifest {path}: {e}", cause=e) from e
    return parse_manifest(text, filepath=str(path))


def load_manifests(paths: Iterable[str | Path]) -> list[Manifest]:
    """Load every manifest file, expanding directories to ``*.yaml`` files."""
    manifests: list[Manifest] = []
    for p in paths:
        p = Path(p)
        files = sorted(p.rglob("*.yaml")) if p.is_dir() else [p]
        manifests.extend(load_manifest(f) for f in files)
    if not manifests:
        raise ValidationError("no manifests found", field="manifests")
    return manifests


def parse_images(text: str, source: str = "<snapshot>") -> list[ImageEntry]:
    """Parse a YAML image list (snapshot output or a manifest's ``images``).

    Raises:
        ValidationError: Malformed YAML or schema violation
    """
    data = _load_yaml(text, source)
    if data is None:
        return []
    if not isinstance(data, list):
        raise ValidationError(f"{source}: expected a list of images", field="images")
    try:
        specs = [ImageSpec.model_validate(item) for item in data]
    except pydantic.ValidationError as e:
        raise _invalid(source, e) from e
    return [s.to_entry() for s in specs]
