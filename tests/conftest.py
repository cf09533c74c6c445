"""
Shared pytest fixtures for image-promoter tests.

This module provides:
- An empty ``InMemoryRegistry`` per test
- Fast ``PromoterSettings`` (no backoff sleeps, real runs)
- Manifest YAML written to a temporary directory
"""

from __future__ import annotations

from pathlib import Path

import pytest

from image_promoter.core.settings import PromoterSettings
from image_promoter.registry.memory import InMemoryRegistry
from tests._support.builders import PROD, SRC, digest, make_settings


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep PROMOTER_* variables and stray .env files out of tests."""
    import os

    for key in list(os.environ):
        if key.startswith("PROMOTER_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def registry() -> InMemoryRegistry:
    return InMemoryRegistry()


@pytest.fixture
def settings() -> PromoterSettings:
    return make_settings()


@pytest.fixture
def manifest_yaml() -> str:
    return f"""\
registries:
  - name: {SRC}
    src: true
  - name: {PROD}
    service-account: promoter@k8s-artifacts-prod.iam.gserviceaccount.com
images:
  - name: foo
    dmap:
      "{digest(1)}": ["v1.0.0", "latest"]
  - name: bar
    dmap:
      "{digest(2)}": []
"""


@pytest.fixture
def manifest_file(tmp_path: Path, manifest_yaml: str) -> Path:
    path = tmp_path / "manifests" / "foo" / "promoter-manifest.yaml"
    path.parent.mkdir(parents=True)
    path.write_text(manifest_yaml, encoding="utf-8")
    return path
