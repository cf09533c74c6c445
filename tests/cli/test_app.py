"""Tests for the ``image-promoter`` CLI commands."""

from __future__ import annotations

import asyncio
import json
import sys
from contextlib import asynccontextmanager

import pytest
import yaml
from structlog.testing import capture_logs
from typer.testing import CliRunner

from image_promoter import __version__
from image_promoter.cli import utils
from image_promoter.cli.app import app
from image_promoter.core.errors import EdgeExecutionError
from image_promoter.modes.promoter import Promoter
from image_promoter.registry.models import Severity, Vulnerability
from tests._support.builders import PROD, SRC, digest

app_module = sys.modules["image_promoter.cli.app"]
runner = CliRunner()

D1, D2, PARENT, CH1, CH2 = digest(1), digest(2), digest(0xA0), digest(0xC1), digest(0xC2)


@pytest.fixture(autouse=True)
def wired(monkeypatch, registry):
    """Run every command against the in-memory registry, with logs captured."""
    seen = {}

    @asynccontextmanager
    async def _open(settings):
        seen["settings"] = settings
        yield Promoter(settings, reader=registry, transfers=registry, scanner=registry, activator=registry)

    monkeypatch.setattr(app_module, "open_promoter", _open)
    monkeypatch.setattr(app_module, "configure_logging", lambda **kwargs: None)
    monkeypatch.setattr(utils.console, "width", 200)
    monkeypatch.setattr(utils.err_console, "width", 200)
    with capture_logs():
        yield seen


@pytest.fixture
def seeded(registry):
    registry.put(SRC, "foo", digest(1), tags=["v1.0.0"])
    registry.put(SRC, "bar", digest(2))
    return registry


class TestVersion:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        assert "promote" in result.output


# ── promote ──────────────────────────────────────────────────────────────


class TestPromote:
    def test_dry_run_by_default(self, seeded, manifest_file, wired):
        result = runner.invoke(app, ["promote", "-m", str(manifest_file)])

        assert result.exit_code == 0, result.output
        assert wired["settings"].dry_run
        assert seeded.calls == []
        assert "Dry run" in result.output

    def test_confirm_applies(self, seeded, manifest_file):
        result = runner.invoke(app, ["promote", "-m", str(manifest_file.parent.parent), "--confirm"])

        assert result.exit_code == 0, result.output
        assert seeded.tags(PROD, "foo", D1) == {"v1.0.0", "latest"}
        assert seeded.has(PROD, "bar", D2)

    def test_json_output(self, seeded, manifest_file):
        result = runner.invoke(app, ["promote", "-m", str(manifest_file), "--confirm", "--json"])

        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["summary"]["succeeded"] == 3
        assert {e["status"] for e in payload["edges"]} == {"succeeded"}

    def test_options_reach_settings(self, seeded, manifest_file, wired):
        result = runner.invoke(
            app,
            [
                "promote", "-m", str(manifest_file),
                "-t", "2", "--max-retries", "0", "--attempt-timeout", "30",
                "--use-service-account", "-d", PROD,
            ],
        )

        assert result.exit_code == 0, result.output
        settings = wired["settings"]
        assert settings.max_concurrency == 2
        assert settings.max_retries == 0
        assert settings.attempt_timeout == 30
        assert settings.use_service_account
        assert settings.destination_registries == (PROD,)
        assert seeded.activated == [SRC, PROD]

    def test_failed_edge_exits_nonzero(self, seeded, manifest_file):
        seeded.fail(PROD, D2, EdgeExecutionError("denied"))

        result = runner.invoke(app, ["promote", "-m", str(manifest_file), "--confirm"])

        assert result.exit_code == 1
        assert "Failed" in result.output
        assert "promotion incomplete" in result.output
        assert seeded.tags(PROD, "foo", D1) == {"v1.0.0", "latest"}

    def test_interrupted_run_reports_cancelled(self, seeded, manifest_file, monkeypatch):
        @asynccontextmanager
        async def _interrupted():
            cancel = asyncio.Event()
            cancel.set()
            yield cancel

        monkeypatch.setattr(app_module, "cancel_on_signals", _interrupted)

        result = runner.invoke(app, ["promote", "-m", str(manifest_file), "--confirm"])

        assert result.exit_code == 1
        assert "Failed" in result.output
        assert "cancelled: True" in result.output
        assert seeded.calls == []

    def test_missing_source_digest(self, registry, manifest_file):
        result = runner.invoke(app, ["promote", "-m", str(manifest_file)])

        assert result.exit_code == 1
        assert "does not exist in source" in result.output

    def test_bad_manifest(self, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("registries: [\n", encoding="utf-8")

        result = runner.invoke(app, ["promote", "-m", str(bad)])

        assert result.exit_code == 1
        assert "parsing manifests" in result.output

    def test_bad_option(self, manifest_file):
        result = runner.invoke(app, ["promote", "-m", str(manifest_file), "-t", "0"])

        assert result.exit_code == 1
        assert "Error" in result.output


# ── security-scan ────────────────────────────────────────────────────────


class TestSecurityScan:
    def test_clean(self, seeded, manifest_file):
        result = runner.invoke(app, ["security-scan", "-m", str(manifest_file)])

        assert result.exit_code == 0, result.output
        assert len(seeded.scans) == 2
        assert seeded.calls == []

    def test_findings_fail(self, seeded, manifest_file, wired):
        seeded.vulnerable(D1, Vulnerability("CVE-2024-9", Severity.CRITICAL, "glibc", "2.39"))

        result = runner.invoke(app, ["security-scan", "-m", str(manifest_file), "-s", "critical"])

        assert result.exit_code == 1
        assert wired["settings"].severity_threshold == Severity.CRITICAL
        assert "CVE-2024-9" in result.output


# ── snapshot ─────────────────────────────────────────────────────────────


class TestSnapshot:
    def test_yaml_to_stdout(self, seeded):
        result = runner.invoke(app, ["snapshot", "-r", SRC])

        assert result.exit_code == 0, result.output
        data = yaml.safe_load(result.output)
        assert data == [
            {"name": "bar", "dmap": {D2: []}},
            {"name": "foo", "dmap": {D1: ["v1.0.0"]}},
        ]

    def test_csv_to_file(self, seeded, tmp_path):
        out = tmp_path / "snap.csv"

        result = runner.invoke(app, ["snapshot", "-r", SRC, "-o", "CSV", "--out", str(out)])

        assert result.exit_code == 0, result.output
        assert out.read_text(encoding="utf-8").splitlines() == [
            "name,digest,tag",
            f"bar,{D2},",
            f"foo,{D1},v1.0.0",
        ]

    def test_restricted_by_manifest_and_images(self, seeded, tmp_path, manifest_file):
        seeded.put(SRC, "baz", digest(3))
        images = tmp_path / "images.yaml"
        images.write_text(f'- name: baz\n  dmap:\n    "{digest(3)}": []\n', encoding="utf-8")

        result = runner.invoke(
            app, ["snapshot", "-r", SRC, "-m", str(manifest_file), "--images", str(images), "-o", "csv"]
        )

        assert result.exit_code == 0, result.output
        assert [line.split(",")[0] for line in result.output.splitlines()[1:]] == ["bar", "baz", "foo"]

    def test_bad_format(self):
        result = runner.invoke(app, ["snapshot", "-r", SRC, "-o", "json"])
        assert result.exit_code == 1


# ── check-manifest-lists ─────────────────────────────────────────────────


class TestCheckManifestLists:
    def test_consistent(self, registry):
        registry.put(PROD, "foo", PARENT, tags=["v1"], children=[CH1])
        registry.put(PROD, "foo", CH1)

        result = runner.invoke(app, ["check-manifest-lists", "-r", PROD, "--json"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["summary"]["parents_checked"] == 1

    def test_missing_child(self, registry):
        registry.put(PROD, "foo", PARENT, tags=["v1"], children=[CH1, CH2])
        registry.put(PROD, "foo", CH1)

        result = runner.invoke(app, ["check-manifest-lists", "-r", PROD])

        assert result.exit_code == 1
        assert "Broken manifest lists" in result.output
        assert "Failed" in result.output
