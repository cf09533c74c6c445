"""Tests for the Promoter mode drivers."""

from __future__ import annotations

import pytest
import yaml

from image_promoter.core.errors import (
    AggregateRunError,
    AuthError,
    EdgeExecutionError,
    ManifestConflictError,
    PromoterError,
    RegistryAccessError,
    ValidationError,
)
from image_promoter.engine.edges import compute_edges
from image_promoter.engine.results import EdgeStatus
from image_promoter.engine.sync import build_sync_context
from image_promoter.modes.promoter import Promoter, phase
from image_promoter.registry.models import Severity, Vulnerability
from tests._support.builders import MIRROR, PROD, SRC, digest, make_manifest, make_settings

D1, D2, PARENT, CH1, CH2 = digest(1), digest(2), digest(0xA0), digest(0xC1), digest(0xC2)
SA = "promoter@k8s-artifacts-prod.iam.gserviceaccount.com"


def _promoter(registry, **settings):
    return Promoter(
        make_settings(**settings),
        reader=registry,
        transfers=registry,
        scanner=registry,
        activator=registry,
    )


@pytest.fixture
def seeded(registry):
    registry.put(SRC, "foo", D1, tags=["v1"])
    registry.put(SRC, "bar", D2)
    return registry


@pytest.fixture
def manifests():
    return [make_manifest(SRC, [PROD, MIRROR], {"foo": {D1: ["v1", "latest"]}, "bar": {D2: []}}, service_account=SA)]


# ── Phases ───────────────────────────────────────────────────────────────


class TestPhase:
    def test_tags_promoter_errors(self):
        with pytest.raises(ValidationError) as exc:
            with phase("filtering edges"):
                raise ValidationError("bad")
        assert exc.value.context.phase == "filtering edges"
        assert str(exc.value) == "filtering edges: bad"

    def test_keeps_innermost_phase(self):
        with pytest.raises(PromoterError) as exc:
            with phase("outer"):
                with phase("inner"):
                    raise PromoterError("x")
        assert exc.value.context.phase == "inner"

    def test_wraps_unexpected_errors(self):
        with pytest.raises(PromoterError) as exc:
            with phase("generating snapshot"):
                raise KeyError("k")
        assert isinstance(exc.value.cause, KeyError)
        assert exc.value.context.phase == "generating snapshot"


# ── Promote ──────────────────────────────────────────────────────────────


class TestPromote:
    @pytest.mark.asyncio
    async def test_converges(self, seeded, manifests):
        promoter = _promoter(seeded)

        report = await promoter.promote(manifests)

        assert report.ok
        for dst in (PROD, MIRROR):
            assert seeded.tags(dst, "foo", D1) == {"v1", "latest"}
            assert seeded.has(dst, "bar", D2)

        ctx = await build_sync_context(promoter.settings, manifests, seeded)
        assert len(compute_edges(ctx)) == 0

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(self, seeded, manifests):
        await _promoter(seeded).promote(manifests)
        calls = len(seeded.calls)

        report = await _promoter(seeded).promote(manifests)

        assert report.ok
        assert report.results == {}
        assert len(seeded.calls) == calls

    @pytest.mark.asyncio
    async def test_dry_run_needs_no_transfers(self, seeded, manifests):
        promoter = Promoter(make_settings(dry_run=True), reader=seeded)

        report = await promoter.promote(manifests)

        assert report.dry_run
        assert report.count(EdgeStatus.PLANNED) == 6
        assert not seeded.has(PROD, "foo", D1)

    @pytest.mark.asyncio
    async def test_live_run_needs_transfers(self, seeded, manifests):
        with pytest.raises(ValidationError) as exc:
            await Promoter(make_settings(), reader=seeded).promote(manifests)
        assert exc.value.context.phase == "validating options"

    @pytest.mark.asyncio
    async def test_no_manifests(self, seeded):
        with pytest.raises(ValidationError, match="at least one manifest"):
            await _promoter(seeded).promote([])

    @pytest.mark.asyncio
    async def test_edge_failure_raises_aggregate(self, seeded, manifests):
        seeded.fail(MIRROR, D2, EdgeExecutionError("denied"))

        with pytest.raises(AggregateRunError) as exc:
            await _promoter(seeded).promote(manifests)

        report = exc.value.report
        assert exc.value.context.phase == "running promotion"
        assert report.count(EdgeStatus.FAILED) == 1
        assert report.count(EdgeStatus.SUCCEEDED) == 5
        assert seeded.has(PROD, "bar", D2)

    @pytest.mark.asyncio
    async def test_failed_child_fails_run(self, registry):
        registry.put(SRC, "foo", PARENT, tags=["v1"], children=[CH1, CH2])
        registry.put(SRC, "foo", CH1).put(SRC, "foo", CH2)
        registry.fail(PROD, CH2, EdgeExecutionError("blob rejected"))

        with pytest.raises(AggregateRunError) as exc:
            await _promoter(registry).promote([make_manifest(SRC, [PROD], {"foo": {PARENT: ["v1"]}})])

        report = exc.value.report
        assert report.count(EdgeStatus.SUCCEEDED) == 2
        assert report.count(EdgeStatus.SKIPPED) == 1
        assert "1 failed, 1 skipped" in str(exc.value)

    @pytest.mark.asyncio
    async def test_unreachable_destination(self, seeded, manifests):
        seeded.unreachable.add(MIRROR)

        with pytest.raises(AggregateRunError) as exc:
            await _promoter(seeded).promote(manifests)

        report = exc.value.report
        assert set(report.unreachable) == {MIRROR}
        assert report.count(EdgeStatus.SUCCEEDED) == 3
        assert seeded.tags(PROD, "foo", D1) == {"v1", "latest"}

    @pytest.mark.asyncio
    async def test_unreachable_source_is_fatal(self, seeded, manifests):
        seeded.unreachable.add(SRC)

        with pytest.raises(RegistryAccessError) as exc:
            await _promoter(seeded).promote(manifests)

        assert exc.value.context.phase == "creating sync context"
        assert seeded.calls == []

    @pytest.mark.asyncio
    async def test_conflict_reported_before_any_write(self, seeded):
        manifests = [
            make_manifest(SRC, [PROD], {"foo": {D1: ["latest"]}}),
            make_manifest(SRC, [PROD], {"foo": {D2: ["latest"]}}),
        ]
        with pytest.raises(ManifestConflictError):
            await _promoter(seeded).promote(manifests)
        assert seeded.calls == []


class TestActivation:
    @pytest.mark.asyncio
    async def test_only_with_service_accounts(self, seeded, manifests):
        await _promoter(seeded, dry_run=True).promote(manifests)
        assert seeded.activated == []

        await _promoter(seeded, dry_run=True, use_service_account=True).promote(manifests)
        assert seeded.activated == [SRC, PROD, MIRROR]

    @pytest.mark.asyncio
    async def test_rejected_credentials(self, seeded, manifests):
        seeded.rejected.add(PROD)

        with pytest.raises(AuthError) as exc:
            await _promoter(seeded, use_service_account=True).promote(manifests)

        assert exc.value.context.phase == "activating service accounts"
        assert exc.value.context.registry == PROD


# ── Security scan ────────────────────────────────────────────────────────


class TestSecurityScan:
    @pytest.mark.asyncio
    async def test_scans_pending_edges_only(self, seeded, manifests):
        seeded.put(PROD, "bar", D2).put(MIRROR, "bar", D2)

        report = await _promoter(seeded).security_scan(manifests)

        assert report.ok
        assert seeded.scans == [(SRC, "foo", D1)]
        assert seeded.calls == []

    @pytest.mark.asyncio
    async def test_threshold_exceeded(self, seeded, manifests):
        seeded.vulnerable(D2, Vulnerability("CVE-2024-1", Severity.CRITICAL, "glibc"))

        with pytest.raises(AggregateRunError, match="security scan failed") as exc:
            await _promoter(seeded, severity_threshold=Severity.CRITICAL).security_scan(manifests)

        assert [r.digest for r in exc.value.report.failing] == [D2]

    @pytest.mark.asyncio
    async def test_needs_scanner(self, seeded, manifests):
        with pytest.raises(ValidationError, match="needs a scanner"):
            await Promoter(make_settings(), reader=seeded).security_scan(manifests)


# ── Snapshot and manifest lists ──────────────────────────────────────────


class TestSnapshot:
    @pytest.mark.asyncio
    async def test_yaml(self, seeded):
        text = await _promoter(seeded, output_format="yaml").snapshot(SRC)
        data = yaml.safe_load(text)
        assert [entry["name"] for entry in data] == ["bar", "foo"]

    @pytest.mark.asyncio
    async def test_csv_restricted_to_images(self, seeded):
        text = await _promoter(seeded).snapshot(SRC, images=["foo"], fmt="csv")
        lines = text.strip().splitlines()
        assert lines[0] == "name,digest,tag"
        assert lines[1:] == [f"foo,{D1},v1"]

    @pytest.mark.asyncio
    async def test_unknown_format(self, seeded):
        with pytest.raises(ValidationError) as exc:
            await _promoter(seeded).snapshot(SRC, fmt="json")
        assert exc.value.field == "output_format"
        assert exc.value.context.phase == "validating options"

    @pytest.mark.asyncio
    async def test_unreachable_registry(self, seeded):
        seeded.unreachable.add(PROD)
        with pytest.raises(RegistryAccessError) as exc:
            await _promoter(seeded).snapshot(PROD)
        assert exc.value.context.phase == "getting registry image inventory"


class TestCheckManifestLists:
    @pytest.mark.asyncio
    async def test_consistent(self, registry):
        registry.put(PROD, "foo", PARENT, tags=["v1"], children=[CH1])
        registry.put(PROD, "foo", CH1)

        report = await _promoter(registry).check_manifest_lists(PROD)

        assert report.ok
        assert report.parents_checked == 1

    @pytest.mark.asyncio
    async def test_missing_child(self, registry):
        registry.put(PROD, "foo", PARENT, tags=["v1"], children=[CH1, CH2])
        registry.put(PROD, "foo", CH1)

        with pytest.raises(AggregateRunError) as exc:
            await _promoter(registry).check_manifest_lists(PROD)

        assert exc.value.context.phase == "checking manifest lists"
        [finding] = exc.value.report.findings
        assert finding.missing_child == CH2
