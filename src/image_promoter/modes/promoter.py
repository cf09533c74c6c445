"""
Promoter: the mode drivers.

Each public method is one mode of operation and runs a fixed sequence of
phases. An error escaping a phase carries the phase name in its context
(``error.context.phase``) and in its message, so the CLI can print
``creating sync context: registry 'gcr.io/prod' is unreachable`` without
any extra bookkeeping.

Modes and phases::

    promote              validating options
                         activating service accounts
                         creating sync context
                         filtering edges
                         running promotion

    security_scan        ... same as promote up to filtering edges ...
                         running vulnerability scan

    snapshot             validating options
                         activating service accounts
                         getting registry image inventory
                         generating snapshot

    check_manifest_lists validating options
                         activating service accounts
                         getting registry image inventory
                         checking manifest lists

Failing outcomes raise ``AggregateRunError`` whose ``report`` is the
mode's report; everything else is returned.

Example::

    promoter = Promoter(settings, reader=client, transfers=client)
    report = await promoter.promote(load_manifests(["manifests/"]))
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager

from image_promoter.core.errors import (
    AggregateRunError,
    ErrorContext,
    PromoterError,
    ValidationError,
)
from image_promoter.core.logging import LogContext, get_logger
from image_promoter.core.settings import OUTPUT_FORMATS, PromoterSettings
from image_promoter.engine.edges import EdgePlan, compute_edges
from image_promoter.engine.results import RunReport
from image_promoter.engine.retry import ExponentialBackoff
from image_promoter.engine.scheduler import EdgeScheduler, RegistryTransferFactory, TransferFactory
from image_promoter.engine.sync import SyncContext, build_sync_context
from image_promoter.modes.manifest_lists import ManifestListReport, check_inventory
from image_promoter.modes.scan import SecurityScanReport, scan_edges
from image_promoter.registry.contracts import (
    CredentialActivator,
    InventoryReader,
    TransferExecutor,
    VulnerabilityScanner,
)
from image_promoter.registry.models import (
    ImageName,
    Manifest,
    RegistryContext,
    RegistryInventory,
    RegistryName,
)
from image_promoter.registry.snapshot import render_snapshot

logger = get_logger(__name__)


@contextmanager
def phase(name: str) -> Iterator[None]:
    """Tag every error escaping the block with ``name``."""
    logger.debug("promoter.phase_started", phase=name)
    try:
        yield
    except PromoterError as e:
        e.with_context(phase=name)
        raise
    except Exception as e:
        raise PromoterError(
            f"unexpected {type(e).__name__}: {e}",
            context=ErrorContext(phase=name),
            cause=e,
        ) from e


class Promoter:
    """Runs promoter modes against injected registry capabilities.

    Parameters
    ----------
    settings : PromoterSettings
        Per-run configuration.
    reader : InventoryReader
        Reads registry inventories.
    transfers : TransferExecutor | None
        Applies edges; only ``promote`` needs it.
    scanner : VulnerabilityScanner | None
        Only ``security_scan`` needs it.
    activator : CredentialActivator | None
        Called when ``settings.use_service_account`` is set.
    """

    def __init__(
        self,
        settings: PromoterSettings,
        reader: InventoryReader,
        transfers: TransferExecutor | None = None,
        *,
        scanner: VulnerabilityScanner | None = None,
        activator: CredentialActivator | None = None,
    ) -> None:
        self.settings = settings
        self.reader = reader
        self.transfers = transfers
        self.scanner = scanner
        self.activator = activator

    # ── Modes ────────────────────────────────────────────────────────

    async def promote(
        self,
        manifests: Sequence[Manifest],
        cancel: asyncio.Event | None = None,
    ) -> RunReport:
        """Make every destination agree with ``manifests``.

        Raises:
            AggregateRunError: Some edge did not succeed, the run was
                cancelled, or a destination was unreachable
        """
        async with LogContext(run_id=_run_id(), mode="promote"):
            with phase("validating options"):
                self._validate(manifests)
                if self.transfers is None and not self.settings.dry_run:
                    raise ValidationError("promotion needs a transfer executor", field="transfers")

            ctx, plan = await self._plan(manifests)

            with phase("running promotion"):
                report = await self._scheduler(ctx).run(plan, cancel=cancel, unreachable=ctx.unreachable)
                if not report.ok:
                    raise AggregateRunError(
                        f"promotion incomplete: {report.describe_failures()}",
                        report=report,
                    )

            logger.info("promoter.promote_complete", **report.summary())
            return report

    async def security_scan(self, manifests: Sequence[Manifest]) -> SecurityScanReport:
        """Scan every image that promotion would copy or retag.

        Raises:
            AggregateRunError: A finding is at or above the severity threshold,
                or an image could not be scanned
        """
        async with LogContext(run_id=_run_id(), mode="security-scan"):
            with phase("validating options"):
                self._validate(manifests)
                if self.scanner is None:
                    raise ValidationError("security scan needs a scanner", field="scanner")

            _, plan = await self._plan(manifests)

            with phase("running vulnerability scan"):
                report = await scan_edges(
                    self.scanner,
                    plan.edges,
                    self.settings.severity_threshold,
                    max_concurrency=self.settings.max_concurrency,
                    retry=self._retry_strategy(),
                )
                if not report.ok:
                    raise AggregateRunError(
                        f"security scan failed: {report.describe_failures()}",
                        report=report,
                    )
            return report

    async def snapshot(
        self,
        registry: RegistryContext | str,
        images: Iterable[str] | None = None,
        fmt: str | None = None,
    ) -> str:
        """Serialize the contents of ``registry``.

        ``images`` restricts the snapshot to those image names.
        """
        rc = _registry(registry)
        async with LogContext(run_id=_run_id(), mode="snapshot"):
            with phase("validating options"):
                self.settings.validate_options()
                fmt = (fmt or self.settings.output_format).lower()
                if fmt not in OUTPUT_FORMATS:
                    raise ValidationError(
                        f"output format {fmt!r} is not one of {', '.join(OUTPUT_FORMATS)}",
                        field="output_format",
                    )

            inventory = await self._read(rc, images)

            with phase("generating snapshot"):
                return render_snapshot(inventory, fmt)

    async def check_manifest_lists(
        self,
        registry: RegistryContext | str,
        images: Iterable[str] | None = None,
    ) -> ManifestListReport:
        """Verify every manifest list at ``registry`` resolves its children.

        Raises:
            AggregateRunError: A parent references a missing child
        """
        rc = _registry(registry)
        async with LogContext(run_id=_run_id(), mode="check-manifest-lists"):
            with phase("validating options"):
                self.settings.validate_options()

            inventory = await self._read(rc, images)

            with phase("checking manifest lists"):
                report = check_inventory(inventory)
                if not report.ok:
                    raise AggregateRunError(report.describe_failures(), report=report)
            return report

    # ── Shared phases ────────────────────────────────────────────────

    def _validate(self, manifests: Sequence[Manifest]) -> None:
        self.settings.validate_options()
        if not manifests:
            raise ValidationError("at least one manifest is required", field="manifests")

    async def _activate(self, registries: Iterable[RegistryContext]) -> None:
        with phase("activating service accounts"):
            if not self.settings.use_service_account or self.activator is None:
                return
            await self.activator.activate(_unique(registries))

    async def _plan(self, manifests: Sequence[Manifest]) -> tuple[SyncContext, EdgePlan]:
        await self._activate(rc for m in manifests for rc in m.registries)

        with phase("creating sync context"):
            ctx = await build_sync_context(self.settings, manifests, self.reader)

        with phase("filtering edges"):
            plan = compute_edges(ctx)
        return ctx, plan

    async def _read(self, rc: RegistryContext, images: Iterable[str] | None) -> RegistryInventory:
        await self._activate([rc])
        with phase("getting registry image inventory"):
            names = None if images is None else [ImageName(i) for i in images]
            return await self.reader.read_inventory(rc, names)

    def _scheduler(self, ctx: SyncContext) -> EdgeScheduler:
        factory: TransferFactory = RegistryTransferFactory.for_credentials(
            self.transfers, ctx.use_service_account
        )
        return EdgeScheduler.from_settings(factory, self.settings)

    def _retry_strategy(self) -> ExponentialBackoff:
        return ExponentialBackoff(
            max_retries=self.settings.max_retries,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
        )


def _run_id() -> str:
    return uuid.uuid4().hex[:12]


def _registry(registry: RegistryContext | str) -> RegistryContext:
    if isinstance(registry, RegistryContext):
        return registry
    return RegistryContext(name=RegistryName(registry.rstrip("/")), src=True)


def _unique(registries: Iterable[RegistryContext]) -> list[RegistryContext]:
    seen: dict[RegistryName, RegistryContext] = {}
    for rc in registries:
        seen.setdefault(rc.name, rc)
    return list(seen.values())
