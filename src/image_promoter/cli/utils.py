"""
CLI utility helpers: promoter construction, async execution and output.
"""

from __future__ import annotations

import asyncio
import json
import signal
from collections.abc import AsyncIterator, Coroutine
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from image_promoter.core.errors import AggregateRunError, PromoterError
from image_promoter.core.settings import PromoterSettings
from image_promoter.engine.results import EdgeStatus, RunReport
from image_promoter.modes.manifest_lists import ManifestListReport
from image_promoter.modes.promoter import Promoter
from image_promoter.modes.scan import SecurityScanReport
from image_promoter.registry.credentials import TokenCredentials
from image_promoter.registry.http import HttpRegistryClient
from image_promoter.registry.scanner import TrivyScanner

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")

_STATUS_STYLE = {
    EdgeStatus.SUCCEEDED: "green",
    EdgeStatus.PLANNED: "cyan",
    EdgeStatus.FAILED: "bold red",
    EdgeStatus.SKIPPED: "yellow",
    EdgeStatus.CANCELLED: "magenta",
}


# ── Promoter helper ──────────────────────────────────────────────────────


@asynccontextmanager
async def open_promoter(settings: PromoterSettings) -> AsyncIterator[Promoter]:
    """A ``Promoter`` wired to the network implementations."""
    token = settings.registry_token.get_secret_value() if settings.registry_token else None
    async with HttpRegistryClient(token=token) as client:
        yield Promoter(
            settings,
            reader=client,
            transfers=client,
            scanner=TrivyScanner(),
            activator=TokenCredentials(settings.registry_token),
        )



@asynccontextmanager
async def cancel_on_signals(*signals: signal.Signals) -> AsyncIterator[asyncio.Event]:
    """An event set by SIGINT or SIGTERM while the block runs.

    The scheduler stops dispatching once it is set, so an interrupted run
    still ends with a report. Platforms without loop signal handlers get an
    event nothing sets.
    """
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = []
    for sig in signals or (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel.set)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(sig)
    try:
        yield cancel
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def run_mode(coro: Coroutine[Any, Any, T]) -> tuple[T | Any, bool]:
    """Run a mode coroutine; returns (report, ok).

    An ``AggregateRunError`` is not fatal here: its report is returned so
    the command can still render partial results. Any other promoter error
    ends the command with exit code 1.
    """
    try:
        return asyncio.run(coro), True
    except AggregateRunError as e:
        err_console.print(f"[bold red]Failed[/bold red]: {e}")
        return e.report, False
    except PromoterError as e:
        err_console.print(f"[bold red]Error[/bold red] ({e.category.value}): {e}")
        raise typer.Exit(code=1) from e


# ── Output helpers ───────────────────────────────────────────────────────


def print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def output_run_report(report: RunReport, *, as_json: bool = False) -> None:
    results = sorted(report.results.values(), key=lambda r: r.edge.label)
    if as_json:
        print_json({"summary": report.summary(), "edges": [r.to_dict() for r in results]})
        return

    if not results:
        console.print("[dim]Nothing to promote; every destination is up to date.[/dim]")
    else:
        table = Table(title="Dry run" if report.dry_run else "Promotion", pad_edge=False)
        for col in ("status", "op", "destination", "ref", "attempts", "error"):
            table.add_column(col, overflow="fold")
        for r in results:
            ref = f"{r.edge.dst_image}:{r.edge.tag}" if r.edge.tag else f"{r.edge.dst_image}@{r.edge.digest}"
            style = _STATUS_STYLE.get(r.status, "")
            table.add_row(
                f"[{style}]{r.status.value}[/{style}]",
                r.edge.op.value,
                r.edge.dst_registry.name,
                ref,
                str(r.attempts),
                str(r.error or ""),
            )
        console.print(table)

    for name, error in sorted(report.unreachable.items()):
        console.print(f"[bold red]unreachable[/bold red] {name}: {error}")
    _print_summary(report.summary())


def output_scan_report(report: SecurityScanReport, *, as_json: bool = False) -> None:
    if as_json:
        print_json(
            {
                "summary": report.summary(),
                "failing": [
                    {
                        "reference": r.reference,
                        "vulnerabilities": [
                            {
                                "id": v.id,
                                "severity": v.severity.value,
                                "package": v.package,
                                "fixed_version": v.fixed_version,
                            }
                            for v in r.at_or_above(report.threshold)
                        ],
                    }
                    for r in report.failing
                ],
                "errors": {ref: str(e) for ref, e in report.errors.items()},
            }
        )
        return

    if report.failing:
        table = Table(title=f"Findings at or above {report.threshold.value}", pad_edge=False)
        for col in ("image", "id", "severity", "package", "fixed in"):
            table.add_column(col, overflow="fold")
        for r in report.failing:
            for v in r.at_or_above(report.threshold):
                table.add_row(r.reference, v.id, v.severity.value, v.package, v.fixed_version or "")
        console.print(table)
    for ref, error in sorted(report.errors.items()):
        console.print(f"[bold red]not scanned[/bold red] {ref}: {error}")
    _print_summary(report.summary())


def output_manifest_list_report(report: ManifestListReport, *, as_json: bool = False) -> None:
    if as_json:
        print_json(
            {
                "summary": report.summary(),
                "findings": [
                    {"image": f.image, "parent": f.parent, "missing_child": f.missing_child}
                    for f in report.findings
                ],
            }
        )
        return

    if report.findings:
        table = Table(title=f"Broken manifest lists at {report.registry}", pad_edge=False)
        for col in ("image", "parent", "missing child"):
            table.add_column(col, overflow="fold")
        for f in report.findings:
            table.add_row(f.image, f.parent, f.missing_child)
        console.print(table)
    _print_summary(report.summary())


# ── Private helpers ──────────────────────────────────────────────────────


def _print_summary(data: dict[str, Any]) -> None:
    console.print("[bold]Summary[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {v}")
