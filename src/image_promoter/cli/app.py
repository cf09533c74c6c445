"""
Root Typer application for the image-promoter CLI.

Every command builds a ``PromoterSettings`` from ``PROMOTER_*`` environment
variables plus the options given, then runs one ``Promoter`` mode. Options
left unset fall through to the environment.

    image-promoter promote -m manifests/ --confirm
    image-promoter security-scan -m manifests/ --severity-threshold CRITICAL
    image-promoter snapshot -r gcr.io/k8s-staging-foo -o csv
    image-promoter check-manifest-lists -r us-docker.pkg.dev/k8s-artifacts-prod/images
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import typer
from typer import Typer

from image_promoter.cli.utils import (
    cancel_on_signals,
    err_console,
    open_promoter,
    output_manifest_list_report,
    output_run_report,
    output_scan_report,
    run_mode,
)
from image_promoter.core.errors import PromoterError
from image_promoter.core.logging import configure_logging
from image_promoter.core.settings import PromoterSettings, load_settings
from image_promoter.registry.manifests import load_manifests, parse_images
from image_promoter.registry.models import Manifest

app = Typer(
    name="image-promoter",
    help="image-promoter: declarative container image promotion between registries.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from image_promoter import __version__

        typer.echo(f"image-promoter {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Promote, scan, snapshot and check container images across registries."""


# ── Shared helpers ───────────────────────────────────────────────────────


def _settings(**overrides: Any) -> PromoterSettings:
    try:
        settings = load_settings(**overrides)
    except PromoterError as e:
        err_console.print(f"[bold red]Error[/bold red] ({e.category.value}): {e}")
        raise typer.Exit(code=1) from e
    json_format = None if settings.log_format is None else settings.log_format == "json"
    configure_logging(level=settings.log_level, json_format=json_format)
    return settings


def _manifests(paths: list[Path]) -> list[Manifest]:
    try:
        return load_manifests(paths)
    except PromoterError as e:
        err_console.print(f"[bold red]Error[/bold red] (parsing manifests): {e}")
        raise typer.Exit(code=1) from e


def _image_names(manifest: list[Path] | None, images_file: Path | None) -> list[str] | None:
    """Image names named by ``--manifest`` and ``--images``; None means all."""
    if not manifest and images_file is None:
        return None
    names: set[str] = set()
    if manifest:
        names.update(entry.name for m in _manifests(manifest) for entry in m.images)
    if images_file is not None:
        try:
            entries = parse_images(images_file.read_text(encoding="utf-8"), source=str(images_file))
        except (OSError, PromoterError) as e:
            err_console.print(f"[bold red]Error[/bold red] (parsing images): {e}")
            raise typer.Exit(code=1) from e
        names.update(entry.name for entry in entries)
    return sorted(names)


# ── Commands ─────────────────────────────────────────────────────────────


@app.command()
def promote(
    manifest: list[Path] = typer.Option(..., "--manifest", "-m", help="Manifest file or directory (repeatable)."),
    confirm: bool = typer.Option(False, "--confirm", help="Apply changes; without it the run is a dry run."),
    threads: int | None = typer.Option(None, "--threads", "-t", help="Edges in flight at once."),
    use_service_account: bool | None = typer.Option(
        None, "--use-service-account/--no-service-account", help="Activate manifest service accounts."
    ),
    source_registry: str | None = typer.Option(None, "--source-registry", help="Required source of every manifest."),
    destination: list[str] | None = typer.Option(
        None, "--destination", "-d", help="Only promote to this registry (repeatable)."
    ),
    max_retries: int | None = typer.Option(None, "--max-retries"),
    attempt_timeout: float | None = typer.Option(None, "--attempt-timeout", help="Seconds per edge attempt."),
    run_deadline: float | None = typer.Option(None, "--run-deadline", help="Stop dispatching after N seconds."),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Copy and retag images until every destination matches the manifests."""
    settings = _settings(
        dry_run=False if confirm else None,
        max_concurrency=threads,
        use_service_account=use_service_account,
        source_registry=source_registry,
        destination_registries=tuple(destination) if destination else None,
        max_retries=max_retries,
        attempt_timeout=attempt_timeout,
        run_deadline=run_deadline,
    )
    manifests = _manifests(manifest)

    async def _run():
        async with open_promoter(settings) as promoter:
            async with cancel_on_signals() as cancel:
                return await promoter.promote(manifests, cancel=cancel)

    report, ok = run_mode(_run())
    output_run_report(report, as_json=json_out)
    if not ok:
        raise typer.Exit(code=1)


@app.command("security-scan")
def security_scan(
    manifest: list[Path] = typer.Option(..., "--manifest", "-m", help="Manifest file or directory (repeatable)."),
    severity_threshold: str | None = typer.Option(
        None, "--severity-threshold", "-s", help="Fail on findings at or above this severity."
    ),
    threads: int | None = typer.Option(None, "--threads", "-t", help="Scans in flight at once."),
    use_service_account: bool | None = typer.Option(
        None, "--use-service-account/--no-service-account", help="Activate manifest service accounts."
    ),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Scan every image a promotion would copy, without copying anything."""
    settings = _settings(
        severity_threshold=severity_threshold.upper() if severity_threshold else None,
        max_concurrency=threads,
        use_service_account=use_service_account,
    )
    manifests = _manifests(manifest)

    async def _run():
        async with open_promoter(settings) as promoter:
            return await promoter.security_scan(manifests)

    report, ok = run_mode(_run())
    output_scan_report(report, as_json=json_out)
    if not ok:
        raise typer.Exit(code=1)


@app.command()
def snapshot(
    registry: str = typer.Option(..., "--registry", "-r", help="Registry to snapshot."),
    output: str | None = typer.Option(None, "--output", "-o", help="csv or yaml."),
    manifest: list[Path] | None = typer.Option(
        None, "--manifest", "-m", help="Only include images named by this manifest."
    ),
    images: Path | None = typer.Option(None, "--images", help="Only include images in this snapshot file."),
    out: Path | None = typer.Option(None, "--out", help="Write to a file instead of stdout."),
    use_service_account: bool | None = typer.Option(
        None, "--use-service-account/--no-service-account", help="Activate credentials first."
    ),
) -> None:
    """Print the images, digests and tags of a registry."""
    settings = _settings(output_format=output.lower() if output else None, use_service_account=use_service_account)
    names = _image_names(manifest, images)

    async def _run():
        async with open_promoter(settings) as promoter:
            return await promoter.snapshot(registry, images=names)

    text, _ = run_mode(_run())
    if out is not None:
        out.write_text(text, encoding="utf-8")
        err_console.print(f"[green]wrote[/green] {out}")
    else:
        typer.echo(text, nl=False)


@app.command("check-manifest-lists")
def check_manifest_lists(
    registry: str = typer.Option(..., "--registry", "-r", help="Registry to check."),
    images: Path | None = typer.Option(None, "--images", help="Only check images in this snapshot file."),
    use_service_account: bool | None = typer.Option(
        None, "--use-service-account/--no-service-account", help="Activate credentials first."
    ),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Check every manifest list in a registry resolves all of its children."""
    settings = _settings(use_service_account=use_service_account)
    names = _image_names(None, images)

    async def _run():
        async with open_promoter(settings) as promoter:
            return await promoter.check_manifest_lists(registry, images=names)

    report, ok = run_mode(_run())
    output_manifest_list_report(report, as_json=json_out)
    if not ok:
        raise typer.Exit(code=1)
