"""Vulnerability scanning through the ``trivy`` CLI.

``TrivyScanner`` runs ``trivy image --format json`` against a digest
reference as a subprocess and converts its JSON report into a
``ScanReport``. Parsing is split out (``parse_trivy_report``) so it can be
tested without the binary installed.

Example::

    scanner = TrivyScanner()
    report = await scanner.scan("gcr.io/k8s-staging-foo", "foo", digest)
    for vuln in report.at_or_above(Severity.HIGH):
        ...
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping, Sequence
from typing import Any

from image_promoter.core.errors import NetworkError, ScanError, ValidationError
from image_promoter.core.logging import get_logger
from image_promoter.registry.models import (
    Digest,
    ImageName,
    RegistryName,
    ScanReport,
    Severity,
    Vulnerability,
)

logger = get_logger(__name__)


def _severity(value: str | None) -> Severity:
    try:
        return Severity((value or "UNKNOWN").upper())
    except ValueError:
        return Severity.UNKNOWN


def parse_trivy_report(
    data: Mapping[str, Any],
    registry: RegistryName,
    image: ImageName,
    digest: Digest,
) -> ScanReport:
    """Build a ``ScanReport`` from trivy's JSON output.

    Duplicate findings (same id and package across result sections) are
    reported once.
    """
    seen: set[tuple[str, str]] = set()
    vulns: list[Vulnerability] = []
    for section in data.get("Results") or []:
        for item in section.get("Vulnerabilities") or []:
            key = (item.get("VulnerabilityID", ""), item.get("PkgName", ""))
            if key in seen:
                continue
            seen.add(key)
            vulns.append(
                Vulnerability(
                    id=key[0],
                    severity=_severity(item.get("Severity")),
                    package=key[1],
                    fixed_version=item.get("FixedVersion") or None,
                )
            )
    vulns.sort(key=lambda v: (-v.severity.rank, v.id, v.package))
    return ScanReport(registry=registry, image=image, digest=digest, vulnerabilities=tuple(vulns))


class TrivyScanner:
    """``VulnerabilityScanner`` that shells out to trivy.

    Parameters
    ----------
    binary : str
        trivy executable name or path.
    extra_args : Sequence[str]
        Appended to every invocation (e.g. ``["--ignore-unfixed"]``).
    """

    def __init__(self, binary: str = "trivy", extra_args: Sequence[str] = ()) -> None:
        self.binary = binary
        self.extra_args = tuple(extra_args)

    def command(self, reference: str) -> list[str]:
        return [self.binary, "image", "--quiet", "--format", "json", *self.extra_args, reference]

    async def scan(self, registry: RegistryName, image: ImageName, digest: Digest) -> ScanReport:
        reference = f"{registry}/{image}@{digest}"
        cmd = self.command(reference)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ValidationError(
                f"scanner binary {self.binary!r} not found on PATH", field="scanner", cause=e
            ) from e

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            message = stderr.decode(errors="replace").strip()[-500:]
            # trivy reports registry hiccups as plain failures; these are worth a retry
            if "TOO MANY REQUESTS" in message.upper() or "timeout" in message.lower():
                raise NetworkError(f"scanning {reference} failed: {message}")
            raise ScanError(
                f"scanning {reference} failed (exit {process.returncode}): {message}"
            ).with_context(registry=registry, image=image, digest=digest)

        try:
            data = json.loads(stdout or b"{}")
        except json.JSONDecodeError as e:
            raise ScanError(f"scanner output for {reference} is not JSON", cause=e) from e

        report = parse_trivy_report(data, registry, image, digest)
        logger.debug("scanner.scanned", reference=reference, findings=len(report.vulnerabilities))
        return report
