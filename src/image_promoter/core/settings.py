"""Run configuration for the promoter.

``PromoterSettings`` is constructed once per run (by the CLI or by a library
caller) and passed down explicitly; nothing in the engine reads environment
variables or module-level defaults.

Fields
──────
source_registry        : Expected source registry of every manifest (optional)
destination_registries : Restrict promotion to these destinations (optional)
max_concurrency        : Edges (or scans, or registry reads) in flight at once
dry_run                : Compute and report edges, transfer nothing
use_service_account    : Credential mode; selects direct registry-side copy
output_format          : Snapshot serialization, ``csv`` or ``yaml``
max_retries            : Retries per edge for transient failures
retry_base_delay       : First backoff delay in seconds
retry_max_delay        : Backoff cap in seconds
attempt_timeout        : Deadline for one edge attempt in seconds (None = none)
run_deadline           : Stop dispatching new edges after this many seconds
severity_threshold     : Security scan fails at or above this severity
registry_token         : Bearer token for registries that need one
log_level / log_format : Structlog configuration

Every field can be set through a ``PROMOTER_`` environment variable or a
``.env`` file, e.g. ``PROMOTER_MAX_CONCURRENCY=20``.
"""

from __future__ import annotations

from typing import Any, Literal

import pydantic
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from image_promoter.core.errors import ValidationError
from image_promoter.registry.models import Severity

OUTPUT_FORMATS = ("csv", "yaml")


class PromoterSettings(BaseSettings):
    """Per-run promoter configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PROMOTER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # ── Registries ───────────────────────────────────────────────
    source_registry: str | None = None
    destination_registries: tuple[str, ...] = ()

    # ── Execution ────────────────────────────────────────────────
    max_concurrency: int = Field(default=10, ge=1)
    dry_run: bool = True
    use_service_account: bool = False
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    attempt_timeout: float | None = Field(default=300.0, gt=0)
    run_deadline: float | None = Field(default=None, gt=0)

    # ── Modes ────────────────────────────────────────────────────
    output_format: Literal["csv", "yaml"] = "yaml"
    severity_threshold: Severity = Severity.HIGH

    # ── Credentials ──────────────────────────────────────────────
    registry_token: SecretStr | None = None

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: Literal["json", "console"] | None = None

    def validate_options(self) -> None:
        """Cross-field checks that pydantic field constraints cannot express.

        Raises:
            ValidationError: On the first inconsistent option
        """
        if self.retry_max_delay < self.retry_base_delay:
            raise ValidationError(
                "retry_max_delay must not be smaller than retry_base_delay",
                field="retry_max_delay",
            )
        if len(set(self.destination_registries)) != len(self.destination_registries):
            raise ValidationError(
                "destination_registries contains duplicates",
                field="destination_registries",
            )
        if self.source_registry and self.source_registry in self.destination_registries:
            raise ValidationError(
                f"{self.source_registry!r} is both source and destination",
                field="destination_registries",
            )
        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            raise ValidationError(f"unknown log level {self.log_level!r}", field="log_level")


def load_settings(**overrides: Any) -> PromoterSettings:
    """Build settings from the environment plus explicit overrides.

    ``None`` overrides are dropped so CLI options that were not given fall
    through to the environment.

    Raises:
        ValidationError: If a field fails pydantic validation
    """
    values = {k: v for k, v in overrides.items() if v is not None}
    try:
        return PromoterSettings(**values)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ()))
        raise ValidationError(
            f"invalid option {field or '<root>'}: {first.get('msg')}",
            field=field or None,
            cause=e,
        ) from e


__all__ = ["OUTPUT_FORMATS", "PromoterSettings", "load_settings"]
