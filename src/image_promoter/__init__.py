"""
image-promoter: declarative container image promotion between registries.

A promotion manifest names one source registry, any number of destination
registries and the image digests (with tags) that should exist at every
destination. The promoter reads each registry, computes the minimal set of
copy and retag operations that make the destinations agree with the
manifests, and runs them with bounded concurrency.

Packages::

    core/       errors, structlog setup, PromoterSettings
    registry/   domain models, capability contracts, manifest parsing,
                snapshot output, HTTP client, in-memory fixture, scanner
    engine/     sync context, edge computation, scheduler, retry, fan-out
    modes/      Promoter driver: promote, security scan, snapshot,
                manifest-list checks
    cli/        typer application ``image-promoter``
"""

__version__ = "0.4.0"

from image_promoter.core.errors import AggregateRunError, PromoterError
from image_promoter.core.settings import PromoterSettings, load_settings
from image_promoter.modes.promoter import Promoter

__all__ = [
    "AggregateRunError",
    "Promoter",
    "PromoterError",
    "PromoterSettings",
    "load_settings",
    "__version__",
]
