"""Foundation layer: structured errors, logging and run settings."""

from image_promoter.core.errors import (
    AggregateRunError,
    AuthError,
    ErrorCategory,
    ErrorContext,
    PromoterError,
    RegistryAccessError,
    TransientError,
    ValidationError,
)
from image_promoter.core.logging import LogContext, configure_logging, get_logger
from image_promoter.core.settings import PromoterSettings, load_settings

__all__ = [
    "AggregateRunError",
    "AuthError",
    "ErrorCategory",
    "ErrorContext",
    "LogContext",
    "PromoterError",
    "PromoterSettings",
    "RegistryAccessError",
    "TransientError",
    "ValidationError",
    "configure_logging",
    "get_logger",
    "load_settings",
]
