"""
Structured error types for image promotion.

Every failure the promoter can surface is a ``PromoterError`` carrying a
category, a retryable flag and an ``ErrorContext`` describing where in the
run it happened (phase, registry, image, digest, tag). The scheduler only
looks at ``retryable`` when deciding whether to try an edge again, so the
flag is the contract between transports and the execution engine.

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                        PromoterError                          │
        │         (category, retryable, retry_after, context)           │
        ├──────────────────────────────────────────────────────────────┤
        │  TransientError (retryable)     ValidationError               │
        │    NetworkError                   ManifestConflictError       │
        │    RateLimitError                                             │
        │    AttemptTimeoutError          AuthError                     │
        │    TransientAuthError             (TransientAuthError above)  │
        │                                                                │
        │  RegistryAccessError            EdgeExecutionError            │
        │  DependencySkipped              AggregateRunError(report)     │
        │  RunCancelledError              ScanError                     │
        └──────────────────────────────────────────────────────────────┘

Propagation:
    - Transient errors are retried inside the scheduler and never escape it.
    - Per-edge errors are recorded on the edge result, never raised.
    - Everything else is tagged with the phase it occurred in and raised.

Examples:
    >>> err = NetworkError("connection reset")
    >>> err.retryable
    True
    >>> err.with_context(phase="collecting inventory", registry="gcr.io/prod")
    NetworkError('connection reset', category=NETWORK)
    >>> err.context.phase
    'collecting inventory'
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for classification and reporting."""

    NETWORK = "NETWORK"
    REGISTRY = "REGISTRY"
    VALIDATION = "VALIDATION"
    CONFIG = "CONFIG"
    AUTH = "AUTH"
    EXECUTION = "EXECUTION"
    DEPENDENCY = "DEPENDENCY"
    SCAN = "SCAN"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Attributes:
        phase: Run phase the error surfaced in (e.g. "creating sync context")
        registry: Registry name involved, if any
        image: Image name involved, if any
        digest: Digest involved, if any
        tag: Tag involved, if any
        metadata: Additional key-value pairs
    """

    phase: str | None = None
    registry: str | None = None
    image: str | None = None
    digest: str | None = None
    tag: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["phase", "registry", "image", "digest", "tag"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class PromoterError(Exception):
    """Base exception for every promoter failure.

    Subclasses set ``default_category`` and ``default_retryable`` so call
    sites rarely need to pass them explicitly.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> PromoterError:
        """Add context to this error (fluent API).

        Existing context fields are only filled in, never overwritten, so the
        innermost phase or registry wins when an error is re-tagged on its
        way up.
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                if getattr(self.context, key) is None:
                    setattr(self.context, key, value)
            else:
                self.context.metadata.setdefault(key, value)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __str__(self) -> str:
        if self.context.phase:
            return f"{self.context.phase}: {self.message}"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (retried by the scheduler)
# =============================================================================


class TransientError(PromoterError):
    """Temporary failure that may succeed on retry."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class NetworkError(TransientError):
    """Connection reset, DNS failure, 5xx from a registry."""


class RateLimitError(TransientError):
    """Registry answered 429."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after: float | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, retry_after=retry_after, **kwargs)


class AttemptTimeoutError(TransientError):
    """A single edge attempt exceeded its deadline."""

    def __init__(self, timeout: float, operation: str = "operation", **kwargs: Any):
        self.timeout = timeout
        self.operation = operation
        super().__init__(f"Operation '{operation}' timed out after {timeout}s", **kwargs)


# =============================================================================
# FATAL RUN ERRORS
# =============================================================================


class ValidationError(PromoterError):
    """Bad options or manifests. Raised before any network activity."""

    default_category = ErrorCategory.VALIDATION

    def __init__(self, message: str, *, field: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        return result


class ManifestConflictError(ValidationError):
    """Two manifests map the same destination tag to different digests."""

    def __init__(
        self,
        registry: str,
        image: str,
        tag: str,
        digests: tuple[str, str],
    ):
        self.digests = digests
        super().__init__(
            f"tag {tag!r} of {image!r} at {registry!r} is declared for both "
            f"{digests[0]} and {digests[1]}",
            context=ErrorContext(registry=registry, image=image, tag=tag),
        )


class AuthError(PromoterError):
    """Credential activation or authorization failed."""

    default_category = ErrorCategory.AUTH


class TransientAuthError(TransientError):
    """Token expired or not yet propagated; worth another attempt."""

    default_category = ErrorCategory.AUTH


class RegistryAccessError(PromoterError):
    """A registry could not be read."""

    default_category = ErrorCategory.REGISTRY

    def __init__(self, registry: str, message: str | None = None, **kwargs: Any):
        self.registry = registry
        super().__init__(message or f"registry {registry!r} is unreachable", **kwargs)
        self.context.registry = registry


# =============================================================================
# PER-EDGE OUTCOMES (recorded, never raised past the scheduler)
# =============================================================================


class EdgeExecutionError(PromoterError):
    """An edge's transfer failed permanently (after any retries)."""

    default_category = ErrorCategory.EXECUTION

    def __init__(self, message: str, *, attempts: int = 1, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.attempts = attempts


class DependencySkipped(PromoterError):
    """A verify-parent edge withheld because a child edge did not succeed."""

    default_category = ErrorCategory.DEPENDENCY

    def __init__(self, failed: list[str], **kwargs: Any):
        self.failed = failed
        super().__init__(f"skipped; {len(failed)} dependency edge(s) did not succeed", **kwargs)


class ScanError(PromoterError):
    """The vulnerability scanner could not produce a report."""

    default_category = ErrorCategory.SCAN


class RunCancelledError(PromoterError):
    """Dispatch was stopped by a cancellation signal or run deadline."""

    default_category = ErrorCategory.EXECUTION


class AggregateRunError(PromoterError):
    """Summary of the non-fatal failures of a run.

    ``report`` is the mode-specific report (``RunReport``, ``ScanReport``
    summary or ``ManifestListReport``) so callers can inspect partial
    success after catching the error.
    """

    default_category = ErrorCategory.EXECUTION

    def __init__(self, message: str, *, report: Any, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.report = report


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is worth another attempt."""
    if isinstance(error, PromoterError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError))


def get_retry_after(error: BaseException) -> float | None:
    """Get the server-requested retry delay, if any."""
    if isinstance(error, PromoterError):
        return error.retry_after
    return None


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "PromoterError",
    # Transient
    "TransientError",
    "NetworkError",
    "RateLimitError",
    "AttemptTimeoutError",
    "TransientAuthError",
    # Fatal
    "ValidationError",
    "ManifestConflictError",
    "AuthError",
    "RegistryAccessError",
    # Per-edge
    "EdgeExecutionError",
    "DependencySkipped",
    "RunCancelledError",
    "ScanError",
    "AggregateRunError",
    # Utilities
    "is_retryable",
    "get_retry_after",
]
