"""Custom exception hierarchy for gencache.

This module defines a consistent exception hierarchy that enables:
- Structured error payloads with machine-readable error codes
- An HTTP status hint the surrounding application can map to a response
- Typed propagation so callers can tell "try again shortly" (quota) from
  "try again never" (configuration) from "try again now" (malformed/transient)

Usage:
    from gencache.core.exceptions import QuotaExceededError

    raise QuotaExceededError(retry_after_ms=12_000)
"""

from typing import Any

EXCERPT_LENGTH = 500


class GenCacheError(Exception):
    """Base exception for all gencache errors.

    Attributes:
        code: Machine-readable error code (e.g., "QUOTA_EXCEEDED")
        message: Human-readable error message
        status_code: HTTP status code the caller should map this error to
        details: Additional error details (optional)
    """

    code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"
    status_code: int = 500

    def __init__(
        self,
        message: str | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Override default message
            code: Override default error code
            details: Additional error details
        """
        if message:
            self.message = message
        if code:
            self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self, request_id: str | None = None) -> dict[str, Any]:
        """Convert exception to an error response payload.

        Args:
            request_id: Request correlation ID

        Returns:
            Error response dictionary
        """
        error: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if request_id:
            error["request_id"] = request_id
        if self.details:
            error["details"] = self.details
        return {"error": error}


# =============================================================================
# Input Errors (400)
# =============================================================================


class FingerprintError(GenCacheError):
    """Raised when a semantic input cannot be canonically serialized."""

    code: str = "FINGERPRINT_ERROR"
    message: str = "Input cannot be fingerprinted"
    status_code: int = 400

    def __init__(
        self, type_name: str | None = None, message: str | None = None
    ) -> None:
        details: dict[str, Any] = {}
        if type_name:
            details["type"] = type_name
            if not message:
                message = f"Object of type {type_name} is not serializable"
        super().__init__(message=message, details=details if details else None)


# =============================================================================
# Quota Errors (429)
# =============================================================================


class QuotaExceededError(GenCacheError):
    """Raised when the upstream call budget is exhausted.

    Never retried internally; the caller should wait `retry_after_ms`.
    """

    code: str = "QUOTA_EXCEEDED"
    message: str = "Generation quota exceeded"
    status_code: int = 429

    def __init__(self, retry_after_ms: int, message: str | None = None) -> None:
        self.retry_after_ms = max(0, int(retry_after_ms))
        if not message:
            message = (
                "Rate limit exceeded. Please try again in "
                f"{self.retry_after_seconds} seconds."
            )
        super().__init__(
            message=message, details={"retry_after_ms": self.retry_after_ms}
        )

    @property
    def retry_after_seconds(self) -> int:
        """Retry-after rounded up to whole seconds."""
        return -(-self.retry_after_ms // 1000)


# =============================================================================
# Upstream Errors (502)
# =============================================================================


class UpstreamError(GenCacheError):
    """Raised by upstream generators for transient provider failures."""

    code: str = "UPSTREAM_ERROR"
    message: str = "Upstream generative service error"
    status_code: int = 502


class UpstreamRateLimitError(UpstreamError):
    """Raised by upstream generators when the provider itself rate limits."""

    code: str = "UPSTREAM_RATE_LIMITED"
    message: str = "Upstream generative service is rate limiting"
    status_code: int = 429

    def __init__(
        self, retry_after_ms: int | None = None, message: str | None = None
    ) -> None:
        self.retry_after_ms = retry_after_ms
        details = (
            {"retry_after_ms": retry_after_ms} if retry_after_ms is not None else None
        )
        super().__init__(message=message, details=details)


# =============================================================================
# Generation Errors (502)
# =============================================================================


class GenerationError(GenCacheError):
    """Base class for generation-layer failures."""

    code: str = "GENERATION_ERROR"
    message: str = "Content generation failed"
    status_code: int = 502


class MalformedResponseError(GenerationError):
    """Raised when no usable value can be extracted from an upstream response."""

    code: str = "MALFORMED_RESPONSE"
    message: str = "Failed to parse AI response"

    def __init__(
        self,
        raw: str,
        reason: str | None = None,
        message: str | None = None,
    ) -> None:
        self.excerpt = raw[:EXCERPT_LENGTH]
        self.reason = reason
        details: dict[str, Any] = {"excerpt": self.excerpt}
        if reason:
            details["reason"] = reason
        super().__init__(message=message, details=details)


class GenerationFailedError(GenerationError):
    """Raised when every attempt of a generation failed.

    The last underlying error is kept on `cause` (and chained as __cause__).
    """

    code: str = "GENERATION_FAILED"
    message: str = "Failed to generate content after multiple attempts"

    def __init__(
        self,
        cause: BaseException | None = None,
        attempts: int = 0,
        message: str | None = None,
    ) -> None:
        self.cause = cause
        self.attempts = attempts
        details: dict[str, Any] = {"attempts": attempts}
        if cause is not None:
            details["cause"] = f"{type(cause).__name__}: {cause}"
        super().__init__(message=message, details=details)


# =============================================================================
# Configuration & Infrastructure Errors (500)
# =============================================================================


class ConfigurationError(GenCacheError):
    """Raised for fatal setup problems (e.g. missing credentials). Never retried."""

    code: str = "CONFIGURATION_ERROR"
    message: str = "AI service configuration error. Please contact support."


class CachePersistenceError(GenCacheError):
    """Raised inside the cache layer when the store fails.

    Never surfaced to `resolve()` callers; the cache logs and absorbs it.
    """

    code: str = "CACHE_PERSISTENCE_ERROR"
    message: str = "Cache store operation failed"

    def __init__(self, operation: str, error: str | None = None) -> None:
        details: dict[str, Any] = {"operation": operation}
        if error:
            details["error"] = error
        super().__init__(
            message=f"Cache store operation '{operation}' failed", details=details
        )
