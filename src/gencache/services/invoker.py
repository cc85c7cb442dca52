"""RetryingInvoker - one logical generation, several bounded upstream attempts.

Each attempt is: quota admission -> record dispatch -> upstream call (bounded
by a timeout) -> extraction against the expected shape. A failed attempt is
followed by an exponential backoff sleep and a fresh upstream call; the same
response is never re-parsed.

Error classification:
- quota denial (local gate)              -> QuotaExceededError, no retry
- UpstreamRateLimitError (provider 429)  -> QuotaExceededError, no retry
- ConfigurationError                     -> re-raised, no retry
- MalformedResponseError, timeout, other -> retried until attempts run out,
                                            then GenerationFailedError

Every dispatched attempt is charged to the quota gate even if it fails, since
the provider has billed it already.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationInfo, field_validator

from gencache.config import Settings
from gencache.core.exceptions import (
    ConfigurationError,
    GenerationFailedError,
    MalformedResponseError,
    QuotaExceededError,
    UpstreamRateLimitError,
)
from gencache.services.extraction import (
    FallbackTemplate,
    ResponseExtractor,
    ResponseFormat,
)
from gencache.services.quota import AdmissionGate
from gencache.services.upstream import UpstreamGenerator

logger = structlog.get_logger(__name__)

# Used when the provider rate limits without saying for how long
DEFAULT_PROVIDER_RETRY_AFTER_MS = 60_000


class RetryPolicy(BaseModel):
    """Retry policy for upstream generation.

    Args:
        max_attempts: Maximum number of attempts (including the first one)
        base_delay_s: Delay before the first retry
        max_delay_s: Cap on any single delay
    """

    model_config = {"frozen": True}

    max_attempts: int = Field(default=3, ge=1)
    base_delay_s: float = Field(default=1.0, ge=0.0)
    max_delay_s: float = Field(default=30.0, ge=0.0)

    @field_validator("max_delay_s")
    @classmethod
    def validate_max_delay(cls, v: float, info: ValidationInfo) -> float:
        """Ensure max_delay_s >= base_delay_s."""
        base = info.data.get("base_delay_s", 1.0)
        if v < base:
            raise ValueError("max_delay_s must be >= base_delay_s")
        return v

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay_s=settings.retry_backoff_base_s,
            max_delay_s=settings.retry_backoff_max_s,
        )

    def compute_delay(self, retry: int) -> float:
        """Delay before the given retry (1 = first retry after the first attempt)."""
        return min(self.max_delay_s, self.base_delay_s * (2 ** (retry - 1)))


@dataclass(frozen=True)
class InvocationResult:
    """Outcome of a successful invocation."""

    value: Any
    attempts: int
    strategy: str
    degraded: bool = False


class RetryingInvoker:
    """Quota-gated, retrying wrapper around one upstream generator.

    Usage:
        ```python
        invoker = RetryingInvoker(generator, QuotaGate(12, 1400))
        result = await invoker.invoke(prompt, ChapterOverview)
        ```
    """

    def __init__(
        self,
        generator: UpstreamGenerator,
        gate: AdmissionGate,
        *,
        extractor: ResponseExtractor | None = None,
        policy: RetryPolicy | None = None,
        timeout_s: float = 60.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the invoker.

        Args:
            generator: Upstream generator adapter
            gate: Quota gate shared by every caller of the same upstream key
            extractor: Response extractor (default instance if None)
            policy: Retry policy (defaults if None)
            timeout_s: Bounded wait for a single upstream call
            sleep: Backoff sleep (injectable for tests)
        """
        self.generator = generator
        self.gate = gate
        self.extractor = extractor or ResponseExtractor()
        self.policy = policy or RetryPolicy()
        self.timeout_s = timeout_s
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        generator: UpstreamGenerator,
        gate: AdmissionGate,
        settings: Settings,
    ) -> RetryingInvoker:
        return cls(
            generator,
            gate,
            policy=RetryPolicy.from_settings(settings),
            timeout_s=settings.upstream_timeout_s,
        )

    async def invoke(
        self,
        prompt: str,
        expected_shape: Any = Any,
        response_format: ResponseFormat = ResponseFormat.JSON,
        fallback: FallbackTemplate | None = None,
    ) -> InvocationResult:
        """Generate and extract a value, retrying transient failures.

        The fallback template, if any, is only offered on the last attempt so
        that genuine retries come first.

        Raises:
            QuotaExceededError: Local quota denied, or the provider rate limited
            ConfigurationError: The upstream adapter is misconfigured
            GenerationFailedError: Every attempt failed
        """
        max_attempts = self.policy.max_attempts
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                delay = self.policy.compute_delay(attempt - 1)
                logger.info(
                    "generation_retry_scheduled", attempt=attempt, delay_s=delay
                )
                await self._sleep(delay)

            admission = await self.gate.admit()
            if not admission.allowed:
                raise QuotaExceededError(admission.retry_after_ms)
            await self.gate.record_dispatch()

            try:
                text = await asyncio.wait_for(
                    self.generator.generate(prompt, response_format),
                    timeout=self.timeout_s,
                )
            except ConfigurationError as e:
                logger.error("generation_misconfigured", error=str(e))
                raise
            except UpstreamRateLimitError as e:
                retry_after_ms = (
                    e.retry_after_ms
                    if e.retry_after_ms is not None
                    else DEFAULT_PROVIDER_RETRY_AFTER_MS
                )
                logger.warning(
                    "generation_provider_rate_limited", retry_after_ms=retry_after_ms
                )
                raise QuotaExceededError(
                    retry_after_ms,
                    message="AI service is temporarily busy. Please try again shortly.",
                ) from e
            except TimeoutError as e:
                last_error = e
                logger.warning(
                    "generation_attempt_failed",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error_type="TimeoutError",
                    error=f"no response within {self.timeout_s}s",
                )
                continue
            except Exception as e:
                last_error = e
                logger.warning(
                    "generation_attempt_failed",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                continue

            try:
                extracted = self.extractor.extract(
                    text,
                    expected_shape,
                    response_format,
                    fallback if attempt == max_attempts else None,
                )
            except MalformedResponseError as e:
                last_error = e
                logger.warning(
                    "generation_attempt_failed",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error_type=type(e).__name__,
                    error=e.reason,
                )
                continue

            return InvocationResult(
                value=extracted.value,
                attempts=attempt,
                strategy=extracted.strategy,
                degraded=extracted.degraded,
            )

        logger.error(
            "generation_failed",
            attempts=max_attempts,
            error_type=type(last_error).__name__ if last_error else None,
        )
        raise GenerationFailedError(
            cause=last_error, attempts=max_attempts
        ) from last_error
