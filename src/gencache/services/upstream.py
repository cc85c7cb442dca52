"""Upstream generative service adapters.

The core treats the upstream model as one opaque call:

    async generate(prompt, response_format) -> str

Adapters own provider specifics (authentication, model selection, request
shaping) and translate provider failures into the gencache taxonomy so the
invoker can classify them:

- ConfigurationError       bad credentials or a request the provider rejects
                           as invalid (unknown model, bad parameters), never
                           retried
- UpstreamRateLimitError   the provider rejected the call for quota reasons
- UpstreamError            anything else transient, retried with backoff
"""

from __future__ import annotations

from typing import Any, Protocol

import openai
import structlog
from openai import AsyncOpenAI

from gencache.config import Settings
from gencache.core.exceptions import (
    ConfigurationError,
    UpstreamError,
    UpstreamRateLimitError,
)
from gencache.services.extraction import ResponseFormat

logger = structlog.get_logger(__name__)

# 4xx statuses that can succeed on a later attempt
_RETRYABLE_4XX = frozenset({408, 409, 429})


class UpstreamGenerator(Protocol):
    """A single request/response call to a generative model."""

    async def generate(self, prompt: str, response_format: ResponseFormat) -> str: ...


class OpenAIGenerator:
    """Upstream generator backed by the OpenAI chat completions API.

    Retries are disabled on the SDK client; RetryingInvoker owns retry policy
    so every attempt is charged to the quota gate.

    Usage:
        ```python
        generator = OpenAIGenerator.from_settings(get_settings())
        text = await generator.generate(prompt, ResponseFormat.JSON)
        ```
    """

    def __init__(
        self,
        api_key: str,
        *,
        model: str,
        temperature: float = 0.3,
        max_tokens: int = 8192,
        timeout: float = 60.0,
        client: AsyncOpenAI | None = None,
    ) -> None:
        """Initialize the generator.

        Raises:
            ConfigurationError: If no API key is configured
        """
        if not api_key and client is None:
            raise ConfigurationError("OPENAI_API_KEY is not configured")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client or AsyncOpenAI(
            api_key=api_key, timeout=timeout, max_retries=0
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> OpenAIGenerator:
        return cls(
            settings.openai_api_key.get_secret_value(),
            model=settings.openai_model,
            temperature=settings.openai_temperature,
            max_tokens=settings.openai_max_tokens,
            timeout=settings.upstream_timeout_s,
        )

    async def generate(self, prompt: str, response_format: ResponseFormat) -> str:
        """Send one prompt and return the completion text.

        Raises:
            ConfigurationError: On authentication failures or any other request
                the provider rejects as invalid (unknown model, bad parameters)
            UpstreamRateLimitError: On HTTP 429 from the provider
            UpstreamError: On any other API failure or an empty completion
        """
        kwargs: dict[str, Any] = {}
        if response_format is ResponseFormat.JSON:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            completion = await self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                **kwargs,
            )
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise ConfigurationError(f"OpenAI rejected the credentials: {e}") from e
        except openai.RateLimitError as e:
            raise UpstreamRateLimitError(
                retry_after_ms=_retry_after_ms(e.response.headers.get("retry-after")),
                message=f"OpenAI rate limit: {e}",
            ) from e
        except openai.APIStatusError as e:
            if 400 <= e.status_code < 500 and e.status_code not in _RETRYABLE_4XX:
                raise ConfigurationError(
                    f"OpenAI rejected the request ({e.status_code}): {e}"
                ) from e
            raise UpstreamError(f"OpenAI request failed: {e}") from e
        except openai.APIError as e:
            raise UpstreamError(f"OpenAI request failed: {e}") from e

        choice = completion.choices[0] if completion.choices else None
        text = choice.message.content if choice else None
        if not text or not text.strip():
            raise UpstreamError("AI returned empty response")

        if choice.finish_reason == "length":
            logger.warning("upstream_output_truncated", model=self.model)
        return text


def _retry_after_ms(value: str | None) -> int | None:
    """Parse a numeric Retry-After header (seconds) into milliseconds."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return int(seconds * 1000) if seconds >= 0 else None
