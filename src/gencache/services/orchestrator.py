"""CacheFirstOrchestrator - public entry point of the generation layer.

resolve() turns a request into an artifact:

    fingerprint(input) -> cache lookup -> [hit] decode and return
                                       -> [miss] build prompt -> invoke
                                                 -> store -> return

Concurrent misses for the same (cache_key, input_hash) share one in-flight
generation. The generate-and-store task is shielded from caller
cancellation: an upstream call that was already paid for still lands in the
cache. aclose() waits for such tasks.

Multi-stage chains are declared with ChainStage. resolve_stage() resolves a
stage cache-first; only on a miss are its dependencies resolved (themselves
cache-first) and handed to its prompt builder.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from typing import Any

import structlog
from pydantic import ValidationError

from gencache.config import Settings
from gencache.core.logging import generation_context
from gencache.services.cache import CacheStats, GenerationCache
from gencache.services.extraction import (
    FallbackTemplate,
    ResponseFormat,
    decode_artifact,
    encode_artifact,
)
from gencache.services.fingerprint import fingerprint
from gencache.services.invoker import RetryingInvoker
from gencache.services.quota import QuotaInfo

logger = structlog.get_logger(__name__)

PromptBuilder = Callable[[Any], str | Awaitable[str]]
StagePromptBuilder = Callable[[Any, dict[str, Any]], str | Awaitable[str]]


async def _maybe_await(value: str | Awaitable[str]) -> str:
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass(frozen=True)
class GenerationRequest:
    """What to generate and where it is cached."""

    cache_key: str
    cache_type: str
    semantic_input: Any
    expires_in_days: float | None = None


@dataclass(frozen=True)
class Resolution:
    """Artifact returned by the orchestrator.

    Attributes:
        output: The validated value
        cached: True if served from the cache
        cache_key: Cache key the artifact lives under
        input_hash: Fingerprint of the semantic input
        degraded: True if a fallback template supplied the value (never cached)
    """

    output: Any
    cached: bool
    cache_key: str
    input_hash: str
    degraded: bool = False


@dataclass(frozen=True)
class ChainStage:
    """One stage of a multi-stage generation chain.

    Attributes:
        name: Stage name; also the key its output is passed under to dependents
        cache_type: Cache type of the stage's entries
        build_prompt: (context, dependency outputs by stage name) -> prompt,
            sync or async
        cache_key: Fixed key, or a callable deriving it from the context
            (defaults to the stage name)
        build_input: Derives the semantic input from the context (defaults to
            the context itself)
        expected_shape: Shape the stage output must validate against
        response_format: JSON or TEXT
        expires_in_days: Lifetime of the stage's entries
        fallback: Fallback template used when extraction keeps failing
        depends_on: Stages whose outputs the prompt needs, resolved in order
    """

    name: str
    cache_type: str
    build_prompt: StagePromptBuilder
    cache_key: str | Callable[[Any], str] | None = None
    build_input: Callable[[Any], Any] | None = None
    expected_shape: Any = Any
    response_format: ResponseFormat = ResponseFormat.JSON
    expires_in_days: float | None = None
    fallback: FallbackTemplate | None = None
    depends_on: tuple[ChainStage, ...] = ()

    def key_for(self, context: Any) -> str:
        if self.cache_key is None:
            return self.name
        if callable(self.cache_key):
            return self.cache_key(context)
        return self.cache_key

    def input_for(self, context: Any) -> Any:
        return self.build_input(context) if self.build_input else context


class CacheFirstOrchestrator:
    """Cache-first generation with quota-gated, retrying misses.

    Usage:
        ```python
        orchestrator = CacheFirstOrchestrator(cache, invoker)
        resolution = await orchestrator.resolve(
            "summary-S1",
            "summary",
            {"subject": "S1"},
            lambda inp: f"Summarize {inp['subject']} as JSON",
            Summary,
            expires_in_days=7,
        )
        ```
    """

    def __init__(
        self,
        cache: GenerationCache,
        invoker: RetryingInvoker,
        *,
        coalesce_inflight: bool = True,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            cache: Generation cache
            invoker: Retrying invoker (owns the quota gate)
            coalesce_inflight: Share one generation between concurrent
                identical misses
        """
        self.cache = cache
        self.invoker = invoker
        self.coalesce_inflight = coalesce_inflight
        self._inflight: dict[tuple[str, str], asyncio.Task[Resolution]] = {}
        self._tasks: set[asyncio.Task[Resolution]] = set()

    @classmethod
    def from_settings(
        cls,
        cache: GenerationCache,
        invoker: RetryingInvoker,
        settings: Settings,
    ) -> CacheFirstOrchestrator:
        return cls(cache, invoker, coalesce_inflight=settings.cache_coalesce_inflight)

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    async def resolve(
        self,
        cache_key: str,
        cache_type: str,
        semantic_input: Any,
        prompt_builder: PromptBuilder,
        expected_shape: Any = Any,
        *,
        expires_in_days: float | None = None,
        response_format: ResponseFormat = ResponseFormat.JSON,
        fallback: FallbackTemplate | None = None,
    ) -> Resolution:
        """Return the artifact for a request, generating it on a cache miss.

        Raises:
            FingerprintError: If the semantic input cannot be fingerprinted
            QuotaExceededError: If the upstream budget is exhausted
            ConfigurationError: If the upstream adapter is misconfigured
            GenerationFailedError: If every upstream attempt failed
        """
        input_hash = fingerprint(semantic_input)

        with generation_context(cache_key, input_hash):
            cached = await self._lookup(
                cache_key, input_hash, expected_shape, response_format
            )
            if cached is not None:
                return cached

            async def build() -> str:
                return await _maybe_await(prompt_builder(semantic_input))

            return await self._generate(
                build,
                cache_key=cache_key,
                cache_type=cache_type,
                semantic_input=semantic_input,
                input_hash=input_hash,
                expected_shape=expected_shape,
                response_format=response_format,
                expires_in_days=expires_in_days,
                fallback=fallback,
            )

    async def resolve_request(
        self,
        request: GenerationRequest,
        prompt_builder: PromptBuilder,
        expected_shape: Any = Any,
        *,
        response_format: ResponseFormat = ResponseFormat.JSON,
        fallback: FallbackTemplate | None = None,
    ) -> Resolution:
        """resolve() for callers holding a GenerationRequest."""
        return await self.resolve(
            request.cache_key,
            request.cache_type,
            request.semantic_input,
            prompt_builder,
            expected_shape,
            expires_in_days=request.expires_in_days,
            response_format=response_format,
            fallback=fallback,
        )

    async def resolve_stage(self, stage: ChainStage, context: Any) -> Resolution:
        """Resolve one chain stage, generating missing dependencies first.

        The stage's own entry is checked before anything else, so a cached
        stage costs one lookup whatever the state of its dependencies.
        """
        cache_key = stage.key_for(context)
        semantic_input = stage.input_for(context)
        input_hash = fingerprint(semantic_input)

        with generation_context(cache_key, input_hash, stage=stage.name):
            cached = await self._lookup(
                cache_key, input_hash, stage.expected_shape, stage.response_format
            )
            if cached is not None:
                return cached

        dependencies: dict[str, Any] = {}
        for dependency in stage.depends_on:
            resolved = await self.resolve_stage(dependency, context)
            dependencies[dependency.name] = resolved.output

        async def build() -> str:
            return await _maybe_await(stage.build_prompt(context, dependencies))

        with generation_context(cache_key, input_hash, stage=stage.name):
            return await self._generate(
                build,
                cache_key=cache_key,
                cache_type=stage.cache_type,
                semantic_input=semantic_input,
                input_hash=input_hash,
                expected_shape=stage.expected_shape,
                response_format=stage.response_format,
                expires_in_days=stage.expires_in_days,
                fallback=stage.fallback,
            )

    async def _lookup(
        self,
        cache_key: str,
        input_hash: str,
        expected_shape: Any,
        response_format: ResponseFormat,
    ) -> Resolution | None:
        artifact = await self.cache.lookup(cache_key, input_hash)
        if artifact is None:
            return None
        try:
            value = decode_artifact(artifact.output, expected_shape, response_format)
        except ValidationError as e:
            logger.warning("cache_payload_invalid", errors=e.error_count())
            return None
        return Resolution(
            output=value, cached=True, cache_key=cache_key, input_hash=input_hash
        )

    async def _generate(
        self,
        build_prompt: Callable[[], Awaitable[str]],
        **request: Any,
    ) -> Resolution:
        flight = (request["cache_key"], request["input_hash"])

        task = self._inflight.get(flight) if self.coalesce_inflight else None
        if task is not None:
            logger.debug("generation_coalesced")
        else:
            task = asyncio.create_task(
                self._generate_and_store(build_prompt, **request)
            )
            self._tasks.add(task)
            if self.coalesce_inflight:
                self._inflight[flight] = task
            task.add_done_callback(partial(self._forget, flight))

        return await asyncio.shield(task)

    def _forget(self, flight: tuple[str, str], task: asyncio.Task[Resolution]) -> None:
        self._tasks.discard(task)
        if self._inflight.get(flight) is task:
            del self._inflight[flight]
        # Mark the outcome as retrieved even if every waiter was cancelled
        if not task.cancelled():
            task.exception()

    async def _generate_and_store(
        self,
        build_prompt: Callable[[], Awaitable[str]],
        *,
        cache_key: str,
        cache_type: str,
        semantic_input: Any,
        input_hash: str,
        expected_shape: Any,
        response_format: ResponseFormat,
        expires_in_days: float | None,
        fallback: FallbackTemplate | None,
    ) -> Resolution:
        logger.info("generation_started", cache_type=cache_type)
        prompt = await build_prompt()
        result = await self.invoker.invoke(
            prompt, expected_shape, response_format, fallback
        )

        if result.degraded:
            logger.warning("generation_degraded_not_cached", cache_type=cache_type)
        else:
            await self.cache.store(
                cache_key,
                cache_type,
                input_hash,
                encode_artifact(result.value, expected_shape, response_format),
                expires_in_days=expires_in_days,
                semantic_input=semantic_input,
            )
            logger.info(
                "generation_completed", cache_type=cache_type, attempts=result.attempts
            )

        return Resolution(
            output=result.value,
            cached=False,
            cache_key=cache_key,
            input_hash=input_hash,
            degraded=result.degraded,
        )

    # -------------------------------------------------------------------------
    # Management
    # -------------------------------------------------------------------------

    async def invalidate(self, cache_key: str) -> int:
        """Drop every cached artifact under a cache key."""
        return await self.cache.invalidate(cache_key)

    async def invalidate_type(self, cache_type: str) -> int:
        """Drop every cached artifact of a cache type."""
        return await self.cache.invalidate_type(cache_type)

    async def sweep_expired(self) -> int:
        return await self.cache.sweep_expired()

    async def stats(self) -> CacheStats:
        return await self.cache.stats()

    async def quota_info(self) -> QuotaInfo:
        """Remaining upstream budget."""
        return await self.invoker.gate.quota_info()

    async def aclose(self) -> None:
        """Wait for generations still running after their callers left."""
        pending = list(self._tasks)
        if pending:
            logger.info("orchestrator_draining", pending=len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
