"""Wiring for gencache.

This module assembles the generation layer from settings:
- create_orchestrator() builds a fully wired CacheFirstOrchestrator
- open_runtime() manages the process lifecycle (logging, database, Redis)
  around it and registers it as the global orchestrator
"""

from collections.abc import AsyncGenerator
from contextlib import AsyncExitStack, asynccontextmanager

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gencache.config import Settings, get_settings
from gencache.core.database import (
    close_db,
    create_tables,
    get_session_factory,
    init_db,
)
from gencache.core.logging import configure_logging, get_logger
from gencache.services.cache import GenerationCache
from gencache.services.invoker import RetryingInvoker
from gencache.services.orchestrator import CacheFirstOrchestrator
from gencache.services.quota import AdmissionGate, QuotaGate, RedisQuotaGate
from gencache.services.upstream import OpenAIGenerator, UpstreamGenerator

logger = get_logger(__name__)


def create_orchestrator(
    settings: Settings | None = None,
    generator: UpstreamGenerator | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    redis: Redis | None = None,
) -> CacheFirstOrchestrator:
    """Build a CacheFirstOrchestrator from settings.

    Args:
        settings: Optional settings override (defaults to get_settings())
        generator: Upstream generator (defaults to OpenAIGenerator)
        session_factory: Session factory (defaults to the global one, which
            requires init_db() to have run)
        redis: Redis client; when given, quota is shared through Redis

    Returns:
        CacheFirstOrchestrator: Configured orchestrator

    Raises:
        ConfigurationError: If the default generator has no API key
    """
    if settings is None:
        settings = get_settings()
    if generator is None:
        generator = OpenAIGenerator.from_settings(settings)
    if session_factory is None:
        session_factory = get_session_factory()

    gate: AdmissionGate
    if redis is not None:
        gate = RedisQuotaGate.from_settings(redis, settings)
    else:
        gate = QuotaGate.from_settings(settings)

    cache = GenerationCache.from_settings(session_factory, settings)
    invoker = RetryingInvoker.from_settings(generator, gate, settings)

    logger.debug(
        "orchestrator_created",
        gate=type(gate).__name__,
        quota_per_minute=settings.quota_per_minute,
        quota_per_day=settings.quota_per_day,
        max_attempts=settings.retry_max_attempts,
    )
    return CacheFirstOrchestrator.from_settings(cache, invoker, settings)


@asynccontextmanager
async def open_runtime(
    settings: Settings | None = None,
    generator: UpstreamGenerator | None = None,
) -> AsyncGenerator[CacheFirstOrchestrator, None]:
    """Run the generation layer for the duration of the block.

    Handles initialization and cleanup of:
    - Logging configuration
    - Database engine and tables
    - Redis connection (when REDIS_URL is set)
    - Generations still in flight at shutdown

    Usage:
        ```python
        async with open_runtime() as orchestrator:
            resolution = await orchestrator.resolve(...)
        ```
    """
    if settings is None:
        settings = get_settings()

    configure_logging(settings)
    runtime_logger = get_logger(__name__)

    # Cleanups are registered as each resource opens and run in reverse
    # order, so a failed startup still releases what was already opened
    async with AsyncExitStack() as stack:
        # ========================================
        # Startup
        # ========================================
        stack.callback(
            runtime_logger.info, "Runtime shut down", app_name=settings.app_name
        )

        await init_db(settings)
        stack.push_async_callback(close_db)
        await create_tables()

        redis: Redis | None = None
        if settings.redis_url:
            redis = Redis.from_url(settings.redis_url)
            stack.push_async_callback(redis.aclose)

        orchestrator = create_orchestrator(
            settings,
            generator=generator,
            session_factory=get_session_factory(),
            redis=redis,
        )
        set_orchestrator(orchestrator)
        stack.callback(clear_orchestrator)
        stack.push_async_callback(orchestrator.aclose)

        runtime_logger.info(
            "Runtime starting",
            app_name=settings.app_name,
            environment=settings.app_env.value,
            shared_quota=redis is not None,
        )

        yield orchestrator


# Global orchestrator (set by open_runtime)
_orchestrator: CacheFirstOrchestrator | None = None


def set_orchestrator(orchestrator: CacheFirstOrchestrator) -> None:
    """Register the process-wide orchestrator."""
    global _orchestrator
    _orchestrator = orchestrator


def clear_orchestrator() -> None:
    global _orchestrator
    _orchestrator = None


def get_orchestrator() -> CacheFirstOrchestrator:
    """Return the process-wide orchestrator.

    Raises:
        RuntimeError: If open_runtime() (or set_orchestrator) has not run
    """
    if _orchestrator is None:
        raise RuntimeError("Orchestrator not initialized. Use open_runtime() first.")
    return _orchestrator
