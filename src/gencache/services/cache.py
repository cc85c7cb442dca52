"""GenerationCache - persistent cache of generated artifacts.

Entries are addressed by (cache_key, input_hash), where input_hash is the
fingerprint of the semantic input that produced the artifact. On top of the
plain get/put the cache provides:
- Hit counting (hit_count + last_used_at bumped on every hit)
- Optional expiry, enforced lazily on lookup and in batch by sweep_expired()
- Invalidation by cache key or by cache type
- Aggregate statistics

The cache is an optimization, never a source of failure: store errors are
logged and absorbed (lookup -> miss, store -> no-op, deletes -> 0, stats ->
empty). Generated artifacts are worth keeping, so failures are logged at
warning level rather than debug.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gencache.config import Settings
from gencache.core.exceptions import CachePersistenceError
from gencache.repositories.generation_cache import GenerationCacheRepository
from gencache.services.fingerprint import canonical_json

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands timestamps back without tzinfo; they were written as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


@dataclass(frozen=True)
class CachedArtifact:
    """A live cache entry as seen by a lookup."""

    output: str
    cache_type: str
    hit_count: int
    created_at: datetime | None
    last_used_at: datetime | None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class CacheStats:
    """Cache-wide counters."""

    total_entries: int = 0
    total_hits: int = 0
    by_type: dict[str, int] = field(default_factory=dict)


class GenerationCache:
    """SQL-backed generation cache.

    Every operation runs in its own short session from `session_factory`, so
    the cache can be shared by concurrent tasks.

    Usage:
        ```python
        cache = GenerationCache(get_session_factory())
        await cache.store("summary-S1", "summary", input_hash, payload)
        artifact = await cache.lookup("summary-S1", input_hash)
        ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        default_expiry_days: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the cache.

        Args:
            session_factory: Factory for database sessions
            default_expiry_days: Expiry applied when store() gets none (None = never)
            clock: Returns the current time as an aware UTC datetime
        """
        self._session_factory = session_factory
        self.default_expiry_days = default_expiry_days
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
    ) -> GenerationCache:
        return cls(
            session_factory, default_expiry_days=settings.cache_default_expiry_days
        )

    @asynccontextmanager
    async def _repository(
        self, operation: str
    ) -> AsyncIterator[GenerationCacheRepository]:
        """Yield a repository on a fresh session and commit on success.

        Raises:
            CachePersistenceError: If anything in the block touching the store fails
        """
        try:
            async with self._session_factory() as session:
                yield GenerationCacheRepository(session)
                await session.commit()
        except CachePersistenceError:
            raise
        except Exception as e:
            raise CachePersistenceError(operation, str(e)) from e

    async def lookup(self, cache_key: str, input_hash: str) -> CachedArtifact | None:
        """Return the live entry for (cache_key, input_hash), if any.

        An expired entry is treated as absent (it stays in the table until
        the next sweep or overwrite). A hit bumps hit_count; if the bump
        fails the hit is still returned.
        """
        try:
            async with self._repository("lookup") as repo:
                entry = await repo.get_entry(cache_key, input_hash)
                artifact = (
                    CachedArtifact(
                        output=entry.output,
                        cache_type=entry.cache_type,
                        hit_count=entry.hit_count,
                        created_at=_as_utc(entry.created_at),
                        last_used_at=_as_utc(entry.last_used_at),
                        expires_at=_as_utc(entry.expires_at),
                    )
                    if entry is not None
                    else None
                )
        except CachePersistenceError as e:
            logger.warning(
                "cache_lookup_failed", cache_key=cache_key, error=e.details.get("error")
            )
            return None

        if artifact is None:
            logger.debug("cache_miss", cache_key=cache_key)
            return None

        now = self._clock()
        if artifact.expires_at is not None and now > artifact.expires_at:
            logger.debug(
                "cache_expired",
                cache_key=cache_key,
                expires_at=artifact.expires_at.isoformat(),
            )
            return None

        try:
            async with self._repository("bump_hit") as repo:
                await repo.bump_hit(cache_key, input_hash, now)
        except CachePersistenceError as e:
            logger.warning(
                "cache_hit_bump_failed",
                cache_key=cache_key,
                error=e.details.get("error"),
            )
            return artifact

        logger.debug("cache_hit", cache_key=cache_key, hit_count=artifact.hit_count + 1)
        return CachedArtifact(
            output=artifact.output,
            cache_type=artifact.cache_type,
            hit_count=artifact.hit_count + 1,
            created_at=artifact.created_at,
            last_used_at=now,
            expires_at=artifact.expires_at,
        )

    async def store(
        self,
        cache_key: str,
        cache_type: str,
        input_hash: str,
        output: str,
        expires_in_days: float | None = None,
        semantic_input: Any = None,
    ) -> bool:
        """Insert or overwrite the entry for (cache_key, input_hash).

        Args:
            cache_key: Logical cache key
            cache_type: Classification used for stats and scoped invalidation
            input_hash: Fingerprint of the semantic input
            output: Encoded artifact payload
            expires_in_days: Lifetime (fractions allowed); default expiry if None
            semantic_input: Kept beside the entry for diagnostics

        Returns:
            True if the entry was written
        """
        now = self._clock()
        days = expires_in_days
        if days is None:
            days = self.default_expiry_days
        expires_at = now + timedelta(days=days) if days is not None else None
        input_json = (
            json.loads(canonical_json(semantic_input))
            if semantic_input is not None
            else None
        )

        try:
            async with self._repository("store") as repo:
                await repo.upsert(
                    cache_key=cache_key,
                    input_hash=input_hash,
                    cache_type=cache_type,
                    output=output,
                    input_json=input_json,
                    now=now,
                    expires_at=expires_at,
                )
        except CachePersistenceError as e:
            logger.warning(
                "cache_set_failed", cache_key=cache_key, error=e.details.get("error")
            )
            return False

        logger.debug(
            "cache_set",
            cache_key=cache_key,
            cache_type=cache_type,
            expires_at=expires_at.isoformat() if expires_at else None,
        )
        return True

    async def invalidate(self, cache_key: str) -> int:
        """Delete every entry stored under a cache key.

        Returns:
            Number of entries deleted
        """
        try:
            async with self._repository("invalidate") as repo:
                count = await repo.delete_by_cache_key(cache_key)
        except CachePersistenceError as e:
            logger.warning(
                "cache_invalidate_failed",
                cache_key=cache_key,
                error=e.details.get("error"),
            )
            return 0
        logger.info("cache_invalidated", cache_key=cache_key, count=count)
        return count

    async def invalidate_type(self, cache_type: str) -> int:
        """Delete every entry of a cache type.

        Returns:
            Number of entries deleted
        """
        try:
            async with self._repository("invalidate_type") as repo:
                count = await repo.delete_by_cache_type(cache_type)
        except CachePersistenceError as e:
            logger.warning(
                "cache_type_invalidate_failed",
                cache_type=cache_type,
                error=e.details.get("error"),
            )
            return 0
        logger.info("cache_type_invalidated", cache_type=cache_type, count=count)
        return count

    async def sweep_expired(self) -> int:
        """Delete every entry whose expiry has passed.

        Returns:
            Number of entries deleted
        """
        now = self._clock()
        try:
            async with self._repository("sweep_expired") as repo:
                count = await repo.delete_expired(now)
        except CachePersistenceError as e:
            logger.warning("cache_sweep_failed", error=e.details.get("error"))
            return 0
        logger.info("cache_swept", count=count)
        return count

    async def stats(self) -> CacheStats:
        """Count entries and hits, overall and per cache type."""
        try:
            async with self._repository("stats") as repo:
                aggregate = await repo.aggregate()
        except CachePersistenceError as e:
            logger.warning("cache_stats_failed", error=e.details.get("error"))
            return CacheStats()
        return CacheStats(
            total_entries=aggregate.total_entries,
            total_hits=aggregate.total_hits,
            by_type=dict(aggregate.by_type),
        )
