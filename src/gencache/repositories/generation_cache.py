"""Repository for GenerationCacheEntry.

Maps the cache's storage primitives (get, put, update, query-where) onto SQL:
point lookup by (cache_key, input_hash), upsert, atomic hit bump, and
equality/inequality deletes for invalidation and expiry sweeps.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from gencache.models.generation_cache import GenerationCacheEntry
from gencache.repositories.base import BaseRepository


@dataclass
class CacheAggregate:
    """Aggregate counters over the whole cache table."""

    total_entries: int = 0
    total_hits: int = 0
    by_type: dict[str, int] = field(default_factory=dict)


class GenerationCacheRepository(BaseRepository[GenerationCacheEntry]):
    """Repository for generation cache entries.

    Callers own the transaction: every write flushes but does not commit.
    The one exception is the upsert insert race, which rolls back the
    failed INSERT before retrying as an update.
    """

    async def get_entry(
        self, cache_key: str, input_hash: str
    ) -> GenerationCacheEntry | None:
        """Get the entry stored under (cache_key, input_hash).

        Args:
            cache_key: Logical cache key
            input_hash: Input fingerprint

        Returns:
            The entry if present (expired or not), None otherwise
        """
        result = await self.session.execute(
            select(GenerationCacheEntry).where(
                GenerationCacheEntry.cache_key == cache_key,
                GenerationCacheEntry.input_hash == input_hash,
            )
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        *,
        cache_key: str,
        input_hash: str,
        cache_type: str,
        output: str,
        input_json: Any,
        now: datetime,
        expires_at: datetime | None,
    ) -> GenerationCacheEntry:
        """Insert or overwrite the entry for (cache_key, input_hash).

        A concurrent insert of the same pair loses the unique-constraint race;
        in that case the row written by the other writer is overwritten
        (last writer wins).

        Returns:
            The stored entry
        """
        values: dict[str, Any] = {
            "cache_type": cache_type,
            "output": output,
            "input_json": input_json,
            "hit_count": 0,
            "created_at": now,
            "last_used_at": now,
            "expires_at": expires_at,
        }

        existing = await self.get_entry(cache_key, input_hash)
        if existing is None:
            try:
                return await self.create(
                    GenerationCacheEntry(
                        cache_key=cache_key, input_hash=input_hash, **values
                    )
                )
            except IntegrityError:
                # The failed INSERT poisons the transaction; start over on a
                # clean one and overwrite the winner's row.
                await self.session.rollback()
                existing = await self.get_entry(cache_key, input_hash)
                if existing is None:
                    raise

        for name, value in values.items():
            setattr(existing, name, value)
        return await self.update(existing)

    async def bump_hit(self, cache_key: str, input_hash: str, now: datetime) -> bool:
        """Atomically increment hit_count and touch last_used_at.

        Returns:
            True if the row still existed
        """
        stmt = (
            update(GenerationCacheEntry)
            .where(
                GenerationCacheEntry.cache_key == cache_key,
                GenerationCacheEntry.input_hash == input_hash,
            )
            .values(
                hit_count=GenerationCacheEntry.hit_count + 1,
                last_used_at=now,
            )
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0

    async def delete_by_cache_key(self, cache_key: str) -> int:
        """Delete every entry sharing a cache key, whatever its input hash."""
        stmt = delete(GenerationCacheEntry).where(
            GenerationCacheEntry.cache_key == cache_key
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def delete_by_cache_type(self, cache_type: str) -> int:
        """Delete every entry of one cache type."""
        stmt = delete(GenerationCacheEntry).where(
            GenerationCacheEntry.cache_type == cache_type
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def delete_expired(self, now: datetime) -> int:
        """Delete every entry whose expires_at is before `now`."""
        stmt = delete(GenerationCacheEntry).where(
            GenerationCacheEntry.expires_at.is_not(None),
            GenerationCacheEntry.expires_at < now,
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def aggregate(self) -> CacheAggregate:
        """Count entries and hits, overall and per cache type."""
        result = await self.session.execute(
            select(
                GenerationCacheEntry.cache_type,
                func.count(),
                func.coalesce(func.sum(GenerationCacheEntry.hit_count), 0),
            ).group_by(GenerationCacheEntry.cache_type)
        )

        aggregate = CacheAggregate()
        for cache_type, entries, hits in result.all():
            aggregate.by_type[cache_type] = entries
            aggregate.total_hits += int(hits)
        aggregate.total_entries = await self.count()
        return aggregate
