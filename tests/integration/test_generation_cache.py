"""Integration tests for GenerationCache on a real SQLite database.

Run these tests with:
    pytest tests/integration/test_generation_cache.py -v
"""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from gencache.models import GenerationCacheEntry
from gencache.repositories import GenerationCacheRepository
from gencache.services.cache import GenerationCache

pytestmark = pytest.mark.integration

ONE_SECOND_IN_DAYS = 1 / 86_400


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def cache(session_factory, wall_clock) -> GenerationCache:
    return GenerationCache(session_factory, clock=wall_clock)


# =============================================================================
# Store & Lookup Tests
# =============================================================================


class TestStoreAndLookup:
    """Round trips through the store."""

    async def test_miss_on_empty_cache(self, cache: GenerationCache) -> None:
        assert await cache.lookup("summary-S1", "hash-1") is None

    async def test_hit_after_store(self, cache: GenerationCache, wall_clock) -> None:
        assert await cache.store("summary-S1", "summary", "hash-1", '{"a":1}')

        artifact = await cache.lookup("summary-S1", "hash-1")

        assert artifact is not None
        assert artifact.output == '{"a":1}'
        assert artifact.cache_type == "summary"
        assert artifact.hit_count == 1
        assert artifact.expires_at is None
        assert artifact.created_at == wall_clock.now

    async def test_hits_are_counted(self, cache: GenerationCache, wall_clock) -> None:
        await cache.store("summary-S1", "summary", "hash-1", "{}")

        await cache.lookup("summary-S1", "hash-1")
        wall_clock.advance(30)
        artifact = await cache.lookup("summary-S1", "hash-1")

        assert artifact.hit_count == 2
        assert artifact.last_used_at == wall_clock.now

    async def test_identity_is_key_and_hash(self, cache: GenerationCache) -> None:
        await cache.store("summary-S1", "summary", "hash-1", '"first"')

        assert await cache.lookup("summary-S1", "hash-2") is None
        assert await cache.lookup("summary-S2", "hash-1") is None

    async def test_overwrite_replaces_output_and_resets_hits(
        self, cache: GenerationCache
    ) -> None:
        await cache.store("summary-S1", "summary", "hash-1", '"old"')
        await cache.lookup("summary-S1", "hash-1")
        await cache.lookup("summary-S1", "hash-1")

        await cache.store("summary-S1", "summary", "hash-1", '"new"')
        artifact = await cache.lookup("summary-S1", "hash-1")

        assert artifact.output == '"new"'
        assert artifact.hit_count == 1

    async def test_semantic_input_is_kept(
        self, cache: GenerationCache, session_factory
    ) -> None:
        await cache.store(
            "summary-S1",
            "summary",
            "hash-1",
            "{}",
            semantic_input={"subject": "S1", "tags": {"b", "a"}},
        )

        async with session_factory() as session:
            entry = await GenerationCacheRepository(session).get_entry(
                "summary-S1", "hash-1"
            )
        assert entry.input_json == {"subject": "S1", "tags": ["a", "b"]}

    async def test_failed_hit_bump_still_returns_hit(
        self, cache: GenerationCache
    ) -> None:
        await cache.store("summary-S1", "summary", "hash-1", '"value"')

        with patch.object(
            GenerationCacheRepository,
            "bump_hit",
            AsyncMock(side_effect=OperationalError("UPDATE", {}, Exception("locked"))),
        ):
            artifact = await cache.lookup("summary-S1", "hash-1")

        assert artifact is not None
        assert artifact.output == '"value"'
        assert artifact.hit_count == 0


# =============================================================================
# Expiry Tests
# =============================================================================


class TestExpiry:
    """Lazy expiry on lookup and batch sweeps."""

    async def test_entry_expires(self, cache: GenerationCache, wall_clock) -> None:
        await cache.store(
            "quiz-1", "quiz", "hash-1", "{}", expires_in_days=ONE_SECOND_IN_DAYS
        )

        wall_clock.advance(0.5)
        assert await cache.lookup("quiz-1", "hash-1") is not None

        wall_clock.advance(1.0)
        assert await cache.lookup("quiz-1", "hash-1") is None

    async def test_sub_second_expiry(self, cache: GenerationCache, wall_clock) -> None:
        await cache.store(
            "quiz-1", "quiz", "hash-1", "{}", expires_in_days=0.2 * ONE_SECOND_IN_DAYS
        )

        wall_clock.advance(0.3)
        assert await cache.lookup("quiz-1", "hash-1") is None

    async def test_default_expiry_applies(self, session_factory, wall_clock) -> None:
        cache = GenerationCache(
            session_factory, default_expiry_days=1.0, clock=wall_clock
        )
        await cache.store("quiz-1", "quiz", "hash-1", "{}")

        wall_clock.advance(86_400 - 1)
        assert await cache.lookup("quiz-1", "hash-1") is not None
        wall_clock.advance(2)
        assert await cache.lookup("quiz-1", "hash-1") is None

    async def test_expired_entry_stays_until_swept(
        self, cache: GenerationCache, wall_clock, session_factory
    ) -> None:
        await cache.store(
            "quiz-1", "quiz", "hash-1", "{}", expires_in_days=ONE_SECOND_IN_DAYS
        )
        await cache.store("quiz-2", "quiz", "hash-1", "{}")
        wall_clock.advance(5)

        assert await cache.lookup("quiz-1", "hash-1") is None
        assert (await cache.stats()).total_entries == 2

        assert await cache.sweep_expired() == 1

        async with session_factory() as session:
            keys = (
                await session.execute(select(GenerationCacheEntry.cache_key))
            ).scalars().all()
        assert keys == ["quiz-2"]


# =============================================================================
# Invalidation & Stats Tests
# =============================================================================


class TestInvalidation:
    """Deletion by key and by type."""

    async def test_invalidate_key_removes_every_input(
        self, cache: GenerationCache
    ) -> None:
        await cache.store("summary-S1", "summary", "hash-1", "{}")
        await cache.store("summary-S1", "summary", "hash-2", "{}")
        await cache.store("summary-S2", "summary", "hash-1", "{}")

        assert await cache.invalidate("summary-S1") == 2

        assert await cache.lookup("summary-S1", "hash-1") is None
        assert await cache.lookup("summary-S1", "hash-2") is None
        assert await cache.lookup("summary-S2", "hash-1") is not None

    async def test_invalidate_type(self, cache: GenerationCache) -> None:
        await cache.store("summary-S1", "summary", "hash-1", "{}")
        await cache.store("quiz-S1", "quiz", "hash-1", "{}")

        assert await cache.invalidate_type("summary") == 1
        assert await cache.lookup("quiz-S1", "hash-1") is not None

    async def test_invalidate_unknown_key(self, cache: GenerationCache) -> None:
        assert await cache.invalidate("nothing-here") == 0


class TestStats:
    """Aggregate counters."""

    async def test_empty(self, cache: GenerationCache) -> None:
        stats = await cache.stats()
        assert stats.total_entries == 0
        assert stats.total_hits == 0
        assert stats.by_type == {}

    async def test_counts_by_type(self, cache: GenerationCache) -> None:
        await cache.store("summary-S1", "summary", "hash-1", "{}")
        await cache.store("summary-S2", "summary", "hash-1", "{}")
        await cache.store("quiz-S1", "quiz", "hash-1", "{}")
        for _ in range(3):
            await cache.lookup("summary-S1", "hash-1")
        await cache.lookup("quiz-S1", "hash-1")

        stats = await cache.stats()

        assert stats.total_entries == 3
        assert stats.total_hits == 4
        assert stats.by_type == {"summary": 2, "quiz": 1}
