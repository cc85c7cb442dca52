"""End-to-end resolve scenarios on a real SQLite cache.

Each test wires the real cache, invoker, quota gate and orchestrator around
a scripted fake generator and checks how many upstream calls were made.
"""

import asyncio
from unittest.mock import MagicMock, patch

import pytest
from mocks.openai_responses import CONCEPTS_JSON, NOTES_JSON, OVERVIEW_JSON, REFUSAL
from pydantic import BaseModel
from sqlalchemy.exc import OperationalError

from gencache.services.cache import GenerationCache
from gencache.services.extraction import FallbackTemplate, ResponseFormat
from gencache.services.invoker import RetryingInvoker
from gencache.services.orchestrator import CacheFirstOrchestrator, ChainStage
from gencache.services.quota import QuotaGate

pytestmark = pytest.mark.integration


class Overview(BaseModel):
    title: str
    summary: str
    topics: list[str]


class NoteSection(BaseModel):
    heading: str
    body: str


class StudyNotes(BaseModel):
    sections: list[NoteSection]
    key_terms: list[str]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def cache(session_factory, wall_clock) -> GenerationCache:
    return GenerationCache(session_factory, clock=wall_clock)


@pytest.fixture
def build_orchestrator(cache, clock, sleep_recorder):
    def build(generator) -> CacheFirstOrchestrator:
        gate = QuotaGate(per_minute=12, per_day=1400, clock=clock)
        invoker = RetryingInvoker(generator, gate, sleep=sleep_recorder)
        return CacheFirstOrchestrator(cache, invoker)

    return build


def summary_prompt(semantic_input: dict) -> str:
    return f"Summarize subject {semantic_input['subject']} as JSON"


# =============================================================================
# Single-Stage Scenarios
# =============================================================================


class TestSingleStage:
    """Cold cache, idempotence, invalidation, expiry."""

    async def test_cold_cache_then_hit(
        self, build_orchestrator, make_generator, cache
    ) -> None:
        generator = make_generator(OVERVIEW_JSON)
        orchestrator = build_orchestrator(generator)

        first = await orchestrator.resolve(
            "summary-S1", "summary", {"subject": "S1"}, summary_prompt, Overview
        )
        second = await orchestrator.resolve(
            "summary-S1", "summary", {"subject": "S1"}, summary_prompt, Overview
        )

        assert first.cached is False
        assert second.cached is True
        assert first.output == second.output
        assert generator.calls == 1
        assert (await cache.stats()).total_hits == 1

    async def test_different_input_is_a_different_entry(
        self, build_orchestrator, make_generator
    ) -> None:
        generator = make_generator(OVERVIEW_JSON)
        orchestrator = build_orchestrator(generator)

        await orchestrator.resolve(
            "summary", "summary", {"subject": "S1"}, summary_prompt, Overview
        )
        other = await orchestrator.resolve(
            "summary", "summary", {"subject": "S2"}, summary_prompt, Overview
        )

        assert other.cached is False
        assert generator.calls == 2

    async def test_invalidation_forces_regeneration(
        self, build_orchestrator, make_generator
    ) -> None:
        generator = make_generator(OVERVIEW_JSON)
        orchestrator = build_orchestrator(generator)
        args = ("summary-S1", "summary", {"subject": "S1"}, summary_prompt, Overview)

        await orchestrator.resolve(*args)
        assert await orchestrator.invalidate("summary-S1") == 1
        again = await orchestrator.resolve(*args)

        assert again.cached is False
        assert generator.calls == 2

    async def test_expired_entry_is_regenerated(
        self, build_orchestrator, make_generator, wall_clock
    ) -> None:
        generator = make_generator(OVERVIEW_JSON)
        orchestrator = build_orchestrator(generator)
        args = ("summary-S1", "summary", {"subject": "S1"}, summary_prompt, Overview)

        await orchestrator.resolve(*args, expires_in_days=1)
        wall_clock.advance(86_400 + 1)
        again = await orchestrator.resolve(*args, expires_in_days=1)

        assert again.cached is False
        assert generator.calls == 2

    async def test_text_artifact(self, build_orchestrator, make_generator) -> None:
        generator = make_generator("  Cells are the unit of life.  ")
        orchestrator = build_orchestrator(generator)
        args = ("blurb-S1", "blurb", {"subject": "S1"}, summary_prompt, str)

        first = await orchestrator.resolve(*args, response_format=ResponseFormat.TEXT)
        second = await orchestrator.resolve(*args, response_format=ResponseFormat.TEXT)

        assert first.output == second.output == "Cells are the unit of life."
        assert second.cached is True

    async def test_degraded_result_is_not_cached(
        self, build_orchestrator, make_generator, cache
    ) -> None:
        generator = make_generator(REFUSAL)
        orchestrator = build_orchestrator(generator)
        fallback = FallbackTemplate(
            {"title": "Untitled", "summary": "", "topics": []}, name="overview"
        )

        resolution = await orchestrator.resolve(
            "summary-S1",
            "summary",
            {"subject": "S1"},
            summary_prompt,
            Overview,
            fallback=fallback,
        )

        assert resolution.degraded is True
        assert (await cache.stats()).total_entries == 0

    async def test_store_failure_does_not_surface(
        self, make_generator, clock, sleep_recorder
    ) -> None:
        broken = GenerationCache(
            MagicMock(
                side_effect=OperationalError("INSERT", {}, Exception("read-only"))
            )
        )
        gate = QuotaGate(per_minute=12, per_day=1400, clock=clock)
        generator = make_generator(OVERVIEW_JSON)
        invoker = RetryingInvoker(generator, gate, sleep=sleep_recorder)
        orchestrator = CacheFirstOrchestrator(broken, invoker)

        resolution = await orchestrator.resolve(
            "summary-S1", "summary", {"subject": "S1"}, summary_prompt, Overview
        )

        assert resolution.cached is False
        assert resolution.output.title == "Cell Biology"


# =============================================================================
# Multi-Stage Chain Scenarios
# =============================================================================


def concepts_prompt(context: dict, deps: dict) -> str:
    return f"List the key concepts of chapter {context['chapter']}"


def notes_prompt(context: dict, deps: dict) -> str:
    return f"Write study notes covering: {', '.join(deps['concepts'])}"


CONCEPTS = ChainStage(
    "concepts",
    "concepts",
    concepts_prompt,
    cache_key=lambda ctx: f"concepts-{ctx['chapter']}",
    expected_shape=list[str],
)

NOTES = ChainStage(
    "notes",
    "study_notes",
    notes_prompt,
    cache_key=lambda ctx: f"notes-{ctx['chapter']}",
    expected_shape=StudyNotes,
    expires_in_days=30,
    depends_on=(CONCEPTS,),
)


class TestChain:
    """Stage dependencies are resolved cache-first, in order."""

    async def test_cold_chain_calls_each_stage_once_in_order(
        self, build_orchestrator, make_generator, cache
    ) -> None:
        generator = make_generator(CONCEPTS_JSON, NOTES_JSON)
        orchestrator = build_orchestrator(generator)

        with patch.object(cache, "store", wraps=cache.store) as store:
            notes = await orchestrator.resolve_stage(NOTES, {"chapter": 1})

        # The dependency is persisted before the stage built on it
        assert [c.args[:2] for c in store.call_args_list] == [
            ("concepts-1", "concepts"),
            ("notes-1", "study_notes"),
        ]

        assert generator.prompts == [
            "List the key concepts of chapter 1",
            "Write study notes covering: membranes, organelles, mitosis",
        ]
        assert notes.cached is False
        assert notes.output.key_terms == ["bilayer"]
        stats = await cache.stats()
        assert stats.by_type == {"concepts": 1, "study_notes": 1}

    async def test_warm_chain_makes_no_calls(
        self, build_orchestrator, make_generator
    ) -> None:
        generator = make_generator(CONCEPTS_JSON, NOTES_JSON)
        orchestrator = build_orchestrator(generator)

        await orchestrator.resolve_stage(NOTES, {"chapter": 1})
        again = await orchestrator.resolve_stage(NOTES, {"chapter": 1})

        assert again.cached is True
        assert generator.calls == 2

    async def test_stages_are_invalidated_independently(
        self, build_orchestrator, make_generator
    ) -> None:
        generator = make_generator(CONCEPTS_JSON, NOTES_JSON, NOTES_JSON)
        orchestrator = build_orchestrator(generator)
        await orchestrator.resolve_stage(NOTES, {"chapter": 1})

        await orchestrator.invalidate("notes-1")
        await orchestrator.resolve_stage(NOTES, {"chapter": 1})

        # Concepts were still cached; only the notes were regenerated
        assert generator.calls == 3
        assert generator.prompts[-1].startswith("Write study notes")

    async def test_dependency_resolved_directly_is_reused(
        self, build_orchestrator, make_generator
    ) -> None:
        generator = make_generator(CONCEPTS_JSON, NOTES_JSON)
        orchestrator = build_orchestrator(generator)

        concepts = await orchestrator.resolve_stage(CONCEPTS, {"chapter": 2})
        await orchestrator.resolve_stage(NOTES, {"chapter": 2})

        assert concepts.output == ["membranes", "organelles", "mitosis"]
        assert generator.calls == 2


# =============================================================================
# Concurrency Scenarios
# =============================================================================


class TestConcurrentResolve:
    """Concurrent identical misses."""

    async def test_one_upstream_call_for_identical_misses(
        self, build_orchestrator, make_generator, cache
    ) -> None:
        async def slow(prompt: str) -> str:
            await asyncio.sleep(0.2)
            return OVERVIEW_JSON

        generator = make_generator(slow)
        orchestrator = build_orchestrator(generator)

        resolutions = await asyncio.gather(
            *(
                orchestrator.resolve(
                    "summary-S1", "summary", {"subject": "S1"}, summary_prompt, Overview
                )
                for _ in range(4)
            )
        )
        await orchestrator.aclose()

        assert generator.calls == 1
        assert all(r.output.title == "Cell Biology" for r in resolutions)
        assert (await cache.stats()).total_entries == 1
