"""Pytest configuration and fixtures for gencache tests.

This module provides reusable fixtures for:
- Settings overrides
- Deterministic clocks (monotonic seconds and wall-clock datetimes)
- A scripted fake upstream generator
- A file-backed SQLite session factory with the schema created
"""

import inspect
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gencache.config import Settings
from gencache.core.database import build_engine, build_session_factory, create_tables
from gencache.services.extraction import ResponseFormat

# =============================================================================
# Test Doubles
# =============================================================================


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ManualDateTimeClock:
    """Wall clock returning aware UTC datetimes that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeGenerator:
    """Upstream generator replaying scripted responses.

    Each scripted item is returned (str), raised (exception) or called with
    the prompt (callable, sync or async). The last item repeats once the
    script runs out.
    """

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.prompts: list[str] = []
        self.formats: list[ResponseFormat] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def generate(self, prompt: str, response_format: ResponseFormat) -> str:
        self.prompts.append(prompt)
        self.formats.append(response_format)
        if not self.responses:
            raise AssertionError("FakeGenerator has no scripted response")
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            item = item(prompt)
            if inspect.isawaitable(item):
                item = await item
        return item


class SleepRecorder:
    """Replacement for asyncio.sleep that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# =============================================================================
# Settings Fixtures
# =============================================================================


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test-specific settings.

    Overrides production settings with test-appropriate values.
    """
    return Settings(
        app_env="development",  # type: ignore[arg-type]
        debug=True,
        log_level="DEBUG",  # type: ignore[arg-type]
        log_format="console",  # type: ignore[arg-type]
        database_url=f"sqlite+aiosqlite:///{tmp_path}/gencache-test.db",
        redis_url=None,
        openai_api_key="sk-test-key",  # type: ignore[arg-type]
    )


# =============================================================================
# Clock & Double Fixtures
# =============================================================================


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def wall_clock() -> ManualDateTimeClock:
    return ManualDateTimeClock()


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def make_generator() -> Callable[..., FakeGenerator]:
    """Factory fixture: make_generator('{"a": 1}', UpstreamError(), ...)."""
    return FakeGenerator


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
async def session_factory(
    test_settings: Settings,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory on a fresh SQLite file with all tables created.

    A file database is used because SQLite connections use NullPool, and every
    new connection to ":memory:" would see an empty database.
    """
    engine = build_engine(test_settings)
    await create_tables(engine)
    yield build_session_factory(engine)
    await engine.dispose()
