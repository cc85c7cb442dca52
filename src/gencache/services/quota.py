"""QuotaGate - rolling-window admission control for upstream calls.

Two independent windows (per-minute and per-day) each behave as a small state
machine:

    OPEN   (count < limit)  --admission reaches limit-->  CLOSED
    CLOSED (count >= limit) --next check after window-->  OPEN (count reset)

Resets are lazy: nothing runs on a timer, the window is rolled over on the
next check once `now - window_start >= window_duration`.

Admission and recording are two calls. A caller that gets `allowed=True` must
call `record_dispatch()` right before dispatching; a caller that decides not
to dispatch (e.g. the cache got populated meanwhile) is not charged.

Denial is a normal signal, not an error, and the gate never retries.

Two implementations share one async interface:
- QuotaGate: in-process counters, one instance per upstream API key
- RedisQuotaGate: counters in Redis, shared by every process using the key
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import structlog
from redis.asyncio import Redis

from gencache.config import Settings

logger = structlog.get_logger(__name__)

MINUTE_S = 60.0
DAY_S = 86400.0


class WindowState(str, Enum):
    """Admission state of one quota window."""

    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True)
class Admission:
    """Result of an admission check.

    Attributes:
        allowed: True if an upstream call may be dispatched now
        retry_after_ms: How long to wait before the next admission can succeed
        window: Name of the window that denied ("minute" or "day")
    """

    allowed: bool
    retry_after_ms: int = 0
    window: str | None = None


ALLOWED = Admission(allowed=True)


@dataclass(frozen=True)
class QuotaInfo:
    """Remaining budget, for display and monitoring."""

    minute_remaining: int
    day_remaining: int
    reset_in_seconds: int


@dataclass(frozen=True)
class QuotaState:
    """Snapshot of the in-process counters."""

    minute_count: int
    day_count: int
    last_minute_reset: float
    last_day_reset: float


class AdmissionGate(Protocol):
    """Interface the invoker depends on."""

    async def admit(self) -> Admission: ...

    async def record_dispatch(self) -> None: ...

    async def quota_info(self) -> QuotaInfo: ...


@dataclass
class _Window:
    name: str
    limit: int
    duration_s: float
    started_at: float
    count: int = 0

    def roll(self, now: float) -> None:
        if now - self.started_at >= self.duration_s:
            self.count = 0
            self.started_at = now

    @property
    def state(self) -> WindowState:
        return WindowState.CLOSED if self.count >= self.limit else WindowState.OPEN

    def remaining_ms(self, now: float) -> int:
        return max(0, math.ceil((self.duration_s - (now - self.started_at)) * 1000))


class QuotaGate:
    """In-process rolling-window rate limiter.

    Counters are mutated under a lock so concurrent tasks (or threads) never
    corrupt them. Two tasks can both be admitted for the last slot before
    either records its dispatch; that slight overshoot is accepted.

    Usage:
        ```python
        gate = QuotaGate(per_minute=12, per_day=1400)
        admission = await gate.admit()
        if admission.allowed:
            await gate.record_dispatch()
            ...
        ```
    """

    def __init__(
        self,
        per_minute: int,
        per_day: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        name: str = "default",
    ) -> None:
        """Initialize the gate.

        Args:
            per_minute: Calls admitted per minute window
            per_day: Calls admitted per day window
            clock: Monotonic clock in seconds (injectable for tests)
            name: Label used in logs (e.g. the upstream API key alias)
        """
        if per_minute < 1 or per_day < 1:
            raise ValueError("quota limits must be >= 1")
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        now = clock()
        self._minute = _Window("minute", per_minute, MINUTE_S, started_at=now)
        self._day = _Window("day", per_day, DAY_S, started_at=now)

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], float] = time.monotonic
    ) -> QuotaGate:
        """Build a gate from the configured ceilings."""
        return cls(
            settings.quota_per_minute,
            settings.quota_per_day,
            clock=clock,
            name=settings.quota_namespace,
        )

    def _roll(self, now: float) -> None:
        self._minute.roll(now)
        self._day.roll(now)

    async def admit(self) -> Admission:
        """Check whether an upstream call may be dispatched now.

        Returns:
            ALLOWED, or a denial carrying the time left in the closed window
        """
        with self._lock:
            now = self._clock()
            self._roll(now)
            for window in (self._minute, self._day):
                if window.state is WindowState.CLOSED:
                    admission = Admission(
                        allowed=False,
                        retry_after_ms=window.remaining_ms(now),
                        window=window.name,
                    )
                    break
            else:
                return ALLOWED

        logger.info(
            "quota_denied",
            gate=self.name,
            window=admission.window,
            retry_after_ms=admission.retry_after_ms,
        )
        return admission

    async def record_dispatch(self) -> None:
        """Charge one upstream call to both windows."""
        with self._lock:
            self._roll(self._clock())
            self._minute.count += 1
            self._day.count += 1

    async def quota_info(self) -> QuotaInfo:
        """Remaining budget in each window and seconds until the minute resets."""
        with self._lock:
            now = self._clock()
            self._roll(now)
            return QuotaInfo(
                minute_remaining=max(0, self._minute.limit - self._minute.count),
                day_remaining=max(0, self._day.limit - self._day.count),
                reset_in_seconds=math.ceil(self._minute.remaining_ms(now) / 1000),
            )

    def state(self) -> QuotaState:
        """Snapshot the raw counters (no lazy reset is applied)."""
        with self._lock:
            return QuotaState(
                minute_count=self._minute.count,
                day_count=self._day.count,
                last_minute_reset=self._minute.started_at,
                last_day_reset=self._day.started_at,
            )


class RedisQuotaGate:
    """Quota gate whose counters live in Redis.

    Windows are fixed buckets aligned to wall-clock minutes and days (the
    bucket number is part of the key), so every process sharing the Redis
    instance and namespace enforces one combined budget. Keys expire on their
    own once their bucket is over.

    If Redis is unreachable the gate fails open: admission is granted and the
    failure is logged. The provider's own rate limiting still applies.
    """

    KEY_PREFIX = "gencache:quota"

    def __init__(
        self,
        redis: Redis,
        per_minute: int,
        per_day: int,
        *,
        namespace: str = "default",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if per_minute < 1 or per_day < 1:
            raise ValueError("quota limits must be >= 1")
        self.redis = redis
        self.per_minute = per_minute
        self.per_day = per_day
        self.namespace = namespace
        self._clock = clock

    @classmethod
    def from_settings(cls, redis: Redis, settings: Settings) -> RedisQuotaGate:
        """Build a shared gate from the configured ceilings."""
        return cls(
            redis,
            settings.quota_per_minute,
            settings.quota_per_day,
            namespace=settings.quota_namespace,
        )

    def _keys(self, now: float) -> tuple[str, str]:
        minute_bucket = int(now // MINUTE_S)
        day_bucket = int(now // DAY_S)
        return (
            f"{self.KEY_PREFIX}:{self.namespace}:minute:{minute_bucket}",
            f"{self.KEY_PREFIX}:{self.namespace}:day:{day_bucket}",
        )

    @staticmethod
    def _remaining_ms(now: float, duration_s: float) -> int:
        return max(0, math.ceil((duration_s - now % duration_s) * 1000))

    async def _counts(self, now: float) -> tuple[int, int]:
        minute_key, day_key = self._keys(now)
        minute_raw, day_raw = await self.redis.mget(minute_key, day_key)
        return int(minute_raw or 0), int(day_raw or 0)

    async def admit(self) -> Admission:
        """Check the shared counters for the current buckets."""
        now = self._clock()
        try:
            minute_count, day_count = await self._counts(now)
        except Exception as e:
            logger.warning(
                "quota_store_unavailable", namespace=self.namespace, error=str(e)
            )
            return ALLOWED

        if minute_count >= self.per_minute:
            admission = Admission(
                allowed=False,
                retry_after_ms=self._remaining_ms(now, MINUTE_S),
                window="minute",
            )
        elif day_count >= self.per_day:
            admission = Admission(
                allowed=False,
                retry_after_ms=self._remaining_ms(now, DAY_S),
                window="day",
            )
        else:
            return ALLOWED

        logger.info(
            "quota_denied",
            gate=self.namespace,
            window=admission.window,
            retry_after_ms=admission.retry_after_ms,
        )
        return admission

    async def record_dispatch(self) -> None:
        """Atomically increment both bucket counters."""
        minute_key, day_key = self._keys(self._clock())
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.incr(minute_key)
                pipe.expire(minute_key, int(MINUTE_S * 2))
                pipe.incr(day_key)
                pipe.expire(day_key, int(DAY_S * 2))
                await pipe.execute()
        except Exception as e:
            logger.warning(
                "quota_record_failed", namespace=self.namespace, error=str(e)
            )

    async def quota_info(self) -> QuotaInfo:
        """Remaining shared budget in the current buckets."""
        now = self._clock()
        try:
            minute_count, day_count = await self._counts(now)
        except Exception as e:
            logger.warning(
                "quota_store_unavailable", namespace=self.namespace, error=str(e)
            )
            minute_count = day_count = 0
        return QuotaInfo(
            minute_remaining=max(0, self.per_minute - minute_count),
            day_remaining=max(0, self.per_day - day_count),
            reset_in_seconds=math.ceil(self._remaining_ms(now, MINUTE_S) / 1000),
        )
