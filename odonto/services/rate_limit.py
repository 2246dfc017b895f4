"""Per-user, per-operation rate limiting over three fixed windows.

Each ``(user_id, operation)`` row holds minute / hour / day counters and
the start of the window each counter belongs to.  A counter whose
window start is older than the current window is treated as zero.

Counting is a single ``INSERT ... ON CONFLICT DO UPDATE ... WHERE``:
the SET clause resets stale counters with ``CASE`` and the WHERE clause
holds the ceilings, so the row is only written (and ``RETURNING`` only
yields it) when every live counter is still under its limit.
Concurrent requests from the same user can never overshoot a window.

Storage failures **fail open**: a broken limiter must not block paying
users, so the error is logged and the request is allowed.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import UTC, datetime, timedelta

import sqlalchemy as sa
from pydantic import BaseModel
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine

from odonto.db import rate_limits

logger = logging.getLogger(__name__)


class RateLimitConfig(BaseModel):
    per_minute: int
    per_hour: int
    per_day: int


RATE_LIMITS: dict[str, RateLimitConfig] = {
    "AI_LIGHT": RateLimitConfig(per_minute=20, per_hour=100, per_day=500),
    "AI_HEAVY": RateLimitConfig(per_minute=10, per_hour=50, per_day=200),
    "STANDARD": RateLimitConfig(per_minute=60, per_hour=500, per_day=2000),
}


class RateLimitResult(BaseModel):
    allowed: bool
    remaining: int
    reset_at: datetime
    retry_after: int | None = None


class RateLimitCounters(BaseModel):
    minute_count: int
    minute_window: float
    hour_count: int
    hour_window: float
    day_count: int
    day_window: float


class Windows(BaseModel):
    minute: float
    hour: float
    day: float

    @classmethod
    def at(cls, now: datetime) -> Windows:
        minute = now.replace(second=0, microsecond=0)
        hour = minute.replace(minute=0)
        day = hour.replace(hour=0)
        return cls(minute=minute.timestamp(), hour=hour.timestamp(), day=day.timestamp())


class SqlRateLimitStore:
    """``rate_limits`` table access.  Methods are blocking."""

    def __init__(self, engine: Engine):
        self._engine = engine

    def get(self, user_id: str, operation: str) -> RateLimitCounters | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                sa.select(
                    rate_limits.c.minute_count,
                    rate_limits.c.minute_window,
                    rate_limits.c.hour_count,
                    rate_limits.c.hour_window,
                    rate_limits.c.day_count,
                    rate_limits.c.day_window,
                ).where(
                    rate_limits.c.user_id == user_id,
                    rate_limits.c.operation == operation,
                )
            ).first()
        return RateLimitCounters.model_validate(dict(row._mapping)) if row else None

    def acquire(
        self,
        user_id: str,
        operation: str,
        config: RateLimitConfig,
        windows: Windows,
        now: float,
    ) -> RateLimitCounters | None:
        """Count one request if every live counter is under its ceiling.

        Returns the counters after the increment, or ``None`` when a
        window is full.  The ceiling is the upsert's ``WHERE`` clause, so
        the decision and the write are one statement.
        """
        insert = postgresql.insert if self._engine.dialect.name == "postgresql" else sqlite.insert
        stmt = insert(rate_limits).values(
            user_id=user_id,
            operation=operation,
            minute_count=1,
            minute_window=windows.minute,
            hour_count=1,
            hour_window=windows.hour,
            day_count=1,
            day_window=windows.day,
            updated_at=now,
        )
        excluded = stmt.excluded
        limits = {"minute": config.per_minute, "hour": config.per_hour, "day": config.per_day}
        set_ = {"updated_at": excluded.updated_at}
        under_ceiling = []
        for unit, limit in limits.items():
            count = rate_limits.c[f"{unit}_count"]
            window = rate_limits.c[f"{unit}_window"]
            stale = window < excluded[f"{unit}_window"]
            live = sa.case((stale, 0), else_=count)
            set_[f"{unit}_count"] = live + 1
            set_[f"{unit}_window"] = sa.case((stale, excluded[f"{unit}_window"]), else_=window)
            under_ceiling.append(live < limit)
        stmt = stmt.on_conflict_do_update(
            index_elements=[rate_limits.c.user_id, rate_limits.c.operation],
            set_=set_,
            where=sa.and_(*under_ceiling),
        ).returning(
            rate_limits.c.minute_count,
            rate_limits.c.minute_window,
            rate_limits.c.hour_count,
            rate_limits.c.hour_window,
            rate_limits.c.day_count,
            rate_limits.c.day_window,
        )
        with self._engine.begin() as conn:
            row = conn.execute(stmt).first()
        return RateLimitCounters.model_validate(dict(row._mapping)) if row else None


def _live(count: int, window: float, current: float) -> int:
    return count if window >= current else 0


async def check_rate_limit(
    store: SqlRateLimitStore,
    user_id: str,
    operation: str,
    config: RateLimitConfig,
    now: datetime | None = None,
) -> RateLimitResult:
    """Count one request against the limits, or deny it without counting."""
    now = now or datetime.now(UTC)
    windows = Windows.at(now)
    next_minute = datetime.fromtimestamp(windows.minute, UTC) + timedelta(minutes=1)

    try:
        counters = await asyncio.to_thread(store.acquire, user_id, operation, config, windows, now.timestamp())
        if counters is not None:
            remaining = min(
                config.per_minute - counters.minute_count,
                config.per_hour - counters.hour_count,
                config.per_day - counters.day_count,
            )
            return RateLimitResult(allowed=True, remaining=max(0, remaining), reset_at=next_minute)

        row = await asyncio.to_thread(store.get, user_id, operation)
        reset_at = _reset_at(row, config, windows) or next_minute
        retry_after = max(1, math.ceil((reset_at - now).total_seconds()))
        logger.info(
            "Rate limit hit user=%s operation=%s retry_after=%ds", user_id, operation, retry_after,
        )
        return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at, retry_after=retry_after)

    except Exception:
        logger.exception("Rate limit check failed for user=%s operation=%s; allowing request", user_id, operation)
        return RateLimitResult(allowed=True, remaining=config.per_minute, reset_at=next_minute)


def _reset_at(row: RateLimitCounters | None, config: RateLimitConfig, windows: Windows) -> datetime | None:
    """End of the widest full window, or ``None`` if none is full."""
    if row is None:
        return None
    if _live(row.day_count, row.day_window, windows.day) >= config.per_day:
        return datetime.fromtimestamp(windows.day, UTC) + timedelta(days=1)
    if _live(row.hour_count, row.hour_window, windows.hour) >= config.per_hour:
        return datetime.fromtimestamp(windows.hour, UTC) + timedelta(hours=1)
    if _live(row.minute_count, row.minute_window, windows.minute) >= config.per_minute:
        return datetime.fromtimestamp(windows.minute, UTC) + timedelta(minutes=1)
    return None
