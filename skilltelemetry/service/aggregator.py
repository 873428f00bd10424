from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Iterable
from datetime import date, datetime, timedelta, timezone
from itertools import groupby

from skilltelemetry.models import DailyStat, EventRow
from skilltelemetry.service.store import EventStore
from skilltelemetry.stats import latency_percentiles

logger = logging.getLogger(__name__)


def _day_key(day: date | str) -> str:
    if isinstance(day, date):
        return day.isoformat()
    return date.fromisoformat(day).isoformat()


def compute_daily_stats(day: str, events: Iterable[EventRow]) -> list[DailyStat]:
    """Collapse one day's raw events into one rollup per skill."""
    ordered = sorted(events, key=lambda event: (event.skill_id, event.id))
    stats: list[DailyStat] = []
    for skill_id, group in groupby(ordered, key=lambda event: event.skill_id):
        rows = list(group)
        durations = sorted(event.duration_ms for event in rows if event.duration_ms is not None)
        percentiles = latency_percentiles(durations)
        successes = sum(1 for event in rows if event.success)
        stats.append(
            DailyStat(
                skill_id=skill_id,
                date=day,
                total_calls=len(rows),
                success_count=successes,
                fail_count=len(rows) - successes,
                p50_ms=percentiles["p50"],
                p95_ms=percentiles["p95"],
                p99_ms=percentiles["p99"],
                avg_ms=(math.fsum(durations) / len(durations)) if durations else None,
                unique_users=len({event.user_id for event in rows}),
                total_cost_usd=math.fsum(event.api_cost_usd or 0.0 for event in rows),
                thumbs_up=sum(1 for event in rows if event.feedback_score == 1),
                thumbs_down=sum(1 for event in rows if event.feedback_score == -1),
            )
        )
    return stats


def aggregate_daily_stats(store: EventStore, day: date | str) -> list[DailyStat]:
    """Recompute and upsert the rollups for one UTC calendar day.

    Safe to repeat: the same raw events always produce the same rows.
    """
    key = _day_key(day)
    stats = compute_daily_stats(key, store.events_for_day(key))
    store.upsert_daily_stats(stats)
    logger.info("Aggregated %d skill rollup(s) for %s", len(stats), key)
    return stats


def aggregate_recent(store: EventStore, days: int, *, today: date | None = None) -> int:
    """Recompute the last ``days`` UTC days, today included."""
    today = today or datetime.now(timezone.utc).date()
    written = 0
    for offset in range(max(1, days)):
        written += len(aggregate_daily_stats(store, today - timedelta(days=offset)))
    return written


class DailyAggregator:
    """Background task that keeps recent rollups fresh inside the server process."""

    def __init__(self, store: EventStore, *, interval_seconds: float, lookback_days: int) -> None:
        self._store = store
        self._interval_seconds = max(1.0, float(interval_seconds))
        self._lookback_days = max(1, int(lookback_days))
        self._task: asyncio.Task | None = None

    async def run_once(self) -> int:
        return await asyncio.to_thread(aggregate_recent, self._store, self._lookback_days)

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                # Recomputation is idempotent; the next tick retries.
                logger.exception("Daily aggregation failed")
            await asyncio.sleep(self._interval_seconds)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name="skilltelemetry-aggregator")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
