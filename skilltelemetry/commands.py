"""In-process analytics accessors for the host application's UI layer.

Each function takes the shared store handle plus optional arguments and
applies the same defaults as the HTTP query surface. Results are plain
JSON-ready dicts and lists.
"""

from __future__ import annotations

from typing import Any

from skilltelemetry.service.store import EventStore

DEFAULT_OVERVIEW_DAYS = 7
DEFAULT_TOP_SKILLS_DAYS = 7
DEFAULT_TREND_DAYS = 30
DEFAULT_TOP_SKILLS_LIMIT = 10


def get_analytics_overview(store: EventStore, days: int | None = None) -> dict[str, Any]:
    return store.get_overview(days or DEFAULT_OVERVIEW_DAYS).to_dict()


def get_analytics_daily_trend(store: EventStore, days: int | None = None) -> list[dict[str, Any]]:
    return [stat.to_dict() for stat in store.get_daily_trend(days or DEFAULT_TREND_DAYS)]


def get_analytics_top_skills(
    store: EventStore,
    days: int | None = None,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    entries = store.get_top_skills(days or DEFAULT_TOP_SKILLS_DAYS, limit or DEFAULT_TOP_SKILLS_LIMIT)
    return [entry.to_dict() for entry in entries]


def get_analytics_success_rate(
    store: EventStore,
    skill_id: str | None = None,
    days: int | None = None,
) -> list[dict[str, Any]]:
    stats = store.get_success_rate_trend(skill_id or None, days or DEFAULT_TREND_DAYS)
    return [stat.to_dict() for stat in stats]


def get_analytics_cost_summary(store: EventStore, days: int | None = None) -> list[dict[str, Any]]:
    return [entry.to_dict() for entry in store.get_cost_summary(days or DEFAULT_TREND_DAYS)]


def get_analytics_caller_analysis(store: EventStore, days: int | None = None) -> list[dict[str, Any]]:
    return [entry.to_dict() for entry in store.get_caller_analysis(days or DEFAULT_TREND_DAYS)]


def get_analytics_user_retention(store: EventStore, days: int | None = None) -> list[dict[str, Any]]:
    return [pair.to_dict() for pair in store.get_user_retention(days or DEFAULT_TREND_DAYS)]


def get_analytics_alerts(store: EventStore) -> list[dict[str, Any]]:
    return [alert.to_dict() for alert in store.get_active_alerts()]


def acknowledge_analytics_alert(store: EventStore, alert_id: str) -> bool:
    return store.acknowledge_alert(alert_id)
