from __future__ import annotations

import time

from skilltelemetry import commands


def test_overview_and_top_skills_use_defaults(store, make_event):
    now = int(time.time())
    store.insert_events([make_event("skill-a", timestamp=now) for _ in range(2)] + [make_event("skill-b", timestamp=now)])

    overview = commands.get_analytics_overview(store)
    assert overview["total_calls"] == 3
    assert set(overview) == {
        "total_calls",
        "success_rate",
        "p95_latency_ms",
        "active_users",
        "total_calls_delta_pct",
        "success_rate_delta",
        "p95_latency_delta_ms",
        "active_users_delta",
    }

    top = commands.get_analytics_top_skills(store)
    assert [entry["skill_id"] for entry in top] == ["skill-a", "skill-b"]
    assert commands.get_analytics_top_skills(store, limit=1)[0]["call_count"] == 2


def test_rollup_views_are_empty_before_aggregation(store, make_event):
    store.insert_events([make_event(timestamp=int(time.time()))])

    assert commands.get_analytics_daily_trend(store) == []
    assert commands.get_analytics_success_rate(store, "skill-a") == []
    assert commands.get_analytics_cost_summary(store) == []


def test_alert_accessors(store):
    alert = store.raise_alert(skill_id="skill-a", alert_type="failure_spike", severity="critical", message="m")

    alerts = commands.get_analytics_alerts(store)
    assert [item["id"] for item in alerts] == [alert.id]
    assert alerts[0]["acknowledged"] is False

    assert commands.acknowledge_analytics_alert(store, alert.id) is True
    assert commands.acknowledge_analytics_alert(store, "unknown") is False
    assert commands.get_analytics_alerts(store)[0]["acknowledged"] is True
