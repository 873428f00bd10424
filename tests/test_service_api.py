from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from skilltelemetry.config.settings import TelemetrySettings
from skilltelemetry.errors import StorageError
from skilltelemetry.service.aggregator import aggregate_recent
from skilltelemetry.service.app import create_app


def _settings(tmp_path: Path, **overrides) -> TelemetrySettings:
    values = {"data_dir": tmp_path, "aggregate_enabled": False}
    values.update(overrides)
    return TelemetrySettings(_env_file=None, **values)


@pytest.fixture()
def client(tmp_path: Path, store):
    with TestClient(create_app(_settings(tmp_path), store=store)) as test_client:
        yield test_client


def _event(skill_id: str = "skill-a", *, success: bool = True, duration_ms: int = 100, **fields) -> dict:
    event = {
        "event_type": "skill_invoke",
        "skill_id": skill_id,
        "user_id": "u1",
        "session_id": "s1",
        "success": success,
        "duration_ms": duration_ms,
    }
    event.update(fields)
    return event


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_ingest_then_query_overview(client):
    response = client.post("/v1/events", json={"events": [_event(), _event("skill-b", success=False)]})

    assert response.status_code == 200
    assert response.json() == {"accepted": 2}

    overview = client.get("/v1/analytics/overview").json()
    assert overview["total_calls"] == 2
    assert overview["success_rate"] == pytest.approx(0.5)
    assert overview["active_users"] == 1


def test_ingest_counts_duplicate_ids(client, store):
    payload = {"events": [_event(id="same"), _event(id="same")]}

    assert client.post("/v1/events", json=payload).json() == {"accepted": 2}
    assert client.post("/v1/events", json=payload).json() == {"accepted": 2}
    assert client.get("/v1/analytics/overview").json()["total_calls"] == 1


def test_malformed_body_is_rejected(client):
    response = client.post(
        "/v1/events",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["error"].startswith("Invalid JSON")


def test_missing_required_field_is_rejected(client):
    response = client.post("/v1/events", json={"events": [{"skill_id": "skill-a"}]})

    assert response.status_code == 400
    assert "error" in response.json()


def test_unknown_view_and_route_return_404(client):
    unknown_view = client.get("/v1/analytics/nope")
    assert unknown_view.status_code == 404
    assert "nope" in unknown_view.json()["error"]

    unknown_route = client.get("/v2/everything")
    assert unknown_route.status_code == 404
    assert unknown_route.json() == {"error": "Not Found"}


def test_wrong_method_is_rejected(client):
    response = client.get("/v1/events")

    assert response.status_code == 405
    assert "error" in response.json()


def test_storage_failure_returns_500(client, store, monkeypatch):
    def _boom(_rows):
        raise StorageError("disk I/O error")

    monkeypatch.setattr(store, "insert_events", _boom)

    response = client.post("/v1/events", json={"events": [_event()]})

    assert response.status_code == 500
    assert response.json() == {"error": "Internal storage error"}


def test_failure_spike_is_detected_after_ingest(client):
    events = [_event(success=i >= 3) for i in range(21)]

    assert client.post("/v1/events", json={"events": events}).status_code == 200

    alerts = client.get("/v1/analytics/alerts").json()
    assert len(alerts) == 1
    assert alerts[0]["alert_type"] == "failure_spike"
    assert alerts[0]["severity"] == "critical"
    assert "(3/21)" in alerts[0]["message"]


def test_detector_errors_do_not_affect_ingest(client, monkeypatch):
    def _broken(*_args, **_kwargs):
        raise RuntimeError("detector exploded")

    monkeypatch.setattr("skilltelemetry.service.app.run_checks", _broken)

    response = client.post("/v1/events", json={"events": [_event()]})

    assert response.status_code == 200
    assert response.json() == {"accepted": 1}


def test_top_skills_query_parameters(client):
    events = [_event("skill-a") for _ in range(3)] + [_event("skill-b")]
    client.post("/v1/events", json={"events": events})

    limited = client.get("/v1/analytics/top_skills", params={"limit": 1}).json()
    assert [entry["skill_id"] for entry in limited] == ["skill-a"]

    fallback = client.get("/v1/analytics/top_skills", params={"limit": "abc", "days": "-3"}).json()
    assert [entry["skill_id"] for entry in fallback] == ["skill-a", "skill-b"]


def test_rollup_views_and_caller_view(client, store):
    client.post(
        "/v1/events",
        json={
            "events": [
                _event(cost={"api_cost_usd": 0.02}, caller={"agent_id": "agent-x", "tool_key": "search"}),
                _event(success=False, cost={"api_cost_usd": 0.01}),
            ]
        },
    )
    aggregate_recent(store, 1)

    trend = client.get("/v1/analytics/daily_trend", params={"days": 7}).json()
    assert len(trend) == 1
    assert trend[0]["total_calls"] == 2

    per_skill = client.get("/v1/analytics/success_rate", params={"skill_id": "skill-a"}).json()
    assert per_skill[0]["skill_id"] == "skill-a"
    assert per_skill[0]["fail_count"] == 1

    costs = client.get("/v1/analytics/cost_summary").json()
    assert costs[0]["total_cost_usd"] == pytest.approx(0.03)

    callers = client.get("/v1/analytics/caller_analysis").json()
    assert callers == [{"caller_agent": "agent-x", "caller_tool": "search", "skill_id": "skill-a", "call_count": 1}]

    assert client.get("/v1/analytics/user_retention").json() == []


def test_app_opens_its_own_store(tmp_path: Path):
    settings = _settings(tmp_path, aggregate_enabled=True, aggregate_interval_seconds=3600)

    with TestClient(create_app(settings)) as test_client:
        assert test_client.get("/health").status_code == 200
        assert test_client.post("/v1/events", json={"events": [_event()]}).json() == {"accepted": 1}

    assert (tmp_path / settings.db_filename).exists()


@pytest.mark.parametrize(
    "overrides",
    [
        {"duration_ms": 2**64},
        {"cost": {"token_input": 2**64}},
    ],
)
def test_out_of_range_integers_are_rejected_as_json(client, overrides):
    response = client.post("/v1/events", json={"events": [_event(**overrides)]})

    assert response.status_code == 400
    assert response.json()["error"].startswith("Invalid JSON")
    assert client.get("/v1/analytics/overview").json()["total_calls"] == 0


def test_huge_epoch_timestamp_is_stored_at_ingest_time(client):
    response = client.post("/v1/events", json={"events": [_event(timestamp=1e20)]})

    assert response.status_code == 200
    assert response.json() == {"accepted": 1}
    assert client.get("/v1/analytics/overview").json()["total_calls"] == 1
