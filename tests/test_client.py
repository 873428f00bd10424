from __future__ import annotations

import json
import threading
from pathlib import Path

import httpx
import pytest

from skilltelemetry.client import FALLBACK_PREFIX, TelemetryClient, hash_input


class _Collector:
    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.batches: list[list[dict]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/events"
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": "nope"})
        events = json.loads(request.content)["events"]
        self.batches.append(events)
        return httpx.Response(200, json={"accepted": len(events)})


def _client(collector, tmp_path: Path, **kwargs) -> TelemetryClient:
    return TelemetryClient(
        skill_id="skill-a",
        user_id="u1",
        fallback_dir=tmp_path / "buffer",
        transport=httpx.MockTransport(collector),
        **kwargs,
    )


def test_hash_input_is_stable():
    assert hash_input({"b": 1, "a": 2}) == hash_input({"a": 2, "b": 1})
    assert len(hash_input("query")) == 16


def test_track_invoke_records_successful_call(tmp_path: Path):
    collector = _Collector()
    client = _client(collector, tmp_path, buffer_size=1)

    with client.track_invoke("s1", input_hash="abc") as span:
        span.set_cost(token_input=10, token_output=5, api_cost_usd=0.002)
        span.set_caller(agent_id="agent-x", tool_key="search")

    (event,) = collector.batches[0]
    assert event["event_type"] == "skill_invoke"
    assert event["skill_id"] == "skill-a"
    assert event["success"] is True
    assert event["input_hash"] == "abc"
    assert isinstance(event["duration_ms"], int)
    assert event["cost"]["api_cost_usd"] == 0.002
    assert event["caller"] == {"agent_id": "agent-x", "workflow_id": None, "tool_key": "search"}
    assert "error" not in event
    client.close()


def test_track_invoke_marks_failures_and_reraises(tmp_path: Path):
    collector = _Collector()
    client = _client(collector, tmp_path)

    with pytest.raises(RuntimeError):
        with client.track_invoke("s1"):
            raise RuntimeError("tool crashed")

    assert client.pending == 1
    client.close()
    (event,) = collector.batches[0]
    assert event["success"] is False
    assert event["error"] == "tool crashed"


def test_feedback_scores(tmp_path: Path):
    collector = _Collector()
    with _client(collector, tmp_path) as client:
        client.feedback("s1", 1)
        client.feedback("s1", -1)
        with pytest.raises(ValueError):
            client.feedback("s1", 5)

    assert [event["feedback_score"] for event in collector.batches[0]] == [1, -1]
    assert {event["event_type"] for event in collector.batches[0]} == {"skill_feedback"}


def test_failed_flush_goes_to_fallback_and_drains(tmp_path: Path):
    failing = _Collector(status_code=500)
    client = _client(failing, tmp_path)
    client.feedback("s1", 1)

    assert client.flush() is False
    assert client.pending == 0
    files = list((tmp_path / "buffer").glob(f"{FALLBACK_PREFIX}*.jsonl"))
    assert len(files) == 1
    client.close()

    collector = _Collector()
    retry = _client(collector, tmp_path)
    assert retry.drain_fallback() == 1
    assert collector.batches[0][0]["feedback_score"] == 1
    assert not files[0].exists()
    retry.close()


def test_unreachable_server_uses_fallback(tmp_path: Path):
    def _down(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(_down, tmp_path)
    client.feedback("s1", -1)
    client.close()

    assert list((tmp_path / "buffer").glob(f"{FALLBACK_PREFIX}*.jsonl"))


def test_drain_without_fallback_dir(tmp_path: Path):
    client = _client(_Collector(), tmp_path)

    assert client.drain_fallback() == 0
    client.close()


def test_pending_is_consistent_across_threads(tmp_path: Path):
    client = _client(_Collector(), tmp_path, buffer_size=1000)

    def _record() -> None:
        for _ in range(50):
            client.feedback("s1", 1)

    threads = [threading.Thread(target=_record) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert client.pending == 200
    client.close()
    assert client.pending == 0
