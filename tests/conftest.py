from __future__ import annotations

import uuid
from pathlib import Path

import pytest

from skilltelemetry.models import EventRow
from skilltelemetry.service.store import EventStore

# 2025-10-09T08:53:20Z
NOW = 1_760_000_000
DAY = "2025-10-09"


@pytest.fixture()
def store(tmp_path: Path):
    event_store = EventStore(tmp_path / "analytics.db")
    try:
        yield event_store
    finally:
        event_store.close()


@pytest.fixture()
def make_event():
    def _factory(
        skill_id: str = "skill-a",
        *,
        success: bool = True,
        duration_ms: int | None = 100,
        timestamp: int = NOW,
        user_id: str = "test_user",
        event_id: str | None = None,
        **fields,
    ) -> EventRow:
        return EventRow(
            id=event_id or str(uuid.uuid4()),
            event_type="skill_invoke",
            skill_id=skill_id,
            timestamp=timestamp,
            user_id=user_id,
            session_id="test_session",
            input_hash="abc123",
            success=success,
            duration_ms=duration_ms,
            error=None if success else "test error",
            **fields,
        )

    return _factory
