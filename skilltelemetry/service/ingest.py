from __future__ import annotations

import json
import math
import time
import uuid
from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, Field, ValidationError

from skilltelemetry.errors import ParseError
from skilltelemetry.models import EventRow

# Integer columns are SQLite INTEGER, a signed 64-bit value.
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

Int64 = Annotated[int, Field(ge=INT64_MIN, le=INT64_MAX)]


class IngestCost(BaseModel):
    token_input: Int64 | None = None
    token_output: Int64 | None = None
    api_cost_usd: float | None = None


class IngestCaller(BaseModel):
    agent_id: str | None = None
    workflow_id: str | None = None
    tool_key: str | None = None


class IngestEvent(BaseModel):
    id: str | None = Field(default=None, description="Caller-supplied idempotency key")
    event_type: str
    skill_id: str
    timestamp: str | float | None = None
    user_id: str
    session_id: str
    input_hash: str | None = None
    success: bool
    duration_ms: Int64 | None = None
    error: str | None = None
    feedback_score: Int64 | None = None
    cost: IngestCost | None = None
    caller: IngestCaller | None = None
    metadata: Any = None

    def to_row(self, *, now: int | None = None) -> EventRow:
        cost = self.cost or IngestCost()
        caller = self.caller or IngestCaller()
        return EventRow(
            id=self.id or str(uuid.uuid4()),
            event_type=self.event_type,
            skill_id=self.skill_id,
            timestamp=normalize_timestamp(self.timestamp, now=now),
            user_id=self.user_id,
            session_id=self.session_id,
            input_hash=self.input_hash,
            success=self.success,
            duration_ms=self.duration_ms,
            error=self.error,
            feedback_score=self.feedback_score,
            token_input=cost.token_input,
            token_output=cost.token_output,
            api_cost_usd=cost.api_cost_usd,
            caller_agent=caller.agent_id,
            caller_workflow=caller.workflow_id,
            caller_tool=caller.tool_key,
            metadata_json=json.dumps(self.metadata) if self.metadata is not None else None,
        )


class IngestRequest(BaseModel):
    events: list[IngestEvent]


def normalize_timestamp(value: str | float | None, *, now: int | None = None) -> int:
    """Convert an RFC 3339 string or epoch seconds to epoch seconds.

    Anything unparseable, including a string without a UTC offset or an epoch
    number that is not finite or does not fit in 64 bits, becomes "now".
    """
    fallback = int(time.time()) if now is None else now
    if value is None:
        return fallback
    if isinstance(value, (int, float)):
        if not math.isfinite(value) or not INT64_MIN <= value <= INT64_MAX:
            return fallback
        return int(value)

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return fallback
    if parsed.tzinfo is None:
        return fallback
    return int(parsed.timestamp())


def parse_ingest_body(body: bytes | str, *, now: int | None = None) -> list[EventRow]:
    """Decode a ``POST /v1/events`` body into normalized rows."""
    try:
        request = IngestRequest.model_validate_json(body)
    except ValidationError as exc:
        raise ParseError(f"Invalid JSON: {_first_error(exc)}") from exc
    return [event.to_row(now=now) for event in request.events]


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message
