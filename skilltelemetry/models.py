from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

ALERT_FAILURE_SPIKE = "failure_spike"
ALERT_LATENCY_SPIKE = "latency_spike"

SEVERITY_CRITICAL = "critical"
SEVERITY_WARNING = "warning"


@dataclass(slots=True)
class EventRow:
    """One normalized skill event as stored in ``skill_events``."""

    id: str
    event_type: str
    skill_id: str
    timestamp: int
    user_id: str
    session_id: str
    success: bool = True
    input_hash: str | None = None
    duration_ms: int | None = None
    error: str | None = None
    feedback_score: int | None = None
    token_input: int | None = None
    token_output: int | None = None
    api_cost_usd: float | None = None
    caller_agent: str | None = None
    caller_workflow: str | None = None
    caller_tool: str | None = None
    metadata_json: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class DailyStat:
    skill_id: str
    date: str
    total_calls: int
    success_count: int
    fail_count: int
    p50_ms: int | None = None
    p95_ms: int | None = None
    p99_ms: int | None = None
    avg_ms: float | None = None
    unique_users: int = 0
    total_cost_usd: float = 0.0
    thumbs_up: int = 0
    thumbs_down: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class Alert:
    id: str
    skill_id: str
    alert_type: str
    severity: str
    message: str
    detected_at: int
    resolved_at: int | None = None
    acknowledged: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class Overview:
    total_calls: int
    success_rate: float
    p95_latency_ms: int | None
    active_users: int
    total_calls_delta_pct: float | None
    success_rate_delta: float | None
    p95_latency_delta_ms: int | None
    active_users_delta: int | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class TopSkillEntry:
    skill_id: str
    call_count: int
    success_rate: float
    avg_latency_ms: float | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class CostSummaryEntry:
    skill_id: str
    call_count: int
    success_rate: float
    total_cost_usd: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class CallerDependency:
    caller_agent: str
    caller_tool: str | None
    skill_id: str
    call_count: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class UserRetentionPair:
    skill_a: str
    skill_b: str
    users_both: int
    users_a_only: int
    retention_rate: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
