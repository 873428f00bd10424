"""Buffered tracking client that skills use to report events to the ingest server.

Events are posted in batches to ``/v1/events``. When the server cannot be
reached, the batch is appended to a JSONL file under ``fallback_dir`` and
resent by ``drain_fallback()``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "http://127.0.0.1:19823"
EVENTS_PATH = "/v1/events"
FALLBACK_PREFIX = "pending_events_"


def hash_input(value: Any) -> str:
    raw = value if isinstance(value, str) else json.dumps(value, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class InvokeSpan:
    """Mutable record of one invocation; finalized when ``track_invoke`` exits."""

    session_id: str
    input_hash: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    cost: dict[str, Any] | None = None
    caller: dict[str, Any] | None = None
    error: str | None = None

    def set_cost(
        self,
        *,
        token_input: int | None = None,
        token_output: int | None = None,
        api_cost_usd: float | None = None,
    ) -> None:
        self.cost = {"token_input": token_input, "token_output": token_output, "api_cost_usd": api_cost_usd}

    def set_caller(self, *, agent_id: str, tool_key: str | None = None, workflow_id: str | None = None) -> None:
        self.caller = {"agent_id": agent_id, "workflow_id": workflow_id, "tool_key": tool_key}

    def fail(self, error: BaseException | str) -> None:
        self.error = str(error)


class TelemetryClient:
    def __init__(
        self,
        *,
        skill_id: str,
        user_id: str,
        endpoint: str = DEFAULT_ENDPOINT,
        buffer_size: int = 100,
        timeout_seconds: float = 5.0,
        fallback_dir: Path | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._skill_id = skill_id
        self._user_id = user_id
        self._buffer_size = max(1, buffer_size)
        self._fallback_dir = Path(fallback_dir) if fallback_dir else Path("~/.skillshub/analytics_buffer").expanduser()
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._http = httpx.Client(base_url=endpoint.rstrip("/"), timeout=timeout_seconds, transport=transport)

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def close(self) -> None:
        self.flush()
        self._http.close()

    def __enter__(self) -> TelemetryClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def record(self, event: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.append(event)
            full = len(self._buffer) >= self._buffer_size
        if full:
            self.flush()

    def _event(self, *, event_type: str, session_id: str, success: bool, **fields: Any) -> dict[str, Any]:
        event = {
            "id": str(uuid.uuid4()),
            "event_type": event_type,
            "skill_id": self._skill_id,
            "timestamp": _utc_now_iso(),
            "user_id": self._user_id,
            "session_id": session_id,
            "success": success,
        }
        event.update({key: value for key, value in fields.items() if value is not None})
        return event

    @contextmanager
    def track_invoke(
        self,
        session_id: str,
        *,
        input_hash: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Iterator[InvokeSpan]:
        """Time the enclosed block and record a ``skill_invoke`` event.

        An exception escaping the block marks the event failed and is re-raised.
        """
        span = InvokeSpan(session_id=session_id, input_hash=input_hash, metadata=dict(metadata or {}))
        started = time.monotonic()
        try:
            yield span
        except BaseException as exc:
            span.fail(exc)
            raise
        finally:
            self.record(
                self._event(
                    event_type="skill_invoke",
                    session_id=span.session_id,
                    success=span.error is None,
                    input_hash=span.input_hash,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    error=span.error,
                    cost=span.cost,
                    caller=span.caller,
                    metadata=span.metadata,
                )
            )

    def feedback(self, session_id: str, score: int, *, metadata: dict[str, Any] | None = None) -> None:
        if score not in (1, -1):
            raise ValueError("Feedback score must be 1 or -1.")
        self.record(
            self._event(
                event_type="skill_feedback",
                session_id=session_id,
                success=True,
                feedback_score=score,
                metadata=metadata or {},
            )
        )

    def flush(self) -> bool:
        with self._lock:
            batch, self._buffer = self._buffer, []
        if not batch:
            return True
        if self._send(batch):
            return True
        self._persist_fallback(batch)
        return False

    def _send(self, events: list[dict[str, Any]]) -> bool:
        try:
            response = self._http.post(EVENTS_PATH, json={"events": events})
        except httpx.HTTPError as exc:
            logger.warning("Telemetry send failed: %s", exc)
            return False
        if response.status_code != 200:
            logger.warning("Telemetry server rejected batch: %s %s", response.status_code, response.text)
            return False
        return True

    def _persist_fallback(self, events: list[dict[str, Any]]) -> Path:
        self._fallback_dir.mkdir(parents=True, exist_ok=True)
        path = self._fallback_dir / f"{FALLBACK_PREFIX}{time.strftime('%Y%m%d')}.jsonl"
        with path.open("a", encoding="utf-8") as handle:
            for event in events:
                handle.write(json.dumps(event) + "\n")
        logger.info("Stored %d telemetry event(s) in %s", len(events), path)
        return path

    def drain_fallback(self) -> int:
        """Resend persisted batches; files are removed once accepted."""
        if not self._fallback_dir.is_dir():
            return 0
        drained = 0
        for path in sorted(self._fallback_dir.glob(f"{FALLBACK_PREFIX}*.jsonl")):
            events = []
            for line in path.read_text(encoding="utf-8").splitlines():
                if not line.strip():
                    continue
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning("Skipping corrupt fallback line in %s", path)
            if events and not self._send(events):
                break
            path.unlink()
            drained += len(events)
        return drained
