"""Post-ingest anomaly checks.

Both checks read the skill's recent window from the store and report one of
three outcomes. A triggered check raises an alert through the store, which
suppresses duplicates while an alert of the same type is still unresolved. A
clear check resolves any open alert of that type when auto-resolution is on;
insufficient data leaves existing alerts untouched.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from skilltelemetry.models import (
    ALERT_FAILURE_SPIKE,
    ALERT_LATENCY_SPIKE,
    SEVERITY_CRITICAL,
    SEVERITY_WARNING,
    Alert,
)
from skilltelemetry.service.store import DAY_SECONDS, EventStore

if TYPE_CHECKING:
    from skilltelemetry.config.settings import TelemetrySettings

logger = logging.getLogger(__name__)

HOUR_SECONDS = 3600

TRIGGERED = "triggered"
CLEAR = "clear"
INSUFFICIENT_DATA = "insufficient_data"


@dataclass(slots=True)
class AlertThresholds:
    failure_min_calls: int = 20
    failure_rate: float = 0.10
    latency_factor: float = 3.0
    auto_resolve: bool = True

    @classmethod
    def from_settings(cls, settings: TelemetrySettings) -> AlertThresholds:
        return cls(
            failure_min_calls=int(settings.failure_spike_min_calls),
            failure_rate=float(settings.failure_spike_rate),
            latency_factor=float(settings.latency_spike_factor),
            auto_resolve=bool(settings.auto_resolve_alerts),
        )


@dataclass(slots=True)
class CheckResult:
    alert_type: str
    status: str
    message: str | None = None

    @property
    def triggered(self) -> bool:
        return self.status == TRIGGERED


def check_failure_spike(
    store: EventStore,
    skill_id: str,
    *,
    now: int | None = None,
    thresholds: AlertThresholds | None = None,
) -> CheckResult:
    """Failure rate over the trailing hour, gated on call volume."""
    limits = thresholds or AlertThresholds()
    now = int(time.time()) if now is None else now
    total, failures = store.window_counts(skill_id=skill_id, start=now - HOUR_SECONDS)

    if total <= limits.failure_min_calls:
        return CheckResult(ALERT_FAILURE_SPIKE, INSUFFICIENT_DATA)

    failure_rate = failures / total
    if failure_rate <= limits.failure_rate:
        return CheckResult(ALERT_FAILURE_SPIKE, CLEAR)

    message = (
        f"Skill '{skill_id}' failure rate is {failure_rate * 100:.1f}% "
        f"({failures}/{total}) in the last hour"
    )
    return CheckResult(ALERT_FAILURE_SPIKE, TRIGGERED, message)


def check_latency_spike(
    store: EventStore,
    skill_id: str,
    *,
    now: int | None = None,
    thresholds: AlertThresholds | None = None,
) -> CheckResult:
    """Trailing-hour p95 against the same hour one day earlier."""
    limits = thresholds or AlertThresholds()
    now = int(time.time()) if now is None else now
    one_hour_ago = now - HOUR_SECONDS

    current = store.window_p95(skill_id=skill_id, start=one_hour_ago)
    previous = store.window_p95(
        skill_id=skill_id,
        start=one_hour_ago - DAY_SECONDS,
        end=now - DAY_SECONDS,
    )

    if current is None or previous is None or previous <= 0:
        return CheckResult(ALERT_LATENCY_SPIKE, INSUFFICIENT_DATA)
    if current <= previous * limits.latency_factor:
        return CheckResult(ALERT_LATENCY_SPIKE, CLEAR)

    increase = (current - previous) / previous * 100
    message = (
        f"Skill '{skill_id}' P95 latency spiked from {previous}ms to {current}ms "
        f"({increase:.0f}% increase)"
    )
    return CheckResult(ALERT_LATENCY_SPIKE, TRIGGERED, message)


_SEVERITY = {
    ALERT_FAILURE_SPIKE: SEVERITY_CRITICAL,
    ALERT_LATENCY_SPIKE: SEVERITY_WARNING,
}


def run_checks(
    store: EventStore,
    skill_id: str,
    *,
    now: int | None = None,
    thresholds: AlertThresholds | None = None,
) -> list[Alert]:
    """Run every check for ``skill_id`` and return the alerts newly raised."""
    limits = thresholds or AlertThresholds()
    now = int(time.time()) if now is None else now
    raised: list[Alert] = []

    for check in (check_failure_spike, check_latency_spike):
        result = check(store, skill_id, now=now, thresholds=limits)
        if result.triggered:
            alert = store.raise_alert(
                skill_id=skill_id,
                alert_type=result.alert_type,
                severity=_SEVERITY[result.alert_type],
                message=result.message or "",
                now=now,
            )
            if alert is not None:
                logger.info("Raised %s alert for %s: %s", alert.alert_type, skill_id, alert.message)
                raised.append(alert)
        elif result.status == CLEAR and limits.auto_resolve:
            resolved = store.resolve_alerts(skill_id=skill_id, alert_type=result.alert_type, now=now)
            if resolved:
                logger.info("Resolved %d %s alert(s) for %s", resolved, result.alert_type, skill_id)

    return raised
