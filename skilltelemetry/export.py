from __future__ import annotations

import csv
import json
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from skilltelemetry.service.store import EventStore

EXPORT_FORMATS = ("json", "csv")
EXPORT_TOP_SKILLS_LIMIT = 50

_SECTIONS = (
    ("daily_trend", "Daily Trend"),
    ("top_skills", "Top Skills"),
    ("cost_summary", "Cost Summary"),
)


def build_export(
    store: EventStore,
    *,
    days: int = 30,
    skill_id: str | None = None,
    now: int | None = None,
) -> dict[str, Any]:
    """Collect overview, trend, ranking and cost views into one export payload.

    With ``skill_id`` the trend switches to that skill's own rollups and the
    ranking and cost views keep only its entry.
    """
    now = int(time.time()) if now is None else now
    if skill_id:
        trend = store.get_success_rate_trend(skill_id, days, now=now)
    else:
        trend = store.get_daily_trend(days, now=now)
    top_skills = store.get_top_skills(days, EXPORT_TOP_SKILLS_LIMIT, now=now)
    costs = store.get_cost_summary(days, now=now)
    if skill_id:
        top_skills = [entry for entry in top_skills if entry.skill_id == skill_id]
        costs = [entry for entry in costs if entry.skill_id == skill_id]

    return {
        "export_timestamp": datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
        "days": days,
        "skill_filter": skill_id,
        "overview": store.get_overview(days, now=now).to_dict(),
        "daily_trend": [stat.to_dict() for stat in trend],
        "top_skills": [entry.to_dict() for entry in top_skills],
        "cost_summary": [entry.to_dict() for entry in costs],
    }


def write_export(data: dict[str, Any], path: Path, fmt: str) -> Path:
    fmt = fmt.lower()
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unsupported export format '{fmt}'. Use one of: {', '.join(EXPORT_FORMATS)}.")

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if fmt == "json":
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        return path

    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle)
        writer.writerow(["# Overview"])
        for key, value in data["overview"].items():
            writer.writerow([key, "" if value is None else value])

        for key, title in _SECTIONS:
            rows = data.get(key) or []
            writer.writerow([])
            writer.writerow([f"# {title}"])
            if not rows:
                continue
            columns = list(rows[0].keys())
            writer.writerow(columns)
            for row in rows:
                writer.writerow(["" if row[column] is None else row[column] for column in columns])
    return path


def default_export_path(fmt: str, *, directory: Path | None = None) -> Path:
    base = directory or Path.cwd()
    return base / f"analytics_export_{int(time.time() * 1000)}.{fmt}"
