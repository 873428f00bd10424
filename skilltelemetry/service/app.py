from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from skilltelemetry import __version__, commands
from skilltelemetry.config.settings import TelemetrySettings
from skilltelemetry.errors import NotFoundError, ParseError, StorageError
from skilltelemetry.service.aggregator import DailyAggregator
from skilltelemetry.service.alerts import AlertThresholds, run_checks
from skilltelemetry.service.ingest import parse_ingest_body
from skilltelemetry.service.store import EventStore

logger = logging.getLogger(__name__)


def _int_param(request: Request, name: str, default: int) -> int:
    raw = request.query_params.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _analytics_views() -> dict[str, Callable[[EventStore, Request], Any]]:
    return {
        "overview": lambda store, req: commands.get_analytics_overview(
            store, _int_param(req, "days", commands.DEFAULT_OVERVIEW_DAYS)
        ),
        "top_skills": lambda store, req: commands.get_analytics_top_skills(
            store,
            _int_param(req, "days", commands.DEFAULT_TOP_SKILLS_DAYS),
            _int_param(req, "limit", commands.DEFAULT_TOP_SKILLS_LIMIT),
        ),
        "daily_trend": lambda store, req: commands.get_analytics_daily_trend(
            store, _int_param(req, "days", commands.DEFAULT_TREND_DAYS)
        ),
        "success_rate": lambda store, req: commands.get_analytics_success_rate(
            store,
            req.query_params.get("skill_id") or None,
            _int_param(req, "days", commands.DEFAULT_TREND_DAYS),
        ),
        "cost_summary": lambda store, req: commands.get_analytics_cost_summary(
            store, _int_param(req, "days", commands.DEFAULT_TREND_DAYS)
        ),
        "caller_analysis": lambda store, req: commands.get_analytics_caller_analysis(
            store, _int_param(req, "days", commands.DEFAULT_TREND_DAYS)
        ),
        "user_retention": lambda store, req: commands.get_analytics_user_retention(
            store, _int_param(req, "days", commands.DEFAULT_TREND_DAYS)
        ),
        "alerts": lambda store, req: commands.get_analytics_alerts(store),
    }


def create_app(
    settings: TelemetrySettings | None = None,
    *,
    store: EventStore | None = None,
) -> FastAPI:
    resolved_settings = settings or TelemetrySettings()
    owns_store = store is None
    if store is None:
        resolved_settings.resolve_data_dir()
        store = EventStore(resolved_settings.db_path)

    thresholds = AlertThresholds.from_settings(resolved_settings)
    views = _analytics_views()
    aggregator: DailyAggregator | None = None
    if resolved_settings.aggregate_enabled:
        aggregator = DailyAggregator(
            store,
            interval_seconds=resolved_settings.aggregate_interval_seconds,
            lookback_days=resolved_settings.aggregate_lookback_days,
        )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if aggregator is not None:
            aggregator.start()
        try:
            yield
        finally:
            if aggregator is not None:
                await aggregator.stop()
            if owns_store:
                store.close()

    app = FastAPI(title="Skill Telemetry Ingest Service", version=__version__, lifespan=lifespan)
    app.state.settings = resolved_settings
    app.state.store = store

    @app.exception_handler(ParseError)
    async def _parse_error(_request: Request, exc: ParseError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(StorageError)
    async def _storage_error(request: Request, exc: StorageError) -> JSONResponse:
        logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "Internal storage error"})

    @app.exception_handler(NotFoundError)
    async def _not_found(_request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=exc.headers)

    def _check_skills(skill_ids: list[str]) -> None:
        for skill_id in skill_ids:
            try:
                run_checks(store, skill_id, thresholds=thresholds)
            except Exception as exc:
                logger.warning("Alert check failed for %s: %s", skill_id, exc)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/v1/events")
    async def ingest_events(request: Request, background_tasks: BackgroundTasks) -> dict[str, Any]:
        rows = parse_ingest_body(await request.body())
        accepted = await run_in_threadpool(store.insert_events, rows)
        logger.info("Ingested %d events", accepted)

        skill_ids = list(dict.fromkeys(row.skill_id for row in rows))
        if skill_ids:
            background_tasks.add_task(_check_skills, skill_ids)
        return {"accepted": accepted}

    @app.get("/v1/analytics/{view}")
    def analytics_view(view: str, request: Request) -> Any:
        handler = views.get(view)
        if handler is None:
            raise NotFoundError(f"Unknown analytics view '{view}'.")
        return handler(store, request)

    return app
