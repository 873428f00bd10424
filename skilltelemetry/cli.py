from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from skilltelemetry import __version__

app = typer.Typer(
    name="skilltelemetry",
    help="Skill telemetry engine: ingest server, rollups and alerts",
)

console = Console()

LOOPBACK_HOSTS = ("127.0.0.1", "::1", "localhost")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _get_settings(ctx: typer.Context):
    """Retrieve the resolved TelemetrySettings from context."""
    return ctx.obj["settings"]


def _open_store(ctx: typer.Context):
    from skilltelemetry.service.store import EventStore

    return EventStore(_get_settings(ctx).db_path)


@app.callback()
def main(
    ctx: typer.Context,
    data_dir: str | None = typer.Option(
        None, "--data-dir", "-d", help="Directory holding the analytics database"
    ),
) -> None:
    """Skill telemetry engine."""
    from skilltelemetry.config.settings import TelemetrySettings

    settings = TelemetrySettings()
    settings.resolve_data_dir(data_dir)
    _configure_logging(settings.log_level)

    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@app.command("serve")
def serve(
    ctx: typer.Context,
    host: str | None = typer.Option(None, "--host", help="Listener host (loopback addresses only)"),
    port: int | None = typer.Option(None, "--port", help="Listener port"),
) -> None:
    """Run the ingest and query server."""
    import uvicorn

    from skilltelemetry.service.app import create_app

    settings = _get_settings(ctx)
    if host:
        settings.ingest_host = host
    if port:
        settings.ingest_port = port
    if settings.ingest_host not in LOOPBACK_HOSTS:
        console.print(f"[red]Refusing to listen on {settings.ingest_host}; the ingest server is loopback only.[/]")
        raise typer.Exit(1)

    console.print(f"[bold]Ingest server[/] listening on {settings.ingest_url}")
    uvicorn.run(create_app(settings), host=settings.ingest_host, port=settings.ingest_port, log_level="warning")


@app.command("aggregate")
def aggregate(
    ctx: typer.Context,
    day: str | None = typer.Option(None, "--date", help="UTC day to recompute (YYYY-MM-DD)"),
    days: int = typer.Option(1, "--days", help="Recompute this many days ending today"),
) -> None:
    """Recompute daily rollups from raw events."""
    from skilltelemetry.service.aggregator import aggregate_daily_stats, aggregate_recent

    store = _open_store(ctx)
    try:
        if day:
            try:
                parsed = date.fromisoformat(day)
            except ValueError:
                console.print(f"[red]Invalid date '{day}'; expected YYYY-MM-DD.[/]")
                raise typer.Exit(1)
            written = len(aggregate_daily_stats(store, parsed))
        else:
            written = aggregate_recent(store, days)
    finally:
        store.close()
    console.print(f"Wrote {written} rollup row(s).")


@app.command("overview")
def overview(
    ctx: typer.Context,
    days: int = typer.Option(7, "--days", help="Trailing window in days"),
) -> None:
    """Show call volume, success rate and latency for the trailing window."""
    from skilltelemetry.commands import get_analytics_overview

    store = _open_store(ctx)
    try:
        data = get_analytics_overview(store, days)
    finally:
        store.close()

    table = Table(title=f"Overview (last {days} days)")
    table.add_column("Metric", style="cyan")
    table.add_column("Value")
    table.add_column("Delta")
    table.add_row("Total calls", str(data["total_calls"]), _fmt_delta(data["total_calls_delta_pct"], "%"))
    table.add_row("Success rate", f"{data['success_rate'] * 100:.1f}%", _fmt_delta(data["success_rate_delta"]))
    table.add_row(
        "P95 latency (ms)",
        "-" if data["p95_latency_ms"] is None else str(data["p95_latency_ms"]),
        _fmt_delta(data["p95_latency_delta_ms"]),
    )
    table.add_row("Active users", str(data["active_users"]), _fmt_delta(data["active_users_delta"]))
    console.print(table)


def _fmt_delta(value, suffix: str = "") -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:+.2f}{suffix}"
    return f"{value:+d}{suffix}"


@app.command("top")
def top_skills(
    ctx: typer.Context,
    days: int = typer.Option(7, "--days", help="Trailing window in days"),
    limit: int = typer.Option(10, "--limit", help="Number of skills to show"),
) -> None:
    """Rank skills by call count."""
    from skilltelemetry.commands import get_analytics_top_skills

    store = _open_store(ctx)
    try:
        entries = get_analytics_top_skills(store, days, limit)
    finally:
        store.close()

    if not entries:
        console.print("[dim]No events in this window.[/]")
        return

    table = Table(title=f"Top Skills (last {days} days)")
    table.add_column("Skill", style="cyan")
    table.add_column("Calls", justify="right")
    table.add_column("Success", justify="right")
    table.add_column("Avg latency (ms)", justify="right")
    for entry in entries:
        avg = entry["avg_latency_ms"]
        table.add_row(
            entry["skill_id"],
            str(entry["call_count"]),
            f"{entry['success_rate'] * 100:.1f}%",
            "-" if avg is None else f"{avg:.0f}",
        )
    console.print(table)


@app.command("alerts")
def list_alerts(ctx: typer.Context) -> None:
    """List unresolved alerts."""
    from skilltelemetry.commands import get_analytics_alerts

    store = _open_store(ctx)
    try:
        alerts = get_analytics_alerts(store)
    finally:
        store.close()

    if not alerts:
        console.print("[dim]No active alerts.[/]")
        return

    table = Table(title="Active Alerts")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Skill")
    table.add_column("Type", no_wrap=True)
    table.add_column("Severity", no_wrap=True)
    table.add_column("Detected")
    table.add_column("Ack")
    table.add_column("Message", overflow="fold")
    for alert in alerts:
        detected = datetime.fromtimestamp(alert["detected_at"], tz=timezone.utc).strftime("%Y-%m-%d %H:%M")
        table.add_row(
            alert["id"],
            alert["skill_id"],
            alert["alert_type"],
            alert["severity"],
            detected,
            "yes" if alert["acknowledged"] else "no",
            alert["message"],
        )
    console.print(table)


@app.command("ack")
def acknowledge(
    ctx: typer.Context,
    alert_id: str = typer.Argument(..., help="Alert ID to acknowledge"),
) -> None:
    """Acknowledge an alert."""
    from skilltelemetry.commands import acknowledge_analytics_alert

    store = _open_store(ctx)
    try:
        found = acknowledge_analytics_alert(store, alert_id)
    finally:
        store.close()

    if not found:
        console.print(f"[red]Alert {alert_id} not found.[/]")
        raise typer.Exit(1)
    console.print(f"Acknowledged alert {alert_id}.")


@app.command("export")
def export(
    ctx: typer.Context,
    fmt: str = typer.Option("json", "--format", "-f", help="json or csv"),
    output: str | None = typer.Option(None, "--output", "-o", help="Output file path"),
    days: int = typer.Option(30, "--days", help="Trailing window in days"),
    skill_id: str | None = typer.Option(None, "--skill-id", help="Restrict to one skill"),
) -> None:
    """Export analytics views to a JSON or CSV file."""
    from skilltelemetry.export import EXPORT_FORMATS, build_export, default_export_path, write_export

    fmt = fmt.lower()
    if fmt not in EXPORT_FORMATS:
        console.print(f"[red]Unsupported format '{fmt}'. Use json or csv.[/]")
        raise typer.Exit(1)

    store = _open_store(ctx)
    try:
        data = build_export(store, days=days, skill_id=skill_id)
    finally:
        store.close()

    path = write_export(data, Path(output) if output else default_export_path(fmt), fmt)
    console.print(f"Exported analytics to {path} ({path.stat().st_size:,} bytes)")


@app.command("version")
def version() -> None:
    """Show version."""
    console.print(f"skilltelemetry v{__version__}")
