from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class TelemetrySettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SKILLTELEMETRY_",
        env_file=".env",
        extra="ignore",
    )

    data_dir: Path = Path("~/.skillshub")
    db_filename: str = "skills_hub_analytics.db"

    # Loopback only; read once when the server starts.
    ingest_host: str = "127.0.0.1"
    ingest_port: int = 19823

    failure_spike_min_calls: int = 20
    failure_spike_rate: float = 0.10
    latency_spike_factor: float = 3.0
    auto_resolve_alerts: bool = True

    aggregate_enabled: bool = True
    aggregate_interval_seconds: float = 3600.0
    aggregate_lookback_days: int = 2

    log_level: str = "INFO"

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir).expanduser() / self.db_filename

    @property
    def ingest_url(self) -> str:
        return f"http://{self.ingest_host}:{self.ingest_port}"

    def resolve_data_dir(self, folder: str | None = None) -> Path:
        """Resolve the data directory (``folder`` wins over the configured one) and create it."""
        base = Path(folder) if folder else Path(self.data_dir)
        self.data_dir = base.expanduser().resolve()
        self.data_dir.mkdir(parents=True, exist_ok=True)
        return self.data_dir
