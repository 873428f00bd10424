from skilltelemetry.config.settings import TelemetrySettings

__all__ = ["TelemetrySettings"]
