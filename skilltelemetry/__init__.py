"""Embedded telemetry engine for managed skills: ingestion, rollups and alerts."""

__version__ = "0.1.0"
