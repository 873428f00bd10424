from __future__ import annotations


class TelemetryError(Exception):
    """Base class for telemetry engine failures."""


class ParseError(TelemetryError):
    """Raised when an inbound request body cannot be decoded into events."""


class StorageError(TelemetryError):
    """Raised when the underlying database rejects an operation."""


class SchemaError(TelemetryError):
    """Raised when the on-disk schema cannot be brought up to date."""


class UnsupportedSchemaVersion(SchemaError):
    """Raised when the database was written by a newer engine."""

    def __init__(self, found: int, supported: int) -> None:
        super().__init__(
            f"Database schema version {found} is newer than the supported version {supported}."
        )
        self.found = found
        self.supported = supported


class NotFoundError(TelemetryError):
    """Raised for unknown routes or analytics views."""
