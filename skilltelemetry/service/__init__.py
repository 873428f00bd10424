from skilltelemetry.service.store import EventStore

__all__ = ["EventStore"]
