"""
tool-telemetry database package.

Exports the engine/session lifecycle, the ORM model classes and the
``TelemetryStore`` gateway.
"""

from .engine import get_engine, get_session, init_db, close_db, remove_session, ping
from .models import (
    Base,
    ToolProfile,
    TelemetrySpan,
    TelemetryMetric,
    TelemetryLog,
    UsageEvent,
)
from .store import ProfileUpsert, TelemetryStore

__all__ = [
    "get_engine",
    "get_session",
    "init_db",
    "close_db",
    "remove_session",
    "ping",
    "Base",
    "ToolProfile",
    "TelemetrySpan",
    "TelemetryMetric",
    "TelemetryLog",
    "UsageEvent",
    "ProfileUpsert",
    "TelemetryStore",
]
