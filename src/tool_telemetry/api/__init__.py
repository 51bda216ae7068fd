"""
tool-telemetry HTTP API Module.

OTLP/HTTP JSON receivers plus the read API for tool profiles and usage
analytics, served by Flask.
"""

from .app import create_app, run_api
from .config import TelemetryConfig
from .health import health_bp, init_health

__all__ = [
    "create_app",
    "run_api",
    "TelemetryConfig",
    "health_bp",
    "init_health",
]
