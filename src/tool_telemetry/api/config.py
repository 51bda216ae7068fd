"""
tool-telemetry API Configuration.

Environment-based configuration for the ingestion and analytics service.
"""

import os
from dataclasses import dataclass, field
from typing import Optional


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class TelemetryConfig:
    """
    Configuration for the tool-telemetry API service.

    All settings can be configured via environment variables.
    """

    # API Server settings
    host: str = field(default_factory=lambda: os.getenv("TOOL_TELEMETRY_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("TOOL_TELEMETRY_PORT", "8080")))

    # Logging
    log_level: str = field(default_factory=lambda: os.getenv("TOOL_TELEMETRY_LOG_LEVEL", "INFO"))

    # Database (full SQLAlchemy URL wins over the SQLite path)
    database_url: Optional[str] = field(default_factory=lambda: os.getenv("TOOL_TELEMETRY_DATABASE_URL"))
    db_path: str = field(default_factory=lambda: os.getenv("TOOL_TELEMETRY_DB_PATH", "./tool_telemetry.db"))

    # Rollup windows
    usage_window_days: int = field(
        default_factory=lambda: int(os.getenv("TOOL_TELEMETRY_USAGE_WINDOW_DAYS", "30"))
    )
    hourly_window_hours: int = field(
        default_factory=lambda: int(os.getenv("TOOL_TELEMETRY_HOURLY_WINDOW_HOURS", "24"))
    )

    # Usage metering (UsageEvent rows)
    metering_enabled: bool = field(default_factory=lambda: _env_bool("TOOL_TELEMETRY_METERING_ENABLED", "true"))

    @classmethod
    def from_env(cls) -> "TelemetryConfig":
        """Create configuration from environment variables."""
        return cls()

    def resolved_database_url(self) -> str:
        return self.database_url or f"sqlite:///{self.db_path}"
