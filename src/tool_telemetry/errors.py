"""
Exception hierarchy for the telemetry ingestion and analytics service.

Only batch-level problems are raised. Row-level decode anomalies are
recovered where they happen and never reach this module.
"""

from typing import Any, Dict, Optional


class TelemetryError(Exception):
    """Base exception carrying an optional client-facing hint."""

    status_code = 500

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message}
        if self.hint:
            payload["hint"] = self.hint
        return payload


class PayloadShapeError(TelemetryError):
    """The top-level OTLP envelope is missing its array key."""

    status_code = 400


class ToolProfileNotFoundError(TelemetryError):
    """No tool profile with that id exists for the customer."""

    status_code = 404

    def __init__(self, profile_id: str):
        super().__init__("Tool profile not found")
        self.profile_id = profile_id


class UnsupportedDialectError(TelemetryError):
    """The configured database cannot run the atomic counter upsert."""


class MissingIdentityError(TelemetryError):
    """The request carries no customer id from the auth layer."""

    status_code = 401

    def __init__(self):
        super().__init__("Missing customer identity", hint="Send the X-Customer-Id header.")
