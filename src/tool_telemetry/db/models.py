"""
SQLAlchemy ORM model definitions for all tool-telemetry tables.

Uses SQLAlchemy 2.0 DeclarativeBase. ``sqlalchemy.JSON`` maps to TEXT on
SQLite and JSON on PostgreSQL. Timestamps are stored as naive UTC.

``ToolProfile`` is the only table updated in place (its rolling counters,
through ``TelemetryStore.upsert_tool_profile``). Spans, metric datapoints and
log records are append-only and are removed only by cascade when their
profile is purged.
"""

import uuid

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.types import JSON
from sqlalchemy.orm import DeclarativeBase, relationship

from tool_telemetry.clock import utcnow


def new_id() -> str:
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    pass


# =========================================================================
# Rolling per-(customer, vendor) summary
# =========================================================================


class ToolProfile(Base):
    __tablename__ = "tool_profiles"
    __table_args__ = (
        UniqueConstraint("customer_id", "vendor", name="uq_tool_profiles_customer_vendor"),
    )

    id = Column(String, primary_key=True, default=new_id)
    customer_id = Column(String, nullable=False, index=True)
    vendor = Column(String, nullable=False)
    display_name = Column(String, nullable=False)
    vendor_category = Column(String)
    total_spans = Column(BigInteger, nullable=False, default=0)
    total_traces = Column(BigInteger, nullable=False, default=0)
    total_errors = Column(BigInteger, nullable=False, default=0)
    # Number of ingestion batches that touched this row; 1 right after the insert.
    batch_count = Column(Integer, nullable=False, default=0)
    first_seen_at = Column(DateTime, nullable=False)
    last_seen_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    spans = relationship(
        "TelemetrySpan", back_populates="tool_profile",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    metrics = relationship(
        "TelemetryMetric", back_populates="tool_profile",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    logs = relationship(
        "TelemetryLog", back_populates="tool_profile",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "vendor": self.vendor,
            "display_name": self.display_name,
            "vendor_category": self.vendor_category,
            "total_spans": self.total_spans,
            "total_traces": self.total_traces,
            "total_errors": self.total_errors,
            "first_seen_at": _iso(self.first_seen_at),
            "last_seen_at": _iso(self.last_seen_at),
        }


# =========================================================================
# Raw signals
# =========================================================================


class TelemetrySpan(Base):
    __tablename__ = "telemetry_spans"
    __table_args__ = (
        Index("ix_telemetry_spans_profile_start", "tool_profile_id", "start_time"),
    )

    id = Column(String, primary_key=True, default=new_id)
    customer_id = Column(String, nullable=False, index=True)
    user_id = Column(String)
    team_id = Column(String)
    tool_profile_id = Column(
        String,
        ForeignKey("tool_profiles.id", name="fk_telemetry_spans_profile", ondelete="CASCADE"),
        index=True,
    )
    trace_id = Column(String, nullable=False, index=True)
    span_id = Column(String, nullable=False)
    parent_span_id = Column(String)
    span_name = Column(String, nullable=False)
    span_kind = Column(String, nullable=False, default="UNSPECIFIED")
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime)
    duration_ms = Column(BigInteger)
    status_code = Column(String, nullable=False, default="UNSET")
    status_message = Column(Text)
    vendor = Column(String, nullable=False, index=True)
    service_name = Column(String)
    resource_attributes = Column(JSON)
    span_attributes = Column(JSON)
    signal_type = Column(String, nullable=False, default="trace")
    ingested_at = Column(DateTime, nullable=False, default=utcnow)

    tool_profile = relationship("ToolProfile", back_populates="spans")

    def to_dict(self):
        return {
            "id": self.id,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "span_name": self.span_name,
            "span_kind": self.span_kind,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "duration_ms": self.duration_ms,
            "status_code": self.status_code,
            "status_message": self.status_message,
            "vendor": self.vendor,
            "service_name": self.service_name,
            "user_id": self.user_id,
            "team_id": self.team_id,
            "resource_attributes": self.resource_attributes or {},
            "span_attributes": self.span_attributes or {},
            "signal_type": self.signal_type,
        }


class TelemetryMetric(Base):
    __tablename__ = "telemetry_metrics"
    __table_args__ = (
        Index("ix_telemetry_metrics_profile_time", "tool_profile_id", "time"),
    )

    id = Column(String, primary_key=True, default=new_id)
    customer_id = Column(String, nullable=False, index=True)
    user_id = Column(String)
    team_id = Column(String)
    tool_profile_id = Column(
        String,
        ForeignKey("tool_profiles.id", name="fk_telemetry_metrics_profile", ondelete="CASCADE"),
        index=True,
    )
    vendor = Column(String, nullable=False, index=True)
    service_name = Column(String)
    metric_name = Column(String, nullable=False, index=True)
    metric_type = Column(String, nullable=False)
    unit = Column(String)
    description = Column(Text)
    attributes = Column(JSON)
    value_double = Column(Float)
    value_int = Column(BigInteger)
    count = Column(BigInteger)
    sum = Column(Float)
    min = Column(Float)
    max = Column(Float)
    bucket_counts = Column(JSON)
    explicit_bounds = Column(JSON)
    quantile_values = Column(JSON)
    data_point = Column(JSON)
    start_time = Column(DateTime)
    time = Column(DateTime, nullable=False, index=True)
    ingested_at = Column(DateTime, nullable=False, default=utcnow)

    tool_profile = relationship("ToolProfile", back_populates="metrics")


class TelemetryLog(Base):
    __tablename__ = "telemetry_logs"

    id = Column(String, primary_key=True, default=new_id)
    customer_id = Column(String, nullable=False, index=True)
    user_id = Column(String)
    team_id = Column(String)
    tool_profile_id = Column(
        String,
        ForeignKey("tool_profiles.id", name="fk_telemetry_logs_profile", ondelete="CASCADE"),
        index=True,
    )
    vendor = Column(String, nullable=False)
    service_name = Column(String)
    trace_id = Column(String)
    span_id = Column(String)
    severity = Column(String, nullable=False, default="INFO")
    body = Column(Text)
    resource_attributes = Column(JSON)
    log_attributes = Column(JSON)
    timestamp = Column(DateTime, nullable=False, index=True)
    ingested_at = Column(DateTime, nullable=False, default=utcnow)

    tool_profile = relationship("ToolProfile", back_populates="logs")


# =========================================================================
# Usage metering
# =========================================================================


class UsageEvent(Base):
    __tablename__ = "usage_events"
    __table_args__ = (
        UniqueConstraint("customer_id", "idempotency_key", name="uq_usage_events_idempotency"),
    )

    id = Column(String, primary_key=True, default=new_id)
    customer_id = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=1)
    idempotency_key = Column(String, nullable=False)
    metadata_ = Column("metadata", JSON)
    created_at = Column(DateTime, nullable=False, default=utcnow)


def _iso(value):
    return value.isoformat() if value is not None else None
