"""
Read/write gateway over the telemetry tables.

``TelemetryStore`` wraps one SQLAlchemy session. It never commits: the caller
owns the transaction so that a whole ingestion batch is persisted or rolled
back together.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import case, delete, insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from tool_telemetry.clock import from_millis, utcnow
from tool_telemetry.decoders import DecodedLogRecord, DecodedMetricPoint, DecodedSpan
from tool_telemetry.errors import ToolProfileNotFoundError, UnsupportedDialectError
from tool_telemetry.vendors import CanonicalVendor

from .models import (
    TelemetryLog,
    TelemetryMetric,
    TelemetrySpan,
    ToolProfile,
    new_id,
)

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


@dataclass(frozen=True)
class ProfileUpsert:
    """Outcome of ``upsert_tool_profile``: the row id and whether the row was created."""
    id: str
    inserted: bool


class TelemetryStore:
    def __init__(self, session: Session):
        self.session = session

    # ------------------------------------------------------------------
    # Tool profiles
    # ------------------------------------------------------------------

    def upsert_tool_profile(
        self,
        customer_id: str,
        vendor: CanonicalVendor,
        span_count: int,
        trace_count: int,
        error_count: int,
        seen_at: datetime,
    ) -> ProfileUpsert:
        """Create the (customer, vendor) profile or add the batch counters to it.

        One ``INSERT .. ON CONFLICT DO UPDATE .. RETURNING`` statement, so
        concurrent batches for the same vendor never lose increments. The row
        is new exactly when its ``batch_count`` comes back as 1.
        """
        dialect = self.session.get_bind().dialect.name
        insert_fn = _UPSERT_INSERTS.get(dialect)
        if insert_fn is None:
            raise UnsupportedDialectError(
                f"Atomic tool-profile upsert is not available on {dialect!r}",
                hint="Use SQLite or PostgreSQL.",
            )

        table = ToolProfile.__table__
        now = utcnow()
        stmt = insert_fn(table).values(
            id=new_id(),
            customer_id=customer_id,
            vendor=vendor.slug,
            display_name=vendor.display_name,
            vendor_category=vendor.category,
            total_spans=span_count,
            total_traces=trace_count,
            total_errors=error_count,
            batch_count=1,
            first_seen_at=seen_at,
            last_seen_at=seen_at,
            created_at=now,
            updated_at=now,
        )
        excluded = stmt.excluded
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.customer_id, table.c.vendor],
            set_={
                "display_name": excluded.display_name,
                "vendor_category": excluded.vendor_category,
                "total_spans": table.c.total_spans + excluded.total_spans,
                "total_traces": table.c.total_traces + excluded.total_traces,
                "total_errors": table.c.total_errors + excluded.total_errors,
                "batch_count": table.c.batch_count + 1,
                "last_seen_at": case(
                    (excluded.last_seen_at > table.c.last_seen_at, excluded.last_seen_at),
                    else_=table.c.last_seen_at,
                ),
                "updated_at": excluded.updated_at,
            },
        ).returning(table.c.id, table.c.batch_count)

        row = self.session.execute(stmt).one()
        return ProfileUpsert(id=row.id, inserted=row.batch_count == 1)

    def list_tool_profiles(self, customer_id: str) -> List[ToolProfile]:
        stmt = (
            select(ToolProfile)
            .where(ToolProfile.customer_id == customer_id)
            .order_by(ToolProfile.last_seen_at.desc())
            .execution_options(populate_existing=True)
        )
        return list(self.session.scalars(stmt))

    def get_tool_profile(self, customer_id: str, profile_id: str) -> ToolProfile:
        """Load one profile of *customer_id*; raises ``ToolProfileNotFoundError``."""
        stmt = (
            select(ToolProfile)
            .where(ToolProfile.id == profile_id, ToolProfile.customer_id == customer_id)
            .execution_options(populate_existing=True)
        )
        profile = self.session.scalars(stmt).first()
        if profile is None:
            raise ToolProfileNotFoundError(profile_id)
        return profile

    def delete_tool_profile(self, customer_id: str, profile_id: str) -> None:
        """Administrative purge. Spans, metric points and logs go with the profile."""
        profile = self.get_tool_profile(customer_id, profile_id)
        # Explicit child deletes keep the purge complete on SQLite connections
        # opened without the foreign_keys pragma.
        for model in (TelemetrySpan, TelemetryMetric, TelemetryLog):
            self.session.execute(delete(model).where(model.tool_profile_id == profile.id))
        self.session.delete(profile)
        self.session.flush()
        logger.info("Purged tool profile %s (%s) for customer %s", profile.id, profile.vendor, customer_id)

    # ------------------------------------------------------------------
    # Raw signal writes
    # ------------------------------------------------------------------

    def insert_spans(
        self,
        spans: Sequence[DecodedSpan],
        customer_id: str,
        tool_profile_id: Optional[str],
        vendor: str,
        service_name: Optional[str] = None,
        resource_attributes: Optional[Dict[str, str]] = None,
    ) -> int:
        rows = [
            {
                "customer_id": customer_id,
                "user_id": span.user_id,
                "team_id": span.team_id,
                "tool_profile_id": tool_profile_id,
                "trace_id": span.trace_id,
                "span_id": span.span_id,
                "parent_span_id": span.parent_span_id,
                "span_name": span.name,
                "span_kind": span.kind,
                "start_time": from_millis(span.start_time_ms),
                "end_time": from_millis(span.end_time_ms) if span.end_time_ms is not None else None,
                "duration_ms": span.duration_ms,
                "status_code": span.status_code,
                "status_message": span.status_message,
                "vendor": vendor,
                "service_name": service_name,
                "resource_attributes": resource_attributes or {},
                "span_attributes": span.span_attributes,
                "signal_type": span.signal_type,
            }
            for span in spans
        ]
        return self._insert_many(TelemetrySpan, rows)

    def insert_metric_points(
        self,
        points: Sequence[DecodedMetricPoint],
        customer_id: str,
        tool_profile_id: Optional[str],
        vendor: str,
        service_name: Optional[str] = None,
        user_id: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> int:
        rows = [
            {
                "customer_id": customer_id,
                "user_id": user_id,
                "team_id": team_id,
                "tool_profile_id": tool_profile_id,
                "vendor": vendor,
                "service_name": service_name,
                "metric_name": point.metric_name,
                "metric_type": point.metric_type,
                "unit": point.unit,
                "description": point.description,
                "attributes": point.attributes,
                "value_double": point.value_double,
                "value_int": point.value_int,
                "count": point.count,
                "sum": point.sum,
                "min": point.min,
                "max": point.max,
                "bucket_counts": point.bucket_counts,
                "explicit_bounds": point.explicit_bounds,
                "quantile_values": point.quantile_values,
                "data_point": point.data_point,
                "start_time": from_millis(point.start_time_ms) if point.start_time_ms is not None else None,
                "time": from_millis(point.time_ms),
            }
            for point in points
        ]
        return self._insert_many(TelemetryMetric, rows)

    def insert_logs(
        self,
        records: Sequence[DecodedLogRecord],
        customer_id: str,
        tool_profile_id: Optional[str],
        vendor: str,
        service_name: Optional[str] = None,
        resource_attributes: Optional[Dict[str, str]] = None,
        user_id: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> int:
        rows = [
            {
                "customer_id": customer_id,
                "user_id": user_id,
                "team_id": team_id,
                "tool_profile_id": tool_profile_id,
                "vendor": vendor,
                "service_name": service_name,
                "trace_id": record.trace_id,
                "span_id": record.span_id,
                "severity": record.severity,
                "body": record.body,
                "resource_attributes": resource_attributes or {},
                "log_attributes": record.log_attributes,
                "timestamp": from_millis(record.time_ms),
            }
            for record in records
        ]
        return self._insert_many(TelemetryLog, rows)

    def _insert_many(self, model, rows: List[Dict[str, Any]]) -> int:
        if not rows:
            return 0
        self.session.execute(insert(model), rows)
        return len(rows)

    # ------------------------------------------------------------------
    # Range queries
    # ------------------------------------------------------------------

    def query_spans(
        self,
        customer_id: str,
        profile_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[TelemetrySpan]:
        """Spans of one profile, newest first."""
        stmt = select(TelemetrySpan).where(
            TelemetrySpan.customer_id == customer_id,
            TelemetrySpan.tool_profile_id == profile_id,
        )
        if since is not None:
            stmt = stmt.where(TelemetrySpan.start_time >= since)
        stmt = stmt.order_by(TelemetrySpan.start_time.desc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt))

    def query_span_durations(self, customer_id: str, profile_id: str) -> List[int]:
        """Non-null span durations (ms) of one profile, without loading the rows."""
        stmt = select(TelemetrySpan.duration_ms).where(
            TelemetrySpan.customer_id == customer_id,
            TelemetrySpan.tool_profile_id == profile_id,
            TelemetrySpan.duration_ms.is_not(None),
        )
        return list(self.session.scalars(stmt))

    def query_metric_points(
        self,
        customer_id: str,
        profile_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[TelemetryMetric]:
        """Metric datapoints of one profile, newest first."""
        stmt = select(TelemetryMetric).where(
            TelemetryMetric.customer_id == customer_id,
            TelemetryMetric.tool_profile_id == profile_id,
        )
        if since is not None:
            stmt = stmt.where(TelemetryMetric.time >= since)
        stmt = stmt.order_by(TelemetryMetric.time.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt))
