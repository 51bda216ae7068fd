"""
Ingestion service: OTLP JSON batch in, rows and tool-profile counters out.

Each batch goes through the same steps:

1. Validate the envelope (``PayloadShapeError`` rejects the whole batch
   before anything is written).
2. Decode every resource block and canonicalize its vendor.
3. Tally span, trace and error counts per vendor slug, so a vendor spread
   over several resource blocks still gets exactly one upsert per batch.
4. Upsert one ``ToolProfile`` per vendor; report first-time vendors to the
   usage meter.
5. Insert the raw rows with their profile id and meter the batch.

Nothing is committed here. The caller commits the session on success and
rolls it back on any exception, which makes a batch all-or-nothing.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from tool_telemetry.clock import to_millis, utcnow
from tool_telemetry.db.store import TelemetryStore
from tool_telemetry.decoders import (
    DecodedLogRecord,
    DecodedMetricPoint,
    DecodedSpan,
    ResourceBlock,
    decode_log_record,
    decode_metric,
    decode_span,
    read_resource_logs,
    read_resource_metrics,
    read_resource_spans,
    span_from_log,
)
from tool_telemetry.metering import (
    EVENT_TELEMETRY_DATAPOINT,
    EVENT_TELEMETRY_LOG,
    EVENT_TELEMETRY_SPAN,
    EVENT_TOOL_DISCOVERED,
    NullUsageMeter,
    UsageMeter,
)
from tool_telemetry.vendors import CanonicalVendor, is_llm_tool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestionContext:
    """Identity supplied by the surrounding auth layer for one request."""
    customer_id: str
    user_id: Optional[str] = None
    team_id: Optional[str] = None


@dataclass
class _VendorTally:
    vendor: CanonicalVendor
    span_count: int = 0
    error_count: int = 0
    trace_ids: Set[str] = field(default_factory=set)


class TelemetryIngestor:
    def __init__(self, store: TelemetryStore, meter: Optional[UsageMeter] = None):
        self.store = store
        self.meter = meter or NullUsageMeter()

    # ------------------------------------------------------------------
    # Traces
    # ------------------------------------------------------------------

    def ingest_traces(self, payload: Any, ctx: IngestionContext, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        received_ms = to_millis(now)
        blocks = read_resource_spans(payload)

        decoded: List[Tuple[ResourceBlock, List[DecodedSpan]]] = []
        for block in blocks:
            spans = [
                decode_span(item, block.resource_attributes, ctx.user_id, ctx.team_id, received_ms)
                for item in block.items
            ]
            decoded.append((block, spans))

        tallies: Dict[str, _VendorTally] = {}
        for block, spans in decoded:
            _tally_spans(tallies, block.vendor, spans)
        profile_ids = self._upsert_profiles(ctx, tallies, blocks, now)

        accepted = 0
        for block, spans in decoded:
            accepted += self.store.insert_spans(
                spans,
                customer_id=ctx.customer_id,
                tool_profile_id=profile_ids.get(block.vendor.slug),
                vendor=block.vendor.slug,
                service_name=block.service_name,
                resource_attributes=block.resource_attributes,
            )

        trace_count = sum(len(t.trace_ids) for t in tallies.values())
        if accepted:
            self.meter.record(ctx.customer_id, EVENT_TELEMETRY_SPAN, accepted, {"trace_count": trace_count})
        logger.info(
            "[ingest] customer=%s traces: %d spans, %d traces, %d vendors",
            ctx.customer_id, accepted, trace_count, len(tallies),
        )
        return {"partialSuccess": {"acceptedSpans": accepted, "rejectedSpans": 0}}

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def ingest_metrics(self, payload: Any, ctx: IngestionContext, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        received_ms = to_millis(now)
        blocks = read_resource_metrics(payload)

        decoded: List[Tuple[ResourceBlock, List[DecodedMetricPoint]]] = []
        tallies: Dict[str, _VendorTally] = {}
        for block in blocks:
            points: List[DecodedMetricPoint] = []
            for metric in block.items:
                points.extend(decode_metric(metric, received_ms))
            decoded.append((block, points))
            if block.items:
                # Metrics refresh the profile without touching span counters
                tallies.setdefault(block.vendor.slug, _VendorTally(block.vendor))
        profile_ids = self._upsert_profiles(ctx, tallies, blocks, now)

        accepted = 0
        for block, points in decoded:
            accepted += self.store.insert_metric_points(
                points,
                customer_id=ctx.customer_id,
                tool_profile_id=profile_ids.get(block.vendor.slug),
                vendor=block.vendor.slug,
                service_name=block.service_name,
                user_id=ctx.user_id,
                team_id=ctx.team_id,
            )

        if accepted:
            self.meter.record(ctx.customer_id, EVENT_TELEMETRY_DATAPOINT, accepted, {"vendors": sorted(tallies)})
        logger.info(
            "[ingest] customer=%s metrics: %d datapoints, %d vendors",
            ctx.customer_id, accepted, len(tallies),
        )
        return {"partialSuccess": {"acceptedDataPoints": accepted, "rejectedDataPoints": 0}}

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    def ingest_logs(self, payload: Any, ctx: IngestionContext, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Store log records and the spans synthesized from those carrying span context."""
        now = now or utcnow()
        received_ms = to_millis(now)
        blocks = read_resource_logs(payload)

        decoded: List[Tuple[ResourceBlock, List[DecodedLogRecord], List[DecodedSpan]]] = []
        tallies: Dict[str, _VendorTally] = {}
        for block in blocks:
            records = [decode_log_record(item, received_ms) for item in block.items]
            spans = [
                span for span in (span_from_log(r, ctx.user_id, ctx.team_id) for r in records)
                if span is not None
            ]
            decoded.append((block, records, spans))
            if not records:
                continue
            tally = tallies.setdefault(block.vendor.slug, _VendorTally(block.vendor))
            if spans:
                _tally_spans(tallies, block.vendor, spans)
            else:
                tally.error_count += sum(1 for r in records if r.is_error)
        profile_ids = self._upsert_profiles(ctx, tallies, blocks, now)

        accepted = 0
        synthetic = 0
        for block, records, spans in decoded:
            profile_id = profile_ids.get(block.vendor.slug)
            accepted += self.store.insert_logs(
                records,
                customer_id=ctx.customer_id,
                tool_profile_id=profile_id,
                vendor=block.vendor.slug,
                service_name=block.service_name,
                resource_attributes=block.resource_attributes,
                user_id=ctx.user_id,
                team_id=ctx.team_id,
            )
            synthetic += self.store.insert_spans(
                spans,
                customer_id=ctx.customer_id,
                tool_profile_id=profile_id,
                vendor=block.vendor.slug,
                service_name=block.service_name,
                resource_attributes=block.resource_attributes,
            )

        if accepted:
            self.meter.record(ctx.customer_id, EVENT_TELEMETRY_LOG, accepted, {"synthetic_spans": synthetic})
        logger.info(
            "[ingest] customer=%s logs: %d records, %d synthetic spans, %d vendors",
            ctx.customer_id, accepted, synthetic, len(tallies),
        )
        return {"partialSuccess": {"acceptedLogRecords": accepted, "rejectedLogRecords": 0}}

    # ------------------------------------------------------------------
    # Shared
    # ------------------------------------------------------------------

    def _upsert_profiles(
        self,
        ctx: IngestionContext,
        tallies: Dict[str, _VendorTally],
        blocks: List[ResourceBlock],
        now: datetime,
    ) -> Dict[str, str]:
        """One atomic upsert per vendor; returns vendor slug -> profile id."""
        llm_slugs = {b.vendor.slug for b in blocks if is_llm_tool(b.resource_attributes, b.vendor)}
        profile_ids: Dict[str, str] = {}
        for slug, tally in tallies.items():
            result = self.store.upsert_tool_profile(
                ctx.customer_id,
                tally.vendor,
                span_count=tally.span_count,
                trace_count=len(tally.trace_ids),
                error_count=tally.error_count,
                seen_at=now,
            )
            profile_ids[slug] = result.id
            if result.inserted:
                logger.info("[ingest] New tool discovered for customer %s: %s", ctx.customer_id, slug)
                self.meter.record(ctx.customer_id, EVENT_TOOL_DISCOVERED, 1, {
                    "vendor": slug,
                    "display_name": tally.vendor.display_name,
                    "category": tally.vendor.category,
                    "is_llm": slug in llm_slugs,
                })
        return profile_ids


def _tally_spans(tallies: Dict[str, _VendorTally], vendor: CanonicalVendor, spans: Iterable[DecodedSpan]):
    spans = list(spans)
    if not spans:
        return
    tally = tallies.setdefault(vendor.slug, _VendorTally(vendor))
    for span in spans:
        tally.span_count += 1
        if span.is_error:
            tally.error_count += 1
        tally.trace_ids.add(span.trace_id)
