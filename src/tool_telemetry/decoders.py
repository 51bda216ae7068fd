"""
OTLP JSON decoders.

Turns the loosely-typed OTLP JSON encoding into strictly typed, immutable
records. All coercion (nanosecond strings to milliseconds, numeric strings to
numbers, typed attribute values to strings) happens here so the rest of the
pipeline never looks at raw JSON again.

Only the top-level envelope can fail a batch (``PayloadShapeError``). Anything
malformed below it is replaced with a safe default: ``None`` for numbers,
``""`` for identifiers, ``UNSPECIFIED``/``UNSET`` for enums.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from tool_telemetry.attributes import (
    extract_team_id,
    extract_user_id,
    flatten_attributes,
    parse_float,
    parse_int,
)
from tool_telemetry.errors import PayloadShapeError
from tool_telemetry.vendors import CanonicalVendor, canonicalize_vendor

logger = logging.getLogger(__name__)

NANOS_PER_MILLI = 1_000_000

SPAN_KINDS = ("UNSPECIFIED", "INTERNAL", "SERVER", "CLIENT", "PRODUCER", "CONSUMER")

STATUS_UNSET = "UNSET"
STATUS_OK = "OK"
STATUS_ERROR = "ERROR"

SIGNAL_TRACE = "trace"
SIGNAL_LOG = "log"

METRIC_SUM = "sum"
METRIC_GAUGE = "gauge"
METRIC_HISTOGRAM = "histogram"
METRIC_EXPONENTIAL_HISTOGRAM = "exponential_histogram"
METRIC_SUMMARY = "summary"

# OTLP JSON key -> stored metric type, in precedence order
_METRIC_KINDS = (
    ("sum", METRIC_SUM),
    ("gauge", METRIC_GAUGE),
    ("histogram", METRIC_HISTOGRAM),
    ("exponentialHistogram", METRIC_EXPONENTIAL_HISTOGRAM),
    ("summary", METRIC_SUMMARY),
)

_SEVERITY_BY_NUMBER = {1: "TRACE", 5: "DEBUG", 9: "INFO", 13: "WARN", 17: "ERROR", 21: "FATAL"}
_ERROR_SEVERITIES = frozenset({"ERROR", "FATAL"})
_MAX_LOG_SPAN_NAME = 200


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DecodedSpan:
    trace_id: str
    span_id: str
    parent_span_id: Optional[str]
    name: str
    kind: str
    start_time_ms: int
    end_time_ms: Optional[int]
    duration_ms: Optional[int]
    status_code: str
    status_message: Optional[str]
    span_attributes: Dict[str, str] = field(default_factory=dict)
    user_id: Optional[str] = None
    team_id: Optional[str] = None
    signal_type: str = SIGNAL_TRACE

    @property
    def is_error(self) -> bool:
        return self.status_code == STATUS_ERROR


@dataclass(frozen=True)
class DecodedMetricPoint:
    metric_name: str
    metric_type: str
    unit: Optional[str]
    description: Optional[str]
    attributes: Dict[str, str]
    time_ms: int
    start_time_ms: Optional[int] = None
    value_double: Optional[float] = None
    value_int: Optional[int] = None
    count: Optional[int] = None
    sum: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    bucket_counts: Optional[List[int]] = None
    explicit_bounds: Optional[List[float]] = None
    quantile_values: Optional[List[Dict[str, float]]] = None
    data_point: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class DecodedLogRecord:
    severity: str
    body: Optional[str]
    trace_id: Optional[str]
    span_id: Optional[str]
    log_attributes: Dict[str, str]
    time_ms: int

    @property
    def is_error(self) -> bool:
        return self.severity in _ERROR_SEVERITIES


@dataclass(frozen=True)
class ResourceBlock:
    """One ``resource*`` entry: its flattened attributes, vendor, and raw items."""
    resource_attributes: Dict[str, str]
    vendor: CanonicalVendor
    service_name: Optional[str]
    items: List[Dict[str, Any]]


# ---------------------------------------------------------------------------
# Scalar coercion
# ---------------------------------------------------------------------------


def nanos_to_millis(value: Any) -> Optional[int]:
    """Convert an OTLP ``*UnixNano`` value to milliseconds (truncating).

    Returns ``None`` for missing, zero, negative or unparsable values; OTLP
    uses ``0`` to mean "not set".
    """
    nanos = parse_int(value)
    if nanos is None or nanos <= 0:
        return None
    return nanos // NANOS_PER_MILLI


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = value if isinstance(value, str) else str(value)
    return text or None


def _span_kind(raw: Any) -> str:
    if isinstance(raw, str):
        name = raw.upper()
        if name.startswith("SPAN_KIND_"):
            name = name[len("SPAN_KIND_"):]
        if name in SPAN_KINDS:
            return name
    index = parse_int(raw)
    if index is not None and 0 <= index < len(SPAN_KINDS):
        return SPAN_KINDS[index]
    return "UNSPECIFIED"


def _status_code(raw: Any) -> str:
    if isinstance(raw, str) and raw.upper() in ("STATUS_CODE_ERROR", "ERROR"):
        return STATUS_ERROR
    if isinstance(raw, str) and raw.upper() in ("STATUS_CODE_OK", "OK"):
        return STATUS_OK
    code = parse_int(raw)
    if code == 2:
        return STATUS_ERROR
    if code == 1:
        return STATUS_OK
    return STATUS_UNSET


def _number_list(raw: Any, parser) -> Optional[list]:
    if not isinstance(raw, list):
        return None
    values = [parser(v) for v in raw]
    if any(v is None for v in values):
        return None
    return values


def _quantile_values(raw: Any) -> Optional[List[Dict[str, float]]]:
    if not isinstance(raw, list):
        return None
    result = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        quantile = parse_float(entry.get("quantile", 0))
        value = parse_float(entry.get("value", 0))
        if quantile is None or value is None:
            continue
        result.append({"quantile": quantile, "value": value})
    return result


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


def _iter_resource_blocks(payload: Any, keys: Tuple[str, ...], scope_key: str, item_key: str) -> Iterator[ResourceBlock]:
    entries = None
    if isinstance(payload, dict):
        for key in keys:
            if key in payload:
                entries = payload[key]
                break
    if not isinstance(entries, list):
        raise PayloadShapeError(
            f"Missing {keys[0]} array",
            hint=f'OTLP JSON expects root key "{keys[0]}".',
        )

    for entry in entries:
        if not isinstance(entry, dict):
            continue
        resource = entry.get("resource") or {}
        resource_attrs = flatten_attributes(resource.get("attributes") if isinstance(resource, dict) else None)
        vendor = canonicalize_vendor(resource_attrs)
        items: List[Dict[str, Any]] = []
        scopes = entry.get(scope_key)
        for scope in scopes if isinstance(scopes, list) else []:
            if not isinstance(scope, dict):
                continue
            scope_items = scope.get(item_key)
            if isinstance(scope_items, list):
                items.extend(item for item in scope_items if isinstance(item, dict))
        yield ResourceBlock(
            resource_attributes=resource_attrs,
            vendor=vendor,
            service_name=resource_attrs.get("service.name") or None,
            items=items,
        )


def read_resource_spans(payload: Any) -> List[ResourceBlock]:
    """Validate a traces payload and return its resource blocks (spans as items)."""
    return list(_iter_resource_blocks(payload, ("resourceSpans",), "scopeSpans", "spans"))


def read_resource_metrics(payload: Any) -> List[ResourceBlock]:
    """Validate a metrics payload and return its resource blocks (metrics as items)."""
    return list(_iter_resource_blocks(payload, ("resourceMetrics",), "scopeMetrics", "metrics"))


def read_resource_logs(payload: Any) -> List[ResourceBlock]:
    """Validate a logs payload and return its resource blocks (log records as items)."""
    return list(_iter_resource_blocks(payload, ("resourceLogs", "resource_logs"), "scopeLogs", "logRecords"))


# ---------------------------------------------------------------------------
# Spans
# ---------------------------------------------------------------------------


def decode_span(
    span: Dict[str, Any],
    resource_attrs: Optional[Dict[str, str]] = None,
    user_id: Optional[str] = None,
    team_id: Optional[str] = None,
    received_at_ms: int = 0,
) -> DecodedSpan:
    """Decode one OTLP span.

    Caller-supplied ``user_id``/``team_id`` are merged into the span
    attributes as ``user.id``/``team.id``. When the caller has none, they are
    looked up in the span attributes, then the resource attributes.
    """
    span_attrs = flatten_attributes(span.get("attributes"))
    resource_attrs = resource_attrs or {}

    user_id = user_id or extract_user_id(span_attrs) or extract_user_id(resource_attrs)
    team_id = team_id or extract_team_id(span_attrs) or extract_team_id(resource_attrs)
    if user_id:
        span_attrs["user.id"] = user_id
    if team_id:
        span_attrs["team.id"] = team_id

    start_ms = nanos_to_millis(span.get("startTimeUnixNano"))
    end_ms = nanos_to_millis(span.get("endTimeUnixNano"))
    duration_ms = None
    if start_ms is not None and end_ms is not None and end_ms >= start_ms:
        duration_ms = end_ms - start_ms

    status = span.get("status")
    if not isinstance(status, dict):
        status = {}

    return DecodedSpan(
        trace_id=_optional_str(span.get("traceId")) or "",
        span_id=_optional_str(span.get("spanId")) or "",
        parent_span_id=_optional_str(span.get("parentSpanId")),
        name=_optional_str(span.get("name")) or "unknown",
        kind=_span_kind(span.get("kind", 0)),
        start_time_ms=start_ms if start_ms is not None else received_at_ms,
        end_time_ms=end_ms,
        duration_ms=duration_ms,
        status_code=_status_code(status.get("code")),
        status_message=_optional_str(status.get("message")),
        span_attributes=span_attrs,
        user_id=user_id,
        team_id=team_id,
        signal_type=SIGNAL_TRACE,
    )


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


def decode_metric(metric: Dict[str, Any], received_at_ms: int = 0) -> List[DecodedMetricPoint]:
    """Decode one OTLP metric into one point per datapoint of its populated kind."""
    name = _optional_str(metric.get("name")) or "unknown"
    unit = _optional_str(metric.get("unit"))
    description = _optional_str(metric.get("description"))

    for json_key, metric_type in _METRIC_KINDS:
        body = metric.get(json_key)
        if not isinstance(body, dict) or not isinstance(body.get("dataPoints"), list):
            continue
        points = []
        for dp in body["dataPoints"]:
            if not isinstance(dp, dict):
                continue
            points.append(_decode_data_point(dp, name, metric_type, unit, description, received_at_ms))
        return points

    logger.debug("Metric %r has no supported data kind, skipping", name)
    return []


def _decode_data_point(
    dp: Dict[str, Any],
    name: str,
    metric_type: str,
    unit: Optional[str],
    description: Optional[str],
    received_at_ms: int,
) -> DecodedMetricPoint:
    time_ms = nanos_to_millis(dp.get("timeUnixNano"))
    fields: Dict[str, Any] = {
        "metric_name": name,
        "metric_type": metric_type,
        "unit": unit,
        "description": description,
        "attributes": flatten_attributes(dp.get("attributes")),
        "time_ms": time_ms if time_ms is not None else received_at_ms,
        "start_time_ms": nanos_to_millis(dp.get("startTimeUnixNano")),
        "data_point": dp,
    }

    if metric_type in (METRIC_SUM, METRIC_GAUGE):
        fields["value_double"] = parse_float(dp.get("asDouble"))
        fields["value_int"] = parse_int(dp.get("asInt"))
    elif metric_type == METRIC_HISTOGRAM:
        bucket_counts = _number_list(dp.get("bucketCounts"), parse_int)
        explicit_bounds = _number_list(dp.get("explicitBounds"), parse_float)
        if bucket_counts is not None and explicit_bounds is not None \
                and len(bucket_counts) != len(explicit_bounds) + 1:
            logger.debug(
                "Histogram %r has %d buckets for %d bounds, dropping bucket data",
                name, len(bucket_counts), len(explicit_bounds),
            )
            bucket_counts = explicit_bounds = None
        fields.update(
            count=parse_int(dp.get("count")),
            sum=parse_float(dp.get("sum")),
            min=parse_float(dp.get("min")),
            max=parse_float(dp.get("max")),
            bucket_counts=bucket_counts,
            explicit_bounds=explicit_bounds,
        )
    elif metric_type == METRIC_EXPONENTIAL_HISTOGRAM:
        fields.update(
            count=parse_int(dp.get("count")),
            sum=parse_float(dp.get("sum")),
            min=parse_float(dp.get("min")),
            max=parse_float(dp.get("max")),
        )
    elif metric_type == METRIC_SUMMARY:
        fields.update(
            count=parse_int(dp.get("count")),
            sum=parse_float(dp.get("sum")),
            quantile_values=_quantile_values(dp.get("quantileValues")),
        )

    return DecodedMetricPoint(**fields)


# ---------------------------------------------------------------------------
# Logs
# ---------------------------------------------------------------------------


def decode_log_record(record: Dict[str, Any], received_at_ms: int = 0) -> DecodedLogRecord:
    log_attrs = flatten_attributes(record.get("attributes"))

    severity_number = parse_int(record.get("severityNumber"))
    severity = _SEVERITY_BY_NUMBER.get(severity_number) \
        or _optional_str(record.get("severityText")) \
        or "INFO"

    trace_id = _optional_str(record.get("traceId") or record.get("trace_id")) \
        or log_attrs.get("trace_id") or log_attrs.get("traceId") or None
    span_id = _optional_str(record.get("spanId") or record.get("span_id")) \
        or log_attrs.get("span_id") or log_attrs.get("spanId") or None

    time_ms = nanos_to_millis(record.get("timeUnixNano"))
    if time_ms is None:
        time_ms = nanos_to_millis(record.get("observedTimeUnixNano"))

    return DecodedLogRecord(
        severity=severity.upper(),
        body=_log_body(record.get("body")),
        trace_id=trace_id,
        span_id=span_id,
        log_attributes=log_attrs,
        time_ms=time_ms if time_ms is not None else received_at_ms,
    )


def _log_body(body: Any) -> Optional[str]:
    if body is None:
        return None
    if isinstance(body, str):
        return body
    if isinstance(body, dict) and isinstance(body.get("stringValue"), str):
        return body["stringValue"]
    try:
        return json.dumps(body, sort_keys=True)
    except (TypeError, ValueError):
        return None


def span_from_log(
    record: DecodedLogRecord,
    user_id: Optional[str] = None,
    team_id: Optional[str] = None,
) -> Optional[DecodedSpan]:
    """Synthesize a span for a log record that carries span context."""
    if not record.trace_id or not record.span_id:
        return None

    attrs = record.log_attributes
    name = attrs.get("name") or attrs.get("operation") or attrs.get("http.method") \
        or record.body or "log"

    span_attrs = dict(attrs)
    if user_id:
        span_attrs["user.id"] = user_id
    if team_id:
        span_attrs["team.id"] = team_id

    return DecodedSpan(
        trace_id=record.trace_id,
        span_id=record.span_id,
        parent_span_id=None,
        name=name[:_MAX_LOG_SPAN_NAME],
        kind="INTERNAL",
        start_time_ms=record.time_ms,
        end_time_ms=None,
        duration_ms=None,
        status_code=STATUS_ERROR if record.is_error else STATUS_OK,
        status_message=record.body if record.is_error else None,
        span_attributes=span_attrs,
        user_id=user_id,
        team_id=team_id,
        signal_type=SIGNAL_LOG,
    )
