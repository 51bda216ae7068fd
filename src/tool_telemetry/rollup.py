"""
Usage rollups for the per-tool dashboard.

Two interchangeable strategies produce the same ``UsageReport``:

- ``MetricPointStrategy`` reads pre-aggregated OTLP metric datapoints.
  Metric names are classified with regex families (request count, error
  count, latency, input/output tokens). Histogram latency is merged
  bucket-wise, so its percentiles are bucket upper bounds.
- ``SpanAttributeStrategy`` reads raw spans and the ``gen_ai.*`` attributes
  on them. Percentiles are exact order statistics over span durations.

``UsageRollupEngine`` picks metrics whenever the profile has any datapoint in
the window and falls back to spans otherwise. The two are never blended.

All returned numbers are finite. Empty groups and zero denominators give 0.
"""

import logging
import math
import re
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from tool_telemetry.attributes import parse_float, parse_int
from tool_telemetry.clock import utcnow
from tool_telemetry.histogram import EMPTY_SUMMARY, HistogramSummary, merge_histograms, summarize_durations

logger = logging.getLogger(__name__)

DEFAULT_USAGE_DAYS = 30
DEFAULT_HOURLY_HOURS = 24
TOP_OPERATIONS_LIMIT = 10
UNKNOWN_MODEL = "unknown"

SOURCE_METRICS = "metrics"
SOURCE_SPANS = "spans"

REQUEST_COUNT_RE = re.compile(r"(gen_ai\.)?(request|requests)\.(count|total)|request_count|requests_total", re.I)
ERROR_COUNT_RE = re.compile(r"(gen_ai\.)?(error|errors|failure|failed)\.(count|total)|error_count|errors_total", re.I)
LATENCY_RE = re.compile(r"(latency|duration|response\.time)", re.I)
TOKEN_INPUT_RE = re.compile(r"(gen_ai\.)?(usage\.)?input_tokens|token\.input|tokens\.input|input_tokens_total", re.I)
TOKEN_OUTPUT_RE = re.compile(r"(gen_ai\.)?(usage\.)?output_tokens|token\.output|tokens\.output|output_tokens_total", re.I)

TOKEN_INPUT = "input"
TOKEN_OUTPUT = "output"

_INPUT_TOKEN_ATTRS = ("gen_ai.usage.input_tokens", "gen_ai.usage.prompt_tokens")
_OUTPUT_TOKEN_ATTRS = ("gen_ai.usage.output_tokens", "gen_ai.usage.completion_tokens")
_AGGREGATE_TYPES = ("histogram", "exponential_histogram", "summary")


# ---------------------------------------------------------------------------
# Window and report
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UsageWindow:
    now: datetime
    days: int = DEFAULT_USAGE_DAYS
    hours: int = DEFAULT_HOURLY_HOURS

    @property
    def since(self) -> datetime:
        return self.now - timedelta(days=self.days)

    @property
    def hourly_since(self) -> datetime:
        return self.now - timedelta(hours=self.hours)


@dataclass
class ModelUsage:
    model: str
    request_count: int
    error_count: int
    avg_latency_ms: int
    total_input_tokens: int
    total_output_tokens: int
    last_used: Optional[str]


@dataclass
class DailyUsage:
    day: str
    request_count: int
    input_tokens: int
    output_tokens: int
    error_count: int


@dataclass
class HourlyUsage:
    hour: str
    input_tokens: int
    output_tokens: int
    request_count: int
    avg_latency_ms: int


@dataclass
class ModelLatency:
    model: str
    p50: int
    p95: int
    p99: int
    avg_ms: int
    min_ms: int
    max_ms: int


@dataclass
class OperationUsage:
    span_name: str
    call_count: int
    avg_latency_ms: int
    error_count: int
    total_input_tokens: int
    total_output_tokens: int


@dataclass
class UsageTotals:
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    distinct_models: int = 0
    avg_duration_ms: int = 0
    avg_tokens_per_sec: float = 0.0
    request_count: int = 0
    error_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalInputTokens": self.total_input_tokens,
            "totalOutputTokens": self.total_output_tokens,
            "distinctModels": self.distinct_models,
            "avgDurationMs": self.avg_duration_ms,
            "avgTokensPerSec": self.avg_tokens_per_sec,
            "requestCount": self.request_count,
            "errorCount": self.error_count,
        }


@dataclass
class UsageReport:
    source: str
    model_usage: List[ModelUsage] = field(default_factory=list)
    daily_usage: List[DailyUsage] = field(default_factory=list)
    hourly_tokens: List[HourlyUsage] = field(default_factory=list)
    model_latency: List[ModelLatency] = field(default_factory=list)
    top_operations: List[OperationUsage] = field(default_factory=list)
    totals: UsageTotals = field(default_factory=UsageTotals)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "modelUsage": [asdict(m) for m in self.model_usage],
            "dailyUsage": [asdict(d) for d in self.daily_usage],
            "hourlyTokens": [asdict(h) for h in self.hourly_tokens],
            "modelLatency": [asdict(m) for m in self.model_latency],
            "topOperations": [asdict(o) for o in self.top_operations],
            "totals": self.totals.to_dict(),
        }


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives (0.5 -> 1)."""
    if value is None or not math.isfinite(value):
        return 0
    return int(math.floor(value + 0.5))


def tokens_per_second(total_tokens: float, avg_duration_ms: float) -> float:
    if not avg_duration_ms or avg_duration_ms <= 0:
        return 0.0
    return round(total_tokens / (avg_duration_ms / 1000.0), 1)


def model_key(attrs: Optional[Dict[str, Any]]) -> str:
    attrs = attrs or {}
    return attrs.get("gen_ai.request.model") or attrs.get("gen_ai.response.model") or UNKNOWN_MODEL


def day_key(ts: datetime) -> str:
    return ts.strftime("%Y-%m-%d")


def hour_key(ts: datetime) -> str:
    return ts.replace(minute=0, second=0, microsecond=0).isoformat()


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts is not None else None


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _distinct_models(keys: Iterable[str]) -> int:
    return len({k for k in keys if k != UNKNOWN_MODEL})


@dataclass
class _Group:
    """Running totals for one model, day, hour or operation."""
    request_count: float = 0.0
    error_count: float = 0.0
    input_tokens: float = 0.0
    output_tokens: float = 0.0
    latencies: List[float] = field(default_factory=list)
    histograms: List[Any] = field(default_factory=list)
    last_used: Optional[datetime] = None

    def touch(self, ts: datetime):
        if self.last_used is None or ts > self.last_used:
            self.last_used = ts

    def latency(self) -> HistogramSummary:
        """Histogram latency when present, otherwise the scalar/raw values."""
        if self.histograms:
            merged = merge_histograms(self.histograms)
            if not merged.empty:
                return merged
        if self.latencies:
            return summarize_durations(self.latencies)
        return EMPTY_SUMMARY


def _group(groups: Dict[str, _Group], key: str) -> _Group:
    group = groups.get(key)
    if group is None:
        group = groups[key] = _Group()
    return group


def _model_usage(groups: Dict[str, _Group]) -> List[ModelUsage]:
    rows = [
        ModelUsage(
            model=model,
            request_count=round_half_up(g.request_count),
            error_count=round_half_up(g.error_count),
            avg_latency_ms=round_half_up(g.latency().avg),
            total_input_tokens=round_half_up(g.input_tokens),
            total_output_tokens=round_half_up(g.output_tokens),
            last_used=_iso(g.last_used),
        )
        for model, g in groups.items()
    ]
    rows.sort(key=lambda r: r.request_count, reverse=True)
    return rows


def _daily_usage(groups: Dict[str, _Group]) -> List[DailyUsage]:
    return [
        DailyUsage(
            day=day,
            request_count=round_half_up(g.request_count),
            input_tokens=round_half_up(g.input_tokens),
            output_tokens=round_half_up(g.output_tokens),
            error_count=round_half_up(g.error_count),
        )
        for day, g in sorted(groups.items())
    ]


def _hourly_usage(groups: Dict[str, _Group]) -> List[HourlyUsage]:
    return [
        HourlyUsage(
            hour=hour,
            input_tokens=round_half_up(g.input_tokens),
            output_tokens=round_half_up(g.output_tokens),
            request_count=round_half_up(g.request_count),
            avg_latency_ms=round_half_up(g.latency().avg),
        )
        for hour, g in sorted(groups.items())
    ]


def _latency_row(model: str, summary: HistogramSummary) -> ModelLatency:
    return ModelLatency(
        model=model,
        p50=round_half_up(summary.p50),
        p95=round_half_up(summary.p95),
        p99=round_half_up(summary.p99),
        avg_ms=round_half_up(summary.avg),
        min_ms=round_half_up(summary.min),
        max_ms=round_half_up(summary.max),
    )


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class UsageStrategy(ABC):
    source: str = ""

    @abstractmethod
    def compute_usage(self, window: UsageWindow) -> UsageReport:
        ...


def token_metric_type(name: str, attrs: Optional[Dict[str, Any]]) -> Optional[str]:
    """Classify a token metric; ``gen_ai.token.type``/``token.type`` beat the name."""
    attrs = attrs or {}
    attr_type = str(attrs.get("gen_ai.token.type") or attrs.get("token.type") or "").lower()
    if attr_type in ("input", "prompt"):
        return TOKEN_INPUT
    if attr_type in ("output", "completion"):
        return TOKEN_OUTPUT
    if TOKEN_INPUT_RE.search(name):
        return TOKEN_INPUT
    if TOKEN_OUTPUT_RE.search(name):
        return TOKEN_OUTPUT
    return None


def metric_value(point: Any) -> Optional[float]:
    """Scalar value of a sum/gauge datapoint (double preferred over int)."""
    value = parse_float(getattr(point, "value_double", None))
    if value is not None:
        return value
    value = parse_int(getattr(point, "value_int", None))
    return float(value) if value is not None else None


class MetricPointStrategy(UsageStrategy):
    """Strategy A: pre-aggregated metric datapoints."""

    source = SOURCE_METRICS

    def __init__(self, points: Iterable[Any]):
        self.points = list(points)

    def compute_usage(self, window: UsageWindow) -> UsageReport:
        models: Dict[str, _Group] = OrderedDict()
        days: Dict[str, _Group] = {}
        hours: Dict[str, _Group] = {}
        overall = _Group()

        for point in sorted(self.points, key=lambda p: p.time):
            if point.time < window.since:
                continue
            name = point.metric_name or ""
            attrs = point.attributes or {}
            value = metric_value(point)
            is_aggregate = point.metric_type in _AGGREGATE_TYPES

            model = _group(models, model_key(attrs))
            day = _group(days, day_key(point.time))
            hour = _group(hours, hour_key(point.time)) if point.time >= window.hourly_since else None
            targets = [g for g in (model, day, hour, overall) if g is not None]

            if value is not None and REQUEST_COUNT_RE.search(name):
                for g in targets:
                    g.request_count += value

            if value is not None and ERROR_COUNT_RE.search(name):
                for g in targets:
                    g.error_count += value

            token_type = token_metric_type(name, attrs)
            # Token-usage histograms carry the token total in their sum
            token_value = value if value is not None or not is_aggregate else parse_float(point.sum)
            if token_type and token_value is not None:
                for g in targets:
                    if token_type == TOKEN_INPUT:
                        g.input_tokens += token_value
                    else:
                        g.output_tokens += token_value

            if LATENCY_RE.search(name):
                if point.metric_type == "histogram":
                    for g in targets:
                        g.histograms.append(point)
                elif value is not None:
                    for g in targets:
                        g.latencies.append(value)

            model.touch(point.time)

        # Only days/hours that saw any classified signal are reported
        days = {k: g for k, g in days.items() if _has_signal(g)}
        hours = {k: g for k, g in hours.items() if _has_signal(g)}

        model_latency = []
        for model, g in models.items():
            if not g.histograms:
                continue
            summary = merge_histograms(g.histograms)
            if not summary.empty:
                model_latency.append(_latency_row(model, summary))

        avg_duration = overall.latency().avg
        totals = UsageTotals(
            total_input_tokens=round_half_up(overall.input_tokens),
            total_output_tokens=round_half_up(overall.output_tokens),
            distinct_models=_distinct_models(models),
            avg_duration_ms=round_half_up(avg_duration),
            avg_tokens_per_sec=tokens_per_second(overall.input_tokens + overall.output_tokens, avg_duration),
            request_count=round_half_up(overall.request_count),
            error_count=round_half_up(overall.error_count),
        )

        return UsageReport(
            source=self.source,
            model_usage=_model_usage(models),
            daily_usage=_daily_usage(days),
            hourly_tokens=_hourly_usage(hours),
            model_latency=model_latency,
            top_operations=[],
            totals=totals,
        )


def _has_signal(g: _Group) -> bool:
    return bool(g.request_count or g.error_count or g.input_tokens or g.output_tokens
                or g.latencies or g.histograms)


def span_tokens(attrs: Optional[Dict[str, Any]], keys: Sequence[str]) -> int:
    attrs = attrs or {}
    for key in keys:
        value = parse_int(attrs.get(key))
        if value is not None:
            return value
    return 0


class SpanAttributeStrategy(UsageStrategy):
    """Strategy B: raw spans and their ``gen_ai.*`` attributes."""

    source = SOURCE_SPANS

    def __init__(self, spans: Iterable[Any]):
        self.spans = list(spans)

    def compute_usage(self, window: UsageWindow) -> UsageReport:
        models: Dict[str, _Group] = OrderedDict()
        days: Dict[str, _Group] = {}
        hours: Dict[str, _Group] = {}
        operations: Dict[str, _Group] = OrderedDict()
        overall = _Group()

        for span in sorted(self.spans, key=lambda s: s.start_time):
            if span.start_time < window.since:
                continue
            attrs = span.span_attributes or {}
            input_tokens = span_tokens(attrs, _INPUT_TOKEN_ATTRS)
            output_tokens = span_tokens(attrs, _OUTPUT_TOKEN_ATTRS)
            is_error = span.status_code == "ERROR"

            model = _group(models, model_key(attrs))
            targets = [
                model,
                _group(days, day_key(span.start_time)),
                _group(operations, span.span_name or UNKNOWN_MODEL),
                overall,
            ]
            if span.start_time >= window.hourly_since:
                targets.append(_group(hours, hour_key(span.start_time)))

            for g in targets:
                g.request_count += 1
                g.input_tokens += input_tokens
                g.output_tokens += output_tokens
                if is_error:
                    g.error_count += 1
                if span.duration_ms is not None:
                    g.latencies.append(span.duration_ms)

            model.touch(span.start_time)

        model_latency = [
            _latency_row(model, summarize_durations(g.latencies))
            for model, g in models.items()
            if g.latencies
        ]
        model_latency.sort(key=lambda r: r.avg_ms, reverse=True)

        top_operations = [
            OperationUsage(
                span_name=name,
                call_count=round_half_up(g.request_count),
                avg_latency_ms=round_half_up(_mean(g.latencies)),
                error_count=round_half_up(g.error_count),
                total_input_tokens=round_half_up(g.input_tokens),
                total_output_tokens=round_half_up(g.output_tokens),
            )
            for name, g in operations.items()
        ]
        top_operations.sort(key=lambda r: r.call_count, reverse=True)

        avg_duration = _mean(overall.latencies)
        totals = UsageTotals(
            total_input_tokens=round_half_up(overall.input_tokens),
            total_output_tokens=round_half_up(overall.output_tokens),
            distinct_models=_distinct_models(models),
            avg_duration_ms=round_half_up(avg_duration),
            avg_tokens_per_sec=tokens_per_second(overall.input_tokens + overall.output_tokens, avg_duration),
            request_count=round_half_up(overall.request_count),
            error_count=round_half_up(overall.error_count),
        )

        return UsageReport(
            source=self.source,
            model_usage=_model_usage(models),
            daily_usage=_daily_usage(days),
            hourly_tokens=_hourly_usage(hours),
            model_latency=model_latency,
            top_operations=top_operations[:TOP_OPERATIONS_LIMIT],
            totals=totals,
        )


# ---------------------------------------------------------------------------
# Engine and read helpers
# ---------------------------------------------------------------------------


class UsageRollupEngine:
    """Loads one profile's window from the store and runs the matching strategy."""

    def __init__(self, store, days: int = DEFAULT_USAGE_DAYS, hours: int = DEFAULT_HOURLY_HOURS):
        self.store = store
        self.days = days
        self.hours = hours

    def select_strategy(self, customer_id: str, profile_id: str, window: UsageWindow) -> UsageStrategy:
        # Percentiles need the whole window, so nothing here is paginated
        points = self.store.query_metric_points(customer_id, profile_id, since=window.since)
        if points:
            return MetricPointStrategy(points)
        spans = self.store.query_spans(customer_id, profile_id, since=window.since)
        return SpanAttributeStrategy(spans)

    def compute(self, customer_id: str, profile_id: str, now: Optional[datetime] = None) -> UsageReport:
        window = UsageWindow(now or utcnow(), self.days, self.hours)
        strategy = self.select_strategy(customer_id, profile_id, window)
        report = strategy.compute_usage(window)
        logger.debug(
            "Usage rollup for profile %s used %s (%d models)",
            profile_id, report.source, len(report.model_usage),
        )
        return report


def compute_timeline(spans: Iterable[Any], now: Optional[datetime] = None,
                     hours: int = DEFAULT_HOURLY_HOURS) -> List[Dict[str, Any]]:
    """Hourly span count, error count and mean latency over the last *hours*."""
    now = now or utcnow()
    since = now - timedelta(hours=hours)
    buckets: Dict[str, _Group] = {}
    for span in spans:
        if span.start_time < since:
            continue
        g = _group(buckets, hour_key(span.start_time))
        g.request_count += 1
        if span.status_code == "ERROR":
            g.error_count += 1
        if span.duration_ms is not None:
            g.latencies.append(span.duration_ms)
    return [
        {
            "hour": hour,
            "span_count": round_half_up(g.request_count),
            "error_count": round_half_up(g.error_count),
            "avg_latency_ms": round_half_up(_mean(g.latencies)),
        }
        for hour, g in sorted(buckets.items())
    ]


def summarize_metrics(points: Iterable[Any]) -> List[Dict[str, Any]]:
    """Latest value and datapoint count per (metric name, metric type).

    *points* must be ordered newest first, as ``query_metric_points`` returns them.
    """
    summary: Dict[str, Dict[str, Any]] = OrderedDict()
    for point in points:
        key = f"{point.metric_name}::{point.metric_type}"
        entry = summary.get(key)
        if entry is None:
            value = metric_value(point)
            if value is None:
                value = parse_float(point.sum)
            entry = summary[key] = {
                "metric_name": point.metric_name,
                "metric_type": point.metric_type,
                "unit": point.unit or None,
                "last_value": value,
                "last_time": _iso(point.time),
                "datapoints": 0,
            }
        entry["datapoints"] += 1
    return list(summary.values())


def profile_latency(durations: Iterable[Optional[float]]) -> Dict[str, float]:
    """Exact p50/p95/p99 and mean over the span durations of a profile."""
    summary = summarize_durations(durations)
    return {"p50": summary.p50, "p95": summary.p95, "p99": summary.p99, "avg": summary.avg}
