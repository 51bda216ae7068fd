"""
Unit tests for the usage rollup strategies and read helpers.

Rows are plain namespaces shaped like the ORM models, so the strategies run
without a database. Engine selection uses the in-memory store fixture.
"""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from tool_telemetry.clock import to_millis
from tool_telemetry.decoders import DecodedMetricPoint, DecodedSpan
from tool_telemetry.rollup import (
    SOURCE_METRICS,
    SOURCE_SPANS,
    MetricPointStrategy,
    SpanAttributeStrategy,
    UsageRollupEngine,
    UsageWindow,
    compute_timeline,
    profile_latency,
    round_half_up,
    summarize_metrics,
    token_metric_type,
    tokens_per_second,
)
from tool_telemetry.vendors import CanonicalVendor

NOW = datetime(2026, 1, 10, 12, 0, 0)


def _point(name, time, metric_type="sum", attrs=None, value_int=None, value_double=None,
           total=None, buckets=None, bounds=None, lo=None, hi=None, unit=None):
    return SimpleNamespace(
        metric_name=name,
        metric_type=metric_type,
        attributes=attrs or {},
        time=time,
        value_int=value_int,
        value_double=value_double,
        sum=total,
        bucket_counts=buckets,
        explicit_bounds=bounds,
        min=lo,
        max=hi,
        unit=unit,
    )


def _span(name, start, model=None, duration=None, status="OK", **token_attrs):
    attrs = dict(token_attrs)
    if model:
        attrs["gen_ai.request.model"] = model
    return SimpleNamespace(
        span_name=name,
        start_time=start,
        span_attributes=attrs,
        status_code=status,
        duration_ms=duration,
    )


# -----------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------


class TestHelpers:
    def test_round_half_up(self):
        assert round_half_up(0.5) == 1
        assert round_half_up(2.5) == 3
        assert round_half_up(2.49) == 2
        assert round_half_up(float("nan")) == 0

    def test_tokens_per_second_guards_zero_duration(self):
        assert tokens_per_second(500, 0) == 0.0
        assert tokens_per_second(500, -10) == 0.0
        assert tokens_per_second(300, 150) == 2000.0

    def test_token_type_attribute_beats_name(self):
        attrs = {"gen_ai.token.type": "input"}
        assert token_metric_type("gen_ai.usage.output_tokens", attrs) == "input"
        assert token_metric_type("gen_ai.usage.output_tokens", {}) == "output"
        assert token_metric_type("gen_ai.client.token.usage", {"token.type": "completion"}) == "output"
        assert token_metric_type("http.server.duration", {}) is None


# -----------------------------------------------------------------------
# Strategy A: metric datapoints
# -----------------------------------------------------------------------


@pytest.fixture
def metric_report():
    recent = NOW - timedelta(hours=1)
    points = [
        _point("gen_ai.requests.count", recent, attrs={"gen_ai.request.model": "claude"}, value_int=3),
        _point("gen_ai.requests.count", NOW - timedelta(days=2),
               attrs={"gen_ai.request.model": "gpt-4o"}, value_int=2),
        _point("gen_ai.client.token.usage", recent, metric_type="histogram",
               attrs={"gen_ai.request.model": "claude", "gen_ai.token.type": "input"}, total=120.0),
        _point("gen_ai.usage.output_tokens", recent,
               attrs={"gen_ai.request.model": "claude", "gen_ai.token.type": "input"}, value_double=30.0),
        _point("gen_ai.client.operation.duration", recent, metric_type="histogram",
               attrs={"gen_ai.request.model": "claude"}, total=700.0,
               buckets=[0, 0, 10, 0], bounds=[10, 50, 100], lo=55.0, hi=99.0),
        _point("gen_ai.requests.count", NOW - timedelta(days=40),
               attrs={"gen_ai.request.model": "claude"}, value_int=100),
    ]
    return MetricPointStrategy(points).compute_usage(UsageWindow(NOW))


class TestMetricPointStrategy:
    def test_source(self, metric_report):
        assert metric_report.source == SOURCE_METRICS
        assert metric_report.top_operations == []

    def test_model_usage(self, metric_report):
        claude, gpt = metric_report.model_usage
        assert (claude.model, claude.request_count) == ("claude", 3)
        assert claude.total_input_tokens == 150
        assert claude.total_output_tokens == 0
        assert claude.avg_latency_ms == 70
        assert (gpt.model, gpt.request_count, gpt.avg_latency_ms) == ("gpt-4o", 2, 0)

    def test_points_outside_window_ignored(self, metric_report):
        assert metric_report.totals.request_count == 5

    def test_histogram_latency(self, metric_report):
        (row,) = metric_report.model_latency
        assert row.model == "claude"
        assert (row.p50, row.p95, row.p99) == (100, 100, 100)
        assert (row.avg_ms, row.min_ms, row.max_ms) == (70, 55, 99)

    def test_daily_and_hourly(self, metric_report):
        assert [d.day for d in metric_report.daily_usage] == ["2026-01-08", "2026-01-10"]
        assert metric_report.daily_usage[1].input_tokens == 150
        (hour,) = metric_report.hourly_tokens
        assert hour.hour == "2026-01-10T11:00:00"
        assert (hour.input_tokens, hour.request_count, hour.avg_latency_ms) == (150, 3, 70)

    def test_totals(self, metric_report):
        totals = metric_report.totals.to_dict()
        assert totals["totalInputTokens"] == 150
        assert totals["distinctModels"] == 2
        assert totals["avgDurationMs"] == 70
        assert totals["avgTokensPerSec"] == pytest.approx(2142.9)

    def test_scalar_latency_without_histograms(self):
        points = [
            _point("llm.latency", NOW, value_double=100.0),
            _point("llm.latency", NOW, value_double=300.0),
        ]
        report = MetricPointStrategy(points).compute_usage(UsageWindow(NOW))
        assert report.model_latency == []
        assert report.totals.avg_duration_ms == 200
        assert report.totals.avg_tokens_per_sec == 0.0
        assert report.totals.distinct_models == 0


# -----------------------------------------------------------------------
# Strategy B: spans
# -----------------------------------------------------------------------


@pytest.fixture
def span_report():
    start = NOW - timedelta(minutes=30)
    spans = [
        _span("chat", start, "claude", 100, **{"gen_ai.usage.input_tokens": "10", "gen_ai.usage.output_tokens": "20"}),
        _span("chat", start, "claude", 200),
        _span("chat", start, "claude", None, status="ERROR"),
        _span("embed", start, "gpt-4o", 1000, **{"gen_ai.usage.prompt_tokens": "5"}),
        _span("chat", NOW - timedelta(days=31), "claude", 50),
    ]
    return SpanAttributeStrategy(spans).compute_usage(UsageWindow(NOW))


class TestSpanAttributeStrategy:
    def test_model_usage(self, span_report):
        assert span_report.source == SOURCE_SPANS
        claude, gpt = span_report.model_usage
        assert (claude.request_count, claude.error_count, claude.avg_latency_ms) == (3, 1, 150)
        assert (claude.total_input_tokens, claude.total_output_tokens) == (10, 20)
        assert (gpt.request_count, gpt.total_input_tokens) == (1, 5)
        assert claude.last_used == (NOW - timedelta(minutes=30)).isoformat()

    def test_exact_percentiles_sorted_by_avg(self, span_report):
        gpt, claude = span_report.model_latency
        assert gpt.model == "gpt-4o"
        assert (claude.p50, claude.p95, claude.p99) == (150, 195, 199)
        assert (claude.min_ms, claude.max_ms) == (100, 200)

    def test_top_operations(self, span_report):
        chat, embed = span_report.top_operations
        assert (chat.span_name, chat.call_count, chat.error_count, chat.avg_latency_ms) == ("chat", 3, 1, 150)
        assert embed.call_count == 1

    def test_totals(self, span_report):
        totals = span_report.totals
        assert (totals.request_count, totals.error_count, totals.distinct_models) == (4, 1, 2)
        assert totals.avg_duration_ms == 433
        assert totals.avg_tokens_per_sec == pytest.approx(80.8)

    def test_hourly_only_last_day(self):
        spans = [_span("a", NOW - timedelta(hours=2)), _span("a", NOW - timedelta(hours=30))]
        report = SpanAttributeStrategy(spans).compute_usage(UsageWindow(NOW))
        assert [h.hour for h in report.hourly_tokens] == ["2026-01-10T10:00:00"]
        assert len(report.daily_usage) == 2

    def test_top_operations_capped(self):
        spans = [_span(f"op-{i}", NOW) for i in range(15)]
        report = SpanAttributeStrategy(spans).compute_usage(UsageWindow(NOW))
        assert len(report.top_operations) == 10

    def test_empty(self):
        report = SpanAttributeStrategy([]).compute_usage(UsageWindow(NOW))
        assert report.to_dict()["totals"] == {
            "totalInputTokens": 0,
            "totalOutputTokens": 0,
            "distinctModels": 0,
            "avgDurationMs": 0,
            "avgTokensPerSec": 0.0,
            "requestCount": 0,
            "errorCount": 0,
        }

    def test_same_shape_as_metric_report(self):
        keys = {"modelUsage", "dailyUsage", "hourlyTokens", "modelLatency", "topOperations", "totals"}
        assert set(SpanAttributeStrategy([]).compute_usage(UsageWindow(NOW)).to_dict()) == keys
        assert set(MetricPointStrategy([]).compute_usage(UsageWindow(NOW)).to_dict()) == keys


# -----------------------------------------------------------------------
# Engine
# -----------------------------------------------------------------------


VENDOR = CanonicalVendor("anthropic", "Anthropic (Claude)", "llm")


def _decoded_span(start_ms, duration=100):
    return DecodedSpan(
        trace_id="t", span_id=f"s{start_ms}", parent_span_id=None, name="chat", kind="CLIENT",
        start_time_ms=start_ms, end_time_ms=start_ms + duration, duration_ms=duration,
        status_code="OK", status_message=None,
        span_attributes={"gen_ai.request.model": "claude"},
    )


class TestUsageRollupEngine:
    def test_falls_back_to_spans(self, store):
        profile = store.upsert_tool_profile("c1", VENDOR, 1, 1, 0, NOW)
        store.insert_spans([_decoded_span(to_millis(NOW - timedelta(hours=1)))], "c1", profile.id, "anthropic")
        report = UsageRollupEngine(store).compute("c1", profile.id, now=NOW)
        assert report.source == SOURCE_SPANS
        assert report.totals.request_count == 1

    def test_prefers_metrics(self, store):
        profile = store.upsert_tool_profile("c1", VENDOR, 1, 1, 0, NOW)
        store.insert_spans([_decoded_span(to_millis(NOW - timedelta(hours=1)))], "c1", profile.id, "anthropic")
        point = DecodedMetricPoint(
            metric_name="gen_ai.requests.count", metric_type="sum", unit="1", description=None,
            attributes={"gen_ai.request.model": "claude"}, time_ms=to_millis(NOW - timedelta(hours=1)),
            value_int=7,
        )
        store.insert_metric_points([point], "c1", profile.id, "anthropic")
        report = UsageRollupEngine(store).compute("c1", profile.id, now=NOW)
        assert report.source == SOURCE_METRICS
        assert report.totals.request_count == 7

    def test_old_metrics_do_not_select_strategy(self, store):
        profile = store.upsert_tool_profile("c1", VENDOR, 0, 0, 0, NOW)
        point = DecodedMetricPoint(
            metric_name="gen_ai.requests.count", metric_type="sum", unit=None, description=None,
            attributes={}, time_ms=to_millis(NOW - timedelta(days=45)), value_int=7,
        )
        store.insert_metric_points([point], "c1", profile.id, "anthropic")
        report = UsageRollupEngine(store).compute("c1", profile.id, now=NOW)
        assert report.source == SOURCE_SPANS
        assert report.model_usage == []


# -----------------------------------------------------------------------
# Read helpers
# -----------------------------------------------------------------------


class TestReadHelpers:
    def test_timeline(self):
        spans = [
            _span("a", NOW - timedelta(minutes=10), duration=100),
            _span("a", NOW - timedelta(minutes=20), duration=200, status="ERROR"),
            _span("a", NOW - timedelta(hours=3)),
            _span("a", NOW - timedelta(hours=30), duration=5),
        ]
        buckets = compute_timeline(spans, now=NOW)
        assert buckets == [
            {"hour": "2026-01-10T09:00:00", "span_count": 1, "error_count": 0, "avg_latency_ms": 0},
            {"hour": "2026-01-10T11:00:00", "span_count": 2, "error_count": 1, "avg_latency_ms": 150},
        ]

    def test_summarize_metrics_newest_first(self):
        points = [
            _point("requests", NOW, value_int=9, unit="1"),
            _point("requests", NOW - timedelta(minutes=1), value_int=4, unit="1"),
            _point("latency", NOW, metric_type="histogram", total=80.0),
        ]
        summary = summarize_metrics(points)
        assert summary[0] == {
            "metric_name": "requests",
            "metric_type": "sum",
            "unit": "1",
            "last_value": 9.0,
            "last_time": NOW.isoformat(),
            "datapoints": 2,
        }
        assert summary[1]["last_value"] == 80.0

    def test_profile_latency(self):
        assert profile_latency([100, 200, None]) == pytest.approx({"p50": 150.0, "p95": 195.0, "p99": 199.0, "avg": 150.0})
