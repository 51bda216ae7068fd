"""
Unit tests for the OTLP span, metric and log decoders.
"""

import pytest

from tool_telemetry.decoders import (
    decode_log_record,
    decode_metric,
    decode_span,
    nanos_to_millis,
    read_resource_logs,
    read_resource_metrics,
    read_resource_spans,
    span_from_log,
)
from tool_telemetry.errors import PayloadShapeError

START_NS = "1700000000000000000"  # 1_700_000_000_000 ms
END_NS = "1700000000250999999"    # +250.999999 ms


def _span(**overrides):
    span = {
        "traceId": "t1",
        "spanId": "s1",
        "name": "chat",
        "kind": 3,
        "startTimeUnixNano": START_NS,
        "endTimeUnixNano": END_NS,
        "status": {"code": 1},
        "attributes": [{"key": "gen_ai.request.model", "value": {"stringValue": "claude-3"}}],
    }
    span.update(overrides)
    return span


# -----------------------------------------------------------------------
# Timestamps
# -----------------------------------------------------------------------


class TestNanosToMillis:
    def test_truncates(self):
        assert nanos_to_millis("1999999") == 1
        assert nanos_to_millis(END_NS) == 1700000000250

    def test_missing_and_zero(self):
        assert nanos_to_millis(None) is None
        assert nanos_to_millis("0") is None
        assert nanos_to_millis("") is None

    def test_garbage(self):
        assert nanos_to_millis("soon") is None
        assert nanos_to_millis("-5") is None


# -----------------------------------------------------------------------
# Spans
# -----------------------------------------------------------------------


class TestDecodeSpan:
    def test_basic_fields(self):
        span = decode_span(_span())
        assert span.trace_id == "t1"
        assert span.span_id == "s1"
        assert span.kind == "CLIENT"
        assert span.status_code == "OK"
        assert span.start_time_ms == 1700000000000
        assert span.end_time_ms == 1700000000250
        assert span.span_attributes["gen_ai.request.model"] == "claude-3"

    def test_duration_is_end_minus_start(self):
        span = decode_span(_span())
        assert span.duration_ms == span.end_time_ms - span.start_time_ms == 250

    def test_missing_end_has_no_duration(self):
        span = decode_span(_span(endTimeUnixNano=None))
        assert span.end_time_ms is None
        assert span.duration_ms is None

    def test_end_before_start_has_no_duration(self):
        span = decode_span(_span(endTimeUnixNano="1600000000000000000"))
        assert span.duration_ms is None

    def test_missing_start_falls_back_to_received_time(self):
        span = decode_span(_span(startTimeUnixNano=None), received_at_ms=42)
        assert span.start_time_ms == 42
        assert span.duration_ms is None

    @pytest.mark.parametrize("raw, expected", [
        (0, "UNSPECIFIED"), (1, "INTERNAL"), (2, "SERVER"), (5, "CONSUMER"),
        (9, "UNSPECIFIED"), (-1, "UNSPECIFIED"), ("SPAN_KIND_PRODUCER", "PRODUCER"), (None, "UNSPECIFIED"),
    ])
    def test_kind_mapping(self, raw, expected):
        assert decode_span(_span(kind=raw)).kind == expected

    @pytest.mark.parametrize("status, expected", [
        ({"code": 2, "message": "boom"}, "ERROR"),
        ({"code": 1}, "OK"),
        ({"code": 0}, "UNSET"),
        ({"code": 7}, "UNSET"),
        ({"code": "STATUS_CODE_ERROR"}, "ERROR"),
        ({}, "UNSET"),
        ("broken", "UNSET"),
    ])
    def test_status_mapping(self, status, expected):
        assert decode_span(_span(status=status)).status_code == expected

    def test_error_message_kept(self):
        span = decode_span(_span(status={"code": 2, "message": "boom"}))
        assert span.is_error
        assert span.status_message == "boom"

    def test_missing_ids_and_name(self):
        span = decode_span({})
        assert span.trace_id == ""
        assert span.span_id == ""
        assert span.name == "unknown"
        assert span.parent_span_id is None

    def test_caller_identity_merged(self):
        span = decode_span(_span(), user_id="u-1", team_id="t-1")
        assert span.user_id == "u-1"
        assert span.span_attributes["user.id"] == "u-1"
        assert span.span_attributes["team.id"] == "t-1"

    def test_identity_from_resource_when_caller_has_none(self):
        span = decode_span(_span(), resource_attrs={"user_id": "res-user"})
        assert span.user_id == "res-user"
        assert span.span_attributes["user.id"] == "res-user"

    def test_decode_is_idempotent(self):
        raw = _span()
        assert decode_span(raw, user_id="u") == decode_span(raw, user_id="u")


# -----------------------------------------------------------------------
# Envelopes
# -----------------------------------------------------------------------


class TestEnvelopes:
    def test_missing_resource_spans_rejected(self):
        with pytest.raises(PayloadShapeError) as exc:
            read_resource_spans({"resourceMetrics": []})
        assert exc.value.status_code == 400
        assert "resourceSpans" in exc.value.message

    def test_non_list_rejected(self):
        with pytest.raises(PayloadShapeError):
            read_resource_metrics({"resourceMetrics": {}})

    def test_non_dict_payload_rejected(self):
        with pytest.raises(PayloadShapeError):
            read_resource_spans([])

    def test_blocks_carry_vendor_and_items(self):
        payload = {"resourceSpans": [
            "junk",
            {
                "resource": {"attributes": [{"key": "service.name", "value": {"stringValue": "cursor"}}]},
                "scopeSpans": [{"spans": [_span(), "junk"]}, {"spans": [_span(spanId="s2")]}, "junk"],
            },
        ]}
        blocks = read_resource_spans(payload)
        assert len(blocks) == 1
        assert blocks[0].vendor.slug == "cursor"
        assert blocks[0].service_name == "cursor"
        assert [item["spanId"] for item in blocks[0].items] == ["s1", "s2"]

    def test_snake_case_logs_key(self):
        blocks = read_resource_logs({"resource_logs": [{"scopeLogs": [{"logRecords": [{}]}]}]})
        assert len(blocks[0].items) == 1


# -----------------------------------------------------------------------
# Metrics
# -----------------------------------------------------------------------


class TestDecodeMetric:
    def test_sum_datapoints(self):
        points = decode_metric({
            "name": "gen_ai.requests.count",
            "unit": "1",
            "sum": {"dataPoints": [
                {"asInt": "3", "timeUnixNano": START_NS},
                {"asDouble": 1.5, "timeUnixNano": START_NS},
            ]},
        })
        assert [p.metric_type for p in points] == ["sum", "sum"]
        assert points[0].value_int == 3
        assert points[0].value_double is None
        assert points[1].value_double == 1.5
        assert points[0].time_ms == 1700000000000
        assert points[0].bucket_counts is None

    def test_first_populated_kind_only(self):
        points = decode_metric({
            "name": "m",
            "gauge": {"dataPoints": [{"asDouble": 1}]},
            "histogram": {"dataPoints": [{"count": "1"}]},
        })
        assert [p.metric_type for p in points] == ["gauge"]

    def test_histogram_fields(self):
        (point,) = decode_metric({
            "name": "gen_ai.client.operation.duration",
            "histogram": {"dataPoints": [{
                "count": "10", "sum": 700.0, "min": 55, "max": 99,
                "bucketCounts": ["0", "0", "10", "0"],
                "explicitBounds": [10, 50, 100],
            }]},
        }, received_at_ms=5)
        assert point.metric_type == "histogram"
        assert point.count == 10
        assert point.sum == 700.0
        assert point.bucket_counts == [0, 0, 10, 0]
        assert point.explicit_bounds == [10.0, 50.0, 100.0]
        assert point.value_double is None
        assert point.time_ms == 5

    def test_histogram_bucket_length_mismatch_nulls_both(self):
        (point,) = decode_metric({
            "name": "latency",
            "histogram": {"dataPoints": [{"bucketCounts": ["1", "2"], "explicitBounds": [1, 2, 3]}]},
        })
        assert point.bucket_counts is None
        assert point.explicit_bounds is None

    def test_non_finite_numbers_become_none(self):
        (point,) = decode_metric({
            "name": "latency",
            "histogram": {"dataPoints": [{"sum": "NaN", "min": "Infinity", "count": "many"}]},
        })
        assert point.sum is None
        assert point.min is None
        assert point.count is None

    def test_summary_quantiles(self):
        (point,) = decode_metric({
            "name": "rt",
            "summary": {"dataPoints": [{
                "count": "4", "sum": 10,
                "quantileValues": [{"quantile": 0.5, "value": 2}, "junk"],
            }]},
        })
        assert point.metric_type == "summary"
        assert point.quantile_values == [{"quantile": 0.5, "value": 2.0}]

    def test_exponential_histogram_kind_name(self):
        (point,) = decode_metric({"name": "x", "exponentialHistogram": {"dataPoints": [{"count": "2"}]}})
        assert point.metric_type == "exponential_histogram"
        assert point.count == 2

    def test_no_supported_kind(self):
        assert decode_metric({"name": "m", "weird": {}}) == []


# -----------------------------------------------------------------------
# Logs
# -----------------------------------------------------------------------


class TestDecodeLogs:
    def test_severity_from_number(self):
        record = decode_log_record({"severityNumber": 17, "body": {"stringValue": "failed"}})
        assert record.severity == "ERROR"
        assert record.is_error
        assert record.body == "failed"

    def test_severity_text_fallback(self):
        assert decode_log_record({"severityText": "warn"}).severity == "WARN"
        assert decode_log_record({}).severity == "INFO"

    def test_structured_body_as_json(self):
        record = decode_log_record({"body": {"kvlistValue": {"values": []}}})
        assert record.body == '{"kvlistValue": {"values": []}}'

    def test_span_context_from_attributes(self):
        record = decode_log_record({
            "attributes": [
                {"key": "trace_id", "value": {"stringValue": "abc"}},
                {"key": "span_id", "value": {"stringValue": "def"}},
            ],
        })
        assert (record.trace_id, record.span_id) == ("abc", "def")

    def test_synthetic_span(self):
        record = decode_log_record({
            "traceId": "t", "spanId": "s", "severityNumber": 21, "timeUnixNano": START_NS,
            "body": "crash",
        })
        span = span_from_log(record, user_id="u")
        assert span.signal_type == "log"
        assert span.kind == "INTERNAL"
        assert span.status_code == "ERROR"
        assert span.status_message == "crash"
        assert span.name == "crash"
        assert span.end_time_ms is None
        assert span.duration_ms is None
        assert span.start_time_ms == 1700000000000
        assert span.span_attributes["user.id"] == "u"

    def test_no_synthetic_span_without_context(self):
        assert span_from_log(decode_log_record({"traceId": "t"})) is None

    def test_synthetic_span_name_truncated(self):
        record = decode_log_record({"traceId": "t", "spanId": "s", "body": "x" * 500})
        assert len(span_from_log(record).name) == 200
