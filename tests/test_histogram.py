"""
Unit tests for histogram merging and percentile extraction.
"""

from types import SimpleNamespace

import pytest

from tool_telemetry.histogram import (
    EMPTY_SUMMARY,
    exact_percentile,
    merge_histograms,
    summarize_durations,
)


def _hist(buckets, bounds, total=None, lo=None, hi=None, metric_type="histogram"):
    return SimpleNamespace(
        metric_type=metric_type,
        bucket_counts=buckets,
        explicit_bounds=bounds,
        sum=total,
        min=lo,
        max=hi,
    )


class TestMergeHistograms:
    def test_single_bucket_holds_everything(self):
        summary = merge_histograms([_hist([0, 0, 10, 0], [10, 50, 100], total=700.0, lo=55, hi=99)])
        assert (summary.p50, summary.p95, summary.p99) == (100, 100, 100)
        assert summary.count == 10
        assert summary.avg == 70.0
        assert (summary.min, summary.max) == (55.0, 99.0)

    def test_buckets_are_summed(self):
        summary = merge_histograms([
            _hist([5, 0, 0, 0], [10, 50, 100], total=25.0),
            _hist([0, 5, 0, 0], [10, 50, 100], total=150.0),
        ])
        assert summary.count == 10
        assert summary.p50 == 10
        assert summary.p95 == 50
        assert summary.avg == 17.5

    def test_overflow_bucket_reports_last_bound(self):
        summary = merge_histograms([_hist([0, 0, 0, 4], [10, 50, 100], total=1000.0)])
        assert summary.p99 == 100

    def test_mismatched_bounds_skipped(self):
        summary = merge_histograms([
            _hist([0, 4, 0], [10, 20], total=60.0),
            _hist([9, 0, 0], [5, 15], total=9.0),
        ])
        assert summary.count == 4
        assert summary.sum == 60.0

    def test_non_histogram_points_ignored(self):
        summary = merge_histograms([_hist([1, 1], [10], metric_type="gauge")])
        assert summary is EMPTY_SUMMARY

    def test_no_usable_points(self):
        assert merge_histograms([]) is EMPTY_SUMMARY
        assert merge_histograms([_hist(None, None)]) is EMPTY_SUMMARY
        assert merge_histograms([_hist([0, 0], [10])]) is EMPTY_SUMMARY

    def test_empty_summary_is_zeroed(self):
        assert EMPTY_SUMMARY.empty
        assert (EMPTY_SUMMARY.p50, EMPTY_SUMMARY.p95, EMPTY_SUMMARY.p99, EMPTY_SUMMARY.avg) == (0, 0, 0, 0)


class TestExactPercentile:
    def test_interpolates(self):
        assert exact_percentile([100, 200], 0.5) == 150
        assert exact_percentile([100, 200], 0.95) == pytest.approx(195)

    def test_single_value(self):
        assert exact_percentile([42], 0.99) == 42.0

    def test_empty(self):
        assert exact_percentile([], 0.5) == 0.0


class TestSummarizeDurations:
    def test_ignores_missing(self):
        summary = summarize_durations([300, None, 100, 200])
        assert summary.count == 3
        assert summary.p50 == 200
        assert summary.avg == 200
        assert (summary.min, summary.max) == (100.0, 300.0)

    def test_all_missing(self):
        assert summarize_durations([None, None]) is EMPTY_SUMMARY
