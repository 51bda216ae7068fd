"""
Latency distribution math: histogram merging and percentile extraction.

Two sources of latency data exist:

- Pre-aggregated OTLP histogram datapoints. These are merged bucket-wise and
  percentiles are read off the cumulative bucket counts. The result is the
  upper bound of the bucket holding the requested rank, not an interpolated
  value; precision is limited by the sender's bucket layout.
- Raw span durations. These give exact order statistics.

Both produce a ``HistogramSummary`` so callers do not care which one ran.
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence

from tool_telemetry.attributes import parse_float, parse_int

logger = logging.getLogger(__name__)

DEFAULT_PERCENTILES = (0.5, 0.95, 0.99)


@dataclass(frozen=True)
class HistogramSummary:
    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    avg: float = 0.0
    count: int = 0
    sum: float = 0.0
    min: float = 0.0
    max: float = 0.0

    @property
    def empty(self) -> bool:
        return self.count == 0


EMPTY_SUMMARY = HistogramSummary()


def _as_numbers(raw: Any, parser) -> Optional[List]:
    if not isinstance(raw, (list, tuple)) or not raw:
        return None
    values = [parser(v) for v in raw]
    if any(v is None for v in values):
        return None
    return values


def merge_histograms(points: Iterable[Any]) -> HistogramSummary:
    """Merge histogram datapoints that share bucket boundaries.

    *points* are objects exposing ``metric_type``, ``bucket_counts``,
    ``explicit_bounds``, ``sum``, ``min`` and ``max`` (ORM rows or decoded
    records). The first histogram with both boundaries and counts fixes the
    reference boundaries; later points with different boundaries are skipped.
    """
    bounds: Optional[List[float]] = None
    buckets: Optional[List[int]] = None
    total_sum = 0.0
    mins: List[float] = []
    maxes: List[float] = []
    skipped = 0

    for point in points:
        if getattr(point, "metric_type", None) != "histogram":
            continue
        point_bounds = _as_numbers(getattr(point, "explicit_bounds", None), parse_float)
        point_buckets = _as_numbers(getattr(point, "bucket_counts", None), parse_int)
        if point_bounds is None or point_buckets is None:
            continue

        if bounds is None:
            bounds = point_bounds
            buckets = [0] * len(point_buckets)
        elif point_bounds != bounds or len(point_buckets) != len(buckets):
            skipped += 1
            continue

        for i, count in enumerate(point_buckets):
            buckets[i] += count

        point_sum = parse_float(getattr(point, "sum", None))
        if point_sum is not None:
            total_sum += point_sum
        point_min = parse_float(getattr(point, "min", None))
        if point_min is not None:
            mins.append(point_min)
        point_max = parse_float(getattr(point, "max", None))
        if point_max is not None:
            maxes.append(point_max)

    if skipped:
        logger.debug("Skipped %d histogram datapoints with mismatched bucket bounds", skipped)

    if bounds is None or buckets is None:
        return EMPTY_SUMMARY

    total_count = sum(buckets)
    if total_count == 0:
        return EMPTY_SUMMARY

    p50, p95, p99 = (_bucket_percentile(bounds, buckets, total_count, p) for p in DEFAULT_PERCENTILES)
    return HistogramSummary(
        p50=p50,
        p95=p95,
        p99=p99,
        avg=total_sum / total_count,
        count=total_count,
        sum=total_sum,
        min=min(mins) if mins else 0.0,
        max=max(maxes) if maxes else 0.0,
    )


def _bucket_percentile(bounds: Sequence[float], buckets: Sequence[int], total_count: int, p: float) -> float:
    """Upper boundary of the first bucket whose cumulative count reaches the target rank.

    The overflow bucket has no upper bound, so it reports the last finite one.
    """
    target = total_count * p
    cumulative = 0
    for i, count in enumerate(buckets):
        cumulative += count
        if cumulative >= target:
            return bounds[i] if i < len(bounds) else bounds[-1]
    return bounds[-1]


def exact_percentile(sorted_values: Sequence[float], p: float) -> float:
    """Continuous percentile with linear interpolation (PostgreSQL ``percentile_cont``).

    *sorted_values* must be sorted ascending.
    """
    if not sorted_values:
        return 0.0
    k = (len(sorted_values) - 1) * p
    f = int(k)
    c = f + 1 if f + 1 < len(sorted_values) else f
    if f == c:
        return float(sorted_values[f])
    return sorted_values[f] + (k - f) * (sorted_values[c] - sorted_values[f])


def summarize_durations(values: Iterable[Optional[float]]) -> HistogramSummary:
    """Exact percentiles, mean, min and max over raw durations (``None`` ignored)."""
    ordered = sorted(v for v in values if v is not None)
    if not ordered:
        return EMPTY_SUMMARY
    total = float(sum(ordered))
    p50, p95, p99 = (exact_percentile(ordered, p) for p in DEFAULT_PERCENTILES)
    return HistogramSummary(
        p50=p50,
        p95=p95,
        p99=p99,
        avg=total / len(ordered),
        count=len(ordered),
        sum=total,
        min=float(ordered[0]),
        max=float(ordered[-1]),
    )
