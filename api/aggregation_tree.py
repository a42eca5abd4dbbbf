"""Typed, lazy accessors over a raw Elasticsearch aggregation response.

Every bucket collection decodes to one of two variants and every metric result
to one of four, chosen from the metric type declared in the query definition:

  Buckets:  ArrayBuckets (terms, histogram, date_histogram, …)
            KeyedBuckets (filters and other keyed aggregations)
  Metrics:  ScalarValue, PercentilesValue, ExtendedStatsValue, TopMetricsValue

A metric id that is absent from a bucket means "no data" and decodes to an
empty variant.  A value whose shape contradicts the declared type (usually
backend version skew) raises MalformedResponse instead.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from models import MetricAggSpec, MetricAggType


class MalformedResponse(Exception):
    """Response structure does not match the query definition that produced it."""

    def __init__(self, message: str, path: str = ""):
        self.path = path
        super().__init__(f"{message} (at {path})" if path else message)


# ── Metric value variants ─────────────────────────────────────────────


@dataclass(frozen=True)
class ScalarValue:
    value: Optional[float] = None


@dataclass(frozen=True)
class PercentilesValue:
    values: dict[float, Optional[float]] = field(default_factory=dict)

    def value_for(self, percent: float) -> Optional[float]:
        return self.values.get(float(percent))


@dataclass(frozen=True)
class ExtendedStatsValue:
    stats: dict[str, Optional[float]] = field(default_factory=dict)

    def value_for(self, stat: str) -> Optional[float]:
        return self.stats.get(stat)


@dataclass(frozen=True)
class TopMetricsValue:
    metrics: dict[str, Optional[float]] = field(default_factory=dict)

    def value_for(self, metric_field: str) -> Optional[float]:
        return self.metrics.get(metric_field)


MetricValue = Union[ScalarValue, PercentilesValue, ExtendedStatsValue, TopMetricsValue]


# ── Bucket variants ───────────────────────────────────────────────────


@dataclass(frozen=True)
class BucketEntry:
    key: Any
    key_as_string: Optional[str]
    doc_count: Optional[int]
    node: "AggregationNode"


@dataclass(frozen=True)
class ArrayBuckets:
    entries: tuple[BucketEntry, ...] = ()


@dataclass(frozen=True)
class KeyedBuckets:
    entries: dict[str, "AggregationNode"] = field(default_factory=dict)


Buckets = Union[ArrayBuckets, KeyedBuckets]


# ── Helpers ───────────────────────────────────────────────────────────


def _to_float(value: Any, path: str) -> Optional[float]:
    """Decode a numeric metric value; null stays null."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise MalformedResponse(f"expected a number, got boolean {value!r}", path)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        # Some backends serialise non-finite doubles as strings
        try:
            parsed = float(value)
        except ValueError:
            raise MalformedResponse(f"expected a number, got {value!r}", path) from None
        return None if math.isnan(parsed) else parsed
    raise MalformedResponse(f"expected a number, got {type(value).__name__}", path)


def _top_metric_float(value: Any, path: str) -> Optional[float]:
    # keyword and date fields come back as text
    if isinstance(value, str):
        try:
            return _to_float(value, path)
        except MalformedResponse:
            return None
    return _to_float(value, path)


def _percent_key(raw_key: Any, path: str) -> float:
    try:
        return float(raw_key)
    except (TypeError, ValueError):
        raise MalformedResponse(f"percentile key {raw_key!r} is not numeric", path) from None


# ── Node accessor ─────────────────────────────────────────────────────


class AggregationNode:
    """One level of the response tree: the aggregations object or a single bucket."""

    def __init__(self, raw: Any, path: str = "aggregations"):
        if not isinstance(raw, dict):
            raise MalformedResponse(
                f"expected an object, got {type(raw).__name__}", path
            )
        self._raw = raw
        self.path = path

    def __contains__(self, key: str) -> bool:
        return key in self._raw

    @property
    def doc_count(self) -> Optional[int]:
        return self._raw.get("doc_count")

    def raw_value(self, key: str) -> Any:
        return self._raw.get(key)

    # -- Buckets ----------------------------------------------------------

    def buckets_for(self, agg_id: str) -> Buckets:
        """Decode the bucket collection of bucket aggregation `agg_id`."""
        path = f"{self.path} > {agg_id}"
        if agg_id not in self._raw:
            raise MalformedResponse(f"bucket aggregation '{agg_id}' is missing", self.path)

        agg = self._raw[agg_id]
        if not isinstance(agg, dict) or "buckets" not in agg:
            raise MalformedResponse("expected an object with 'buckets'", path)

        buckets = agg["buckets"]
        if isinstance(buckets, list):
            entries = []
            for i, bucket in enumerate(buckets):
                if not isinstance(bucket, dict):
                    raise MalformedResponse(f"bucket #{i} is not an object", path)
                entries.append(BucketEntry(
                    key=bucket.get("key"),
                    key_as_string=bucket.get("key_as_string"),
                    doc_count=bucket.get("doc_count"),
                    node=AggregationNode(bucket, f"{path}[{bucket.get('key')}]"),
                ))
            return ArrayBuckets(entries=tuple(entries))

        if isinstance(buckets, dict):
            return KeyedBuckets(entries={
                str(label): AggregationNode(bucket, f"{path}[{label}]")
                for label, bucket in buckets.items()
            })

        raise MalformedResponse(
            f"'buckets' must be a list or an object, got {type(buckets).__name__}", path
        )

    # -- Metrics ----------------------------------------------------------

    def metric_value_for(self, metric: MetricAggSpec) -> MetricValue:
        """Decode the result of `metric` in this bucket according to its type."""
        if metric.type == MetricAggType.count:
            return ScalarValue(_to_float(self.doc_count, f"{self.path} > doc_count"))

        path = f"{self.path} > {metric.id}"
        raw = self._raw.get(metric.id)

        if metric.type == MetricAggType.percentiles:
            return self._decode_percentiles(raw, path)
        if metric.type == MetricAggType.extended_stats:
            return self._decode_extended_stats(raw, path)
        if metric.type == MetricAggType.top_metrics:
            return self._decode_top_metrics(raw, path)
        return self._decode_scalar(raw, path)

    @staticmethod
    def _decode_scalar(raw: Any, path: str) -> ScalarValue:
        if raw is None or isinstance(raw, (int, float, str)):
            return ScalarValue(_to_float(raw, path))
        if isinstance(raw, dict):
            if "value" not in raw:
                raise MalformedResponse("single-value metric has no 'value'", path)
            return ScalarValue(_to_float(raw["value"], path))
        raise MalformedResponse(f"unexpected {type(raw).__name__} for single-value metric", path)

    @staticmethod
    def _decode_percentiles(raw: Any, path: str) -> PercentilesValue:
        if raw is None:
            return PercentilesValue()
        if not isinstance(raw, dict) or "values" not in raw:
            raise MalformedResponse("percentiles result has no 'values'", path)

        values = raw["values"]
        decoded: dict[float, Optional[float]] = {}
        if isinstance(values, dict):
            for key, value in values.items():
                decoded[_percent_key(key, path)] = _to_float(value, f"{path}[{key}]")
        elif isinstance(values, list):
            # keyed: false form
            for item in values:
                if not isinstance(item, dict) or "key" not in item:
                    raise MalformedResponse("percentiles list item has no 'key'", path)
                key = item["key"]
                decoded[_percent_key(key, path)] = _to_float(item.get("value"), f"{path}[{key}]")
        else:
            raise MalformedResponse("percentiles 'values' must be an object or a list", path)
        return PercentilesValue(decoded)

    @staticmethod
    def _decode_extended_stats(raw: Any, path: str) -> ExtendedStatsValue:
        if raw is None:
            return ExtendedStatsValue()
        if not isinstance(raw, dict):
            raise MalformedResponse("extended_stats result must be an object", path)

        stats: dict[str, Optional[float]] = {}
        for name, value in raw.items():
            if name.endswith("_as_string") or isinstance(value, dict):
                continue
            stats[name] = _to_float(value, f"{path} > {name}")

        bounds = raw.get("std_deviation_bounds")
        if bounds is not None:
            if not isinstance(bounds, dict):
                raise MalformedResponse("'std_deviation_bounds' must be an object", path)
            stats["std_deviation_bounds_upper"] = _to_float(bounds.get("upper"), path)
            stats["std_deviation_bounds_lower"] = _to_float(bounds.get("lower"), path)
        return ExtendedStatsValue(stats)

    @staticmethod
    def _decode_top_metrics(raw: Any, path: str) -> TopMetricsValue:
        if raw is None:
            return TopMetricsValue()
        if not isinstance(raw, dict) or not isinstance(raw.get("top"), list):
            raise MalformedResponse("top_metrics result has no 'top' list", path)
        if not raw["top"]:
            return TopMetricsValue()

        first = raw["top"][0]
        if not isinstance(first, dict) or not isinstance(first.get("metrics"), dict):
            raise MalformedResponse("top_metrics hit has no 'metrics' object", path)
        return TopMetricsValue({
            name: _top_metric_float(value, f"{path} > {name}")
            for name, value in first["metrics"].items()
        })
