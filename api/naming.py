"""Series naming — metric labels, group-key composition and alias patterns."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from models import PIPELINE_AGG_TYPES, MetricAggSpec, MetricAggType, QueryDefinition

# (bucket field, group key) pairs from the outermost bucket aggregation inwards
GroupKeyPath = tuple[tuple[str, str], ...]

METRIC_DISPLAY_NAMES = {
    "count": "Count",
    "avg": "Average",
    "sum": "Sum",
    "max": "Max",
    "min": "Min",
    "extended_stats": "Extended Stats",
    "percentiles": "Percentiles",
    "cardinality": "Unique Count",
    "rate": "Rate",
    "top_metrics": "Top Metrics",
    "moving_avg": "Moving Average",
    "moving_fn": "Moving Function",
    "derivative": "Derivative",
    "cumulative_sum": "Cumulative Sum",
    "serial_diff": "Serial Difference",
    "bucket_script": "Bucket Script",
    "raw_document": "Raw Document",
}

EXTENDED_STATS_NAMES = {
    "max": "Max",
    "std_deviation_bounds_lower": "Std Dev Lower",
    "std_deviation_bounds_upper": "Std Dev Upper",
    "min": "Min",
    "avg": "Avg",
    "sum": "Sum",
    "count": "Count",
    "std_deviation": "Std Dev",
    "variance": "Variance",
    "sum_of_squares": "Sum of Squares",
}

# Series order for extended_stats follows the table above
EXTENDED_STATS_ORDER = list(EXTENDED_STATS_NAMES)

FILTER_GROUP_FIELD = "filter"

ALIAS_PATTERN = re.compile(r"\{\{([\s\S]+?)\}\}")
SCRIPT_PARAM_PATTERN = re.compile(r"params\.([A-Za-z_][A-Za-z0-9_]*)")


@dataclass(frozen=True)
class SeriesLabel:
    """One named output of a metric: a percentile, a statistic, a top metric field…"""

    metric: MetricAggSpec
    sub_key: Any
    display: str
    field: Optional[str] = None

    @property
    def text(self) -> str:
        return f"{self.display} {self.field}" if self.field else self.display


# ── Formatting helpers ────────────────────────────────────────────────


def format_percent(percent: float) -> str:
    return str(int(percent)) if float(percent).is_integer() else repr(float(percent))


def format_key(key: Any, key_as_string: Optional[str] = None) -> str:
    """Render a bucket key as a group key."""
    if key_as_string is not None:
        return key_as_string
    if key is None:
        return ""
    if isinstance(key, bool):
        return "true" if key else "false"
    if isinstance(key, float) and key.is_integer():
        return str(int(key))
    return str(key)


def display_name(metric_type: str) -> str:
    return METRIC_DISPLAY_NAMES.get(metric_type, metric_type)


def describe_metric(metric: MetricAggSpec) -> str:
    """A metric's own label, e.g. ``Sum @value``."""
    name = display_name(metric.type)
    if metric.type == MetricAggType.count or not metric.field:
        return name
    return f"{name} {metric.field}"


def bucket_script_label(metric: MetricAggSpec, query: QueryDefinition) -> str:
    """Script text with every ``params.<var>`` replaced by the referenced metric's label."""
    script = str(metric.settings.get("script") or "")
    references = {v.name: v.pipeline_agg for v in metric.pipeline_variables}

    def _replace(match: re.Match) -> str:
        target_id = references.get(match.group(1))
        target = query.metric_by_id(target_id) if target_id is not None else None
        return describe_metric(target) if target else match.group(0)

    return SCRIPT_PARAM_PATTERN.sub(_replace, script)


# ── Labels ────────────────────────────────────────────────────────────


def expand_metric(
    metric: MetricAggSpec,
    query: QueryDefinition,
    percents: Optional[Iterable[float]] = None,
) -> list[SeriesLabel]:
    """Every label a metric contributes, in output order.

    `percents` stands in for the percentiles observed in the response when the
    metric does not declare any.
    """
    if metric.type == MetricAggType.count:
        return [SeriesLabel(metric, None, "Count")]

    if metric.type == MetricAggType.percentiles:
        requested = metric.requested_percents() or sorted(set(percents or ()))
        return [SeriesLabel(metric, p, f"p{format_percent(p)}") for p in requested]

    if metric.type == MetricAggType.extended_stats:
        enabled = set(metric.enabled_stats())
        ordered = [s for s in EXTENDED_STATS_ORDER if s in enabled]
        ordered += sorted(enabled - set(EXTENDED_STATS_ORDER))
        return [
            SeriesLabel(metric, stat, EXTENDED_STATS_NAMES.get(stat, stat))
            for stat in ordered
        ]

    if metric.type == MetricAggType.top_metrics:
        return [
            SeriesLabel(metric, name, display_name(metric.type), name)
            for name in metric.top_metric_fields()
        ]

    if metric.type == MetricAggType.bucket_script:
        return [SeriesLabel(metric, None, bucket_script_label(metric, query))]

    if metric.type in PIPELINE_AGG_TYPES:
        target = query.metric_by_id(metric.field) if metric.field else None
        if target is None:
            return [SeriesLabel(metric, None, "Unset")]
        return [SeriesLabel(metric, None, display_name(metric.type), describe_metric(target))]

    return [SeriesLabel(metric, None, display_name(metric.type), metric.field)]


# ── Series names ──────────────────────────────────────────────────────


def resolve_alias(pattern: str, label: SeriesLabel, path: GroupKeyPath) -> str:
    """Expand ``{{…}}`` placeholders; unknown placeholders stay as written."""
    keys: dict[str, str] = {}
    for field_name, key in path:
        keys.setdefault(field_name, key)

    def _replace(match: re.Match) -> str:
        group = match.group(1).strip()
        if group == "metric":
            return label.display
        if group == "field":
            return label.field or label.metric.field or ""
        if group.startswith("term "):
            term_field = group[5:].strip()
            if term_field in keys:
                return keys[term_field]
        if group in keys:
            return keys[group]
        return match.group(0)

    return ALIAS_PATTERN.sub(_replace, pattern)


def series_name(
    label: SeriesLabel,
    path: GroupKeyPath,
    alias_pattern: Optional[str],
    distinct_labels: int,
) -> str:
    """Name of the series for `label` under the group keys in `path`.

    The group keys alone name the series when the query yields a single
    distinct metric label; otherwise the metric label follows the group keys.
    """
    if alias_pattern:
        return resolve_alias(alias_pattern, label, path)
    if not path:
        return label.text

    group = " ".join(key for _, key in path)
    if distinct_labels == 1:
        return group
    return f"{group} {label.text}"
