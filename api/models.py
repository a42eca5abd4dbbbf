"""Query definition models — the bucket/metric aggregation chain behind a response."""

from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


# ── Enums ──────────────────────────────────────────────────────────────

class BucketAggType(str, Enum):
    terms = "terms"
    date_histogram = "date_histogram"
    histogram = "histogram"
    filters = "filters"
    geohash_grid = "geohash_grid"


class MetricAggType(str, Enum):
    count = "count"
    avg = "avg"
    sum = "sum"
    max = "max"
    min = "min"
    cardinality = "cardinality"
    percentiles = "percentiles"
    extended_stats = "extended_stats"
    top_metrics = "top_metrics"
    rate = "rate"
    moving_avg = "moving_avg"
    moving_fn = "moving_fn"
    derivative = "derivative"
    cumulative_sum = "cumulative_sum"
    serial_diff = "serial_diff"
    bucket_script = "bucket_script"
    raw_document = "raw_document"
    raw_data = "raw_data"
    logs = "logs"


# Pipeline aggregations whose `field` holds the id of another metric
PIPELINE_AGG_TYPES = {
    MetricAggType.moving_avg.value,
    MetricAggType.moving_fn.value,
    MetricAggType.derivative.value,
    MetricAggType.cumulative_sum.value,
    MetricAggType.serial_diff.value,
}

# Document-retrieval metrics carry no aggregation result
DOCUMENT_METRIC_TYPES = {
    MetricAggType.raw_document.value,
    MetricAggType.raw_data.value,
    MetricAggType.logs.value,
}


# ── Nested value objects ──────────────────────────────────────────────

class PipelineVariable(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    pipeline_agg: str = Field(
        validation_alias=AliasChoices("pipelineAgg", "pipelineAggID", "pipeline_agg"),
        serialization_alias="pipelineAgg",
    )

    @field_validator("pipeline_agg", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> str:
        return str(v)


class BucketAggSpec(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    type: str = Field(..., examples=["terms", "date_histogram", "filters"])
    field: Optional[str] = None
    settings: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> str:
        return str(v)

    @property
    def trim_edges(self) -> int:
        """Number of edge buckets to drop on each side (date_histogram only)."""
        raw = self.settings.get("trimEdges")
        if raw in (None, ""):
            return 0
        try:
            return max(0, int(float(raw)))
        except (TypeError, ValueError):
            return 0

    def filter_labels(self) -> list[str]:
        """Declared filter labels in order; the query string stands in for a missing label."""
        labels = []
        for item in self.settings.get("filters") or []:
            label = item.get("label") or item.get("query") or "*"
            labels.append(label)
        return labels


class MetricAggSpec(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = ""
    type: str = Field(..., examples=["count", "avg", "percentiles"])
    field: Optional[str] = Field(
        default=None,
        description="Document field for metric aggs; the referenced metric id for pipeline aggs",
    )
    settings: dict[str, Any] = Field(default_factory=dict)
    meta: dict[str, Any] = Field(
        default_factory=dict,
        description="Enabled extended_stats statistics, e.g. {'max': true}",
    )
    hide: bool = False
    pipeline_variables: list[PipelineVariable] = Field(
        default_factory=list,
        validation_alias=AliasChoices("pipelineVariables", "pipeline_variables"),
        serialization_alias="pipelineVariables",
    )

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> str:
        return "" if v is None else str(v)

    def enabled_stats(self) -> list[str]:
        """extended_stats flags switched on, from `meta` or `settings.meta`."""
        meta = self.meta or self.settings.get("meta") or {}
        return [name for name, enabled in meta.items() if enabled]

    def requested_percents(self) -> list[float]:
        """Requested percentiles, ascending and de-duplicated."""
        percents = set()
        for p in self.settings.get("percents") or []:
            try:
                percents.add(float(p))
            except (TypeError, ValueError):
                continue
        return sorted(percents)

    def top_metric_fields(self) -> list[str]:
        return list(self.settings.get("metrics") or [])


# ── Query definition ──────────────────────────────────────────────────

class QueryDefinition(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    ref_id: str = Field(
        default="A",
        validation_alias=AliasChoices("refId", "refID", "ref_id"),
        serialization_alias="refId",
    )
    time_field: str = Field(
        default="@timestamp",
        validation_alias=AliasChoices("timeField", "time_field"),
        serialization_alias="timeField",
    )
    alias_pattern: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("alias", "aliasPattern", "alias_pattern"),
        serialization_alias="alias",
        examples=["{{term host}} {{metric}}"],
    )
    bucket_aggs: list[BucketAggSpec] = Field(
        default_factory=list,
        validation_alias=AliasChoices("bucketAggs", "bucket_aggs"),
        serialization_alias="bucketAggs",
    )
    metric_aggs: list[MetricAggSpec] = Field(
        default_factory=list,
        validation_alias=AliasChoices("metrics", "metricAggs", "metric_aggs"),
        serialization_alias="metrics",
    )

    def metric_by_id(self, metric_id: str) -> Optional[MetricAggSpec]:
        for metric in self.metric_aggs:
            if metric.id == metric_id:
                return metric
        return None

    def visible_metrics(self) -> list[MetricAggSpec]:
        """Metrics that produce series, in declaration order."""
        return [
            m for m in self.metric_aggs
            if not m.hide and m.type not in DOCUMENT_METRIC_TYPES
        ]

    @property
    def is_time_series(self) -> bool:
        return bool(self.bucket_aggs) and (
            self.bucket_aggs[-1].type == BucketAggType.date_histogram
        )
