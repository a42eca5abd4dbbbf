"""Response parser — turns aggregation response trees into named series per refID.

The walk descends the response in lock-step with the query's bucket
aggregations.  Every non-terminal bucket extends the group-key path; the
buckets of the last aggregation are leaves, and each leaf appends one point
per metric label.  Series are named once the walk is over (naming depends on
how many distinct metric labels the whole query produced) and same-named
series are merged.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

from elastic_transport import ApiResponse
from elasticsearch import ApiError

from aggregation_tree import (
    AggregationNode,
    BucketEntry,
    ExtendedStatsValue,
    KeyedBuckets,
    MalformedResponse,
    PercentilesValue,
    ScalarValue,
    TopMetricsValue,
)
from config import PARSE_WORKERS
from metrics import parse_duration, record_result
from models import BucketAggSpec, BucketAggType, MetricAggSpec, MetricAggType, QueryDefinition
from naming import (
    FILTER_GROUP_FIELD,
    GroupKeyPath,
    SeriesLabel,
    expand_metric,
    format_key,
    series_name,
)
from pipeline import bucket_script_value
from result_models import BucketKey, NamedSeries, Point, QueryResult, Table

log = logging.getLogger(__name__)

UNKNOWN_ERROR = "Unknown elasticsearch error response"


class ResponseCountMismatch(ValueError):
    """A positional multi-response does not line up with the queries."""


# ── Helpers ───────────────────────────────────────────────────────────


def group_field(agg: BucketAggSpec) -> str:
    """Name under which a bucket aggregation's keys appear in the group-key path."""
    if agg.type == BucketAggType.filters:
        return FILTER_GROUP_FIELD
    return agg.field or agg.type


def trim_edges(entries: Sequence[BucketEntry], n: int) -> Sequence[BucketEntry]:
    """Drop `n` buckets from each end of a date_histogram bucket list."""
    if n <= 0:
        return entries
    if len(entries) <= 2 * n:
        return ()
    return entries[n:len(entries) - n]


def point_key(agg: BucketAggSpec, entry: BucketEntry) -> BucketKey:
    if agg.type == BucketAggType.date_histogram and isinstance(entry.key, (int, float)):
        return int(entry.key)
    if entry.key is None:
        return entry.key_as_string or ""
    return entry.key


def ordered_keyed_buckets(
    agg: BucketAggSpec, buckets: KeyedBuckets, path: str = ""
) -> list[tuple[str, AggregationNode]]:
    """Keyed buckets in declared filter order, then undeclared labels sorted."""
    declared = agg.filter_labels()
    ordered = []
    for label in declared:
        if label not in buckets.entries:
            raise MalformedResponse(f"filter bucket '{label}' is missing", f"{path} > {agg.id}")
        ordered.append((label, buckets.entries[label]))
    for label in sorted(set(buckets.entries) - set(declared)):
        ordered.append((label, buckets.entries[label]))
    return ordered


def elastic_error_message(error: Any) -> str:
    """Human-readable reason from an Elasticsearch error object."""
    if isinstance(error, dict):
        root_cause = error.get("root_cause") or []
        if root_cause and isinstance(root_cause[0], dict) and root_cause[0].get("reason"):
            return root_cause[0]["reason"]
        if error.get("reason"):
            return error["reason"]
    elif isinstance(error, str) and error:
        return error
    return UNKNOWN_ERROR


# ── Walker ────────────────────────────────────────────────────────────


@dataclass
class _SeriesAccumulator:
    label: SeriesLabel
    path: GroupKeyPath
    points: list[Point] = field(default_factory=list)


@dataclass
class _Row:
    path: GroupKeyPath
    key: BucketKey
    values: dict[tuple[int, Any], Optional[float]] = field(default_factory=dict)


class _QueryWalker:
    """Accumulates the series of one query; not shared between queries."""

    def __init__(self, query: QueryDefinition):
        self.query = query
        self.metrics = query.visible_metrics()
        self._series: dict[tuple[GroupKeyPath, int, Any], _SeriesAccumulator] = {}
        self._rows: list[_Row] = []
        self._failed: dict[int, str] = {}

    # -- Descent ----------------------------------------------------------

    def walk(self, root: AggregationNode) -> None:
        if not self.query.bucket_aggs:
            log.debug("Query %s has no bucket aggregations; nothing to walk", self.query.ref_id)
            return
        self._descend(root, 0, ())

    def _descend(self, node: AggregationNode, depth: int, path: GroupKeyPath) -> None:
        agg = self.query.bucket_aggs[depth]
        buckets = node.buckets_for(agg.id)
        terminal = depth == len(self.query.bucket_aggs) - 1

        if isinstance(buckets, KeyedBuckets):
            children = [
                (label, child, label)
                for label, child in ordered_keyed_buckets(agg, buckets, node.path)
            ]
        else:
            entries = buckets.entries
            if agg.type == BucketAggType.date_histogram:
                entries = trim_edges(entries, agg.trim_edges)
            children = [
                (format_key(e.key, e.key_as_string), e.node, point_key(agg, e))
                for e in entries
            ]

        if not terminal:
            for group_key, child, _ in children:
                self._descend(child, depth + 1, path + ((group_field(agg), group_key),))
            return

        labels = self._register_branch(path, [child for _, child, _ in children])
        for _, child, key in children:
            self._visit_leaf(child, path, key, labels)

    # -- Leaves -----------------------------------------------------------

    def _register_branch(
        self, path: GroupKeyPath, leaves: list[AggregationNode]
    ) -> list[list[SeriesLabel]]:
        """Create this branch's series up front so an empty bucket list still yields them."""
        labels_by_metric = []
        for index, metric in enumerate(self.metrics):
            labels = self._labels(index, metric, leaves)
            labels_by_metric.append(labels)
            for label in labels:
                self._series.setdefault(
                    (path, index, label.sub_key), _SeriesAccumulator(label, path)
                )
        return labels_by_metric

    def _labels(
        self, index: int, metric: MetricAggSpec, leaves: list[AggregationNode]
    ) -> list[SeriesLabel]:
        if metric.type != MetricAggType.percentiles or metric.requested_percents():
            return expand_metric(metric, self.query)

        # No declared percents: label by what the response returned
        observed: set[float] = set()
        for leaf in leaves:
            value = self._read(index, metric, leaf)
            if isinstance(value, PercentilesValue):
                observed.update(value.values)
        return expand_metric(metric, self.query, observed)

    def _read(self, index: int, metric: MetricAggSpec, node: AggregationNode):
        if index in self._failed:
            return None
        try:
            return node.metric_value_for(metric)
        except MalformedResponse as e:
            log.warning(
                "Dropping metric %s (%s) of query %s: %s",
                metric.id, metric.type, self.query.ref_id, e,
            )
            self._failed[index] = f"metric {metric.id} ({metric.type}): {e}"
            return None

    def _values(
        self,
        index: int,
        metric: MetricAggSpec,
        node: AggregationNode,
        labels: list[SeriesLabel],
    ) -> Optional[list[Optional[float]]]:
        if metric.type == MetricAggType.bucket_script:
            return [bucket_script_value(metric, node, self.query)]

        value = self._read(index, metric, node)
        if value is None:
            return None
        if isinstance(value, ScalarValue):
            return [value.value for _ in labels]
        if isinstance(value, (PercentilesValue, ExtendedStatsValue, TopMetricsValue)):
            return [value.value_for(label.sub_key) for label in labels]
        return None

    def _visit_leaf(
        self,
        node: AggregationNode,
        path: GroupKeyPath,
        key: BucketKey,
        labels_by_metric: list[list[SeriesLabel]],
    ) -> None:
        row = _Row(path, key)
        for index, (metric, labels) in enumerate(zip(self.metrics, labels_by_metric)):
            values = self._values(index, metric, node, labels)
            if values is None:
                continue
            for label, value in zip(labels, values):
                self._series[(path, index, label.sub_key)].points.append(
                    Point(value=value, key=key)
                )
                row.values[(index, label.sub_key)] = value
        if not self.query.is_time_series:
            self._rows.append(row)

    # -- Output -----------------------------------------------------------

    def _live_series(self) -> list[tuple[tuple[GroupKeyPath, int, Any], _SeriesAccumulator]]:
        return [
            (series_key, acc) for series_key, acc in self._series.items()
            if series_key[1] not in self._failed
        ]

    def _table(self) -> Table:
        columns: dict[tuple[int, Any], str] = {}
        for (_, index, sub_key), acc in self._live_series():
            columns.setdefault((index, sub_key), acc.label.text)

        header = [group_field(agg) for agg in self.query.bucket_aggs]
        rows = []
        for row in self._rows:
            cells: list[Optional[BucketKey]] = [key for _, key in row.path]
            cells.append(row.key)
            cells.extend(row.values.get(column) for column in columns)
            rows.append(cells)
        return Table(columns=header + list(columns.values()), rows=rows)

    def result(self) -> QueryResult:
        live = [acc for _, acc in self._live_series()]
        distinct_labels = len({acc.label.text for acc in live})

        merged: dict[str, NamedSeries] = {}
        for acc in live:
            name = series_name(acc.label, acc.path, self.query.alias_pattern, distinct_labels)
            if name in merged:
                merged[name].points.extend(acc.points)
            else:
                merged[name] = NamedSeries(name=name, points=list(acc.points))

        table = None
        if self.query.bucket_aggs and not self.query.is_time_series:
            table = self._table()

        return QueryResult(
            ref_id=self.query.ref_id,
            series=list(merged.values()),
            table=table,
            error="; ".join(self._failed.values()) or None,
        )


# ── Public API ────────────────────────────────────────────────────────


def process_query(query: QueryDefinition, response: Any) -> QueryResult:
    """Transform one search response into the named series of `query`.

    `response` may be a full search response (with ``aggregations``) or the
    aggregations object itself.  Structural mismatches abort this query only.
    """
    if isinstance(response, dict) and response.get("error") is not None:
        message = elastic_error_message(response["error"])
        log.info("Query %s returned an error: %s", query.ref_id, message)
        return QueryResult(ref_id=query.ref_id, error=message)

    aggregations = response
    if isinstance(response, dict) and "aggregations" in response:
        aggregations = response["aggregations"]

    walker = _QueryWalker(query)
    try:
        walker.walk(AggregationNode(aggregations))
    except MalformedResponse as e:
        log.warning("Malformed response for query %s: %s", query.ref_id, e)
        return QueryResult(ref_id=query.ref_id, error=f"Malformed response: {e}")
    return walker.result()


def _pair_responses(
    queries: Sequence[QueryDefinition], responses: Any
) -> list[tuple[QueryDefinition, Any]]:
    """Associate each query with its response, by refID or by position."""
    if isinstance(responses, ApiResponse):
        # elasticsearch client result, e.g. from msearch
        responses = responses.body

    if isinstance(responses, dict) and isinstance(responses.get("responses"), list):
        responses = responses["responses"]
    elif isinstance(responses, dict) and len(queries) == 1 and (
        "aggregations" in responses or "error" in responses
    ):
        responses = [responses]

    if isinstance(responses, list):
        if len(responses) != len(queries):
            raise ResponseCountMismatch(
                f"got {len(responses)} responses for {len(queries)} queries"
            )
        return list(zip(queries, responses))

    if isinstance(responses, Mapping):
        return [(q, responses.get(q.ref_id)) for q in queries]

    raise ResponseCountMismatch(
        f"expected a response list or a mapping by refId, got {type(responses).__name__}"
    )


def _safe_process(pair: tuple[QueryDefinition, Any]) -> QueryResult:
    query, response = pair
    if isinstance(response, ApiResponse):
        response = response.body
    elif isinstance(response, ApiError):
        # a failed search, kept in place of its response
        body = response.body if isinstance(response.body, dict) else {}
        response = {"error": body.get("error") or {}}
    if response is None:
        return QueryResult(ref_id=query.ref_id, error=f"No response for query {query.ref_id}")
    try:
        return process_query(query, response)
    except Exception as e:
        log.exception("Failed to process response for query %s", query.ref_id)
        return QueryResult(ref_id=query.ref_id, error=str(e))


def parse_responses(
    queries: Sequence[QueryDefinition],
    responses: Any,
    workers: int | None = None,
) -> dict[str, QueryResult]:
    """Transform the responses of a multi-query request, keyed by refID.

    `responses` is a ``{"responses": [...]}`` multi-search body, a list aligned
    with `queries`, or a mapping of refID to response; elasticsearch client
    responses are accepted in place of their bodies.  Queries are processed
    in parallel when `workers` (default ``PARSE_WORKERS``) is above one; the
    result keeps query order either way.
    """
    pairs = _pair_responses(queries, responses)
    workers = workers or PARSE_WORKERS

    with parse_duration.time():
        if workers > 1 and len(pairs) > 1:
            with ThreadPoolExecutor(max_workers=min(workers, len(pairs))) as executor:
                results = list(executor.map(_safe_process, pairs))
        else:
            results = [_safe_process(pair) for pair in pairs]

    for result in results:
        record_result(result)

    log.debug("Parsed %d responses (%d with errors)", len(results), sum(1 for r in results if r.error))
    return {result.ref_id: result for result in results}
