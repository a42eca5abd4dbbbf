"""Prometheus instrumentation for the transformer.

Counts transformed queries by outcome and times each parse, on a dedicated
registry that `GET /metrics` renders in Prometheus text format.
"""

import logging

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

log = logging.getLogger(__name__)

# Dedicated registry so we don't mix with prometheus_client default metrics
_registry = CollectorRegistry()

_queries_total = Counter(
    "est_queries_total",
    "Queries transformed, by outcome (ok, partial, error)",
    ["outcome"],
    registry=_registry,
)
_series_total = Counter(
    "est_series_total",
    "Named series produced",
    registry=_registry,
)
parse_duration = Histogram(
    "est_parse_duration_seconds",
    "Wall time of one parse_responses call",
    registry=_registry,
)


def outcome_of(result) -> str:
    if result.error is None:
        return "ok"
    return "partial" if result.series else "error"


def record_result(result) -> None:
    """Count one QueryResult."""
    _queries_total.labels(outcome=outcome_of(result)).inc()
    _series_total.inc(len(result.series))


def render_metrics() -> bytes:
    """Serialize the registry in Prometheus text format."""
    return generate_latest(_registry)
