"""Shared fixtures for the response transformer test suite."""

import os

import pytest

# ---- Environment setup (MUST happen before any api module import) ----
os.environ.setdefault("PARSE_WORKERS", "1")
os.environ.setdefault("LOG_LEVEL", "DEBUG")


# ── Query definition factories ───────────────────────────────────────


@pytest.fixture
def make_query():
    """Factory for QueryDefinition instances from dashboard-style JSON fields."""
    from models import QueryDefinition

    def _factory(**overrides):
        defaults = dict(
            refId="A",
            timeField="@timestamp",
            metrics=[{"type": "count", "id": "1"}],
            bucketAggs=[{"type": "date_histogram", "field": "@timestamp", "id": "2"}],
        )
        defaults.update(overrides)
        return QueryDefinition.model_validate(defaults)

    return _factory


@pytest.fixture
def make_buckets():
    """Factory for date_histogram bucket lists: one bucket per key, extra fields shared."""

    def _factory(keys=(1000, 2000), **fields):
        return [dict(key=k, doc_count=10, **fields) for k in keys]

    return _factory


@pytest.fixture
def parse_one():
    """Run a single query against its aggregations and return its QueryResult."""
    from response_parser import parse_responses

    def _parse(query, aggregations):
        results = parse_responses(
            [query], {"responses": [{"aggregations": aggregations}]}
        )
        return results[query.ref_id]

    return _parse


# ── Canned responses ─────────────────────────────────────────────────


@pytest.fixture
def terms_by_host_response():
    """terms(host) → date_histogram, two hosts, two time buckets each."""
    return {
        "2": {
            "buckets": [
                {
                    "3": {"buckets": [{"doc_count": 1, "key": 1000}, {"doc_count": 3, "key": 2000}]},
                    "doc_count": 4,
                    "key": "server1",
                },
                {
                    "3": {"buckets": [{"doc_count": 2, "key": 1000}, {"doc_count": 8, "key": 2000}]},
                    "doc_count": 10,
                    "key": "server2",
                },
            ]
        }
    }


# ── FastAPI TestClient ───────────────────────────────────────────────


@pytest.fixture
def test_client():
    """FastAPI TestClient for the transformer app."""
    from fastapi.testclient import TestClient
    from main import app

    with TestClient(app) as client:
        yield client
