"""ES Response Transformer API — aggregation responses in, named series out."""

import logging
from typing import Any

from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field

from config import LOG_LEVEL, PARSE_WORKERS
from metrics import render_metrics
from models import QueryDefinition
from response_parser import ResponseCountMismatch, parse_responses
from result_models import QueryResult

log = logging.getLogger(__name__)

app = FastAPI(title="ES Response Transformer API", version="0.3.0")


class TransformRequest(BaseModel):
    queries: list[QueryDefinition] = Field(..., min_length=1)
    response: Any = Field(
        ...,
        description="Multi-search body ({'responses': [...]}), a list aligned with "
                    "`queries`, or a mapping of refId to search response",
    )


class TransformResponse(BaseModel):
    results: dict[str, QueryResult]


@app.exception_handler(ResponseCountMismatch)
async def response_mismatch_handler(request, exc):
    return JSONResponse(
        status_code=400,
        content={"detail": f"Cannot pair responses with queries: {exc}"},
    )


@app.on_event("startup")
async def on_startup():
    logging.getLogger().setLevel(LOG_LEVEL)
    log.info("Response transformer started (workers=%d)", PARSE_WORKERS)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    return Response(content=render_metrics(), media_type=CONTENT_TYPE_LATEST)


@app.post("/api/transform", response_model=TransformResponse)
def transform(
    body: TransformRequest,
    workers: int | None = Query(default=None, ge=1, le=32),
):
    """Turn the search responses of one request into named series per refId."""
    results = parse_responses(body.queries, body.response, workers=workers)
    failed = [ref_id for ref_id, r in results.items() if r.error]
    if failed:
        log.info("Transform finished with errors for %s", ", ".join(failed))
    return TransformResponse(results=results)
