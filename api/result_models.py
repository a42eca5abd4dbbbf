"""Pydantic models for transformed query results."""

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

BucketKey = Union[int, float, str]


class Point(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: Optional[float] = None
    key: BucketKey = Field(
        ...,
        description="Epoch millis for date_histogram buckets, the bucket key otherwise",
    )


class NamedSeries(BaseModel):
    name: str
    points: list[Point] = Field(default_factory=list)


class Table(BaseModel):
    columns: list[str] = Field(default_factory=list)
    rows: list[list[Optional[BucketKey]]] = Field(default_factory=list)


class QueryResult(BaseModel):
    ref_id: str
    series: list[NamedSeries] = Field(default_factory=list)
    table: Optional[Table] = None
    error: Optional[str] = None
