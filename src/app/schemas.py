from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class SearchRequest(BaseModel):
    query: str
    strategy: Literal["semantic", "keyword", "hybrid"] | None = None
    filters: dict[str, Any] = Field(default_factory=dict)
    # Range checks live in the engine so errors carry the retrieval error codes.
    top_k: int | None = None
    timeout: float | None = Field(default=None, gt=0, le=60)


class SearchResultItem(BaseModel):
    document_id: str
    score: float
    metadata: dict[str, Any]


class SearchResponseModel(BaseModel):
    results: list[SearchResultItem]
    degraded: bool
    corpus_version: int
    request_id: str


class AskRequest(SearchRequest):
    pass


class SourceQuestion(BaseModel):
    document_id: str
    content: str
    metadata: dict[str, Any]
    score: float


class AskResponse(BaseModel):
    answer: str
    sources: list[SourceQuestion]
    degraded: bool
    refusal_reason: str | None = None
    request_id: str


class RefreshResponse(BaseModel):
    corpus_version: int
    document_count: int
    upserted: int
    removed: int
    skipped: int


class SnapshotResponse(BaseModel):
    path: str
    corpus_version: int
    document_count: int


class CacheStatsModel(BaseModel):
    hits: int
    misses: int
    evictions: int
    coalesced: int
    size: int
    capacity: int


class StatsResponse(BaseModel):
    loaded: bool
    corpus_version: int
    document_count: int
    model_id: str
    dimension: int
    source_version: int | None = None
    cache: CacheStatsModel


class EmbeddingHealthResponse(BaseModel):
    provider: str
    model: str | None
    configured_dimension: int
    expected_dimension: int | None = None
    ok: bool
    status: str
    detail: str | None = None
    action: str | None = None
