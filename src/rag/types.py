from __future__ import annotations

"""Core data types for questions, queries and retrieval results."""

from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Mapping

from src.rag.errors import InvalidFilterError

Strategy = Literal["semantic", "keyword", "hybrid"]
STRATEGIES: tuple[str, ...] = ("semantic", "keyword", "hybrid")

FILTER_FIELDS: dict[str, type] = {
    "bookname": str,
    "chapter": str,
    "chapter_index": int,
    "question_number": int,
    "correct_answer": str,
}


@dataclass(frozen=True)
class QuestionMetadata:
    """Closed metadata schema attached to every exam question."""
    bookname: str
    correct_answer: str
    chapter: str | None = None
    chapter_index: int | None = None
    question_number: int | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return metadata as a plain dict, omitting unset optional fields."""
        return {key: value for key, value in asdict(self).items() if value is not None}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "QuestionMetadata":
        """Build metadata from a mapping, rejecting unknown keys."""
        unknown = set(data) - set(FILTER_FIELDS)
        if unknown:
            raise ValueError(f"Unknown metadata fields: {sorted(unknown)}")
        return cls(
            bookname=str(data.get("bookname", "")),
            correct_answer=str(data.get("correct_answer", "")),
            chapter=data.get("chapter"),
            chapter_index=data.get("chapter_index"),
            question_number=data.get("question_number"),
        )


@dataclass(frozen=True)
class Document:
    """Immutable exam question record as indexed by the engine."""
    doc_id: str
    content: str
    metadata: QuestionMetadata


@dataclass(frozen=True)
class Embedding:
    """Active embedding of a document for one embedding model."""
    document_id: str
    vector: tuple[float, ...]
    model_id: str


@dataclass(frozen=True)
class Query:
    """Processed retrieval request."""
    raw_text: str
    normalized_text: str
    key_terms: tuple[str, ...] = ()
    vector: tuple[float, ...] | None = None
    filters: tuple[tuple[str, Any], ...] = ()
    degraded: bool = False

    @property
    def filter_map(self) -> dict[str, Any]:
        return dict(self.filters)


@dataclass(frozen=True)
class Candidate:
    """Scored retrieval candidate; transient, one per document per query."""
    document_id: str
    combined_score: float
    vector_score: float | None = None
    keyword_score: float | None = None


@dataclass(frozen=True)
class RetrievalResult:
    """Ordered candidates plus the degraded-mode flag."""
    candidates: tuple[Candidate, ...]
    degraded: bool = False
    strategy: str = "hybrid"


@dataclass(frozen=True)
class SearchHit:
    """Ranked passage returned to API callers and the context assembler."""
    document_id: str
    score: float
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SearchResponse:
    """Result of a search request."""
    results: tuple[SearchHit, ...]
    degraded: bool
    corpus_version: int


def validate_filters(filters: Mapping[str, Any] | None) -> tuple[tuple[str, Any], ...]:
    """Validate filters against the metadata schema and return sorted pairs.

    Unknown keys and wrongly typed values raise InvalidFilterError. Keys whose
    value is None are dropped.
    """
    if not filters:
        return ()
    pairs: list[tuple[str, Any]] = []
    for key, value in filters.items():
        expected = FILTER_FIELDS.get(key)
        if expected is None:
            raise InvalidFilterError(f"Unknown filter field: {key}")
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, expected):
            raise InvalidFilterError(
                f"Filter field {key} expects {expected.__name__}, got {type(value).__name__}"
            )
        pairs.append((key, value))
    pairs.sort(key=lambda item: item[0])
    return tuple(pairs)
