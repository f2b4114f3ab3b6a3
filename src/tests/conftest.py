from __future__ import annotations

"""Shared pytest fixtures and test environment defaults."""

import os
import sys
import time
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

os.environ["RAG_LLM_PROVIDER"] = "extractive"
os.environ["EMBEDDING_PROVIDER"] = "hash"
os.environ["EMBEDDING_DIMENSION"] = "256"
os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("RAG_QUESTIONS_DB_URI", None)
os.environ.pop("RAG_SNAPSHOT_PATH", None)
os.environ.pop("RAG_REFRESH_DB_URI", None)
os.environ["RAG_REFRESH_INTERVAL"] = "0"

from src.rag.embeddings import EmbeddingError  # noqa: E402
from src.rag.types import Document, QuestionMetadata  # noqa: E402


def _make_document(
    doc_id: str, content: str, bookname: str = "anatomy", **metadata
) -> Document:
    return Document(
        doc_id=doc_id,
        content=content,
        metadata=QuestionMetadata(
            bookname=bookname,
            correct_answer=metadata.pop("correct_answer", "A"),
            **metadata,
        ),
    )


class StubEmbedder:
    """Embedder with hand-written vectors keyed by exact text."""

    def __init__(
        self,
        vectors: dict[str, list[float]] | None = None,
        dimension: int = 3,
        fail: bool = False,
        delay: float = 0.0,
    ) -> None:
        self.vectors = vectors or {}
        self.dimension = dimension
        self.fail = fail
        self.delay = delay
        self.calls: list[str] = []

    @property
    def model_id(self) -> str:
        return f"stub-{self.dimension}"

    def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise EmbeddingError("embedding service unavailable")
        return list(self.vectors.get(text, [1.0] + [0.0] * (self.dimension - 1)))


@pytest.fixture
def make_document():
    return _make_document


@pytest.fixture
def stub_embedder():
    return StubEmbedder


@pytest.fixture
def cardiac_documents() -> list[Document]:
    return [
        _make_document("a", "cardiac arrest symptoms", chapter="heart"),
        _make_document("b", "arterial pressure", chapter="vessels"),
        _make_document("c", "cardiac muscle anatomy", chapter="heart"),
    ]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
