from __future__ import annotations

"""Corpus index: documents plus their vector and keyword entries."""

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from src.index.keyword import KeywordIndex, KeywordIndexState
from src.index.vector import VectorIndex, VectorIndexState
from src.rag.errors import DimensionMismatchError
from src.rag.types import Document, QuestionMetadata

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT = 1


class SnapshotError(RuntimeError):
    """Raised when a snapshot cannot be read or does not fit this index."""
    pass


@dataclass(frozen=True)
class CorpusState:
    """Consistent view of documents and both indexes at one corpus version."""
    documents: Mapping[str, Document] = field(default_factory=dict)
    vector: VectorIndexState = field(default_factory=VectorIndexState)
    keyword: KeywordIndexState = field(default_factory=KeywordIndexState)
    version: int = 0
    loaded: bool = False


class CorpusIndex:
    """Owns the document set and keeps both indexes in lockstep.

    A document is visible only when it has a vector entry and a keyword entry;
    every mutation publishes one new CorpusState and bumps the version once.
    """

    def __init__(self, dimension: int, model_id: str) -> None:
        self.vector_index = VectorIndex(dimension, model_id)
        self.keyword_index = KeywordIndex()
        self._lock = threading.Lock()
        self._state = CorpusState()

    @property
    def dimension(self) -> int:
        return self.vector_index.dimension

    @property
    def model_id(self) -> str:
        return self.vector_index.model_id

    @property
    def state(self) -> CorpusState:
        return self._state

    @property
    def version(self) -> int:
        return self._state.version

    @property
    def is_loaded(self) -> bool:
        return self._state.loaded

    def __len__(self) -> int:
        return len(self._state.documents)

    def get(self, doc_id: str) -> Document | None:
        return self._state.documents.get(doc_id)

    def apply(
        self,
        upserts: Iterable[tuple[Document, Sequence[float]]] = (),
        removals: Iterable[str] = (),
    ) -> int:
        """Upsert and remove documents atomically; returns the new version.

        An empty mutation still marks the corpus loaded and bumps the version.
        """
        upserts = list(upserts)
        upserted_ids = {document.doc_id for document, _ in upserts}
        removals = [doc_id for doc_id in removals if doc_id not in upserted_ids]
        for document, vector in upserts:
            if len(vector) != self.dimension:
                raise DimensionMismatchError(
                    f"Document {document.doc_id} vector has dimension {len(vector)}, "
                    f"expected {self.dimension}"
                )
        with self._lock:
            current = self._state
            self.vector_index.update(
                [(doc.doc_id, vector, doc.metadata.as_dict()) for doc, vector in upserts],
                removals,
            )
            self.keyword_index.update(
                [(doc.doc_id, doc.content, doc.metadata.as_dict()) for doc, _ in upserts],
                removals,
            )
            documents = dict(current.documents)
            for doc_id in removals:
                documents.pop(doc_id, None)
            for document, _ in upserts:
                documents[document.doc_id] = document
            self._state = CorpusState(
                documents=documents,
                vector=self.vector_index.state,
                keyword=self.keyword_index.state,
                version=current.version + 1,
                loaded=True,
            )
            return self._state.version

    def search_vector(
        self,
        vector: Sequence[float],
        top_k: int,
        filters: Iterable[tuple[str, Any]] = (),
        state: CorpusState | None = None,
    ) -> list[tuple[str, float]]:
        state = state or self._state
        return self.vector_index.search(vector, top_k, filters, state=state.vector)

    def search_keyword(
        self,
        key_terms: Iterable[str],
        top_k: int,
        filters: Iterable[tuple[str, Any]] = (),
        state: CorpusState | None = None,
    ) -> list[tuple[str, float]]:
        state = state or self._state
        return self.keyword_index.search(key_terms, top_k, filters, state=state.keyword)

    def to_snapshot(self) -> dict[str, Any]:
        """Return a JSON-serializable snapshot of the whole corpus."""
        state = self._state
        return {
            "format": SNAPSHOT_FORMAT,
            "corpus_version": state.version,
            "model_id": self.model_id,
            "dimension": self.dimension,
            "documents": [
                {
                    "id": doc.doc_id,
                    "content": doc.content,
                    "metadata": doc.metadata.as_dict(),
                }
                for _, doc in sorted(state.documents.items())
            ],
            "vectors": {
                doc_id: list(vector) for doc_id, vector in sorted(state.vector.vectors.items())
            },
            "postings": {
                term: dict(sorted(posting.items()))
                for term, posting in sorted(state.keyword.postings.items())
            },
            "doc_lengths": dict(sorted(state.keyword.doc_lengths.items())),
        }

    def restore_snapshot(self, payload: Mapping[str, Any]) -> None:
        """Replace the corpus with a snapshot produced by to_snapshot."""
        if payload.get("format") != SNAPSHOT_FORMAT:
            raise SnapshotError(f"Unsupported snapshot format: {payload.get('format')!r}")
        if int(payload.get("dimension", 0)) != self.dimension:
            raise DimensionMismatchError(
                f"Snapshot dimension {payload.get('dimension')} does not match {self.dimension}"
            )
        if payload.get("model_id") != self.model_id:
            raise SnapshotError(
                f"Snapshot model {payload.get('model_id')!r} does not match {self.model_id!r}"
            )
        try:
            documents = {
                item["id"]: Document(
                    doc_id=item["id"],
                    content=item["content"],
                    metadata=QuestionMetadata.from_dict(item["metadata"]),
                )
                for item in payload["documents"]
            }
            vectors = {
                doc_id: [float(value) for value in values]
                for doc_id, values in payload["vectors"].items()
            }
            postings = {
                term: {doc_id: int(count) for doc_id, count in posting.items()}
                for term, posting in payload["postings"].items()
            }
            doc_lengths = {
                doc_id: int(length) for doc_id, length in payload["doc_lengths"].items()
            }
            version = int(payload["corpus_version"])
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise SnapshotError(f"Malformed snapshot: {exc}") from exc
        if set(vectors) != set(documents) or set(doc_lengths) != set(documents):
            raise SnapshotError("Snapshot documents, vectors and postings disagree")
        metadata = {doc_id: doc.metadata.as_dict() for doc_id, doc in documents.items()}
        with self._lock:
            # Versions never move backwards on a live index.
            if version <= self._state.version:
                version = self._state.version + 1
            self.vector_index.restore(vectors, metadata, version)
            self.keyword_index.restore(postings, doc_lengths, metadata, version)
            self._state = CorpusState(
                documents=documents,
                vector=self.vector_index.state,
                keyword=self.keyword_index.state,
                version=version,
                loaded=True,
            )

    def save(self, path: str | Path) -> Path:
        """Write the snapshot to path via a temporary file and rename."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_suffix(target.suffix + ".tmp")
        payload = self.to_snapshot()
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False)
        os.replace(tmp_path, target)
        logger.info(
            "snapshot_saved",
            extra={
                "path": str(target),
                "corpus_version": payload["corpus_version"],
                "document_count": len(payload["documents"]),
            },
        )
        return target

    def load(self, path: str | Path) -> None:
        """Restore the corpus from a snapshot file."""
        target = Path(path)
        try:
            with target.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise SnapshotError(f"Unable to read snapshot {target}: {exc}") from exc
        if not isinstance(payload, dict):
            raise SnapshotError("Snapshot root must be an object")
        self.restore_snapshot(payload)
        logger.info(
            "snapshot_loaded",
            extra={
                "path": str(target),
                "corpus_version": self.version,
                "document_count": len(self),
            },
        )
