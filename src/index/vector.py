from __future__ import annotations

"""Exact cosine-similarity vector index with copy-on-write state."""

import heapq
import math
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from src.index.filters import (
    MetadataPostings,
    add_posting,
    copy_postings,
    eligible_ids,
    remove_posting,
)
from src.rag.errors import DimensionMismatchError, InvalidTopKError


@dataclass(frozen=True)
class VectorIndexState:
    """Immutable snapshot of the vector index published to readers."""
    vectors: Mapping[str, tuple[float, ...]] = field(default_factory=dict)
    metadata: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    postings: MetadataPostings = field(default_factory=dict)
    version: int = 0


def _unit(vector: Sequence[float]) -> tuple[float, ...]:
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0.0:
        return tuple(0.0 for _ in vector)
    return tuple(float(value) / norm for value in vector)


class VectorIndex:
    """Flat exact nearest-neighbour index.

    Scores are cosine similarity mapped to [0, 1] via (cos + 1) / 2. Writers
    serialize on a lock and swap in a new state; readers never block.
    """

    def __init__(self, dimension: int, model_id: str) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self.dimension = dimension
        self.model_id = model_id
        self._lock = threading.Lock()
        self._state = VectorIndexState()

    @property
    def state(self) -> VectorIndexState:
        return self._state

    @property
    def version(self) -> int:
        return self._state.version

    def __len__(self) -> int:
        return len(self._state.vectors)

    def __contains__(self, doc_id: object) -> bool:
        return doc_id in self._state.vectors

    def check_dimension(self, vector: Sequence[float]) -> None:
        if len(vector) != self.dimension:
            raise DimensionMismatchError(
                f"Vector dimension {len(vector)} does not match index dimension {self.dimension}"
            )

    def insert(
        self,
        doc_id: str,
        vector: Sequence[float],
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        """Insert or replace one document vector."""
        self.update([(doc_id, vector, metadata or {})], ())

    def remove(self, doc_id: str) -> bool:
        """Remove a document vector; returns False when it was absent."""
        if doc_id not in self._state.vectors:
            return False
        self.update((), [doc_id])
        return True

    def update(
        self,
        upserts: Iterable[tuple[str, Sequence[float], Mapping[str, Any]]],
        removals: Iterable[str],
    ) -> None:
        """Apply upserts and removals as one state swap and one version bump."""
        upserts = list(upserts)
        removals = list(removals)
        for _, vector, _ in upserts:
            self.check_dimension(vector)
        with self._lock:
            current = self._state
            vectors = dict(current.vectors)
            metadata = dict(current.metadata)
            postings = copy_postings(current.postings)
            for doc_id in removals:
                if doc_id not in vectors:
                    continue
                remove_posting(postings, doc_id, metadata.pop(doc_id, {}))
                del vectors[doc_id]
            for doc_id, vector, doc_metadata in upserts:
                if doc_id in vectors:
                    remove_posting(postings, doc_id, metadata.get(doc_id, {}))
                vectors[doc_id] = _unit(vector)
                metadata[doc_id] = dict(doc_metadata)
                add_posting(postings, doc_id, doc_metadata)
            self._state = VectorIndexState(
                vectors=vectors,
                metadata=metadata,
                postings=postings,
                version=current.version + 1,
            )

    def search(
        self,
        vector: Sequence[float],
        top_k: int,
        filters: Iterable[tuple[str, Any]] = (),
        state: VectorIndexState | None = None,
    ) -> list[tuple[str, float]]:
        """Return (doc_id, score) pairs, best first, ties by doc_id.

        Pass state to search a previously captured snapshot.
        """
        if top_k <= 0:
            raise InvalidTopKError("top_k must be a positive integer")
        self.check_dimension(vector)
        state = state or self._state
        if not state.vectors:
            return []
        eligible = eligible_ids(state.postings, filters)
        doc_ids = state.vectors.keys() if eligible is None else eligible
        query = _unit(vector)
        scored = []
        for doc_id in doc_ids:
            stored = state.vectors.get(doc_id)
            if stored is None:
                continue
            cosine = sum(a * b for a, b in zip(query, stored))
            score = min(1.0, max(0.0, (cosine + 1.0) / 2.0))
            scored.append((-score, doc_id))
        best = heapq.nsmallest(top_k, scored)
        return [(doc_id, -neg_score) for neg_score, doc_id in best]

    def export(self) -> dict[str, Any]:
        """Return a JSON-serializable view of the stored vectors."""
        state = self._state
        return {
            "dimension": self.dimension,
            "model_id": self.model_id,
            "version": state.version,
            "vectors": {doc_id: list(vector) for doc_id, vector in sorted(state.vectors.items())},
        }

    def restore(
        self,
        vectors: Mapping[str, Sequence[float]],
        metadata: Mapping[str, Mapping[str, Any]],
        version: int,
    ) -> None:
        """Replace the whole state with exported vectors, keeping the version."""
        for vector in vectors.values():
            self.check_dimension(vector)
        postings = copy_postings({})
        for doc_id in vectors:
            add_posting(postings, doc_id, metadata.get(doc_id, {}))
        with self._lock:
            self._state = VectorIndexState(
                vectors={
                    doc_id: tuple(float(value) for value in vector)
                    for doc_id, vector in vectors.items()
                },
                metadata={doc_id: dict(metadata.get(doc_id, {})) for doc_id in vectors},
                postings=postings,
                version=version,
            )
