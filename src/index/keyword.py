from __future__ import annotations

"""Inverted keyword index scored by normalized term frequency."""

import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from src.index.filters import (
    MetadataPostings,
    add_posting,
    copy_postings,
    eligible_ids,
    remove_posting,
)
from src.rag.errors import InvalidTopKError
from src.rag.text import tokenize


@dataclass(frozen=True)
class KeywordIndexState:
    """Immutable snapshot of the keyword index published to readers."""
    postings: Mapping[str, Mapping[str, int]] = field(default_factory=dict)
    doc_terms: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    doc_lengths: Mapping[str, int] = field(default_factory=dict)
    metadata: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    meta_postings: MetadataPostings = field(default_factory=dict)
    version: int = 0


class KeywordIndex:
    """Term -> {doc_id: term frequency} postings with per-document lengths.

    Mutations copy only the posting lists they touch.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = KeywordIndexState()

    @property
    def state(self) -> KeywordIndexState:
        return self._state

    @property
    def version(self) -> int:
        return self._state.version

    def __len__(self) -> int:
        return len(self._state.doc_lengths)

    def __contains__(self, doc_id: object) -> bool:
        return doc_id in self._state.doc_lengths

    def insert(self, doc_id: str, content: str, metadata: Mapping[str, Any] | None = None) -> None:
        self.update([(doc_id, content, metadata or {})], ())

    def remove(self, doc_id: str) -> bool:
        if doc_id not in self._state.doc_lengths:
            return False
        self.update((), [doc_id])
        return True

    def update(
        self,
        upserts: Iterable[tuple[str, str, Mapping[str, Any]]],
        removals: Iterable[str],
    ) -> None:
        """Apply upserts and removals as one state swap and one version bump."""
        upserts = list(upserts)
        removals = list(removals)
        with self._lock:
            current = self._state
            postings: dict[str, Mapping[str, int]] = dict(current.postings)
            touched: dict[str, dict[str, int]] = {}
            doc_terms = dict(current.doc_terms)
            doc_lengths = dict(current.doc_lengths)
            metadata = dict(current.metadata)
            meta_postings = copy_postings(current.meta_postings)

            def posting_for(term: str) -> dict[str, int]:
                if term not in touched:
                    touched[term] = dict(postings.get(term, {}))
                    postings[term] = touched[term]
                return touched[term]

            def drop(doc_id: str) -> None:
                for term in doc_terms.pop(doc_id, ()):
                    posting = posting_for(term)
                    posting.pop(doc_id, None)
                    if not posting:
                        del postings[term]
                        del touched[term]
                doc_lengths.pop(doc_id, None)
                remove_posting(meta_postings, doc_id, metadata.pop(doc_id, {}))

            for doc_id in removals:
                if doc_id in doc_lengths:
                    drop(doc_id)
            for doc_id, content, doc_metadata in upserts:
                if doc_id in doc_lengths:
                    drop(doc_id)
                tokens = tokenize(content)
                counts = Counter(tokens)
                for term, count in counts.items():
                    posting_for(term)[doc_id] = count
                doc_terms[doc_id] = tuple(counts)
                doc_lengths[doc_id] = len(tokens)
                metadata[doc_id] = dict(doc_metadata)
                add_posting(meta_postings, doc_id, doc_metadata)

            self._state = KeywordIndexState(
                postings=postings,
                doc_terms=doc_terms,
                doc_lengths=doc_lengths,
                metadata=metadata,
                meta_postings=meta_postings,
                version=current.version + 1,
            )

    def search(
        self,
        key_terms: Iterable[str],
        top_k: int,
        filters: Iterable[tuple[str, Any]] = (),
        state: KeywordIndexState | None = None,
    ) -> list[tuple[str, float]]:
        """Return (doc_id, score) pairs.

        Documents matching more distinct key terms rank first, then higher
        score, then doc_id ascending.
        """
        if top_k <= 0:
            raise InvalidTopKError("top_k must be a positive integer")
        terms = list(dict.fromkeys(key_terms))
        if not terms:
            return []
        state = state or self._state
        eligible = eligible_ids(state.meta_postings, filters)
        if eligible is not None and not eligible:
            return []
        matched: dict[str, int] = {}
        frequency: dict[str, int] = {}
        for term in terms:
            for doc_id, count in state.postings.get(term, {}).items():
                if eligible is not None and doc_id not in eligible:
                    continue
                matched[doc_id] = matched.get(doc_id, 0) + 1
                frequency[doc_id] = frequency.get(doc_id, 0) + count
        scored = []
        for doc_id, distinct in matched.items():
            length = state.doc_lengths.get(doc_id, 0)
            score = min(1.0, frequency[doc_id] / length) if length else 0.0
            scored.append((-distinct, -score, doc_id, score))
        scored.sort()
        return [(doc_id, score) for _, _, doc_id, score in scored[:top_k]]

    def export(self) -> dict[str, Any]:
        """Return a JSON-serializable view of postings and lengths."""
        state = self._state
        return {
            "version": state.version,
            "postings": {
                term: dict(sorted(posting.items()))
                for term, posting in sorted(state.postings.items())
            },
            "doc_lengths": dict(sorted(state.doc_lengths.items())),
        }

    def restore(
        self,
        postings: Mapping[str, Mapping[str, int]],
        doc_lengths: Mapping[str, int],
        metadata: Mapping[str, Mapping[str, Any]],
        version: int,
    ) -> None:
        """Replace the whole state with exported postings, keeping the version."""
        terms_by_doc: dict[str, list[str]] = {doc_id: [] for doc_id in doc_lengths}
        restored: dict[str, Mapping[str, int]] = {}
        for term, posting in postings.items():
            restored[term] = {doc_id: int(count) for doc_id, count in posting.items()}
            for doc_id in posting:
                terms_by_doc.setdefault(doc_id, []).append(term)
        meta_postings = copy_postings({})
        for doc_id in doc_lengths:
            add_posting(meta_postings, doc_id, metadata.get(doc_id, {}))
        with self._lock:
            self._state = KeywordIndexState(
                postings=restored,
                doc_terms={doc_id: tuple(terms) for doc_id, terms in terms_by_doc.items()},
                doc_lengths={doc_id: int(length) for doc_id, length in doc_lengths.items()},
                metadata={doc_id: dict(metadata.get(doc_id, {})) for doc_id in doc_lengths},
                meta_postings=meta_postings,
                version=version,
            )
