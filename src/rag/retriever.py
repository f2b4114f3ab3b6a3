from __future__ import annotations

"""Hybrid retrieval over the vector and keyword indexes."""

from dataclasses import dataclass, field
from typing import Any

from src.index.corpus import CorpusIndex, CorpusState
from src.rag.errors import EmptyQueryError, IndexUnavailableError, InvalidTopKError
from src.rag.ranking import Ranker, ScoringPolicy, WeightedSumPolicy
from src.rag.types import STRATEGIES, Candidate, Query, RetrievalResult

MIN_OVERFETCH_FACTOR = 2


@dataclass
class HybridRetriever:
    """Runs semantic, keyword or hybrid retrieval and merges the results.

    Searches run against one captured CorpusState, so a concurrent refresh is
    either fully visible or not at all.
    """
    corpus: CorpusIndex
    policy: ScoringPolicy = field(default_factory=WeightedSumPolicy)
    overfetch_factor: int = 3

    def __post_init__(self) -> None:
        if self.overfetch_factor < MIN_OVERFETCH_FACTOR:
            raise ValueError(f"overfetch_factor must be at least {MIN_OVERFETCH_FACTOR}")
        self.ranker = Ranker()

    def retrieve(
        self,
        query: Query,
        strategy: str,
        top_k: int,
        filters: tuple[tuple[str, Any], ...] | None = None,
        state: CorpusState | None = None,
    ) -> RetrievalResult:
        """Return ranked candidates for a processed query.

        filters defaults to the filters carried by the query; state defaults
        to the corpus state published right now.
        """
        if isinstance(top_k, bool) or not isinstance(top_k, int) or top_k <= 0:
            raise InvalidTopKError("top_k must be a positive integer")
        if strategy not in STRATEGIES:
            raise ValueError(f"Unsupported strategy: {strategy}")
        state = state or self.corpus.state
        if not state.loaded:
            raise IndexUnavailableError("No corpus has been loaded")
        if not query.key_terms and query.vector is None:
            raise EmptyQueryError("Query has no key terms and no vector")
        active = query.filters if filters is None else filters

        if strategy == "keyword" or query.vector is None:
            candidates = self._keyword(query, top_k, active, state)
            degraded = query.degraded or strategy != "keyword"
        elif strategy == "semantic":
            candidates = self._semantic(query, top_k, active, state)
            degraded = query.degraded
        else:
            candidates = self.ranker.rank(self._hybrid(query, top_k, active, state), top_k)
            degraded = query.degraded
        return RetrievalResult(
            candidates=tuple(candidates[:top_k]), degraded=degraded, strategy=strategy
        )

    def _keyword(
        self, query: Query, top_k: int, filters: tuple, state: CorpusState
    ) -> list[Candidate]:
        hits = self.corpus.search_keyword(query.key_terms, top_k, filters, state=state)
        terms = set(query.key_terms)
        doc_terms = state.keyword.doc_terms
        # Distinct matches dominate, so the combined score descends in index order.
        return [
            Candidate(
                document_id=doc_id,
                combined_score=(len(terms.intersection(doc_terms.get(doc_id, ()))) + score)
                / (len(terms) + 1),
                keyword_score=score,
            )
            for doc_id, score in hits
            if doc_id in state.documents
        ]

    def _semantic(
        self, query: Query, top_k: int, filters: tuple, state: CorpusState
    ) -> list[Candidate]:
        hits = self.corpus.search_vector(query.vector, top_k, filters, state=state)
        return [
            Candidate(document_id=doc_id, combined_score=score, vector_score=score)
            for doc_id, score in hits
            if doc_id in state.documents
        ]

    def _hybrid(
        self, query: Query, top_k: int, filters: tuple, state: CorpusState
    ) -> list[Candidate]:
        fetch = top_k * self.overfetch_factor
        vector_hits = dict(self.corpus.search_vector(query.vector, fetch, filters, state=state))
        keyword_hits = dict(
            self.corpus.search_keyword(query.key_terms, fetch, filters, state=state)
            if query.key_terms
            else []
        )
        candidates = []
        for doc_id in vector_hits.keys() | keyword_hits.keys():
            if doc_id not in state.documents:
                continue
            vector_score = vector_hits.get(doc_id)
            keyword_score = keyword_hits.get(doc_id)
            # A side that missed the document contributes 0.
            combined = self.policy(
                0.0 if vector_score is None else vector_score,
                0.0 if keyword_score is None else keyword_score,
            )
            candidates.append(
                Candidate(
                    document_id=doc_id,
                    combined_score=combined,
                    vector_score=vector_score,
                    keyword_score=keyword_score,
                )
            )
        return candidates
