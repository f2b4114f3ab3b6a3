from __future__ import annotations

import pytest

from src.index.corpus import CorpusIndex
from src.rag.errors import EmptyQueryError, IndexUnavailableError, InvalidTopKError
from src.rag.retriever import HybridRetriever
from src.rag.text import extract_key_terms
from src.rag.types import Query


def _query(text: str, vector=None, degraded: bool = False, filters=()) -> Query:
    return Query(
        raw_text=text,
        normalized_text=text,
        key_terms=extract_key_terms(text),
        vector=vector,
        filters=filters,
        degraded=degraded,
    )


@pytest.fixture
def corpus(cardiac_documents) -> CorpusIndex:
    corpus = CorpusIndex(dimension=2, model_id="test")
    vectors = {"a": [1.0, 0.0], "b": [0.0, 1.0], "c": [0.6, 0.8]}
    corpus.apply([(doc, vectors[doc.doc_id]) for doc in cardiac_documents])
    return corpus


def test_invalid_top_k_is_checked_first() -> None:
    retriever = HybridRetriever(CorpusIndex(dimension=2, model_id="test"))
    with pytest.raises(InvalidTopKError):
        retriever.retrieve(_query(""), "hybrid", top_k=0)


def test_unloaded_corpus_is_unavailable() -> None:
    retriever = HybridRetriever(CorpusIndex(dimension=2, model_id="test"))
    with pytest.raises(IndexUnavailableError):
        retriever.retrieve(_query("cardiac"), "keyword", top_k=1)


def test_empty_query_is_rejected(corpus) -> None:
    with pytest.raises(EmptyQueryError):
        HybridRetriever(corpus).retrieve(_query("a b"), "hybrid", top_k=1)


@pytest.mark.parametrize("strategy", ["semantic", "keyword", "hybrid"])
def test_result_is_bounded_and_ordered(corpus, strategy) -> None:
    result = HybridRetriever(corpus).retrieve(
        _query("cardiac symptoms", vector=(1.0, 0.0)), strategy, top_k=2
    )
    assert len(result.candidates) <= 2
    ids = [c.document_id for c in result.candidates]
    assert len(ids) == len(set(ids))


def test_keyword_strategy_cardiac_example(corpus) -> None:
    result = HybridRetriever(corpus).retrieve(_query("cardiac symptoms"), "keyword", top_k=2)
    assert [c.document_id for c in result.candidates] == ["a", "c"]
    assert result.degraded is False


def test_keyword_scores_descend_when_distinct_matches_win(make_document) -> None:
    corpus = CorpusIndex(dimension=2, model_id="test")
    corpus.apply(
        [
            (make_document("x", "cardiac"), [1.0, 0.0]),
            (make_document("y", "cardiac symptoms alpha beta gamma"), [0.0, 1.0]),
        ]
    )
    result = HybridRetriever(corpus).retrieve(_query("cardiac symptoms"), "keyword", top_k=2)

    assert [c.document_id for c in result.candidates] == ["y", "x"]
    scores = [c.combined_score for c in result.candidates]
    assert scores == sorted(scores, reverse=True)
    assert result.candidates[1].keyword_score == pytest.approx(1.0)
    assert all(0.0 <= score <= 1.0 for score in scores)
    assert result.degraded is False


def test_hybrid_union_counts_missing_side_as_zero(corpus) -> None:
    retriever = HybridRetriever(corpus, overfetch_factor=2)
    result = retriever.retrieve(_query("arterial", vector=(1.0, 0.0)), "hybrid", top_k=3)
    by_id = {c.document_id: c for c in result.candidates}

    assert set(by_id) == {"a", "b", "c"}
    # "a" only matched the vector side.
    assert by_id["a"].keyword_score is None
    assert by_id["a"].combined_score == pytest.approx(0.5 * 1.0 + 0.5 * 0.0)
    # "b" matched both sides.
    assert by_id["b"].vector_score == pytest.approx(0.5)
    assert by_id["b"].keyword_score == pytest.approx(0.5)
    assert by_id["b"].combined_score == pytest.approx(0.5)
    scores = [c.combined_score for c in result.candidates]
    assert scores == sorted(scores, reverse=True)


def test_semantic_without_vector_falls_back_to_keyword(corpus) -> None:
    result = HybridRetriever(corpus).retrieve(
        _query("cardiac symptoms", degraded=True), "semantic", top_k=2
    )
    assert result.degraded is True
    assert [c.document_id for c in result.candidates] == ["a", "c"]


def test_hybrid_without_vector_runs_keyword_only(corpus) -> None:
    result = HybridRetriever(corpus).retrieve(_query("cardiac"), "hybrid", top_k=5)
    assert result.degraded is True
    assert all(c.vector_score is None for c in result.candidates)


def test_filters_restrict_both_sides(corpus) -> None:
    result = HybridRetriever(corpus).retrieve(
        _query("cardiac", vector=(0.0, 1.0), filters=(("chapter", "heart"),)),
        "hybrid",
        top_k=5,
    )
    assert {c.document_id for c in result.candidates} == {"a", "c"}


def test_overfetch_factor_minimum(corpus) -> None:
    with pytest.raises(ValueError):
        HybridRetriever(corpus, overfetch_factor=1)
