from __future__ import annotations

import pytest

from src.index.keyword import KeywordIndex
from src.index.vector import VectorIndex
from src.rag.errors import DimensionMismatchError, InvalidTopKError
from src.rag.text import extract_key_terms


def test_vector_search_orders_by_score_then_id() -> None:
    index = VectorIndex(dimension=2, model_id="test")
    index.insert("b", [1.0, 0.0])
    index.insert("a", [1.0, 0.0])
    index.insert("c", [0.0, 1.0])
    index.insert("d", [-1.0, 0.0])

    results = index.search([1.0, 0.0], top_k=3)

    assert [doc_id for doc_id, _ in results] == ["a", "b", "c"]
    assert results[0][1] == pytest.approx(1.0)
    assert results[2][1] == pytest.approx(0.5)


def test_vector_scores_stay_in_unit_interval() -> None:
    index = VectorIndex(dimension=2, model_id="test")
    index.insert("opposite", [-3.0, 0.0])
    index.insert("zero", [0.0, 0.0])
    scores = dict(index.search([2.0, 0.0], top_k=5))
    assert scores["opposite"] == pytest.approx(0.0)
    assert scores["zero"] == pytest.approx(0.5)


def test_vector_filters_apply_before_scoring() -> None:
    index = VectorIndex(dimension=2, model_id="test")
    index.insert("best", [1.0, 0.0], {"bookname": "physics"})
    index.insert("other", [0.0, 1.0], {"bookname": "anatomy"})
    results = index.search([1.0, 0.0], top_k=1, filters=(("bookname", "anatomy"),))
    assert [doc_id for doc_id, _ in results] == ["other"]


def test_vector_dimension_is_checked() -> None:
    index = VectorIndex(dimension=3, model_id="test")
    with pytest.raises(DimensionMismatchError):
        index.insert("a", [1.0, 0.0])
    index.insert("a", [1.0, 0.0, 0.0])
    with pytest.raises(DimensionMismatchError):
        index.search([1.0, 0.0], top_k=1)
    assert index.version == 1


def test_vector_mutations_bump_version_and_keep_old_state() -> None:
    index = VectorIndex(dimension=2, model_id="test")
    index.insert("a", [1.0, 0.0])
    before = index.state
    assert index.remove("a") is True
    assert index.remove("a") is False
    assert index.version == 2
    assert "a" in before.vectors
    assert index.search([1.0, 0.0], top_k=1) == []
    assert index.search([1.0, 0.0], top_k=1, state=before)[0][0] == "a"


def test_vector_rejects_non_positive_top_k() -> None:
    index = VectorIndex(dimension=2, model_id="test")
    with pytest.raises(InvalidTopKError):
        index.search([1.0, 0.0], top_k=0)


def test_keyword_cardiac_example(cardiac_documents) -> None:
    index = KeywordIndex()
    for doc in cardiac_documents:
        index.insert(doc.doc_id, doc.content)
    results = index.search(extract_key_terms("cardiac symptoms"), top_k=2)
    assert [doc_id for doc_id, _ in results] == ["a", "c"]
    assert results[0][1] == pytest.approx(2 / 3)
    assert results[1][1] == pytest.approx(1 / 3)


def test_keyword_distinct_matches_outrank_frequency() -> None:
    index = KeywordIndex()
    index.insert("repeat", "heart heart heart")
    index.insert("both", "heart valve murmur sound extra words here")
    results = index.search(["heart", "valve"], top_k=2)
    assert [doc_id for doc_id, _ in results] == ["both", "repeat"]
    assert results[1][1] == pytest.approx(1.0)


def test_keyword_empty_terms_return_nothing() -> None:
    index = KeywordIndex()
    index.insert("a", "cardiac arrest")
    assert index.search([], top_k=3) == []


def test_keyword_filters_and_removal() -> None:
    index = KeywordIndex()
    index.insert("a", "cardiac arrest", {"chapter": "heart"})
    index.insert("b", "cardiac output", {"chapter": "physiology"})
    filtered = index.search(["cardiac"], top_k=5, filters=(("chapter", "heart"),))
    assert [doc_id for doc_id, _ in filtered] == ["a"]

    before = index.state
    index.remove("a")
    assert [doc_id for doc_id, _ in index.search(["cardiac"], top_k=5)] == ["b"]
    assert index.search(["cardiac"], top_k=5, filters=(("chapter", "heart"),)) == []
    assert "a" in before.postings["cardiac"]


def test_keyword_replace_updates_postings() -> None:
    index = KeywordIndex()
    index.insert("a", "cardiac arrest")
    index.insert("a", "renal failure")
    assert index.search(["cardiac"], top_k=5) == []
    assert [doc_id for doc_id, _ in index.search(["renal"], top_k=5)] == ["a"]
    assert len(index) == 1
