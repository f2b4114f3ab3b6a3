from __future__ import annotations

import json

import pytest

from src.index.corpus import CorpusIndex, SnapshotError
from src.rag.errors import DimensionMismatchError


@pytest.fixture
def corpus(cardiac_documents) -> CorpusIndex:
    corpus = CorpusIndex(dimension=2, model_id="test")
    vectors = {"a": [1.0, 0.0], "b": [0.0, 1.0], "c": [0.6, 0.8]}
    corpus.apply([(doc, vectors[doc.doc_id]) for doc in cardiac_documents])
    return corpus


def test_new_corpus_is_not_loaded() -> None:
    corpus = CorpusIndex(dimension=2, model_id="test")
    assert corpus.is_loaded is False
    assert corpus.version == 0
    corpus.apply()
    assert corpus.is_loaded is True
    assert corpus.version == 1


def test_apply_keeps_both_indexes_in_lockstep(corpus, make_document) -> None:
    version = corpus.apply(
        [(make_document("d", "renal tubule"), [1.0, 1.0])],
        removals=["a"],
    )
    state = corpus.state
    assert version == 2
    assert set(state.documents) == {"b", "c", "d"}
    assert set(state.vector.vectors) == set(state.documents)
    assert set(state.keyword.doc_lengths) == set(state.documents)
    assert "a" not in state.keyword.postings.get("cardiac", {})


def test_dimension_mismatch_leaves_state_untouched(corpus, make_document) -> None:
    before = corpus.state
    with pytest.raises(DimensionMismatchError):
        corpus.apply(
            [
                (make_document("d", "renal tubule"), [1.0, 1.0]),
                (make_document("e", "hepatic portal"), [1.0, 0.0, 0.0]),
            ]
        )
    assert corpus.state is before
    assert corpus.get("d") is None


def test_upsert_wins_over_removal_of_same_id(corpus, make_document) -> None:
    corpus.apply([(make_document("a", "cardiac tamponade"), [1.0, 0.0])], removals=["a"])
    assert corpus.get("a").content == "cardiac tamponade"


def test_search_on_captured_state(corpus) -> None:
    captured = corpus.state
    corpus.apply(removals=["a", "c"])
    assert corpus.search_keyword(["cardiac"], 5) == []
    assert [doc_id for doc_id, _ in corpus.search_keyword(["cardiac"], 5, state=captured)] == [
        "a",
        "c",
    ]


def test_snapshot_round_trip(corpus, tmp_path) -> None:
    path = corpus.save(tmp_path / "snapshots" / "corpus.json")
    assert not path.with_suffix(".json.tmp").exists()

    restored = CorpusIndex(dimension=2, model_id="test")
    restored.load(path)

    original = corpus.to_snapshot()
    loaded = restored.to_snapshot()
    assert loaded["documents"] == original["documents"]
    assert loaded["postings"] == original["postings"]
    assert loaded["doc_lengths"] == original["doc_lengths"]
    assert loaded["corpus_version"] == original["corpus_version"]
    for doc_id, vector in original["vectors"].items():
        assert loaded["vectors"][doc_id] == pytest.approx(vector)
    assert restored.search_vector([1.0, 0.0], 1) == corpus.search_vector([1.0, 0.0], 1)


def test_snapshot_version_never_moves_backwards(corpus, tmp_path) -> None:
    path = corpus.save(tmp_path / "corpus.json")
    target = CorpusIndex(dimension=2, model_id="test")
    for _ in range(5):
        target.apply()
    target.load(path)
    assert target.version == 6
    assert len(target) == 3


def test_snapshot_rejects_other_model_or_dimension(corpus) -> None:
    payload = corpus.to_snapshot()
    with pytest.raises(SnapshotError):
        CorpusIndex(dimension=2, model_id="other").restore_snapshot(payload)
    with pytest.raises(DimensionMismatchError):
        CorpusIndex(dimension=3, model_id="test").restore_snapshot(payload)


def test_snapshot_rejects_inconsistent_payload(corpus) -> None:
    payload = corpus.to_snapshot()
    del payload["vectors"]["a"]
    with pytest.raises(SnapshotError):
        CorpusIndex(dimension=2, model_id="test").restore_snapshot(payload)


@pytest.mark.parametrize("bad_vector", [["x", 0.0], 1.5, [None, 0.0]])
def test_snapshot_rejects_non_numeric_vectors(corpus, tmp_path, bad_vector) -> None:
    payload = corpus.to_snapshot()
    payload["vectors"]["a"] = bad_vector
    path = tmp_path / "corpus.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    fresh = CorpusIndex(dimension=2, model_id="test")
    with pytest.raises(SnapshotError):
        fresh.load(path)
    assert fresh.is_loaded is False


def test_load_reports_unreadable_files(tmp_path) -> None:
    corpus = CorpusIndex(dimension=2, model_id="test")
    with pytest.raises(SnapshotError):
        corpus.load(tmp_path / "missing.json")
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(SnapshotError):
        corpus.load(broken)
    listing = tmp_path / "list.json"
    listing.write_text(json.dumps([1, 2]), encoding="utf-8")
    with pytest.raises(SnapshotError):
        corpus.load(listing)
    assert corpus.is_loaded is False
