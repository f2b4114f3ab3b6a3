from __future__ import annotations

import pytest

from src.rag.errors import InvalidFilterError
from src.rag.query import QueryProcessor, query_log_fields
from src.rag.text import extract_key_terms, normalize_text, tokenize
from src.rag.types import validate_filters


def test_normalize_collapses_whitespace_and_lowercases() -> None:
    assert normalize_text("  Cardiac\t\nARREST   signs ") == "cardiac arrest signs"


def test_tokenize_splits_on_punctuation() -> None:
    assert tokenize("Heart-rate, (BPM): 72!") == ["heart", "rate", "bpm", "72"]


def test_key_terms_are_long_unique_and_ordered() -> None:
    terms = extract_key_terms("cardiac arrest and the cardiac cycle of a heart")
    assert terms == ("cardiac", "arrest", "cycle", "heart")


def test_validate_filters_sorts_and_drops_none() -> None:
    pairs = validate_filters({"chapter": "heart", "bookname": "anatomy", "chapter_index": None})
    assert pairs == (("bookname", "anatomy"), ("chapter", "heart"))


def test_validate_filters_rejects_unknown_key() -> None:
    with pytest.raises(InvalidFilterError):
        validate_filters({"author": "x"})


def test_validate_filters_rejects_wrong_type() -> None:
    with pytest.raises(InvalidFilterError):
        validate_filters({"chapter_index": "3"})
    with pytest.raises(InvalidFilterError):
        validate_filters({"question_number": True})


def test_query_log_fields_do_not_contain_text() -> None:
    fields = query_log_fields("secret question")
    assert "secret" not in str(fields)
    assert fields["query_length"] == len("secret question")


@pytest.mark.anyio
async def test_process_embeds_once(stub_embedder) -> None:
    embedder = stub_embedder({"cardiac symptoms": [0.0, 1.0, 0.0]})
    processor = QueryProcessor(embedder=embedder)
    query = await processor.process("  Cardiac   SYMPTOMS ")
    assert query.normalized_text == "cardiac symptoms"
    assert query.key_terms == ("cardiac", "symptoms")
    assert query.vector == (0.0, 1.0, 0.0)
    assert query.degraded is False
    assert embedder.calls == ["cardiac symptoms"]


@pytest.mark.anyio
async def test_process_degrades_on_embedding_error(stub_embedder) -> None:
    processor = QueryProcessor(embedder=stub_embedder(fail=True))
    query = await processor.process("cardiac symptoms")
    assert query.vector is None
    assert query.degraded is True
    assert query.key_terms == ("cardiac", "symptoms")


@pytest.mark.anyio
async def test_process_degrades_on_embedding_timeout(stub_embedder) -> None:
    processor = QueryProcessor(embedder=stub_embedder(delay=0.5), embedding_timeout=0.05)
    query = await processor.process("cardiac symptoms")
    assert query.vector is None
    assert query.degraded is True


@pytest.mark.anyio
async def test_process_skips_embedding_for_empty_text(stub_embedder) -> None:
    embedder = stub_embedder()
    query = await QueryProcessor(embedder=embedder).process("   ")
    assert query.key_terms == ()
    assert query.vector is None
    assert embedder.calls == []


@pytest.mark.anyio
async def test_process_skips_embedding_when_not_wanted(stub_embedder) -> None:
    embedder = stub_embedder()
    query = await QueryProcessor(embedder=embedder).process("cardiac", want_vector=False)
    assert query.vector is None
    assert query.degraded is False
    assert embedder.calls == []
