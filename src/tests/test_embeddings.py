from __future__ import annotations

import json
import math

import httpx
import pytest
from openai import OpenAI

from src.rag.embeddings import (
    EmbeddingConfigError,
    EmbeddingError,
    HashEmbedder,
    OllamaEmbedder,
    OpenAIEmbedder,
    build_embedding_config_report,
    validate_vector,
)
from src.rag.errors import EmbeddingUnavailableError


def test_hash_embedder_is_deterministic_and_normalized() -> None:
    embedder = HashEmbedder(dimension=32)
    first = embedder.embed("Cardiac arrest symptoms")
    second = embedder.embed("cardiac ARREST symptoms")
    assert first == second
    assert len(first) == 32
    assert math.isclose(sum(value * value for value in first), 1.0)
    assert embedder.model_id == "hash-32"


def test_hash_embedder_empty_text_is_zero_vector() -> None:
    assert HashEmbedder(dimension=4).embed("   ") == [0.0, 0.0, 0.0, 0.0]


def test_validate_vector_rejects_bad_values() -> None:
    assert validate_vector([1, 2.5], 2) == [1.0, 2.5]
    with pytest.raises(EmbeddingError):
        validate_vector([1.0], 2)
    with pytest.raises(EmbeddingError):
        validate_vector([1.0, float("nan")], 2)
    with pytest.raises(EmbeddingError):
        validate_vector([1.0, "2"], 2)


def test_config_report_for_openai_models() -> None:
    ok = build_embedding_config_report("openai", "text-embedding-3-small", 1536)
    assert ok.ok is True
    assert ok.status == "ok"

    mismatch = build_embedding_config_report("openai", "text-embedding-3-small", 768)
    assert mismatch.ok is False
    assert mismatch.expected_dimension == 1536

    missing = build_embedding_config_report("openai", None, 1536)
    assert missing.ok is False
    assert "OPENAI_EMBEDDING_MODEL" in missing.detail


def test_config_report_for_other_providers() -> None:
    assert build_embedding_config_report("hash", None, 256).ok is True
    assert build_embedding_config_report("hash", None, 0).ok is False
    ollama = build_embedding_config_report("ollama", "nomic-embed-text", 768)
    assert ollama.ok is True
    assert ollama.status == "warning"
    assert build_embedding_config_report("gemini", "x", 768).status == "error"


def test_ollama_embedder_posts_prompt() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"embedding": [0.1, 0.2, 0.3]})

    embedder = OllamaEmbedder(
        base_url="http://ollama:11434/",
        model="nomic-embed-text",
        dimension=3,
        transport=httpx.MockTransport(handler),
    )

    assert embedder.embed("cardiac") == [0.1, 0.2, 0.3]
    assert seen["url"] == "http://ollama:11434/api/embeddings"
    assert seen["body"] == {"model": "nomic-embed-text", "prompt": "cardiac"}
    assert embedder.model_id == "ollama:nomic-embed-text"


def test_ollama_embedder_wraps_http_failures() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "loading model"})

    embedder = OllamaEmbedder(
        base_url="http://ollama:11434",
        model="nomic-embed-text",
        dimension=3,
        transport=httpx.MockTransport(handler),
    )
    with pytest.raises(EmbeddingError):
        embedder.embed("cardiac")


def test_ollama_embedder_checks_dimension() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"embedding": [0.1, 0.2]})

    embedder = OllamaEmbedder(
        base_url="http://ollama:11434",
        model="nomic-embed-text",
        dimension=3,
        transport=httpx.MockTransport(handler),
    )
    with pytest.raises(EmbeddingError):
        embedder.embed("cardiac")


def test_ollama_embedder_requires_model() -> None:
    with pytest.raises(EmbeddingConfigError):
        OllamaEmbedder(base_url="http://ollama:11434", model="", dimension=3)


def test_ollama_embedder_wraps_non_json_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>proxy error</html>")

    embedder = OllamaEmbedder(
        base_url="http://ollama:11434",
        model="nomic-embed-text",
        dimension=3,
        transport=httpx.MockTransport(handler),
    )
    with pytest.raises(EmbeddingUnavailableError):
        embedder.embed("cardiac")


def test_openai_embedder_wraps_empty_data() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "object": "list",
                "data": [],
                "model": "text-embedding-3-small",
                "usage": {"prompt_tokens": 1, "total_tokens": 1},
            },
        )

    embedder = OpenAIEmbedder(api_key="sk-test", model="text-embedding-3-small", dimension=1536)
    embedder.client = OpenAI(
        api_key="sk-test",
        max_retries=0,
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    with pytest.raises(EmbeddingError):
        embedder.embed("cardiac")
