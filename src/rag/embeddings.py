from __future__ import annotations

"""Embedding providers for questions and queries, plus settings validation."""

import hashlib
import math
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

import httpx
from openai import OpenAI, OpenAIError

from src.rag.errors import EmbeddingUnavailableError
from src.rag.text import tokenize

# Known output sizes of OpenAI embedding models.
OPENAI_MODEL_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}
EMBEDDING_PROVIDERS = ("hash", "openai", "ollama")


class EmbeddingError(EmbeddingUnavailableError):
    """An embedding call failed or returned an unusable vector."""
    pass


class EmbeddingConfigError(RuntimeError):
    pass


class EmbeddingProvider(Protocol):
    """Turns text into a fixed-size vector; implementations may block."""
    dimension: int

    @property
    def model_id(self) -> str:
        raise NotImplementedError

    def embed(self, text: str) -> list[float]:
        raise NotImplementedError


def validate_vector(vector: Sequence[Any], dimension: int) -> list[float]:
    """Return vector as floats, rejecting wrong sizes and non-finite values."""
    if len(vector) != dimension:
        raise EmbeddingError(f"Expected a {dimension}-dimensional embedding, got {len(vector)}")
    values = []
    for value in vector:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise EmbeddingError("Embedding contains a non-numeric value")
        if not math.isfinite(value):
            raise EmbeddingError("Embedding contains a non-finite value")
        values.append(float(value))
    return values


@dataclass
class HashEmbedder:
    """Signed feature hashing over question tokens.

    Needs no network and is stable across processes, so it backs offline
    indexing and the test suite.
    """
    dimension: int = 256

    @property
    def model_id(self) -> str:
        return f"hash-{self.dimension}"

    def embed(self, text: str) -> list[float]:
        buckets = [0.0] * self.dimension
        for token in tokenize(text):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            slot = int.from_bytes(digest[:4], "big") % self.dimension
            buckets[slot] += -1.0 if digest[4] & 1 else 1.0
        norm = math.sqrt(sum(value * value for value in buckets))
        if norm:
            buckets = [value / norm for value in buckets]
        return validate_vector(buckets, self.dimension)


def resolve_openai_dimension(model: str) -> int | None:
    return OPENAI_MODEL_DIMENSIONS.get(model)


@dataclass(frozen=True)
class EmbeddingConfigReport:
    """Outcome of checking the embedding settings, served by /stats/embedding."""
    provider: str
    model: str | None
    configured_dimension: int
    expected_dimension: int | None
    ok: bool
    status: str
    detail: str | None = None
    action: str | None = None


def build_embedding_config_report(
    provider: str, model: str | None, dimension: int
) -> EmbeddingConfigReport:
    """Check provider, model and dimension settings before any vector is built.

    A dimension that cannot be checked against a known model is reported as a
    warning rather than an error.
    """
    name = provider.strip().lower() or "hash"

    def report(
        status: str,
        expected: int | None = None,
        detail: str | None = None,
        action: str | None = None,
    ) -> EmbeddingConfigReport:
        return EmbeddingConfigReport(
            provider=name,
            model=model if name != "hash" else None,
            configured_dimension=dimension,
            expected_dimension=expected,
            ok=status != "error",
            status=status,
            detail=detail,
            action=action,
        )

    if name not in EMBEDDING_PROVIDERS:
        return report(
            "error",
            detail=f"Unsupported embedding provider {provider!r}.",
            action=f"Set EMBEDDING_PROVIDER to one of: {', '.join(EMBEDDING_PROVIDERS)}.",
        )
    if name == "hash":
        if dimension <= 0:
            return report(
                "error",
                detail="EMBEDDING_DIMENSION must be positive for hash embeddings.",
                action="Set EMBEDDING_DIMENSION to a positive integer.",
            )
        return report("ok", expected=dimension)

    model_var = f"{name.upper()}_EMBEDDING_MODEL"
    if not model:
        return report(
            "error",
            detail=f"{model_var} is required for {name} embeddings.",
            action=f"Set {model_var} in .env.",
        )
    expected = resolve_openai_dimension(model) if name == "openai" else None
    if dimension <= 0 or (expected is not None and dimension != expected):
        return report(
            "error",
            expected=expected,
            detail=f"EMBEDDING_DIMENSION={dimension} does not fit model {model}.",
            action=(
                f"Set EMBEDDING_DIMENSION to {expected}."
                if expected is not None
                else "Set EMBEDDING_DIMENSION from the model documentation."
            ),
        )
    if expected is None:
        return report(
            "warning",
            detail=f"Dimension of {model} is unknown; confirm EMBEDDING_DIMENSION manually.",
        )
    return report("ok", expected=expected)


@dataclass
class OpenAIEmbedder:
    """Embeddings from an OpenAI-compatible API through the openai SDK."""
    api_key: str
    model: str
    dimension: int
    base_url: str | None = None
    timeout: float = 10.0
    client: OpenAI = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.api_key:
            raise EmbeddingConfigError("OPENAI_API_KEY is required for OpenAI embeddings")
        if not self.model:
            raise EmbeddingConfigError("OPENAI_EMBEDDING_MODEL is required for OpenAI embeddings")
        known = resolve_openai_dimension(self.model)
        if self.dimension <= 0 and known is not None:
            self.dimension = known
        if self.dimension <= 0:
            raise EmbeddingConfigError(f"EMBEDDING_DIMENSION must be set for model {self.model}")
        if known is not None and self.dimension != known:
            raise EmbeddingConfigError(
                f"Model {self.model} produces {known} dimensions, not {self.dimension}"
            )
        # The engine owns timeouts and degradation, so the client never retries.
        self.client = OpenAI(
            api_key=self.api_key,
            base_url=self.base_url or None,
            timeout=self.timeout,
            max_retries=0,
        )

    @property
    def model_id(self) -> str:
        return f"openai:{self.model}"

    def embed(self, text: str) -> list[float]:
        try:
            response = self.client.embeddings.create(model=self.model, input=text)
        except OpenAIError as exc:
            raise EmbeddingError(f"OpenAI embedding request failed: {exc}") from exc
        try:
            vector = response.data[0].embedding
        except (AttributeError, IndexError, TypeError) as exc:
            raise EmbeddingError("OpenAI response has no embedding vector") from exc
        return validate_vector(vector, self.dimension)


@dataclass
class OllamaEmbedder:
    """Embeddings from a local Ollama server."""
    base_url: str
    model: str
    dimension: int
    timeout: float = 10.0
    transport: httpx.BaseTransport | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if not self.model:
            raise EmbeddingConfigError("OLLAMA_EMBEDDING_MODEL is required for Ollama embeddings")
        if self.dimension <= 0:
            raise EmbeddingConfigError("EMBEDDING_DIMENSION must be set for Ollama embeddings")

    @property
    def model_id(self) -> str:
        return f"ollama:{self.model}"

    def embed(self, text: str) -> list[float]:
        url = f"{self.base_url.rstrip('/')}/api/embeddings"
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(url, json={"model": self.model, "prompt": text})
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as exc:
            raise EmbeddingError(f"Ollama embedding request failed: {exc}") from exc
        except ValueError as exc:
            raise EmbeddingError("Ollama returned a non-JSON body") from exc
        vector = payload.get("embedding") if isinstance(payload, dict) else None
        if not isinstance(vector, list):
            raise EmbeddingError("Ollama response has no embedding vector")
        return validate_vector(vector, self.dimension)
