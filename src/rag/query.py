from __future__ import annotations

"""Query processing: normalization, key terms and the optional query vector."""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Mapping

from src.rag.embeddings import EmbeddingProvider
from src.rag.errors import EmbeddingUnavailableError
from src.rag.types import Query, validate_filters
from src.rag.text import extract_key_terms, normalize_text

logger = logging.getLogger(__name__)


def query_log_fields(text: str) -> dict[str, Any]:
    """Identify a query in logs without recording its text."""
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]
    return {"query_hash": digest, "query_length": len(text)}


@dataclass
class QueryProcessor:
    """Turns raw query text into a Query, embedding it at most once."""
    embedder: EmbeddingProvider | None = None
    embedding_timeout: float = 10.0

    async def process(
        self,
        raw_text: str,
        filters: Mapping[str, Any] | None = None,
        want_vector: bool = True,
    ) -> Query:
        """Build a Query; embedding failures degrade instead of raising.

        Filter validation errors propagate as InvalidFilterError.
        """
        validated = validate_filters(filters)
        raw = raw_text if isinstance(raw_text, str) else ""
        normalized = normalize_text(raw)
        key_terms = extract_key_terms(normalized)
        if not want_vector or not normalized or self.embedder is None:
            return Query(
                raw_text=raw,
                normalized_text=normalized,
                key_terms=key_terms,
                filters=validated,
                degraded=want_vector and bool(normalized) and self.embedder is None,
            )
        try:
            vector = await asyncio.wait_for(
                asyncio.to_thread(self.embedder.embed, normalized),
                timeout=self.embedding_timeout,
            )
        except (EmbeddingUnavailableError, asyncio.TimeoutError) as exc:
            logger.warning(
                "embedding_failed",
                extra={**query_log_fields(normalized), "error": type(exc).__name__},
            )
            return Query(
                raw_text=raw,
                normalized_text=normalized,
                key_terms=key_terms,
                filters=validated,
                degraded=True,
            )
        return Query(
            raw_text=raw,
            normalized_text=normalized,
            key_terms=key_terms,
            vector=tuple(vector),
            filters=validated,
        )
