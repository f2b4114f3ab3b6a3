from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from src.rag.types import SearchHit


DEFAULT_REFUSAL = "I don't know based on the provided context."


@dataclass(frozen=True)
class GuardrailResult:
    allowed: bool
    reason: str


def require_context(hits: Sequence[SearchHit]) -> GuardrailResult:
    if not hits:
        return GuardrailResult(allowed=False, reason="no_context")
    if all(not hit.content.strip() for hit in hits):
        return GuardrailResult(allowed=False, reason="empty_context")
    return GuardrailResult(allowed=True, reason="ok")


def filter_source_ids(source_ids: Sequence[str], hits: Sequence[SearchHit]) -> list[str]:
    """Keep only cited ids that were actually part of the context."""
    allowed = {hit.document_id for hit in hits}
    return [source_id for source_id in dict.fromkeys(source_ids) if source_id in allowed]
