from __future__ import annotations

"""Offline answerer that quotes the best matching exam question."""

from dataclasses import dataclass
from typing import Sequence

from src.rag.llm import LLMResult
from src.rag.types import SearchHit


@dataclass
class ExtractiveAnswerer:
    """Return a short extract from the highest ranked passage."""
    max_chars: int = 480

    async def generate(self, query: str, context: str, hits: Sequence[SearchHit]) -> LLMResult:
        """Generate an extractive answer from the passages that made it into context."""
        if not hits or not context.strip():
            return LLMResult(answer="", refusal_reason="no_context", source_ids=[], raw="")
        best = hits[0]
        snippet = self._truncate(best.content.strip())
        return LLMResult(
            answer=f"Based on the provided context: {snippet}",
            refusal_reason=None,
            source_ids=[best.document_id],
            raw="",
        )

    def _truncate(self, text: str) -> str:
        """Trim text to the max character budget without cutting words."""
        if len(text) <= self.max_chars:
            return text
        return text[: self.max_chars].rsplit(" ", 1)[0] + "..."
