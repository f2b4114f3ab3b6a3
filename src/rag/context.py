from __future__ import annotations

"""Bounded context assembly for the answer generator."""

from dataclasses import dataclass
from typing import Sequence

from src.rag.types import SearchHit


def format_passage(idx: int, hit: SearchHit) -> str:
    """Render one passage with its source header."""
    bookname = hit.metadata.get("bookname", "unknown")
    chapter = hit.metadata.get("chapter", "unknown")
    header = (
        "Source "
        f"{idx} (id={hit.document_id}, score={hit.score:.3f}, "
        f"book={bookname}, chapter={chapter}):\n"
    )
    return header + hit.content.strip()


@dataclass(frozen=True)
class ContextAssembler:
    """Concatenates ranked passages without ever truncating one.

    Assembly stops at the first passage that would push the block past
    max_chars, even if a later, shorter passage would still fit.
    """
    separator: str = "\n\n"

    def select(self, hits: Sequence[SearchHit], max_chars: int) -> list[tuple[SearchHit, str]]:
        """Return the passages that fit, paired with their rendered text."""
        selected: list[tuple[SearchHit, str]] = []
        total = 0
        for idx, hit in enumerate(hits, start=1):
            passage = format_passage(idx, hit)
            added = len(passage) + (len(self.separator) if selected else 0)
            if total + added > max_chars:
                break
            selected.append((hit, passage))
            total += added
        return selected

    def assemble(self, hits: Sequence[SearchHit], max_chars: int) -> str:
        return self.separator.join(passage for _, passage in self.select(hits, max_chars))
