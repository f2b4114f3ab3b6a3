from __future__ import annotations

"""Text normalization and tokenization shared by queries and the keyword index."""

import re

_WHITESPACE_RE = re.compile(r"\s+")
_TOKEN_RE = re.compile(r"[^\W_]+")

KEY_TERM_MIN_LENGTH = 4


def normalize_text(text: str) -> str:
    """Lowercase, trim and collapse whitespace runs."""
    return _WHITESPACE_RE.sub(" ", text).strip().lower()


def tokenize(text: str) -> list[str]:
    """Split text into lowercase tokens on whitespace and punctuation."""
    return _TOKEN_RE.findall(text.lower())


def extract_key_terms(text: str, min_length: int = KEY_TERM_MIN_LENGTH) -> tuple[str, ...]:
    """Return unique tokens of at least min_length in order of appearance."""
    seen: set[str] = set()
    terms: list[str] = []
    for token in tokenize(text):
        if len(token) < min_length or token in seen:
            continue
        seen.add(token)
        terms.append(token)
    return tuple(terms)
