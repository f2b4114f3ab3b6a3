from __future__ import annotations

"""Scoring policies and the combined-score ranker."""

from dataclasses import dataclass, replace
from typing import Callable, Iterable, Optional

from src.rag.errors import InvalidTopKError
from src.rag.types import Candidate

ScoringPolicy = Callable[[Optional[float], Optional[float]], float]


@dataclass(frozen=True)
class WeightedSumPolicy:
    """alpha * vector + (1 - alpha) * keyword; a lone signal passes through."""
    alpha: float = 0.5

    def __post_init__(self) -> None:
        if not 0.0 <= self.alpha <= 1.0:
            raise ValueError("alpha must be within [0, 1]")

    def __call__(self, vector_score: float | None, keyword_score: float | None) -> float:
        if vector_score is None and keyword_score is None:
            return 0.0
        if keyword_score is None:
            return vector_score
        if vector_score is None:
            return keyword_score
        return self.alpha * vector_score + (1.0 - self.alpha) * keyword_score


def max_score(vector_score: float | None, keyword_score: float | None) -> float:
    """Take the stronger of the two signals."""
    return max(vector_score or 0.0, keyword_score or 0.0)


@dataclass(frozen=True)
class KeywordBoostPolicy:
    """Vector score lifted toward 1.0 in proportion to the keyword match."""
    boost: float = 0.5

    def __call__(self, vector_score: float | None, keyword_score: float | None) -> float:
        if vector_score is None:
            return keyword_score or 0.0
        lift = self.boost * (keyword_score or 0.0)
        return min(1.0, vector_score + (1.0 - vector_score) * lift)


def build_policy(name: str, alpha: float = 0.5) -> ScoringPolicy:
    """Resolve a scoring policy by configuration name."""
    normalized = name.strip().lower()
    if normalized in {"", "weighted"}:
        return WeightedSumPolicy(alpha=alpha)
    if normalized == "max":
        return max_score
    if normalized == "keyword_boost":
        return KeywordBoostPolicy()
    raise ValueError(f"Unsupported scoring policy: {name}")


@dataclass
class Ranker:
    """Orders candidates by combined score, ties by document id."""
    policy: ScoringPolicy | None = None

    def rescore(self, candidates: Iterable[Candidate]) -> list[Candidate]:
        if self.policy is None:
            return list(candidates)
        return [
            replace(
                candidate,
                combined_score=self.policy(candidate.vector_score, candidate.keyword_score),
            )
            for candidate in candidates
        ]

    def rank(self, candidates: Iterable[Candidate], top_k: int) -> list[Candidate]:
        if top_k <= 0:
            raise InvalidTopKError("top_k must be a positive integer")
        ordered = sorted(
            self.rescore(candidates),
            key=lambda candidate: (-candidate.combined_score, candidate.document_id),
        )
        return ordered[:top_k]
