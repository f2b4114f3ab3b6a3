from __future__ import annotations

"""Error taxonomy for retrieval requests."""


class RetrievalError(RuntimeError):
    """Base class for failures surfaced to search callers."""
    code = "retrieval_error"


class EmptyQueryError(RetrievalError):
    """Raised when a query has neither key terms nor a query vector."""
    code = "empty_query"


class InvalidTopKError(RetrievalError):
    """Raised when top_k is not a positive integer."""
    code = "invalid_top_k"


class InvalidFilterError(RetrievalError):
    """Raised when a filter names an unknown field or carries a wrong type."""
    code = "invalid_filter"


class DimensionMismatchError(RetrievalError):
    """Raised when a vector does not match the index dimension."""
    code = "dimension_mismatch"


class IndexUnavailableError(RetrievalError):
    """Raised when no corpus has been loaded yet."""
    code = "index_unavailable"


class EmbeddingUnavailableError(RetrievalError):
    """Raised when the embedding service cannot produce a vector.

    Search never lets this escape; it switches the request to degraded mode.
    """
    code = "embedding_unavailable"


class RetrievalTimeoutError(RetrievalError):
    """Raised when a search exceeds its caller-supplied deadline."""
    code = "timeout"
