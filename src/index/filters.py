from __future__ import annotations

"""Metadata postings used to pre-filter index scans."""

from typing import Any, Iterable, Mapping

# field -> value -> ids carrying that value
MetadataPostings = Mapping[str, Mapping[Any, frozenset[str]]]
MutablePostings = dict[str, dict[Any, frozenset[str]]]


def copy_postings(postings: MetadataPostings) -> MutablePostings:
    """Return a working copy; the frozensets themselves are shared."""
    return {field: dict(values) for field, values in postings.items()}


def add_posting(postings: MutablePostings, doc_id: str, metadata: Mapping[str, Any]) -> None:
    """Register doc_id under each of its metadata values."""
    for field, value in metadata.items():
        if value is None:
            continue
        values = postings.setdefault(field, {})
        values[value] = values.get(value, frozenset()) | {doc_id}


def remove_posting(postings: MutablePostings, doc_id: str, metadata: Mapping[str, Any]) -> None:
    """Drop doc_id from the postings of its metadata values."""
    for field, value in metadata.items():
        values = postings.get(field)
        if values is None or value not in values:
            continue
        remaining = values[value] - {doc_id}
        if remaining:
            values[value] = remaining
        else:
            del values[value]


def eligible_ids(
    postings: MetadataPostings, filters: Iterable[tuple[str, Any]]
) -> frozenset[str] | None:
    """Intersect the id sets matching every filter pair.

    Returns None when no filters apply, meaning every id is eligible.
    """
    eligible: frozenset[str] | None = None
    for field, value in filters:
        ids = postings.get(field, {}).get(value, frozenset())
        eligible = ids if eligible is None else eligible & ids
        if not eligible:
            return frozenset()
    return eligible
