from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Protocol

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from src.rag.types import Document, QuestionMetadata

logger = logging.getLogger(__name__)

QUESTION_COLUMNS = [
    "id",
    "question",
    "options",
    "correct_answer",
    "answer_details",
    "bookname",
    "chapter",
    "chapter_index",
    "question_number",
    "setorder",
    "active",
    "created_at",
]
SOURCE_FILTERS = {"bookname", "chapter", "active", "limit"}


class QuestionSourceError(RuntimeError):
    pass


class DocumentSource(Protocol):
    def fetch_documents(self, filters: Mapping[str, Any] | None = None) -> list[Document]:
        raise NotImplementedError

    def corpus_version(self) -> int:
        raise NotImplementedError


def question_to_document(row: Mapping[str, Any]) -> Document:
    """Render a quiz_questions row as a retrievable document."""
    options = _parse_options(row.get("options"))
    lines = [f"Question: {str(row.get('question') or '').strip()}"]
    if options:
        lines.append("Options:")
        for key in sorted(options):
            lines.append(f"{key}: {options[key]}")
    correct_answer = str(row.get("correct_answer") or "").strip()
    lines.append(f"Correct Answer: {correct_answer}")
    details = str(row.get("answer_details") or "").strip()
    if details:
        lines.append(f"Answer Details: {details}")
    metadata = QuestionMetadata(
        bookname=str(row.get("bookname") or ""),
        correct_answer=correct_answer,
        chapter=_optional_str(row.get("chapter")),
        chapter_index=_optional_int(row.get("chapter_index")),
        question_number=_optional_int(row.get("question_number")),
    )
    return Document(doc_id=str(row["id"]), content="\n".join(lines), metadata=metadata)


def _parse_options(value: Any) -> dict[str, str]:
    if value is None or value == "":
        return {}
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            logger.warning("question_options_unparsed", extra={"length": len(value)})
            return {}
    if isinstance(value, Mapping):
        return {str(key): str(item) for key, item in value.items()}
    if isinstance(value, list):
        return {chr(ord("A") + idx): str(item) for idx, item in enumerate(value[:26])}
    return {}


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def version_fingerprint(rows: Iterable[Mapping[str, Any]]) -> int:
    """Fold every row's column values into a stable integer."""
    digest = hashlib.sha256()
    for row in rows:
        values = [str(row.get(column)) for column in QUESTION_COLUMNS]
        digest.update(json.dumps(values).encode("utf-8"))
    return int.from_bytes(digest.digest()[:8], "big") >> 1


@dataclass
class SQLQuestionSource:
    """Reads exam questions from a quiz_questions table."""
    connection_uri: str
    table: str = "quiz_questions"
    include_inactive: bool = False
    engine: Engine = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.table = _validate_identifier(self.table)
        self.engine = create_engine(self.connection_uri)

    def fetch_documents(self, filters: Mapping[str, Any] | None = None) -> list[Document]:
        sql, params = self.build_select_query(filters or {})
        try:
            with self.engine.connect() as connection:
                rows = connection.execute(text(sql), params).mappings().all()
        except SQLAlchemyError as exc:
            raise QuestionSourceError(str(exc)) from exc
        documents = [question_to_document(row) for row in rows]
        logger.info(
            "questions_fetched",
            extra={"table": self.table, "count": len(documents)},
        )
        return documents

    def corpus_version(self) -> int:
        """Fingerprint the content of every indexed row, so edits are detected."""
        select_clause = ", ".join(_quote_identifier(column) for column in QUESTION_COLUMNS)
        sql = f"SELECT {select_clause} FROM {_quote_identifier(self.table)}"
        params: dict[str, Any] = {}
        if not self.include_inactive:
            sql += f" WHERE {_quote_identifier('active')} = :active"
            params["active"] = True
        sql += f" ORDER BY {_quote_identifier('id')}"
        try:
            with self.engine.connect() as connection:
                rows = connection.execute(text(sql), params).mappings()
                return version_fingerprint(rows)
        except SQLAlchemyError as exc:
            raise QuestionSourceError(str(exc)) from exc

    def build_select_query(self, filters: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
        unknown = set(filters) - SOURCE_FILTERS
        if unknown:
            raise QuestionSourceError(f"Unsupported source filters: {sorted(unknown)}")
        select_clause = ", ".join(_quote_identifier(column) for column in QUESTION_COLUMNS)
        sql = f"SELECT {select_clause} FROM {_quote_identifier(self.table)}"
        params: dict[str, Any] = {}
        where_clauses: list[str] = []
        active = filters.get("active")
        if active is None and not self.include_inactive:
            active = True
        if active is not None:
            where_clauses.append(f"{_quote_identifier('active')} = :active")
            params["active"] = bool(active)
        for key in ("bookname", "chapter"):
            if filters.get(key) is not None:
                where_clauses.append(f"{_quote_identifier(key)} = :{key}")
                params[key] = filters[key]
        if where_clauses:
            sql += " WHERE " + " AND ".join(where_clauses)
        order_columns = ("bookname", "chapter_index", "question_number", "id")
        sql += " ORDER BY " + ", ".join(_quote_identifier(column) for column in order_columns)
        limit = filters.get("limit")
        if limit is not None:
            if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
                raise QuestionSourceError("limit must be a positive integer")
            sql += " LIMIT :limit"
            params["limit"] = limit
        return sql, params


class InMemoryQuestionSource:
    """Document source held in memory; the version bumps on every change."""

    def __init__(self, documents: Iterable[Document] = ()) -> None:
        self._lock = threading.Lock()
        self._documents: dict[str, Document] = {doc.doc_id: doc for doc in documents}
        self._version = 1

    def fetch_documents(self, filters: Mapping[str, Any] | None = None) -> list[Document]:
        filters = dict(filters or {})
        unknown = set(filters) - SOURCE_FILTERS
        if unknown:
            raise QuestionSourceError(f"Unsupported source filters: {sorted(unknown)}")
        limit = filters.pop("limit", None)
        filters.pop("active", None)
        with self._lock:
            documents = sorted(self._documents.values(), key=lambda doc: doc.doc_id)
        matched = [
            doc
            for doc in documents
            if all(
                value is None or doc.metadata.as_dict().get(key) == value
                for key, value in filters.items()
            )
        ]
        return matched[:limit] if limit is not None else matched

    def corpus_version(self) -> int:
        return self._version

    def upsert(self, documents: Iterable[Document]) -> None:
        with self._lock:
            for doc in documents:
                self._documents[doc.doc_id] = doc
            self._version += 1

    def remove(self, doc_ids: Iterable[str]) -> None:
        with self._lock:
            for doc_id in doc_ids:
                self._documents.pop(doc_id, None)
            self._version += 1


_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _validate_identifier(value: str) -> str:
    if not value or not _IDENTIFIER_RE.match(value):
        raise QuestionSourceError("Invalid table identifier")
    return value


def _quote_identifier(value: str) -> str:
    return f"\"{value}\""
