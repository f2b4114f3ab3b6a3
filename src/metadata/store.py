from __future__ import annotations

"""Persistence of corpus refresh runs."""

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse, urlunparse

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    select,
)
from sqlalchemy.exc import SQLAlchemyError


class RefreshLogError(RuntimeError):
    """Raised when refresh-run persistence fails."""
    pass


@dataclass(frozen=True)
class RefreshRun:
    """One corpus refresh as recorded in the log."""
    id: str
    trigger: str
    source_uri: str
    status: str
    source_version: int | None = None
    corpus_version: int | None = None
    upserted: int | None = None
    removed: int | None = None
    skipped: int | None = None
    error: str | None = None
    extra: dict[str, Any] | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None


class RefreshLog:
    """Store refresh runs in a SQL database."""
    def __init__(self, connection_uri: str) -> None:
        """Initialize the refresh log and ensure tables exist."""
        self._engine = create_engine(connection_uri)
        self._metadata = MetaData()
        self._table = Table(
            "refresh_runs",
            self._metadata,
            Column("id", String(36), primary_key=True),
            Column("trigger", String(32), nullable=False),
            Column("source_uri", Text, nullable=False),
            Column("status", String(32), nullable=False),
            Column("source_version", String(32), nullable=True),
            Column("corpus_version", Integer, nullable=True),
            Column("upserted", Integer, nullable=True),
            Column("removed", Integer, nullable=True),
            Column("skipped", Integer, nullable=True),
            Column("error", Text, nullable=True),
            Column("extra", Text, nullable=True),
            Column("created_at", DateTime(timezone=True), nullable=False),
            Column("completed_at", DateTime(timezone=True), nullable=True),
        )
        self._metadata.create_all(self._engine)

    def record_start(
        self,
        trigger: str,
        source_uri: str,
        source_version: int | None = None,
        extra: dict[str, Any] | None = None,
    ) -> str:
        """Create a new refresh record and return its ID."""
        record_id = str(uuid.uuid4())
        payload = {
            "id": record_id,
            "trigger": trigger,
            "source_uri": self.redact_uri(source_uri),
            "status": "running",
            # Source fingerprints can exceed a signed 32-bit column.
            "source_version": None if source_version is None else str(source_version),
            "extra": json.dumps(extra, ensure_ascii=True, default=str) if extra else None,
            "created_at": datetime.now(timezone.utc),
        }
        self._execute(self._table.insert().values(**payload))
        return record_id

    def record_complete(
        self,
        record_id: str,
        corpus_version: int,
        upserted: int,
        removed: int,
        skipped: int,
        source_version: int | None = None,
    ) -> None:
        """Mark a record as completed with counts."""
        completed_at = datetime.now(timezone.utc)
        self._execute(
            self._table.update()
            .where(self._table.c.id == record_id)
            .values(
                status="completed",
                corpus_version=corpus_version,
                upserted=upserted,
                removed=removed,
                skipped=skipped,
                source_version=None if source_version is None else str(source_version),
                completed_at=completed_at,
            )
        )

    def record_failure(self, record_id: str, error: str) -> None:
        """Mark a record as failed with an error message."""
        completed_at = datetime.now(timezone.utc)
        self._execute(
            self._table.update()
            .where(self._table.c.id == record_id)
            .values(status="failed", error=error, completed_at=completed_at)
        )

    def recent(self, limit: int = 20) -> list[RefreshRun]:
        """Return the latest refresh runs, newest first."""
        query = select(self._table).order_by(self._table.c.created_at.desc()).limit(limit)
        with self._engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [self._deserialize(row) for row in rows]

    def _execute(self, statement: Any) -> None:
        try:
            with self._engine.begin() as conn:
                conn.execute(statement)
        except SQLAlchemyError as exc:
            raise RefreshLogError(str(exc)) from exc

    @staticmethod
    def redact_uri(uri: str) -> str:
        """Redact credentials from connection URIs before storage."""
        if "://" not in uri:
            return uri
        parsed = urlparse(uri)
        if parsed.password is None:
            return uri
        netloc = parsed.hostname or ""
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        return urlunparse(
            (
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            )
        )

    @staticmethod
    def _deserialize(row: Any) -> RefreshRun:
        return RefreshRun(
            id=row["id"],
            trigger=row["trigger"],
            source_uri=row["source_uri"],
            status=row["status"],
            source_version=int(row["source_version"]) if row["source_version"] else None,
            corpus_version=row["corpus_version"],
            upserted=row["upserted"],
            removed=row["removed"],
            skipped=row["skipped"],
            error=row["error"],
            extra=json.loads(row["extra"]) if row["extra"] else None,
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )
