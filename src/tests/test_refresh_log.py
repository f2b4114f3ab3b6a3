from __future__ import annotations

import pytest

from src.metadata.store import RefreshLog, RefreshLogError


def test_refresh_log_records_lifecycle(tmp_path) -> None:
    log = RefreshLog(f"sqlite:///{tmp_path / 'runs.db'}")
    record_id = log.record_start("manual", "sqlite:///questions.db", extra={"host": "worker-1"})
    log.record_complete(record_id, corpus_version=4, upserted=10, removed=2, skipped=1,
                        source_version=2 ** 62)

    runs = log.recent()
    assert len(runs) == 1
    run = runs[0]
    assert run.status == "completed"
    assert (run.corpus_version, run.upserted, run.removed, run.skipped) == (4, 10, 2, 1)
    assert run.source_version == 2 ** 62
    assert run.extra == {"host": "worker-1"}
    assert run.completed_at is not None


def test_refresh_log_records_failure(tmp_path) -> None:
    log = RefreshLog(f"sqlite:///{tmp_path / 'runs.db'}")
    record_id = log.record_start("poll", "memory")
    log.record_failure(record_id, "source unavailable")
    run = log.recent(limit=1)[0]
    assert run.status == "failed"
    assert run.error == "source unavailable"
    assert run.corpus_version is None


def test_refresh_log_redacts_credentials(tmp_path) -> None:
    assert (
        RefreshLog.redact_uri("postgresql://app:secret@db:5432/exams")
        == "postgresql://app:***@db:5432/exams"
    )
    assert RefreshLog.redact_uri("sqlite:///questions.db") == "sqlite:///questions.db"
    log = RefreshLog(f"sqlite:///{tmp_path / 'runs.db'}")
    log.record_start("manual", "postgresql://app:secret@db:5432/exams")
    assert "secret" not in log.recent()[0].source_uri


def test_refresh_log_wraps_database_errors(tmp_path) -> None:
    log = RefreshLog(f"sqlite:///{tmp_path / 'runs.db'}")
    record_id = log.record_start("manual", "memory")
    with pytest.raises(RefreshLogError):
        # Duplicate primary key.
        log._execute(
            log._table.insert().values(
                id=record_id,
                trigger="manual",
                source_uri="memory",
                status="running",
                created_at=log.recent()[0].created_at,
            )
        )
