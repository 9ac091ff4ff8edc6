from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from .. import db
from ..errors import InvalidTransition
from ..memory_kinds import (
    MEMENTO,
    MOMENT,
    PHASE_NARRATIVE_GENERATION,
    PHASE_TEXT_PROCESSING,
    STORY,
    validate_memory_kind,
)

MAX_ATTEMPTS = 3

JOB_SCHEDULED = "scheduled"
JOB_PROCESSING = "processing"
JOB_COMPLETE = "complete"
JOB_FAILED = "failed"

JOB_STATES = (JOB_SCHEDULED, JOB_PROCESSING, JOB_COMPLETE, JOB_FAILED)

_JOB_COLUMNS = """
    memory_id,
    state,
    attempts,
    created_at,
    started_at,
    completed_at,
    last_error,
    last_error_at,
    last_updated_at,
    metadata_json
"""


def can_transition(
    from_state: str, to_state: str, *, attempts: int = 0, max_attempts: int = MAX_ATTEMPTS
) -> bool:
    if from_state == JOB_SCHEDULED:
        return to_state == JOB_PROCESSING
    if from_state == JOB_PROCESSING:
        if to_state == JOB_SCHEDULED:
            return attempts < max_attempts
        return to_state in (JOB_COMPLETE, JOB_FAILED)
    if from_state == JOB_FAILED:
        return to_state == JOB_SCHEDULED and attempts < max_attempts
    return False


@dataclass
class _JobMetadataBase:
    auto_completed: bool = False
    auto_complete_reason: str | None = None
    duration_ms: int | None = None


@dataclass
class StoryJobMetadata(_JobMetadataBase):
    kind: Literal["story"] = STORY
    phase: Literal["narrative_generation"] = PHASE_NARRATIVE_GENERATION


@dataclass
class MomentJobMetadata(_JobMetadataBase):
    kind: Literal["moment"] = MOMENT
    phase: Literal["text_processing"] = PHASE_TEXT_PROCESSING


@dataclass
class MementoJobMetadata(_JobMetadataBase):
    kind: Literal["memento"] = MEMENTO
    phase: Literal["text_processing"] = PHASE_TEXT_PROCESSING


JobMetadata = StoryJobMetadata | MomentJobMetadata | MementoJobMetadata

_METADATA_TYPES: dict[str, type[JobMetadata]] = {
    STORY: StoryJobMetadata,
    MOMENT: MomentJobMetadata,
    MEMENTO: MementoJobMetadata,
}


def metadata_for_kind(kind: str, **values: Any) -> JobMetadata:
    return _METADATA_TYPES[validate_memory_kind(kind)](**values)


def parse_job_metadata(data: dict[str, Any]) -> JobMetadata | None:
    kind = str(data.get("kind") or "")
    metadata_type = _METADATA_TYPES.get(kind)
    if metadata_type is None:
        return None
    return metadata_type(
        auto_completed=bool(data.get("auto_completed", False)),
        auto_complete_reason=data.get("auto_complete_reason"),
        duration_ms=data.get("duration_ms"),
    )


@dataclass
class ProcessingJob:
    memory_id: str
    state: str
    attempts: int
    created_at: str
    last_updated_at: str
    started_at: str | None = None
    completed_at: str | None = None
    last_error: str | None = None
    last_error_at: str | None = None
    metadata: JobMetadata | None = None
    extra_metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str | None:
        return self.metadata.kind if self.metadata is not None else None

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("extra_metadata", None)
        return data


def job_from_row(row: sqlite3.Row) -> ProcessingJob:
    metadata = db.from_json(row["metadata_json"])
    return ProcessingJob(
        memory_id=str(row["memory_id"]),
        state=str(row["state"]),
        attempts=int(row["attempts"] or 0),
        created_at=str(row["created_at"]),
        last_updated_at=str(row["last_updated_at"]),
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        last_error=row["last_error"],
        last_error_at=row["last_error_at"],
        metadata=parse_job_metadata(metadata),
        extra_metadata=metadata,
    )


def _metadata_json(metadata: JobMetadata) -> str:
    return db.to_json(asdict(metadata))


def create_job(conn: sqlite3.Connection, memory_id: str, kind: str) -> ProcessingJob:
    """Insert the `scheduled` job row for a new memory.

    Does not commit: callers run it inside the memory-insert transaction.
    """
    now = db.now_iso()
    row = conn.execute(
        f"""
        INSERT INTO memory_processing_status(
            memory_id,
            state,
            attempts,
            created_at,
            last_updated_at,
            metadata_json
        )
        VALUES (?, ?, 0, ?, ?, ?)
        RETURNING {_JOB_COLUMNS}
        """,
        (memory_id, JOB_SCHEDULED, now, now, _metadata_json(metadata_for_kind(kind))),
    ).fetchone()
    return job_from_row(row)


def get_job(conn: sqlite3.Connection, memory_id: str) -> ProcessingJob | None:
    row = conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM memory_processing_status WHERE memory_id = ?",
        (memory_id,),
    ).fetchone()
    return job_from_row(row) if row is not None else None


def list_jobs(
    conn: sqlite3.Connection, *, state: str | None = None, limit: int = 100
) -> list[ProcessingJob]:
    query = f"SELECT {_JOB_COLUMNS} FROM memory_processing_status"
    params: list[Any] = []
    if state:
        query += " WHERE state = ?"
        params.append(state)
    query += " ORDER BY created_at ASC LIMIT ?"
    params.append(limit)
    return [job_from_row(row) for row in conn.execute(query, params).fetchall()]


def scheduled_jobs(
    conn: sqlite3.Connection, *, limit: int = 10, max_attempts: int = MAX_ATTEMPTS
) -> list[ProcessingJob]:
    rows = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS}
        FROM memory_processing_status
        WHERE state = ? AND attempts < ?
        ORDER BY created_at ASC, rowid ASC
        LIMIT ?
        """,
        (JOB_SCHEDULED, max_attempts, limit),
    ).fetchall()
    return [job_from_row(row) for row in rows]


def claim_job(conn: sqlite3.Connection, memory_id: str) -> ProcessingJob | None:
    """Move one job `scheduled -> processing`.

    Returns None when another claimant got there first. Correctness relies on the
    single-row conditional UPDATE being atomic, which SQLite's write lock gives us.
    """
    now = db.now_iso()
    row = conn.execute(
        f"""
        UPDATE memory_processing_status
        SET state = ?, started_at = ?, last_updated_at = ?
        WHERE memory_id = ? AND state = ?
        RETURNING {_JOB_COLUMNS}
        """,
        (JOB_PROCESSING, now, now, memory_id, JOB_SCHEDULED),
    ).fetchone()
    conn.commit()
    return job_from_row(row) if row is not None else None


def complete_job(
    conn: sqlite3.Connection, memory_id: str, *, metadata: JobMetadata | None = None
) -> ProcessingJob | None:
    now = db.now_iso()
    current = get_job(conn, memory_id)
    if current is None:
        return None
    merged = metadata or current.metadata
    row = conn.execute(
        f"""
        UPDATE memory_processing_status
        SET state = ?,
            completed_at = ?,
            last_updated_at = ?,
            last_error = NULL,
            last_error_at = NULL,
            metadata_json = COALESCE(?, metadata_json)
        WHERE memory_id = ? AND state = ?
        RETURNING {_JOB_COLUMNS}
        """,
        (
            JOB_COMPLETE,
            now,
            now,
            _metadata_json(merged) if merged is not None else None,
            memory_id,
            JOB_PROCESSING,
        ),
    ).fetchone()
    conn.commit()
    return job_from_row(row) if row is not None else None


def record_failure(
    conn: sqlite3.Connection,
    memory_id: str,
    error: str,
    *,
    terminal: bool = False,
    max_attempts: int = MAX_ATTEMPTS,
) -> str | None:
    """Count one failed attempt for a `processing` job.

    The job goes back to `scheduled` while attempts remain and the failure is not
    terminal, otherwise to `failed`. Returns the new state, or None when the job
    was not `processing` (already finalized by the worker or the dispatcher).
    """
    now = db.now_iso()
    row = conn.execute(
        """
        UPDATE memory_processing_status
        SET attempts = attempts + 1,
            state = CASE
                WHEN ? = 0 AND attempts + 1 < ? THEN ?
                ELSE ?
            END,
            last_error = ?,
            last_error_at = ?,
            last_updated_at = ?
        WHERE memory_id = ? AND state = ?
        RETURNING state
        """,
        (
            1 if terminal else 0,
            max_attempts,
            JOB_SCHEDULED,
            JOB_FAILED,
            error,
            now,
            now,
            memory_id,
            JOB_PROCESSING,
        ),
    ).fetchone()
    conn.commit()
    return str(row["state"]) if row is not None else None


def requeue_failed(
    conn: sqlite3.Connection, memory_id: str, *, max_attempts: int = MAX_ATTEMPTS
) -> ProcessingJob:
    job = get_job(conn, memory_id)
    if job is None:
        raise KeyError(memory_id)
    if job.state != JOB_FAILED or not can_transition(
        job.state, JOB_SCHEDULED, attempts=job.attempts, max_attempts=max_attempts
    ):
        raise InvalidTransition(memory_id, job.state, JOB_SCHEDULED)
    row = conn.execute(
        f"""
        UPDATE memory_processing_status
        SET state = ?, last_updated_at = ?
        WHERE memory_id = ? AND state = ? AND attempts < ?
        RETURNING {_JOB_COLUMNS}
        """,
        (JOB_SCHEDULED, db.now_iso(), memory_id, JOB_FAILED, max_attempts),
    ).fetchone()
    conn.commit()
    if row is None:
        raise InvalidTransition(memory_id, job.state, JOB_SCHEDULED)
    return job_from_row(row)


def reprocess(conn: sqlite3.Connection, memory_id: str) -> ProcessingJob:
    """Manual retry: a failed job starts over with attempts reset to zero."""
    job = get_job(conn, memory_id)
    if job is None:
        raise KeyError(memory_id)
    row = conn.execute(
        f"""
        UPDATE memory_processing_status
        SET state = ?,
            attempts = 0,
            started_at = NULL,
            completed_at = NULL,
            last_error = NULL,
            last_error_at = NULL,
            last_updated_at = ?
        WHERE memory_id = ? AND state = ?
        RETURNING {_JOB_COLUMNS}
        """,
        (JOB_SCHEDULED, db.now_iso(), memory_id, JOB_FAILED),
    ).fetchone()
    conn.commit()
    if row is None:
        raise InvalidTransition(memory_id, job.state, JOB_SCHEDULED)
    return job_from_row(row)


def reclaim_stale(
    conn: sqlite3.Connection,
    *,
    older_than_iso: str,
    max_attempts: int = MAX_ATTEMPTS,
    limit: int = 100,
) -> list[str]:
    """Fail over `processing` jobs untouched since `older_than_iso`.

    Each reclaim counts as a failed attempt, so a job that keeps hanging still
    ends in `failed` after `max_attempts`.
    """
    rows = conn.execute(
        """
        SELECT memory_id
        FROM memory_processing_status
        WHERE state = ? AND last_updated_at < ?
        ORDER BY last_updated_at ASC
        LIMIT ?
        """,
        (JOB_PROCESSING, older_than_iso, limit),
    ).fetchall()
    reclaimed: list[str] = []
    for row in rows:
        memory_id = str(row["memory_id"])
        state = record_failure(
            conn,
            memory_id,
            "Processing timed out; job reclaimed",
            max_attempts=max_attempts,
        )
        if state is not None:
            reclaimed.append(memory_id)
    return reclaimed


def status_counts(conn: sqlite3.Connection) -> dict[str, int]:
    counts = {state: 0 for state in JOB_STATES}
    rows = conn.execute(
        "SELECT state, COUNT(*) AS n FROM memory_processing_status GROUP BY state"
    ).fetchall()
    for row in rows:
        state = str(row["state"])
        counts[state] = counts.get(state, 0) + int(row["n"] or 0)
    return counts
