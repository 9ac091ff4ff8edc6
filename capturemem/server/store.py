from __future__ import annotations

import hashlib
import json
import logging
import os
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from .. import db
from ..errors import ValidationError
from ..memory_kinds import is_narrative, validate_memory_kind
from . import ledger as server_ledger
from .ledger import JobMetadata, ProcessingJob

logger = logging.getLogger(__name__)

DEFAULT_BLOB_DIR = Path.home() / ".capturemem" / "blobs"

PART_AUDIO = "audio"
PART_MEDIA = "media"
ATTACHMENT_PARTS = (PART_AUDIO, PART_MEDIA)


@dataclass(frozen=True)
class MemorySnapshot:
    """What the dispatcher needs to decide whether a job still has work to do."""

    memory_id: str
    memory_type: str
    input_text: str
    generated_title: str | None
    processed_text: str | None
    title_generated_at: str | None

    @property
    def has_title(self) -> bool:
        return bool((self.generated_title or "").strip()) or bool(self.title_generated_at)

    def outputs_present(self) -> bool:
        if not self.has_title:
            return False
        if is_narrative(self.memory_type):
            return bool((self.processed_text or "").strip())
        return True


class ServerStore:
    """Server-side memories, attachments and the processing job ledger."""

    def __init__(
        self,
        db_path: Path | str = db.DEFAULT_SERVER_DB_PATH,
        *,
        blob_dir: Path | str = DEFAULT_BLOB_DIR,
        check_same_thread: bool = True,
    ) -> None:
        self.db_path = Path(db_path).expanduser()
        self.blob_dir = Path(blob_dir).expanduser()
        self.conn = db.connect(self.db_path, check_same_thread=check_same_thread)
        db.initialize_server_schema(self.conn)

    def close(self) -> None:
        self.conn.close()

    def create_memory(self, local_id: str, kind: str, fields: dict[str, Any]) -> tuple[str, bool]:
        """Insert a memory and its `scheduled` job in one transaction.

        Idempotent on `local_id`: a repeat returns the existing id and `False`.
        """
        local_id = (local_id or "").strip()
        if not local_id:
            raise ValidationError("localId is required")
        try:
            memory_type = validate_memory_kind(kind)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        text = str(fields.get("text") or "")
        if not text.strip():
            raise ValidationError("text is required")
        tags = fields.get("tags") or []
        if not isinstance(tags, list):
            raise ValidationError("tags must be a list")

        existing = self.conn.execute(
            "SELECT id FROM memories WHERE local_id = ?", (local_id,)
        ).fetchone()
        if existing is not None:
            return str(existing["id"]), False

        memory_id = str(uuid4())
        now = db.now_iso()
        try:
            with self.conn:
                self.conn.execute(
                    """
                    INSERT INTO memories(
                        id,
                        local_id,
                        memory_type,
                        input_text,
                        title,
                        tags_json,
                        locale,
                        captured_at,
                        created_at,
                        updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        memory_id,
                        local_id,
                        memory_type,
                        text,
                        fields.get("title"),
                        db.to_json([str(tag) for tag in tags]),
                        fields.get("locale"),
                        fields.get("capturedAt") or now,
                        now,
                        now,
                    ),
                )
                server_ledger.create_job(self.conn, memory_id, memory_type)
        except sqlite3.IntegrityError:
            # Lost a race with a concurrent create for the same local_id.
            row = self.conn.execute(
                "SELECT id FROM memories WHERE local_id = ?", (local_id,)
            ).fetchone()
            if row is None:
                raise
            return str(row["id"]), False
        logger.info(
            "memory_created memory_id=%s local_id=%s kind=%s", memory_id, local_id, memory_type
        )
        return memory_id, True

    def _write_blob(self, data: bytes) -> str:
        digest = hashlib.sha256(data).hexdigest()
        target = self.blob_dir / digest[:2] / digest
        if not target.exists():
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_suffix(f".tmp-{os.getpid()}-{uuid4().hex[:8]}")
            tmp.write_bytes(data)
            os.replace(tmp, target)
        return f"sha256:{digest}"

    def attach_part(
        self,
        memory_id: str,
        part: str,
        position: int,
        data: bytes,
        content_type: str | None = None,
    ) -> dict[str, Any]:
        if part not in ATTACHMENT_PARTS:
            raise ValidationError(f"unknown part: {part}")
        if position < 0 or (part == PART_AUDIO and position != 0):
            raise ValidationError(f"invalid position for {part}: {position}")
        if not data:
            raise ValidationError(f"{part} part is empty")
        if self.get_memory(memory_id) is None:
            raise KeyError(memory_id)
        blob_ref = self._write_blob(data)
        now = db.now_iso()
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO memory_attachments(
                    memory_id,
                    part,
                    position,
                    blob_ref,
                    content_type,
                    size_bytes,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(memory_id, part, position) DO UPDATE SET
                    blob_ref = excluded.blob_ref,
                    content_type = excluded.content_type,
                    size_bytes = excluded.size_bytes,
                    updated_at = excluded.updated_at
                """,
                (memory_id, part, position, blob_ref, content_type, len(data), now, now),
            )
        logger.info(
            "memory_part_attached memory_id=%s part=%s position=%s bytes=%s",
            memory_id,
            part,
            position,
            len(data),
        )
        return {
            "memoryId": memory_id,
            "part": part,
            "position": position,
            "blobRef": blob_ref,
            "sizeBytes": len(data),
        }

    def list_attachments(self, memory_id: str) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT part, position, blob_ref, content_type, size_bytes, created_at, updated_at
            FROM memory_attachments
            WHERE memory_id = ?
            ORDER BY part ASC, position ASC
            """,
            (memory_id,),
        ).fetchall()
        return db.rows_to_dicts(rows)

    def get_memory(self, memory_id: str) -> dict[str, Any] | None:
        row = self.conn.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
        if row is None:
            return None
        item = dict(row)
        tags_raw = item.pop("tags_json", None)
        item["tags"] = _parse_tags(tags_raw)
        return item

    def memory_snapshot(self, memory_id: str) -> MemorySnapshot | None:
        row = self.conn.execute(
            """
            SELECT id, memory_type, input_text, generated_title, processed_text, title_generated_at
            FROM memories
            WHERE id = ?
            """,
            (memory_id,),
        ).fetchone()
        if row is None:
            return None
        return MemorySnapshot(
            memory_id=str(row["id"]),
            memory_type=str(row["memory_type"]),
            input_text=str(row["input_text"] or ""),
            generated_title=row["generated_title"],
            processed_text=row["processed_text"],
            title_generated_at=row["title_generated_at"],
        )

    def write_enrichment(
        self,
        memory_id: str,
        *,
        title: str,
        processed_text: str,
        generated_at: str | None = None,
    ) -> bool:
        """Persist title and text outputs together; never one without the other."""
        now = db.now_iso()
        cur = self.conn.execute(
            """
            UPDATE memories
            SET generated_title = ?,
                title = COALESCE(title, ?),
                processed_text = ?,
                title_generated_at = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (title, title, processed_text, generated_at or now, now, memory_id),
        )
        self.conn.commit()
        return int(cur.rowcount or 0) > 0

    def update_memory_text(self, memory_id: str, text: str) -> bool:
        """User edit of the input text. Does not schedule processing."""
        if not (text or "").strip():
            raise ValidationError("text is required")
        cur = self.conn.execute(
            "UPDATE memories SET input_text = ?, updated_at = ? WHERE id = ?",
            (text, db.now_iso(), memory_id),
        )
        self.conn.commit()
        return int(cur.rowcount or 0) > 0

    def get_job(self, memory_id: str) -> ProcessingJob | None:
        return server_ledger.get_job(self.conn, memory_id)

    def list_jobs(self, *, state: str | None = None, limit: int = 100) -> list[ProcessingJob]:
        return server_ledger.list_jobs(self.conn, state=state, limit=limit)

    def scheduled_jobs(
        self, *, limit: int = 10, max_attempts: int = server_ledger.MAX_ATTEMPTS
    ) -> list[ProcessingJob]:
        return server_ledger.scheduled_jobs(self.conn, limit=limit, max_attempts=max_attempts)

    def claim_job(self, memory_id: str) -> ProcessingJob | None:
        return server_ledger.claim_job(self.conn, memory_id)

    def complete_job(
        self, memory_id: str, *, metadata: JobMetadata | None = None
    ) -> ProcessingJob | None:
        return server_ledger.complete_job(self.conn, memory_id, metadata=metadata)

    def record_failure(
        self,
        memory_id: str,
        error: str,
        *,
        terminal: bool = False,
        max_attempts: int = server_ledger.MAX_ATTEMPTS,
    ) -> str | None:
        return server_ledger.record_failure(
            self.conn, memory_id, error, terminal=terminal, max_attempts=max_attempts
        )

    def requeue_failed(
        self, memory_id: str, *, max_attempts: int = server_ledger.MAX_ATTEMPTS
    ) -> ProcessingJob:
        return server_ledger.requeue_failed(self.conn, memory_id, max_attempts=max_attempts)

    def reprocess(self, memory_id: str) -> ProcessingJob:
        return server_ledger.reprocess(self.conn, memory_id)

    def reclaim_stale(
        self, *, older_than_iso: str, max_attempts: int = server_ledger.MAX_ATTEMPTS
    ) -> list[str]:
        return server_ledger.reclaim_stale(
            self.conn, older_than_iso=older_than_iso, max_attempts=max_attempts
        )

    def job_status_counts(self) -> dict[str, int]:
        return server_ledger.status_counts(self.conn)

    def set_dispatcher_ok(self) -> None:
        now = db.now_iso()
        self.conn.execute(
            """
            INSERT INTO dispatcher_state(id, last_ok_at)
            VALUES (1, ?)
            ON CONFLICT(id) DO UPDATE SET last_ok_at = excluded.last_ok_at
            """,
            (now,),
        )
        self.conn.commit()

    def set_dispatcher_error(self, error: str, traceback_text: str | None = None) -> None:
        now = db.now_iso()
        self.conn.execute(
            """
            INSERT INTO dispatcher_state(id, last_error, last_traceback, last_error_at)
            VALUES (1, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                last_error = excluded.last_error,
                last_traceback = excluded.last_traceback,
                last_error_at = excluded.last_error_at
            """,
            (error, traceback_text, now),
        )
        self.conn.commit()

    def dispatcher_state(self) -> dict[str, Any]:
        row = self.conn.execute(
            "SELECT last_ok_at, last_error, last_traceback, last_error_at FROM dispatcher_state"
        ).fetchone()
        return dict(row) if row is not None else {}


def _parse_tags(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return []
    return [str(tag) for tag in data] if isinstance(data, list) else []
