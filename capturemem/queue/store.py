from __future__ import annotations

import datetime as dt
import logging
import sqlite3
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any
from uuid import uuid4

from .. import db
from ..errors import ValidationError
from ..memory_kinds import requires_audio, validate_memory_kind
from .types import (
    CURRENT_RECORD_VERSION,
    SYNC_COMPLETED,
    SYNC_FAILED,
    SYNC_QUEUED,
    SYNC_STATUSES,
    SYNC_SYNCING,
    QueuedMemory,
    queued_memory_from_payload,
)

logger = logging.getLogger(__name__)


def generate_local_id() -> str:
    return uuid4().hex


class DurableQueue:
    """SQLite-backed queue of memories captured on this device.

    Every public method is atomic and serialized on the queue's own lock, so the
    capture UI and the sync engine can share one instance without extra locking.
    """

    def __init__(self, db_path: Path | str = db.DEFAULT_QUEUE_DB_PATH) -> None:
        self.db_path = Path(db_path).expanduser()
        self.conn = db.connect(self.db_path, check_same_thread=False)
        db.initialize_queue_schema(self.conn)
        self._lock = threading.RLock()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def enqueue(self, record: QueuedMemory) -> QueuedMemory:
        local_id = (record.local_id or "").strip()
        if not local_id:
            raise ValidationError("local_id is required")
        try:
            record.memory_kind = validate_memory_kind(record.memory_kind)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if not (record.text_content or "").strip():
            raise ValidationError("text_content is required")
        if requires_audio(record.memory_kind) and not record.audio_part_path:
            raise ValidationError(f"{record.memory_kind} memories require an audio part")
        if record.sync_status not in SYNC_STATUSES:
            raise ValidationError(f"unknown sync status: {record.sync_status!r}")
        now = db.now_iso()
        record.local_id = local_id
        record.created_at = record.created_at or now
        record.captured_at = record.captured_at or now
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO queued_memories(
                    local_id,
                    memory_kind,
                    sync_status,
                    record_version,
                    payload_json,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(local_id) DO UPDATE SET
                    memory_kind = excluded.memory_kind,
                    sync_status = excluded.sync_status,
                    record_version = excluded.record_version,
                    payload_json = excluded.payload_json,
                    updated_at = excluded.updated_at
                """,
                (
                    local_id,
                    record.memory_kind,
                    record.sync_status,
                    CURRENT_RECORD_VERSION,
                    db.to_json(record.to_payload()),
                    now,
                    now,
                ),
            )
            self.conn.commit()
        logger.info("queue_enqueued local_id=%s kind=%s", local_id, record.memory_kind)
        return record

    def _parse_row(self, row: sqlite3.Row) -> QueuedMemory | None:
        payload = db.from_json(row["payload_json"])
        if not payload:
            logger.warning("queue_record_corrupt local_id=%s", row["local_id"])
            return None
        try:
            record = queued_memory_from_payload(payload)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("queue_record_skipped local_id=%s error=%s", row["local_id"], exc)
            return None
        # The status column is authoritative.
        record.sync_status = str(row["sync_status"])
        return record

    def list_pending(self) -> list[QueuedMemory]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT local_id, sync_status, payload_json
                FROM queued_memories
                WHERE sync_status IN (?, ?)
                ORDER BY seq ASC
                """,
                (SYNC_QUEUED, SYNC_SYNCING),
            ).fetchall()
        records: list[QueuedMemory] = []
        for row in rows:
            record = self._parse_row(row)
            if record is not None:
                records.append(record)
        return records

    def list_all(self, *, status: str | None = None) -> list[QueuedMemory]:
        query = "SELECT local_id, sync_status, payload_json FROM queued_memories"
        params: list[Any] = []
        if status:
            query += " WHERE sync_status = ?"
            params.append(status)
        query += " ORDER BY seq ASC"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [record for row in rows if (record := self._parse_row(row)) is not None]

    def get(self, local_id: str) -> QueuedMemory | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT local_id, sync_status, payload_json FROM queued_memories"
                " WHERE local_id = ?",
                (local_id,),
            ).fetchone()
        if row is None:
            return None
        return self._parse_row(row)

    def status_counts(self) -> dict[str, int]:
        counts = {status: 0 for status in SYNC_STATUSES}
        with self._lock:
            rows = self.conn.execute(
                "SELECT sync_status, COUNT(*) AS n FROM queued_memories GROUP BY sync_status"
            ).fetchall()
        for row in rows:
            status = str(row["sync_status"])
            if status in counts:
                counts[status] += int(row["n"] or 0)
        return counts

    def _mutate(
        self,
        local_id: str,
        mutate: Callable[[QueuedMemory], None],
        *,
        expected_statuses: tuple[str, ...] | None = None,
    ) -> QueuedMemory | None:
        with self._lock, self.conn:
            row = self.conn.execute(
                "SELECT local_id, sync_status, payload_json FROM queued_memories"
                " WHERE local_id = ?",
                (local_id,),
            ).fetchone()
            if row is None:
                return None
            if expected_statuses is not None and str(row["sync_status"]) not in expected_statuses:
                return None
            record = self._parse_row(row)
            if record is None:
                return None
            mutate(record)
            self.conn.execute(
                """
                UPDATE queued_memories
                SET sync_status = ?, record_version = ?, payload_json = ?, updated_at = ?
                WHERE local_id = ?
                """,
                (
                    record.sync_status,
                    CURRENT_RECORD_VERSION,
                    db.to_json(record.to_payload()),
                    db.now_iso(),
                    local_id,
                ),
            )
        return record

    def mark_syncing(self, local_id: str) -> QueuedMemory | None:
        def _apply(record: QueuedMemory) -> None:
            record.sync_status = SYNC_SYNCING
            record.last_retry_at = db.now_iso()

        return self._mutate(local_id, _apply, expected_statuses=(SYNC_QUEUED, SYNC_SYNCING))

    def requeue(self, local_id: str, *, error: str, retry_count: int) -> QueuedMemory | None:
        def _apply(record: QueuedMemory) -> None:
            record.sync_status = SYNC_QUEUED
            record.retry_count = retry_count
            record.last_error = error
            record.last_retry_at = db.now_iso()

        return self._mutate(local_id, _apply)

    def mark_failed(
        self, local_id: str, *, error: str, retry_count: int | None = None
    ) -> QueuedMemory | None:
        def _apply(record: QueuedMemory) -> None:
            record.sync_status = SYNC_FAILED
            record.last_error = error
            record.last_retry_at = db.now_iso()
            if retry_count is not None:
                record.retry_count = retry_count

        return self._mutate(local_id, _apply)

    def mark_completed(self, local_id: str) -> QueuedMemory | None:
        def _apply(record: QueuedMemory) -> None:
            if not record.server_memory_id:
                raise ValueError(f"cannot complete {local_id} without a server memory id")
            record.sync_status = SYNC_COMPLETED
            record.last_error = None

        return self._mutate(local_id, _apply)

    def record_server_id(self, local_id: str, server_memory_id: str) -> QueuedMemory | None:
        def _apply(record: QueuedMemory) -> None:
            record.server_memory_id = server_memory_id

        return self._mutate(local_id, _apply)

    def record_audio_ack(self, local_id: str) -> QueuedMemory | None:
        def _apply(record: QueuedMemory) -> None:
            record.audio_acked = True

        return self._mutate(local_id, _apply)

    def record_media_ack(self, local_id: str, position: int) -> QueuedMemory | None:
        def _apply(record: QueuedMemory) -> None:
            if position not in record.acked_media_positions:
                record.acked_media_positions = sorted([*record.acked_media_positions, position])

        return self._mutate(local_id, _apply)

    def drop_audio_part(self, local_id: str) -> QueuedMemory | None:
        def _apply(record: QueuedMemory) -> None:
            record.audio_part_path = None
            record.audio_acked = False

        return self._mutate(local_id, _apply)

    def drop_media_part(self, local_id: str, position: int) -> QueuedMemory | None:
        def _apply(record: QueuedMemory) -> None:
            if position < 0 or position >= len(record.media_part_paths):
                return
            del record.media_part_paths[position]
            record.acked_media_positions = [
                p if p < position else p - 1 for p in record.acked_media_positions if p != position
            ]

        return self._mutate(local_id, _apply)

    def remove_completed(self, local_id: str) -> bool:
        with self._lock:
            cur = self.conn.execute(
                "DELETE FROM queued_memories WHERE local_id = ? AND sync_status = ?",
                (local_id, SYNC_COMPLETED),
            )
            self.conn.commit()
        removed = int(cur.rowcount or 0) > 0
        if removed:
            logger.info("queue_removed local_id=%s", local_id)
        return removed

    def discard(self, local_id: str) -> bool:
        with self._lock:
            cur = self.conn.execute("DELETE FROM queued_memories WHERE local_id = ?", (local_id,))
            self.conn.commit()
        discarded = int(cur.rowcount or 0) > 0
        if discarded:
            logger.info("queue_discarded local_id=%s", local_id)
        return discarded

    def retry(self, local_id: str) -> QueuedMemory | None:
        """Manual retry: put a failed record back in line with its retry count reset."""

        def _apply(record: QueuedMemory) -> None:
            record.sync_status = SYNC_QUEUED
            record.retry_count = 0
            record.last_error = None
            record.last_retry_at = None

        return self._mutate(local_id, _apply, expected_statuses=(SYNC_FAILED,))

    def acquire_drain_lease(self, owner: str, *, ttl_s: float) -> bool:
        """Take the device-wide drain lease unless another live owner holds it.

        The lease lives in the queue database, so separate processes sharing
        one queue file exclude each other. An expired lease is taken over.
        """
        now = dt.datetime.now(dt.UTC)
        with self._lock:
            row = self.conn.execute(
                """
                UPDATE drain_lease
                SET owner = ?, acquired_at = ?, expires_at = ?
                WHERE id = 1 AND (owner IS NULL OR owner = ? OR expires_at < ?)
                RETURNING owner
                """,
                (
                    owner,
                    now.isoformat(),
                    (now + dt.timedelta(seconds=ttl_s)).isoformat(),
                    owner,
                    now.isoformat(),
                ),
            ).fetchone()
            self.conn.commit()
        return row is not None

    def renew_drain_lease(self, owner: str, *, ttl_s: float) -> bool:
        now = dt.datetime.now(dt.UTC)
        with self._lock:
            cur = self.conn.execute(
                "UPDATE drain_lease SET expires_at = ? WHERE id = 1 AND owner = ?",
                ((now + dt.timedelta(seconds=ttl_s)).isoformat(), owner),
            )
            self.conn.commit()
        return int(cur.rowcount or 0) > 0

    def release_drain_lease(self, owner: str) -> bool:
        with self._lock:
            cur = self.conn.execute(
                """
                UPDATE drain_lease
                SET owner = NULL, acquired_at = NULL, expires_at = NULL
                WHERE id = 1 AND owner = ?
                """,
                (owner,),
            )
            self.conn.commit()
        return int(cur.rowcount or 0) > 0

    def drain_lease_owner(self) -> str | None:
        with self._lock:
            row = self.conn.execute("SELECT owner FROM drain_lease WHERE id = 1").fetchone()
        return str(row["owner"]) if row is not None and row["owner"] else None

    def purge_completed(self) -> int:
        """Delete records left in `completed` by a crash before their removal."""
        with self._lock:
            cur = self.conn.execute(
                "DELETE FROM queued_memories WHERE sync_status = ?", (SYNC_COMPLETED,)
            )
            self.conn.commit()
        purged = int(cur.rowcount or 0)
        if purged:
            logger.info("queue_purged_completed count=%s", purged)
        return purged

    def recover_interrupted(self) -> int:
        """Return `syncing` records to `queued`. Call only while holding the drain lease."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT local_id FROM queued_memories WHERE sync_status = ?",
                (SYNC_SYNCING,),
            ).fetchall()
        recovered = 0
        for row in rows:

            def _apply(record: QueuedMemory) -> None:
                record.sync_status = SYNC_QUEUED

            if self._mutate(str(row["local_id"]), _apply, expected_statuses=(SYNC_SYNCING,)):
                recovered += 1
        if recovered:
            logger.info("queue_recovered_interrupted count=%s", recovered)
        return recovered
