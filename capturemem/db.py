from __future__ import annotations

import datetime as dt
import json
import sqlite3
from collections.abc import Iterable
from pathlib import Path
from typing import Any

DEFAULT_QUEUE_DB_PATH = Path.home() / ".capturemem" / "queue.sqlite"
DEFAULT_SERVER_DB_PATH = Path.home() / ".capturemem" / "server.sqlite"


def connect(db_path: Path | str, check_same_thread: bool = True) -> sqlite3.Connection:
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=check_same_thread, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE")
    # FULL so an enqueue survives power loss once commit() returns.
    conn.execute("PRAGMA synchronous = FULL")
    return conn


def now_iso() -> str:
    return dt.datetime.now(dt.UTC).isoformat()


def to_json(data: Any) -> str:
    if data is None:
        payload: Any = {}
    else:
        payload = data
    return json.dumps(payload, ensure_ascii=False)


def from_json(text: str | None) -> dict[str, Any]:
    if not text:
        return {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def rows_to_dicts(rows: Iterable[sqlite3.Row]) -> list[dict[str, Any]]:
    return [dict(r) for r in rows]


def initialize_queue_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS queued_memories (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            local_id TEXT NOT NULL UNIQUE,
            memory_kind TEXT NOT NULL,
            sync_status TEXT NOT NULL DEFAULT 'queued',
            record_version INTEGER NOT NULL,
            payload_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_queued_memories_status_seq
            ON queued_memories(sync_status, seq);

        CREATE TABLE IF NOT EXISTS drain_lease (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            owner TEXT,
            acquired_at TEXT,
            expires_at TEXT
        );
        INSERT OR IGNORE INTO drain_lease(id) VALUES (1);
        """
    )
    conn.commit()


def initialize_server_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS memories (
            id TEXT PRIMARY KEY,
            local_id TEXT NOT NULL UNIQUE,
            memory_type TEXT NOT NULL,
            input_text TEXT NOT NULL,
            title TEXT,
            generated_title TEXT,
            processed_text TEXT,
            title_generated_at TEXT,
            tags_json TEXT,
            locale TEXT,
            captured_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS memory_attachments (
            id INTEGER PRIMARY KEY,
            memory_id TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
            part TEXT NOT NULL,
            position INTEGER NOT NULL,
            blob_ref TEXT NOT NULL,
            content_type TEXT,
            size_bytes INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(memory_id, part, position)
        );

        CREATE TABLE IF NOT EXISTS memory_processing_status (
            memory_id TEXT PRIMARY KEY REFERENCES memories(id) ON DELETE CASCADE,
            state TEXT NOT NULL DEFAULT 'scheduled',
            attempts INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT,
            last_error TEXT,
            last_error_at TEXT,
            last_updated_at TEXT NOT NULL,
            metadata_json TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_processing_status_state_created
            ON memory_processing_status(state, created_at);

        CREATE TABLE IF NOT EXISTS dispatcher_state (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            last_ok_at TEXT,
            last_error TEXT,
            last_traceback TEXT,
            last_error_at TEXT
        );
        """
    )
    conn.commit()
