from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Final

SYNC_QUEUED: Final = "queued"
SYNC_SYNCING: Final = "syncing"
SYNC_FAILED: Final = "failed"
SYNC_COMPLETED: Final = "completed"

SYNC_STATUSES: Final[tuple[str, ...]] = (SYNC_QUEUED, SYNC_SYNCING, SYNC_FAILED, SYNC_COMPLETED)

CURRENT_RECORD_VERSION: Final = 2


class UnsupportedRecordVersion(ValueError):
    def __init__(self, version: object) -> None:
        super().__init__(f"unsupported queued memory version: {version!r}")
        self.version = version


@dataclass
class QueuedMemory:
    local_id: str
    memory_kind: str
    text_content: str
    audio_part_path: str | None = None
    media_part_paths: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    captured_at: str | None = None
    locale: str | None = None
    sync_status: str = SYNC_QUEUED
    retry_count: int = 0
    last_retry_at: str | None = None
    last_error: str | None = None
    server_memory_id: str | None = None
    audio_acked: bool = False
    acked_media_positions: list[int] = field(default_factory=list)
    created_at: str | None = None
    version: int = CURRENT_RECORD_VERSION

    @property
    def created(self) -> bool:
        return self.server_memory_id is not None

    def pending_media(self) -> list[tuple[int, str]]:
        acked = set(self.acked_media_positions)
        return [
            (position, path)
            for position, path in enumerate(self.media_part_paths)
            if position not in acked
        ]

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["version"] = CURRENT_RECORD_VERSION
        return payload


def _str_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if isinstance(item, str) and item]


def _int_list(value: object) -> list[int]:
    if not isinstance(value, list):
        return []
    items: list[int] = []
    for item in value:
        try:
            items.append(int(item))
        except (TypeError, ValueError):
            continue
    return items


def _migrate_v1(payload: dict[str, Any]) -> dict[str, Any]:
    # v1 stored photos and videos separately and used capture-sheet field names.
    migrated = dict(payload)
    media = _str_list(payload.get("photo_paths")) + _str_list(payload.get("video_paths"))
    migrated["media_part_paths"] = media
    migrated["audio_part_path"] = payload.get("audio_path")
    migrated["text_content"] = payload.get("input_text") or ""
    migrated["memory_kind"] = payload.get("memory_type") or payload.get("memory_kind")
    migrated["last_error"] = payload.get("error_message")
    for key in (
        "photo_paths",
        "video_paths",
        "audio_path",
        "input_text",
        "memory_type",
        "error_message",
    ):
        migrated.pop(key, None)
    migrated["version"] = 2
    return migrated


_MIGRATIONS = {1: _migrate_v1}


def migrate_payload(payload: dict[str, Any]) -> dict[str, Any]:
    raw_version = payload.get("version", 1)
    try:
        version = int(raw_version)
    except (TypeError, ValueError) as exc:
        raise UnsupportedRecordVersion(raw_version) from exc
    if version > CURRENT_RECORD_VERSION or version < 1:
        raise UnsupportedRecordVersion(version)
    while version < CURRENT_RECORD_VERSION:
        payload = _MIGRATIONS[version](payload)
        version = int(payload["version"])
    return payload


def queued_memory_from_payload(payload: dict[str, Any]) -> QueuedMemory:
    data = migrate_payload(payload)
    local_id = str(data.get("local_id") or "").strip()
    kind = str(data.get("memory_kind") or "").strip()
    if not local_id or not kind:
        raise ValueError("queued memory is missing local_id or memory_kind")
    status = str(data.get("sync_status") or SYNC_QUEUED)
    if status not in SYNC_STATUSES:
        raise ValueError(f"unknown sync status: {status!r}")
    server_memory_id = data.get("server_memory_id")
    return QueuedMemory(
        local_id=local_id,
        memory_kind=kind,
        text_content=str(data.get("text_content") or ""),
        audio_part_path=data.get("audio_part_path") or None,
        media_part_paths=_str_list(data.get("media_part_paths")),
        tags=_str_list(data.get("tags")),
        captured_at=data.get("captured_at"),
        locale=data.get("locale"),
        sync_status=status,
        retry_count=int(data.get("retry_count") or 0),
        last_retry_at=data.get("last_retry_at"),
        last_error=data.get("last_error"),
        server_memory_id=str(server_memory_id) if server_memory_id else None,
        audio_acked=bool(data.get("audio_acked")),
        acked_media_positions=_int_list(data.get("acked_media_positions")),
        created_at=data.get("created_at"),
        version=CURRENT_RECORD_VERSION,
    )
