from __future__ import annotations

from .store import DurableQueue, generate_local_id
from .types import (
    CURRENT_RECORD_VERSION,
    SYNC_COMPLETED,
    SYNC_FAILED,
    SYNC_QUEUED,
    SYNC_STATUSES,
    SYNC_SYNCING,
    QueuedMemory,
    UnsupportedRecordVersion,
    queued_memory_from_payload,
)

__all__ = [
    "CURRENT_RECORD_VERSION",
    "SYNC_COMPLETED",
    "SYNC_FAILED",
    "SYNC_QUEUED",
    "SYNC_STATUSES",
    "SYNC_SYNCING",
    "DurableQueue",
    "QueuedMemory",
    "UnsupportedRecordVersion",
    "generate_local_id",
    "queued_memory_from_payload",
]
