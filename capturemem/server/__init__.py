from __future__ import annotations

from .dispatcher import Dispatcher, DispatchResult
from .ledger import (
    JOB_COMPLETE,
    JOB_FAILED,
    JOB_PROCESSING,
    JOB_SCHEDULED,
    MAX_ATTEMPTS,
    ProcessingJob,
    can_transition,
)
from .store import MemorySnapshot, ServerStore
from .workers import MementoWorker, MomentWorker, ProcessingWorker, StoryWorker, WorkerOutcome

__all__ = [
    "JOB_COMPLETE",
    "JOB_FAILED",
    "JOB_PROCESSING",
    "JOB_SCHEDULED",
    "MAX_ATTEMPTS",
    "DispatchResult",
    "Dispatcher",
    "MementoWorker",
    "MemorySnapshot",
    "MomentWorker",
    "ProcessingJob",
    "ProcessingWorker",
    "ServerStore",
    "StoryWorker",
    "WorkerOutcome",
    "can_transition",
]
