from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from ..errors import ResourceError, RetryableRemoteError, TerminalRemoteError, TransientError
from ..memory_kinds import requires_audio
from ..queue import DurableQueue, QueuedMemory
from ..utils import parse_iso8601
from .connectivity import ConnectivitySource, Subscription
from .remote import RemoteMemoryClient

logger = logging.getLogger(__name__)

STAGE_CREATE = "create"
STAGE_AUDIO = "audio"
STAGE_MEDIA = "media"

OUTCOME_COMPLETED = "completed"
OUTCOME_REQUEUED = "requeued"
OUTCOME_FAILED = "failed"
OUTCOME_DEFERRED = "deferred"
OUTCOME_SKIPPED = "skipped"


@dataclass(frozen=True)
class SyncCompleteEvent:
    local_id: str
    server_memory_id: str
    memory_kind: str


@dataclass
class RecordOutcome:
    local_id: str
    outcome: str
    stage: str | None = None
    error: str | None = None
    server_memory_id: str | None = None


@dataclass
class DrainResult:
    skipped: bool = False
    reason: str | None = None
    outcomes: list[RecordOutcome] = field(default_factory=list)

    def _ids(self, outcome: str) -> list[str]:
        return [item.local_id for item in self.outcomes if item.outcome == outcome]

    @property
    def completed(self) -> list[str]:
        return self._ids(OUTCOME_COMPLETED)

    @property
    def requeued(self) -> list[str]:
        return self._ids(OUTCOME_REQUEUED)

    @property
    def failed(self) -> list[str]:
        return self._ids(OUTCOME_FAILED)

    @property
    def deferred(self) -> list[str]:
        return self._ids(OUTCOME_DEFERRED)

    def as_dict(self) -> dict[str, Any]:
        return {
            "skipped": self.skipped,
            "reason": self.reason,
            "completed": self.completed,
            "requeued": self.requeued,
            "failed": self.failed,
            "deferred": self.deferred,
        }


def backoff_delay(retry_count: int, *, base_s: float, cap_s: float) -> float:
    if retry_count <= 0:
        return 0.0
    return min(base_s * (2 ** (retry_count - 1)), cap_s)


def _error_text(exc: BaseException) -> str:
    return str(exc).strip() or exc.__class__.__name__


class SyncEngine:
    """Drains the durable queue into the remote memory creation interface.

    One drain runs at a time per queue: the engine holds a lease stored in the
    queue database for the whole drain. Each record is uploaded in stages
    (create, audio, media) and every acknowledged stage is persisted before the
    next one starts, so a retry resumes at the first unacknowledged stage.
    """

    def __init__(
        self,
        queue: DurableQueue,
        remote: RemoteMemoryClient,
        connectivity: ConnectivitySource | None = None,
        *,
        max_attempts: int = 5,
        backoff_base_s: float = 2.0,
        backoff_cap_s: float = 300.0,
        concurrency: int = 1,
        lease_ttl_s: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.queue = queue
        self.remote = remote
        self.connectivity = connectivity
        self.max_attempts = max_attempts
        self.backoff_base_s = backoff_base_s
        self.backoff_cap_s = backoff_cap_s
        self.concurrency = max(1, concurrency)
        self.clock = clock
        self.lease_ttl_s = lease_ttl_s
        self.lease_owner = f"{os.getpid()}:{uuid4().hex}"
        self._drain_lock = threading.Lock()
        self._listeners: dict[int, Callable[[SyncCompleteEvent], None]] = {}
        self._listeners_lock = threading.Lock()
        self._next_listener = 0
        self._connectivity_subscription: Subscription | None = None

    def add_listener(self, callback: Callable[[SyncCompleteEvent], None]) -> Subscription:
        with self._listeners_lock:
            token = self._next_listener
            self._next_listener += 1
            self._listeners[token] = callback

        def _remove() -> None:
            with self._listeners_lock:
                self._listeners.pop(token, None)

        return Subscription(_remove)

    def _notify(self, event: SyncCompleteEvent) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners.values())
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("sync_listener_failed local_id=%s", event.local_id)

    def start(self) -> None:
        if self.connectivity is None or self._connectivity_subscription is not None:
            return
        self._connectivity_subscription = self.connectivity.subscribe(self._on_connectivity)
        if self.connectivity.is_online():
            self.drain_once()

    def stop(self) -> None:
        if self._connectivity_subscription is not None:
            self._connectivity_subscription.cancel()
            self._connectivity_subscription = None

    def _on_connectivity(self, online: bool) -> None:
        if online:
            self.drain_once()

    def sync_now(self) -> DrainResult:
        if self.connectivity is not None and not self.connectivity.is_online():
            return DrainResult(skipped=True, reason="offline")
        return self.drain_once(force=True)

    def backoff_elapsed(self, record: QueuedMemory) -> bool:
        if record.retry_count <= 0 or not record.last_retry_at:
            return True
        last = parse_iso8601(record.last_retry_at)
        if last is None:
            return True
        delay = backoff_delay(
            record.retry_count, base_s=self.backoff_base_s, cap_s=self.backoff_cap_s
        )
        return self.clock() >= last.timestamp() + delay

    def drain_once(self, *, force: bool = False) -> DrainResult:
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("sync_drain_skipped reason=drain_in_progress")
            return DrainResult(skipped=True, reason="drain_in_progress")
        try:
            if self.connectivity is not None and not self.connectivity.is_online():
                return DrainResult(skipped=True, reason="offline")
            if not self.queue.acquire_drain_lease(self.lease_owner, ttl_s=self.lease_ttl_s):
                logger.info(
                    "sync_drain_skipped reason=lease_held owner=%s",
                    self.queue.drain_lease_owner(),
                )
                return DrainResult(skipped=True, reason="drain_in_progress")
            try:
                return self._drain_leased(force)
            finally:
                self.queue.release_drain_lease(self.lease_owner)
        finally:
            self._drain_lock.release()

    def _sync_leased(self, record: QueuedMemory) -> RecordOutcome:
        if not self.queue.renew_drain_lease(self.lease_owner, ttl_s=self.lease_ttl_s):
            logger.warning("sync_drain_lease_lost local_id=%s", record.local_id)
            return RecordOutcome(record.local_id, OUTCOME_SKIPPED)
        return self.sync_record(record)

    def _drain_leased(self, force: bool) -> DrainResult:
        # The lease excludes other drains, so `syncing` rows are leftovers from a crash.
        self.queue.purge_completed()
        self.queue.recover_interrupted()
        pending = self.queue.list_pending()
        result = DrainResult()
        ready: list[QueuedMemory] = []
        for record in pending:
            if force or self.backoff_elapsed(record):
                ready.append(record)
            else:
                result.outcomes.append(
                    RecordOutcome(record.local_id, OUTCOME_DEFERRED, error=record.last_error)
                )
        if self.concurrency == 1 or len(ready) <= 1:
            result.outcomes.extend(self._sync_leased(record) for record in ready)
        else:
            with ThreadPoolExecutor(
                max_workers=self.concurrency, thread_name_prefix="capturemem-sync"
            ) as pool:
                result.outcomes.extend(pool.map(self._sync_leased, ready))
        logger.info(
            "sync_drain_finished completed=%s requeued=%s failed=%s deferred=%s",
            len(result.completed),
            len(result.requeued),
            len(result.failed),
            len(result.deferred),
        )
        return result

    def _prepare_parts(self, record: QueuedMemory) -> QueuedMemory | RecordOutcome:
        local_id = record.local_id
        audio = record.audio_part_path
        if audio and not record.audio_acked and not Path(audio).expanduser().exists():
            if requires_audio(record.memory_kind):
                error = f"required audio part is missing: {audio}"
                self.queue.mark_failed(local_id, error=error)
                logger.warning("sync_record_failed local_id=%s error=%s", local_id, error)
                return RecordOutcome(local_id, OUTCOME_FAILED, STAGE_AUDIO, error)
            logger.warning("sync_optional_audio_dropped local_id=%s path=%s", local_id, audio)
            record = self.queue.drop_audio_part(local_id) or record
        missing = [
            position
            for position, path in record.pending_media()
            if not Path(path).expanduser().exists()
        ]
        for position in sorted(missing, reverse=True):
            logger.warning(
                "sync_optional_media_dropped local_id=%s path=%s",
                local_id,
                record.media_part_paths[position],
            )
            record = self.queue.drop_media_part(local_id, position) or record
        return record

    def _retry_or_fail(self, record: QueuedMemory, stage: str, error: str) -> RecordOutcome:
        retry_count = record.retry_count + 1
        if retry_count >= self.max_attempts:
            self.queue.mark_failed(record.local_id, error=error, retry_count=retry_count)
            logger.warning(
                "sync_record_failed local_id=%s stage=%s attempts=%s error=%s",
                record.local_id,
                stage,
                retry_count,
                error,
            )
            return RecordOutcome(
                record.local_id, OUTCOME_FAILED, stage, error, record.server_memory_id
            )
        self.queue.requeue(record.local_id, error=error, retry_count=retry_count)
        logger.info(
            "sync_record_requeued local_id=%s stage=%s attempts=%s error=%s",
            record.local_id,
            stage,
            retry_count,
            error,
        )
        return RecordOutcome(
            record.local_id, OUTCOME_REQUEUED, stage, error, record.server_memory_id
        )

    def sync_record(self, record: QueuedMemory) -> RecordOutcome:
        local_id = record.local_id
        prepared = self._prepare_parts(record)
        if isinstance(prepared, RecordOutcome):
            return prepared
        record = prepared
        if self.queue.mark_syncing(local_id) is None:
            return RecordOutcome(local_id, OUTCOME_SKIPPED)

        stage = STAGE_CREATE
        try:
            server_memory_id = record.server_memory_id
            if not server_memory_id:
                server_memory_id = self.remote.create_memory(
                    local_id,
                    record.memory_kind,
                    {
                        "text": record.text_content,
                        "tags": list(record.tags),
                        "capturedAt": record.captured_at,
                        "locale": record.locale,
                    },
                )
                record = self.queue.record_server_id(local_id, server_memory_id) or record
                record.server_memory_id = server_memory_id
                logger.info(
                    "sync_memory_created local_id=%s server_memory_id=%s",
                    local_id,
                    server_memory_id,
                )

            stage = STAGE_AUDIO
            if record.audio_part_path and not record.audio_acked:
                if not self.remote.attach_audio(server_memory_id, record.audio_part_path):
                    raise RetryableRemoteError("attach audio was not acknowledged")
                record = self.queue.record_audio_ack(local_id) or record

            stage = STAGE_MEDIA
            for position, path in record.pending_media():
                if not self.remote.attach_media(server_memory_id, path, position):
                    raise RetryableRemoteError(f"attach media {position} was not acknowledged")
                record = self.queue.record_media_ack(local_id, position) or record
        except TerminalRemoteError as exc:
            error = _error_text(exc)
            self.queue.mark_failed(local_id, error=error)
            logger.warning(
                "sync_record_failed local_id=%s stage=%s terminal=true error=%s",
                local_id,
                stage,
                error,
            )
            return RecordOutcome(local_id, OUTCOME_FAILED, stage, error, record.server_memory_id)
        except ResourceError as exc:
            error = _error_text(exc)
            if stage == STAGE_MEDIA:
                # Vanished between the pre-check and the upload; treat like any missing attachment.
                current = self.queue.get(local_id) or record
                for position, path in current.pending_media():
                    if not Path(path).expanduser().exists():
                        self.queue.drop_media_part(local_id, position)
                        break
                self.queue.requeue(local_id, error=error, retry_count=record.retry_count)
                return RecordOutcome(
                    local_id, OUTCOME_REQUEUED, stage, error, record.server_memory_id
                )
            if stage == STAGE_AUDIO and not requires_audio(record.memory_kind):
                logger.warning(
                    "sync_optional_audio_dropped local_id=%s path=%s",
                    local_id,
                    record.audio_part_path,
                )
                self.queue.drop_audio_part(local_id)
                self.queue.requeue(local_id, error=error, retry_count=record.retry_count)
                return RecordOutcome(
                    local_id, OUTCOME_REQUEUED, stage, error, record.server_memory_id
                )
            self.queue.mark_failed(local_id, error=error)
            return RecordOutcome(local_id, OUTCOME_FAILED, stage, error, record.server_memory_id)
        except TransientError as exc:
            return self._retry_or_fail(record, stage, _error_text(exc))
        except Exception as exc:
            logger.exception("sync_record_unexpected_error local_id=%s", local_id)
            return self._retry_or_fail(record, stage, _error_text(exc))

        self.queue.mark_completed(local_id)
        event = SyncCompleteEvent(local_id, server_memory_id, record.memory_kind)
        self._notify(event)
        self.queue.remove_completed(local_id)
        logger.info(
            "sync_record_completed local_id=%s server_memory_id=%s", local_id, server_memory_id
        )
        return RecordOutcome(local_id, OUTCOME_COMPLETED, None, None, server_memory_id)
