from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..utils import iso_before
from . import ledger as server_ledger
from .invoker import WorkerInvoker
from .ledger import JOB_FAILED, JOB_SCHEDULED, metadata_for_kind
from .store import ServerStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10


@dataclass
class DispatchResult:
    claimed: list[str] = field(default_factory=list)
    invoked: list[str] = field(default_factory=list)
    auto_completed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    requeued: list[str] = field(default_factory=list)
    reclaimed: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "claimed": len(self.claimed),
            "invoked": len(self.invoked),
            "autoCompleted": len(self.auto_completed),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
            "requeued": len(self.requeued),
            "reclaimed": len(self.reclaimed),
            "errors": dict(self.errors),
        }


class Dispatcher:
    """Periodic pass that claims scheduled jobs and hands each to its worker.

    Safe to run from several processes at once: the claim is a conditional
    UPDATE, so each job is handed out by exactly one of them.
    """

    def __init__(
        self,
        store: ServerStore,
        invoker: WorkerInvoker,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_attempts: int = server_ledger.MAX_ATTEMPTS,
        stale_after_s: float = 0,
    ) -> None:
        self.store = store
        self.invoker = invoker
        self.batch_size = max(1, batch_size)
        self.max_attempts = max_attempts
        self.stale_after_s = stale_after_s

    def _record_failure(
        self, result: DispatchResult, memory_id: str, error: str, *, terminal: bool
    ) -> None:
        state = self.store.record_failure(
            memory_id, error, terminal=terminal, max_attempts=self.max_attempts
        )
        result.errors[memory_id] = error
        if state == JOB_FAILED:
            result.failed.append(memory_id)
        elif state == JOB_SCHEDULED:
            result.requeued.append(memory_id)
        else:
            # The worker already finalized the row; read back where it landed.
            job = self.store.get_job(memory_id)
            if job is not None and job.state == JOB_FAILED:
                result.failed.append(memory_id)
            elif job is not None and job.state == JOB_SCHEDULED:
                result.requeued.append(memory_id)

    def run_once(self) -> DispatchResult:
        result = DispatchResult()
        if self.stale_after_s > 0:
            result.reclaimed = self.store.reclaim_stale(
                older_than_iso=iso_before(self.stale_after_s), max_attempts=self.max_attempts
            )
            if result.reclaimed:
                logger.warning("dispatch_reclaimed_stale count=%s", len(result.reclaimed))

        jobs = self.store.scheduled_jobs(limit=self.batch_size, max_attempts=self.max_attempts)
        for job in jobs:
            memory_id = job.memory_id
            claimed = self.store.claim_job(memory_id)
            if claimed is None:
                logger.debug("dispatch_claim_lost memory_id=%s", memory_id)
                result.skipped.append(memory_id)
                continue
            result.claimed.append(memory_id)

            snapshot = self.store.memory_snapshot(memory_id)
            if snapshot is None:
                self._record_failure(
                    result, memory_id, "Memory not found when dispatching", terminal=True
                )
                continue

            if snapshot.outputs_present():
                metadata = metadata_for_kind(
                    snapshot.memory_type,
                    auto_completed=True,
                    auto_complete_reason="outputs_already_present",
                )
                self.store.complete_job(memory_id, metadata=metadata)
                result.auto_completed.append(memory_id)
                logger.info(
                    "dispatch_auto_completed memory_id=%s kind=%s",
                    memory_id,
                    snapshot.memory_type,
                )
                continue

            try:
                invocation = self.invoker.invoke(snapshot.memory_type, memory_id)
            except Exception as exc:
                logger.exception("dispatch_invoke_error memory_id=%s", memory_id)
                self._record_failure(
                    result,
                    memory_id,
                    f"Worker invocation raised {exc.__class__.__name__}: {exc}",
                    terminal=False,
                )
                continue

            if invocation.ok:
                result.invoked.append(memory_id)
                continue
            self._record_failure(
                result,
                memory_id,
                invocation.error or "Worker invocation failed",
                terminal=invocation.terminal,
            )

        logger.info(
            "dispatch_pass_finished claimed=%s invoked=%s auto_completed=%s skipped=%s "
            "failed=%s requeued=%s",
            len(result.claimed),
            len(result.invoked),
            len(result.auto_completed),
            len(result.skipped),
            len(result.failed),
            len(result.requeued),
        )
        return result
