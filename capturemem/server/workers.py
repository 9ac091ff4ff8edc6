from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from .. import db
from ..errors import ValidationError
from ..memory_kinds import MEMENTO, MOMENT, STORY
from . import ledger as server_ledger
from .generation import TextGenerator
from .ledger import JOB_COMPLETE, JOB_PROCESSING, JOB_SCHEDULED, metadata_for_kind
from .store import ServerStore

logger = logging.getLogger(__name__)

MIN_TEXT_CHARS = 3
MIN_NON_SPACE_CHARS = 2


@dataclass
class WorkerOutcome:
    memory_id: str
    ok: bool
    state: str | None = None
    title: str | None = None
    processed_text: str | None = None
    error: str | None = None
    terminal: bool = False
    duration_ms: int | None = None


def validate_input_text(text: str | None) -> str:
    value = text or ""
    if not value.strip():
        raise ValidationError("Input text is empty")
    if len(value) < MIN_TEXT_CHARS:
        raise ValidationError(f"Input text is too short ({len(value)} characters)")
    if sum(1 for ch in value if not ch.isspace()) < MIN_NON_SPACE_CHARS:
        raise ValidationError("Input text has too few non-whitespace characters")
    return value


class ProcessingWorker:
    """Enriches one memory: title plus a cleaned (or narrative) text.

    Both outputs are written in one UPDATE, so a memory never carries a new
    title next to a stale text. Every failure is recorded on the ledger row.
    """

    kind: str = ""

    def __init__(
        self,
        store: ServerStore,
        generator: TextGenerator,
        *,
        max_attempts: int = server_ledger.MAX_ATTEMPTS,
    ) -> None:
        self.store = store
        self.generator = generator
        self.max_attempts = max_attempts

    def generate_text(self, text: str) -> str:
        return self.generator.process_text(text)

    def _fail(
        self, memory_id: str, error: str, *, terminal: bool, started: float
    ) -> WorkerOutcome:
        state = self.store.record_failure(
            memory_id, error, terminal=terminal, max_attempts=self.max_attempts
        )
        logger.warning(
            "worker_failed memory_id=%s kind=%s terminal=%s state=%s error=%s",
            memory_id,
            self.kind,
            terminal,
            state,
            error,
        )
        return WorkerOutcome(
            memory_id,
            ok=False,
            state=state,
            error=error,
            terminal=terminal,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    def _ensure_processing(self, memory_id: str) -> str | None:
        job = self.store.get_job(memory_id)
        if job is None:
            return "Processing job not found"
        if job.state == JOB_PROCESSING:
            return None
        if job.state == JOB_SCHEDULED and self.store.claim_job(memory_id) is not None:
            return None
        return f"Job is {job.state}, not processable"

    def process(self, memory_id: str, *, trusted: bool = False) -> WorkerOutcome:
        if not trusted:
            raise PermissionError("worker invocation requires a trusted caller")
        started = time.monotonic()
        memory = self.store.get_memory(memory_id)
        if memory is None:
            # No ledger row can exist without its memory (cascade), nothing to record.
            return WorkerOutcome(memory_id, ok=False, error="Memory not found", terminal=True)

        not_processable = self._ensure_processing(memory_id)
        if not_processable is not None:
            logger.info(
                "worker_skipped memory_id=%s kind=%s reason=%s",
                memory_id,
                self.kind,
                not_processable,
            )
            return WorkerOutcome(memory_id, ok=False, error=not_processable)

        if memory["memory_type"] != self.kind:
            return self._fail(
                memory_id,
                f"Worker for {self.kind} cannot process a {memory['memory_type']}",
                terminal=True,
                started=started,
            )
        try:
            text = validate_input_text(memory.get("input_text"))
        except ValidationError as exc:
            return self._fail(memory_id, str(exc), terminal=True, started=started)

        try:
            with ThreadPoolExecutor(max_workers=2, thread_name_prefix="capturemem-gen") as pool:
                title_future = pool.submit(self.generator.generate_title, text)
                text_future = pool.submit(self.generate_text, text)
                title = title_future.result()
                processed = text_future.result()
        except Exception as exc:
            error = f"{exc.__class__.__name__}: {exc}".rstrip(": ")
            return self._fail(memory_id, error, terminal=False, started=started)

        duration_ms = int((time.monotonic() - started) * 1000)
        self.store.write_enrichment(
            memory_id, title=title, processed_text=processed, generated_at=db.now_iso()
        )
        job = self.store.complete_job(
            memory_id, metadata=metadata_for_kind(self.kind, duration_ms=duration_ms)
        )
        state = job.state if job is not None else None
        if state != JOB_COMPLETE:
            logger.warning("worker_complete_lost memory_id=%s kind=%s", memory_id, self.kind)
        logger.info(
            "worker_completed memory_id=%s kind=%s duration_ms=%s",
            memory_id,
            self.kind,
            duration_ms,
        )
        return WorkerOutcome(
            memory_id,
            ok=True,
            state=state,
            title=title,
            processed_text=processed,
            duration_ms=duration_ms,
        )


class MomentWorker(ProcessingWorker):
    kind = MOMENT


class MementoWorker(ProcessingWorker):
    kind = MEMENTO


class StoryWorker(ProcessingWorker):
    kind = STORY

    def generate_text(self, text: str) -> str:
        return self.generator.generate_narrative(text)


WORKER_TYPES: dict[str, type[ProcessingWorker]] = {
    MOMENT: MomentWorker,
    STORY: StoryWorker,
    MEMENTO: MementoWorker,
}


def build_workers(
    store: ServerStore,
    generator: TextGenerator,
    *,
    max_attempts: int = server_ledger.MAX_ATTEMPTS,
) -> dict[str, ProcessingWorker]:
    return {
        kind: worker_type(store, generator, max_attempts=max_attempts)
        for kind, worker_type in WORKER_TYPES.items()
    }
