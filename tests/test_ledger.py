from __future__ import annotations

import threading
from pathlib import Path

import pytest

from capturemem.errors import InvalidTransition, ValidationError
from capturemem.server import ledger
from capturemem.server.ledger import (
    JOB_COMPLETE,
    JOB_FAILED,
    JOB_PROCESSING,
    JOB_SCHEDULED,
    MomentJobMetadata,
    StoryJobMetadata,
    can_transition,
)
from capturemem.server.store import ServerStore


def _store(tmp_path: Path) -> ServerStore:
    return ServerStore(tmp_path / "server.sqlite", blob_dir=tmp_path / "blobs")


def test_create_memory_schedules_one_job(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        memory_id, created = store.create_memory("L1", "moment", {"text": "Lunch with Sam"})
        again_id, again_created = store.create_memory("L1", "moment", {"text": "Lunch with Sam"})
        job = store.get_job(memory_id)
        memory_count = store.conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
    finally:
        store.close()

    assert created is True
    assert again_created is False
    assert again_id == memory_id
    assert memory_count == 1
    assert job is not None
    assert job.state == JOB_SCHEDULED
    assert job.attempts == 0
    assert job.metadata == MomentJobMetadata()
    assert job.kind == "moment"


def test_story_jobs_carry_narrative_phase(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        memory_id, _ = store.create_memory("S1", "story", {"text": "We moved flats"})
        job = store.get_job(memory_id)
    finally:
        store.close()

    assert job is not None
    assert isinstance(job.metadata, StoryJobMetadata)
    assert job.metadata.phase == "narrative_generation"


@pytest.mark.parametrize(
    ("local_id", "kind", "fields"),
    [
        ("", "moment", {"text": "hello"}),
        ("L1", "diary", {"text": "hello"}),
        ("L1", "moment", {"text": "   "}),
        ("L1", "moment", {"text": "hello", "tags": "not-a-list"}),
    ],
)
def test_create_memory_rejects_invalid_input(
    tmp_path: Path, local_id: str, kind: str, fields: dict
) -> None:
    store = _store(tmp_path)
    try:
        with pytest.raises(ValidationError):
            store.create_memory(local_id, kind, fields)
        assert store.job_status_counts()[JOB_SCHEDULED] == 0
    finally:
        store.close()


def test_claim_is_exclusive_across_connections(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        memory_id, _ = store.create_memory("L1", "moment", {"text": "Lunch with Sam"})
    finally:
        store.close()

    barrier = threading.Barrier(8)
    results: list[bool] = []
    lock = threading.Lock()

    def _claim() -> None:
        local = _store(tmp_path)
        try:
            barrier.wait(5)
            claimed = local.claim_job(memory_id)
        finally:
            local.close()
        with lock:
            results.append(claimed is not None)

    threads = [threading.Thread(target=_claim) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    assert sorted(results) == [False] * 7 + [True]
    store = _store(tmp_path)
    try:
        job = store.get_job(memory_id)
    finally:
        store.close()
    assert job is not None
    assert job.state == JOB_PROCESSING
    assert job.started_at


def test_three_failures_reach_failed_and_stop_scheduling(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        memory_id, _ = store.create_memory("L1", "moment", {"text": "Lunch with Sam"})
        states = []
        for attempt in range(3):
            assert store.claim_job(memory_id) is not None
            states.append(store.record_failure(memory_id, f"upstream 503 #{attempt}"))
        job = store.get_job(memory_id)
        scheduled = store.scheduled_jobs()
    finally:
        store.close()

    assert states == [JOB_SCHEDULED, JOB_SCHEDULED, JOB_FAILED]
    assert job is not None
    assert job.state == JOB_FAILED
    assert job.attempts == 3
    assert job.last_error == "upstream 503 #2"
    assert job.last_error_at
    assert scheduled == []


def test_terminal_failure_skips_remaining_attempts(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        memory_id, _ = store.create_memory("L1", "moment", {"text": "Lunch with Sam"})
        store.claim_job(memory_id)
        state = store.record_failure(memory_id, "Input text is empty", terminal=True)
        job = store.get_job(memory_id)
    finally:
        store.close()

    assert state == JOB_FAILED
    assert job is not None
    assert job.attempts == 1


def test_failure_outside_processing_is_a_noop(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        memory_id, _ = store.create_memory("L1", "moment", {"text": "Lunch with Sam"})
        assert store.record_failure(memory_id, "late report") is None
        store.claim_job(memory_id)
        store.complete_job(memory_id)
        assert store.record_failure(memory_id, "late report") is None
        job = store.get_job(memory_id)
    finally:
        store.close()

    assert job is not None
    assert job.state == JOB_COMPLETE
    assert job.attempts == 0
    assert job.completed_at


def test_complete_is_terminal(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        memory_id, _ = store.create_memory("L1", "moment", {"text": "Lunch with Sam"})
        assert store.complete_job(memory_id) is None
        store.claim_job(memory_id)
        assert store.complete_job(memory_id) is not None
        assert store.claim_job(memory_id) is None
        with pytest.raises(InvalidTransition):
            store.reprocess(memory_id)
        with pytest.raises(InvalidTransition):
            store.requeue_failed(memory_id)
        job = store.get_job(memory_id)
    finally:
        store.close()

    assert job is not None
    assert job.state == JOB_COMPLETE


def test_reprocess_resets_attempts(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        memory_id, _ = store.create_memory("L1", "moment", {"text": "Lunch with Sam"})
        for _ in range(3):
            store.claim_job(memory_id)
            store.record_failure(memory_id, "boom")
        with pytest.raises(InvalidTransition):
            store.requeue_failed(memory_id)
        job = store.reprocess(memory_id)
    finally:
        store.close()

    assert job.state == JOB_SCHEDULED
    assert job.attempts == 0
    assert job.last_error is None


def test_requeue_failed_keeps_attempts_while_under_limit(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        memory_id, _ = store.create_memory("L1", "moment", {"text": "Lunch with Sam"})
        store.claim_job(memory_id)
        store.record_failure(memory_id, "bad input", terminal=True)
        job = store.requeue_failed(memory_id)
        with pytest.raises(KeyError):
            store.requeue_failed("missing")
    finally:
        store.close()

    assert job.state == JOB_SCHEDULED
    assert job.attempts == 1


def test_reclaim_stale_counts_an_attempt(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        memory_id, _ = store.create_memory("L1", "moment", {"text": "Lunch with Sam"})
        other_id, _ = store.create_memory("L2", "moment", {"text": "Dinner with Ana"})
        store.claim_job(memory_id)
        assert store.reclaim_stale(older_than_iso="2000-01-01T00:00:00+00:00") == []
        reclaimed = store.reclaim_stale(older_than_iso="9999-01-01T00:00:00+00:00")
        job = store.get_job(memory_id)
        other = store.get_job(other_id)
    finally:
        store.close()

    assert reclaimed == [memory_id]
    assert job is not None
    assert job.state == JOB_SCHEDULED
    assert job.attempts == 1
    assert "reclaimed" in (job.last_error or "")
    assert other is not None
    assert other.state == JOB_SCHEDULED


def test_scheduled_jobs_are_oldest_first_and_limited(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        ids = [store.create_memory(f"L{i}", "moment", {"text": f"Memory {i}"})[0] for i in range(5)]
        jobs = store.scheduled_jobs(limit=3)
    finally:
        store.close()

    assert [job.memory_id for job in jobs] == ids[:3]


@pytest.mark.parametrize(
    ("from_state", "to_state", "attempts", "allowed"),
    [
        (JOB_SCHEDULED, JOB_PROCESSING, 0, True),
        (JOB_SCHEDULED, JOB_COMPLETE, 0, False),
        (JOB_PROCESSING, JOB_COMPLETE, 0, True),
        (JOB_PROCESSING, JOB_FAILED, 2, True),
        (JOB_PROCESSING, JOB_SCHEDULED, 2, True),
        (JOB_PROCESSING, JOB_SCHEDULED, 3, False),
        (JOB_FAILED, JOB_SCHEDULED, 1, True),
        (JOB_FAILED, JOB_SCHEDULED, 3, False),
        (JOB_COMPLETE, JOB_SCHEDULED, 0, False),
        (JOB_COMPLETE, JOB_PROCESSING, 0, False),
        (JOB_COMPLETE, JOB_FAILED, 0, False),
    ],
)
def test_can_transition(from_state: str, to_state: str, attempts: int, allowed: bool) -> None:
    assert can_transition(from_state, to_state, attempts=attempts) is allowed


def test_user_text_edit_does_not_reschedule(tmp_path: Path) -> None:
    store = _store(tmp_path)
    try:
        memory_id, _ = store.create_memory("L1", "moment", {"text": "Lunch with Sam"})
        store.claim_job(memory_id)
        store.complete_job(memory_id)
        assert store.update_memory_text(memory_id, "Lunch with Sam and Ana") is True
        assert store.update_memory_text("missing", "text") is False
        with pytest.raises(ValidationError):
            store.update_memory_text(memory_id, "  ")
        memory = store.get_memory(memory_id)
        job = store.get_job(memory_id)
    finally:
        store.close()

    assert memory is not None
    assert memory["input_text"] == "Lunch with Sam and Ana"
    assert job is not None
    assert job.state == JOB_COMPLETE


@pytest.mark.parametrize(
    ("kind", "phase"),
    [
        ("story", "narrative_generation"),
        ("moment", "text_processing"),
        ("Memento", "text_processing"),
    ],
)
def test_metadata_phase_by_kind(kind: str, phase: str) -> None:
    assert ledger.metadata_for_kind(kind).phase == phase


def test_unknown_metadata_kind_is_ignored() -> None:
    assert ledger.parse_job_metadata({"kind": "diary"}) is None
    parsed = ledger.parse_job_metadata({"kind": "memento", "auto_completed": True})
    assert parsed is not None
    assert parsed.phase == "text_processing"
    assert parsed.auto_completed is True
