import json
from pathlib import Path

from typer.testing import CliRunner

from capturemem import __version__
from capturemem.cli import app
from capturemem.server.store import ServerStore

runner = CliRunner()


def test_root_help_lists_command_groups() -> None:
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for group in ("queue", "sync", "server", "jobs"):
        assert group in result.stdout


def test_jobs_help_lists_ledger_commands() -> None:
    result = runner.invoke(app, ["jobs", "--help"])
    assert result.exit_code == 0
    for command in ("dispatch", "status", "retry", "requeue", "reclaim"):
        assert command in result.stdout


def test_version() -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_queue_add_list_and_status(tmp_path: Path) -> None:
    db_path = str(tmp_path / "queue.sqlite")
    added = runner.invoke(
        app,
        ["queue", "add", "Lunch with Sam", "--tag", "food", "--db-path", db_path],
    )
    listed = runner.invoke(app, ["queue", "list", "--json", "--db-path", db_path])
    status = runner.invoke(app, ["queue", "status", "--db-path", db_path])

    assert added.exit_code == 0
    assert "Queued moment" in added.stdout
    assert listed.exit_code == 0
    records = json.loads(listed.stdout)
    assert [(r["memory_kind"], r["text_content"], r["tags"]) for r in records] == [
        ("moment", "Lunch with Sam", ["food"])
    ]
    assert status.exit_code == 0
    assert "queued=1" in status.stdout


def test_story_without_audio_is_rejected(tmp_path: Path) -> None:
    db_path = str(tmp_path / "queue.sqlite")
    result = runner.invoke(
        app, ["queue", "add", "We moved flats", "--kind", "story", "--db-path", db_path]
    )
    listed = runner.invoke(app, ["queue", "list", "--json", "--db-path", db_path])

    assert result.exit_code == 1
    assert json.loads(listed.stdout) == []


def test_queue_retry_and_discard_unknown_ids(tmp_path: Path) -> None:
    db_path = str(tmp_path / "queue.sqlite")
    assert runner.invoke(app, ["queue", "retry", "nope", "--db-path", db_path]).exit_code == 1
    assert runner.invoke(app, ["queue", "discard", "nope", "--db-path", db_path]).exit_code == 1


def test_jobs_status_and_retry(tmp_path: Path) -> None:
    db_path = tmp_path / "server.sqlite"
    store = ServerStore(db_path, blob_dir=tmp_path / "blobs")
    try:
        memory_id, _ = store.create_memory("L1", "moment", {"text": "Lunch with Sam"})
        store.claim_job(memory_id)
        store.record_failure(memory_id, "bad input", terminal=True)
    finally:
        store.close()

    status = runner.invoke(app, ["jobs", "status", "--db-path", str(db_path)])
    shown = runner.invoke(app, ["jobs", "show", memory_id, "--db-path", str(db_path)])
    retried = runner.invoke(app, ["jobs", "retry", memory_id, "--db-path", str(db_path)])
    again = runner.invoke(app, ["jobs", "retry", memory_id, "--db-path", str(db_path)])

    assert status.exit_code == 0
    assert "failed=1" in status.stdout
    assert shown.exit_code == 0
    assert json.loads(shown.stdout)["processing"]["state"] == "failed"
    assert retried.exit_code == 0
    assert "attempts reset" in retried.stdout
    assert again.exit_code == 1
