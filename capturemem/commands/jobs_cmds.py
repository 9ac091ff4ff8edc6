from __future__ import annotations

import json

import typer
from rich import print
from rich.table import Table

from capturemem.config import CaptureMemConfig
from capturemem.errors import InvalidTransition
from capturemem.server.daemon import dispatch_tick
from capturemem.server.store import ServerStore
from capturemem.utils import iso_before


def jobs_dispatch_cmd(config: CaptureMemConfig) -> None:
    """Run one dispatcher pass against the server database."""

    result = dispatch_tick(config)
    if result is None:
        print("[red]Dispatch failed; see `capturemem jobs status`[/red]")
        raise typer.Exit(code=1)
    summary = result.as_dict()
    errors = summary.pop("errors")
    print(" ".join(f"{key}={value}" for key, value in summary.items()))
    for memory_id, error in errors.items():
        print(f"- {memory_id}: {error}")


def jobs_status_cmd(store: ServerStore, *, state: str | None, limit: int) -> None:
    counts = store.job_status_counts()
    print(" ".join(f"{key}={value}" for key, value in counts.items()))
    dispatcher = store.dispatcher_state()
    if dispatcher.get("last_ok_at"):
        print(f"Dispatcher last ok: {dispatcher['last_ok_at']}")
    if dispatcher.get("last_error"):
        print(
            f"[red]Dispatcher last error ({dispatcher['last_error_at']}): "
            f"{dispatcher['last_error']}[/red]"
        )
    jobs = store.list_jobs(state=state, limit=limit)
    if not jobs:
        return
    table = Table("memory id", "kind", "state", "attempts", "updated", "last error")
    for job in jobs:
        table.add_row(
            job.memory_id,
            job.kind or "",
            job.state,
            str(job.attempts),
            job.last_updated_at,
            (job.last_error or "")[:60],
        )
    print(table)


def jobs_show_cmd(store: ServerStore, *, memory_id: str) -> None:
    memory = store.get_memory(memory_id)
    job = store.get_job(memory_id)
    if memory is None and job is None:
        print(f"[yellow]No memory {memory_id}[/yellow]")
        raise typer.Exit(code=1)
    payload = {
        "memory": memory,
        "attachments": store.list_attachments(memory_id),
        "processing": job.as_dict() if job is not None else None,
    }
    typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def jobs_retry_cmd(store: ServerStore, *, memory_id: str) -> None:
    """Manual retry: reset attempts and schedule the job again."""

    try:
        job = store.reprocess(memory_id)
    except KeyError as exc:
        print(f"[yellow]No job for {memory_id}[/yellow]")
        raise typer.Exit(code=1) from exc
    except InvalidTransition as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    print(f"Scheduled {job.memory_id} (attempts reset)")


def jobs_requeue_cmd(store: ServerStore, *, memory_id: str, max_attempts: int) -> None:
    """Schedule a failed job again without resetting its attempt count."""

    try:
        job = store.requeue_failed(memory_id, max_attempts=max_attempts)
    except KeyError as exc:
        print(f"[yellow]No job for {memory_id}[/yellow]")
        raise typer.Exit(code=1) from exc
    except InvalidTransition as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    print(f"Scheduled {job.memory_id} (attempts={job.attempts})")


def jobs_reclaim_cmd(store: ServerStore, *, older_than_s: int, max_attempts: int) -> None:
    """Fail over `processing` jobs that have not moved for `older_than_s` seconds."""

    reclaimed = store.reclaim_stale(
        older_than_iso=iso_before(older_than_s), max_attempts=max_attempts
    )
    print(f"Reclaimed {len(reclaimed)} stale job(s)")
    for memory_id in reclaimed:
        print(f"- {memory_id}")
