from __future__ import annotations

import json

import typer
from rich import print
from rich.table import Table

from capturemem.errors import ValidationError
from capturemem.queue import DurableQueue, QueuedMemory, generate_local_id


def queue_add_cmd(
    queue: DurableQueue,
    *,
    kind: str,
    text: str,
    audio: str | None,
    media: list[str],
    tags: list[str],
    locale: str | None,
) -> None:
    """Capture a memory into the local queue."""

    record = QueuedMemory(
        local_id=generate_local_id(),
        memory_kind=kind,
        text_content=text,
        audio_part_path=audio,
        media_part_paths=list(media),
        tags=[tag.strip() for tag in tags if tag.strip()],
        locale=locale,
    )
    try:
        queue.enqueue(record)
    except ValidationError as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    print(f"Queued {record.memory_kind} {record.local_id}")


def queue_list_cmd(queue: DurableQueue, *, status: str | None, as_json: bool) -> None:
    """List queued memories in submission order."""

    records = queue.list_all(status=status)
    if as_json:
        typer.echo(json.dumps([record.to_payload() for record in records], ensure_ascii=False))
        return
    if not records:
        print("Queue is empty")
        return
    table = Table("local id", "kind", "status", "retries", "server id", "last error")
    for record in records:
        table.add_row(
            record.local_id,
            record.memory_kind,
            record.sync_status,
            str(record.retry_count),
            record.server_memory_id or "",
            (record.last_error or "")[:60],
        )
    print(table)


def queue_status_cmd(queue: DurableQueue) -> None:
    """Show per-status counts."""

    counts = queue.status_counts()
    print(" ".join(f"{status}={count}" for status, count in counts.items()))


def queue_retry_cmd(queue: DurableQueue, *, local_id: str) -> None:
    """Put a failed memory back in line."""

    record = queue.retry(local_id)
    if record is None:
        print(f"[yellow]No failed memory {local_id}[/yellow]")
        raise typer.Exit(code=1)
    print(f"Requeued {local_id}")


def queue_discard_cmd(queue: DurableQueue, *, local_id: str) -> None:
    if not queue.discard(local_id):
        print(f"[yellow]No memory {local_id}[/yellow]")
        raise typer.Exit(code=1)
    print(f"Discarded {local_id}")
