from __future__ import annotations

import logging

import typer
from rich import print
from rich.logging import RichHandler

from . import __version__
from .commands.jobs_cmds import (
    jobs_dispatch_cmd,
    jobs_reclaim_cmd,
    jobs_requeue_cmd,
    jobs_retry_cmd,
    jobs_show_cmd,
    jobs_status_cmd,
)
from .commands.queue_cmds import (
    queue_add_cmd,
    queue_discard_cmd,
    queue_list_cmd,
    queue_retry_cmd,
    queue_status_cmd,
)
from .commands.sync_cmds import sync_now_cmd, sync_run_cmd
from .config import CaptureMemConfig, load_config
from .memory_kinds import ALLOWED_MEMORY_KINDS
from .queue import DurableQueue
from .server.daemon import run_server
from .server.store import ServerStore

app = typer.Typer(help="capturemem: offline-first memory capture, sync and enrichment")
queue_app = typer.Typer(help="Local capture queue")
sync_app = typer.Typer(help="Upload queued memories to the server")
server_app = typer.Typer(help="Memory server")
jobs_app = typer.Typer(help="Server-side processing jobs")
app.add_typer(queue_app, name="queue")
app.add_typer(sync_app, name="sync")
app.add_typer(server_app, name="server")
app.add_typer(jobs_app, name="jobs")


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


@app.callback()
def _root(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    configure_logging(verbose)


def _config() -> CaptureMemConfig:
    return load_config()


def _queue(db_path: str | None) -> DurableQueue:
    return DurableQueue(db_path or _config().queue_db_path)


def _server_store(db_path: str | None) -> ServerStore:
    config = _config()
    return ServerStore(db_path or config.server_db_path, blob_dir=config.blob_dir)


@queue_app.command("add")
def queue_add(
    text: str = typer.Argument(..., help="Memory text"),
    kind: str = typer.Option(
        "moment", "--kind", "-k", help=f"One of: {', '.join(ALLOWED_MEMORY_KINDS)}"
    ),
    audio: str = typer.Option(None, help="Path to the dictated audio (required for stories)"),
    media: list[str] = typer.Option(None, "--media", "-m", help="Photo/video path (repeatable)"),
    tag: list[str] = typer.Option(None, "--tag", "-t", help="Tag (repeatable)"),
    locale: str = typer.Option(None, help="Locale of the capture, e.g. en-US"),
    db_path: str = typer.Option(None, help="Path to the queue database"),
) -> None:
    """Capture a memory into the local queue."""

    queue = _queue(db_path)
    try:
        queue_add_cmd(
            queue,
            kind=kind,
            text=text,
            audio=audio,
            media=media or [],
            tags=tag or [],
            locale=locale,
        )
    finally:
        queue.close()


@queue_app.command("list")
def queue_list(
    status: str = typer.Option(None, help="Only show this sync status"),
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
    db_path: str = typer.Option(None, help="Path to the queue database"),
) -> None:
    """List queued memories in submission order."""

    queue = _queue(db_path)
    try:
        queue_list_cmd(queue, status=status, as_json=json_output)
    finally:
        queue.close()


@queue_app.command("status")
def queue_status(db_path: str = typer.Option(None, help="Path to the queue database")) -> None:
    """Show queue counts by sync status."""

    queue = _queue(db_path)
    try:
        queue_status_cmd(queue)
    finally:
        queue.close()


@queue_app.command("retry")
def queue_retry(
    local_id: str = typer.Argument(..., help="Local id of a failed memory"),
    db_path: str = typer.Option(None, help="Path to the queue database"),
) -> None:
    """Put a failed memory back in the queue with its retry count reset."""

    queue = _queue(db_path)
    try:
        queue_retry_cmd(queue, local_id=local_id)
    finally:
        queue.close()


@queue_app.command("discard")
def queue_discard(
    local_id: str = typer.Argument(..., help="Local id of the memory to drop"),
    db_path: str = typer.Option(None, help="Path to the queue database"),
) -> None:
    """Delete a queued memory without syncing it."""

    queue = _queue(db_path)
    try:
        queue_discard_cmd(queue, local_id=local_id)
    finally:
        queue.close()


@sync_app.command("now")
def sync_now(db_path: str = typer.Option(None, help="Path to the queue database")) -> None:
    """Drain the queue once, ignoring backoff windows."""

    queue = _queue(db_path)
    try:
        sync_now_cmd(_config(), queue)
    finally:
        queue.close()


@sync_app.command("run")
def sync_run(db_path: str = typer.Option(None, help="Path to the queue database")) -> None:
    """Keep draining the queue whenever the server is reachable."""

    queue = _queue(db_path)
    try:
        sync_run_cmd(_config(), queue)
    finally:
        queue.close()


@server_app.command("serve")
def server_serve(
    host: str = typer.Option(None, help="Bind host"),
    port: int = typer.Option(None, help="Bind port"),
    dispatch_interval: float = typer.Option(
        None, help="Seconds between dispatcher passes (0 disables the loop)"
    ),
) -> None:
    """Serve the memory API and run the dispatcher loop."""

    config = _config()
    print(
        f"Serving on {host or config.server_host}:{config.server_port if port is None else port}"
    )
    try:
        run_server(config, host=host, port=port, dispatch_interval_s=dispatch_interval)
    except KeyboardInterrupt:
        print("Stopped")


@jobs_app.command("dispatch")
def jobs_dispatch() -> None:
    """Run one dispatcher pass."""

    jobs_dispatch_cmd(_config())


@jobs_app.command("status")
def jobs_status(
    state: str = typer.Option(None, help="Only list jobs in this state"),
    limit: int = typer.Option(20, help="Number of jobs to list"),
    db_path: str = typer.Option(None, help="Path to the server database"),
) -> None:
    """Show job counts, dispatcher health and recent jobs."""

    store = _server_store(db_path)
    try:
        jobs_status_cmd(store, state=state, limit=limit)
    finally:
        store.close()


@jobs_app.command("show")
def jobs_show(
    memory_id: str = typer.Argument(..., help="Server memory id"),
    db_path: str = typer.Option(None, help="Path to the server database"),
) -> None:
    """Print a memory with its attachments and processing job."""

    store = _server_store(db_path)
    try:
        jobs_show_cmd(store, memory_id=memory_id)
    finally:
        store.close()


@jobs_app.command("retry")
def jobs_retry(
    memory_id: str = typer.Argument(..., help="Server memory id"),
    db_path: str = typer.Option(None, help="Path to the server database"),
) -> None:
    """Retry processing a failed memory from scratch."""

    store = _server_store(db_path)
    try:
        jobs_retry_cmd(store, memory_id=memory_id)
    finally:
        store.close()


@jobs_app.command("requeue")
def jobs_requeue(
    memory_id: str = typer.Argument(..., help="Server memory id"),
    db_path: str = typer.Option(None, help="Path to the server database"),
) -> None:
    """Schedule a failed job again while it has attempts left."""

    store = _server_store(db_path)
    try:
        jobs_requeue_cmd(store, memory_id=memory_id, max_attempts=_config().dispatch_max_attempts)
    finally:
        store.close()


@jobs_app.command("reclaim")
def jobs_reclaim(
    older_than: int = typer.Option(900, help="Seconds a job may sit in processing"),
    db_path: str = typer.Option(None, help="Path to the server database"),
) -> None:
    """Reclaim jobs stuck in processing."""

    store = _server_store(db_path)
    try:
        jobs_reclaim_cmd(
            store, older_than_s=older_than, max_attempts=_config().dispatch_max_attempts
        )
    finally:
        store.close()


@app.command("version")
def version() -> None:
    """Print version."""

    print(__version__)


def main() -> None:
    app()
