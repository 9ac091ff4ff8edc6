from __future__ import annotations

import threading

import typer
from rich import print

from capturemem.config import CaptureMemConfig
from capturemem.queue import DurableQueue
from capturemem.sync import (
    DrainResult,
    HttpRemoteMemoryClient,
    PeriodicConnectivityCheck,
    SyncCompleteEvent,
    SyncEngine,
    tcp_probe,
)


def build_engine(
    config: CaptureMemConfig,
    queue: DurableQueue,
    *,
    connectivity: PeriodicConnectivityCheck | None = None,
) -> SyncEngine:
    remote = HttpRemoteMemoryClient(config.server_url, timeout_s=config.request_timeout_s)
    return SyncEngine(
        queue,
        remote,
        connectivity,
        max_attempts=config.sync_max_attempts,
        backoff_base_s=config.sync_backoff_base_s,
        backoff_cap_s=config.sync_backoff_cap_s,
        concurrency=config.sync_concurrency,
        lease_ttl_s=config.sync_lease_ttl_s,
    )


def print_drain_result(result: DrainResult) -> None:
    if result.skipped:
        print(f"[yellow]Sync skipped: {result.reason}[/yellow]")
        return
    print(
        f"completed={len(result.completed)} requeued={len(result.requeued)} "
        f"failed={len(result.failed)} deferred={len(result.deferred)}"
    )
    for outcome in result.outcomes:
        if outcome.error and outcome.outcome != "deferred":
            print(f"- {outcome.local_id} {outcome.outcome} ({outcome.stage}): {outcome.error}")


def sync_now_cmd(config: CaptureMemConfig, queue: DurableQueue) -> None:
    """Drain the queue once, ignoring backoff windows."""

    probe = tcp_probe(config.server_url, timeout_s=min(config.request_timeout_s, 5.0))
    if not probe():
        print(f"[yellow]Server unreachable: {config.server_url}[/yellow]")
        raise typer.Exit(code=1)
    result = build_engine(config, queue).sync_now()
    print_drain_result(result)
    if result.failed:
        raise typer.Exit(code=1)


def sync_run_cmd(
    config: CaptureMemConfig,
    queue: DurableQueue,
    *,
    stop_event: threading.Event | None = None,
) -> None:
    """Drain whenever the server becomes reachable, and on every check while online."""

    connectivity = PeriodicConnectivityCheck(
        tcp_probe(config.server_url), interval_s=config.sync_check_interval_s
    )
    engine = build_engine(config, queue, connectivity=connectivity)

    def _on_complete(event: SyncCompleteEvent) -> None:
        print(f"Synced {event.memory_kind} {event.local_id} -> {event.server_memory_id}")

    engine.add_listener(_on_complete)
    engine.start()
    connectivity.start()
    stop = stop_event or threading.Event()
    print(f"Syncing to {config.server_url} (Ctrl-C to stop)")
    try:
        while not stop.wait(config.sync_check_interval_s):
            if connectivity.is_online():
                engine.drain_once()
    except KeyboardInterrupt:
        pass
    finally:
        engine.stop()
        connectivity.stop()
