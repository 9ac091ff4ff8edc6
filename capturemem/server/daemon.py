from __future__ import annotations

import contextlib
import logging
import socket
import threading
import traceback
from http.server import ThreadingHTTPServer

from ..config import CaptureMemConfig
from .api import build_api_handler
from .dispatcher import Dispatcher, DispatchResult
from .generation import TextGenerator, build_generator
from .invoker import build_invoker
from .store import ServerStore

logger = logging.getLogger(__name__)


def build_server(
    config: CaptureMemConfig,
    host: str,
    port: int,
    *,
    generator: TextGenerator | None = None,
) -> ThreadingHTTPServer:
    handler = build_api_handler(config, generator=generator)

    class Server(ThreadingHTTPServer):
        address_family = socket.AF_INET6 if ":" in host else socket.AF_INET
        daemon_threads = True

        def server_bind(self) -> None:
            if self.address_family == socket.AF_INET6:
                with contextlib.suppress(OSError):
                    self.socket.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            super().server_bind()

    return Server((host, port), handler)


def dispatch_tick(
    config: CaptureMemConfig, *, generator: TextGenerator | None = None
) -> DispatchResult | None:
    """One dispatcher pass. Errors are recorded on the store, never raised."""
    store = ServerStore(config.server_db_path, blob_dir=config.blob_dir)
    try:
        try:
            dispatcher = Dispatcher(
                store,
                build_invoker(config, store, generator),
                batch_size=config.dispatch_batch_size,
                max_attempts=config.dispatch_max_attempts,
                stale_after_s=config.dispatch_stale_after_s,
            )
            result = dispatcher.run_once()
            store.set_dispatcher_ok()
            return result
        except Exception as exc:
            logger.exception("dispatch_tick_failed")
            store.set_dispatcher_error(str(exc), traceback.format_exc())
            return None
    finally:
        store.close()


def run_server(
    config: CaptureMemConfig,
    *,
    host: str | None = None,
    port: int | None = None,
    dispatch_interval_s: float | None = None,
    generator: TextGenerator | None = None,
    stop_event: threading.Event | None = None,
) -> None:
    """Serve the HTTP API and run the dispatcher every `dispatch_interval_s` seconds.

    A non-positive interval serves the API only; passes are then triggered
    through `POST /v1/dispatch`.
    """
    bind_host = host or config.server_host
    bind_port = config.server_port if port is None else port
    interval = config.dispatch_interval_s if dispatch_interval_s is None else dispatch_interval_s
    if generator is None and not config.worker_url:
        generator = build_generator(config)
    server = build_server(config, bind_host, bind_port, generator=generator)
    thread = threading.Thread(target=server.serve_forever, name="capturemem-http", daemon=True)
    thread.start()
    logger.info(
        "server_started host=%s port=%s dispatch_interval_s=%s", bind_host, bind_port, interval
    )
    stop = stop_event or threading.Event()
    try:
        if interval > 0:
            while not stop.wait(interval):
                dispatch_tick(config, generator=generator)
        else:
            stop.wait()
    finally:
        server.shutdown()
        server.server_close()
        logger.info("server_stopped")
