from __future__ import annotations

import http.client
import logging
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import quote

from ..config import CaptureMemConfig
from ..sync import http_client
from .generation import TextGenerator, build_generator
from .store import ServerStore
from .workers import ProcessingWorker, build_workers

logger = logging.getLogger(__name__)

INTERNAL_TRIGGER_HEADER = "X-Internal-Trigger"


@dataclass
class WorkerInvocation:
    ok: bool
    status: int | None = None
    error: str | None = None
    terminal: bool = False


class WorkerInvoker(Protocol):
    def invoke(self, kind: str, memory_id: str) -> WorkerInvocation: ...


def trusted_headers(service_key: str | None) -> dict[str, str]:
    headers = {INTERNAL_TRIGGER_HEADER: "true"}
    if service_key:
        headers["Authorization"] = f"Bearer {service_key}"
    return headers


class LocalWorkerInvoker:
    """Calls the per-kind worker in this process."""

    def __init__(self, workers: dict[str, ProcessingWorker]) -> None:
        self.workers = workers

    def invoke(self, kind: str, memory_id: str) -> WorkerInvocation:
        worker = self.workers.get(kind)
        if worker is None:
            return WorkerInvocation(ok=False, error=f"No worker for kind {kind}", terminal=True)
        outcome = worker.process(memory_id, trusted=True)
        return WorkerInvocation(
            ok=outcome.ok,
            status=200 if outcome.ok else None,
            error=outcome.error,
            terminal=outcome.terminal,
        )


class HttpWorkerInvoker:
    """Calls `POST /v1/process/{kind}` on a worker endpoint as a trusted caller."""

    def __init__(
        self, base_url: str, *, service_key: str | None = None, timeout_s: float = 120.0
    ) -> None:
        self.base_url = http_client.build_base_url(base_url)
        if not self.base_url:
            raise ValueError("base_url is required")
        self.service_key = service_key
        self.timeout_s = timeout_s

    def invoke(self, kind: str, memory_id: str) -> WorkerInvocation:
        url = f"{self.base_url}/v1/process/{quote(kind, safe='')}"
        try:
            status, payload = http_client.request_json(
                "POST",
                url,
                headers=trusted_headers(self.service_key),
                body={"memoryId": memory_id},
                timeout_s=self.timeout_s,
            )
        except (OSError, http.client.HTTPException) as exc:
            detail = str(exc).strip() or exc.__class__.__name__
            logger.warning(
                "worker_invoke_failed kind=%s memory_id=%s error=%s", kind, memory_id, detail
            )
            return WorkerInvocation(ok=False, error=f"Worker request failed: {detail}")
        if 200 <= status < 300 and payload is not None and payload.get("ok", True):
            return WorkerInvocation(ok=True, status=status)
        detail = http_client.error_detail(payload) or (payload or {}).get("message")
        error = f"Worker returned {status}" + (f": {detail}" if detail else "")
        return WorkerInvocation(
            ok=False,
            status=status,
            error=error,
            terminal=bool((payload or {}).get("terminal", False)),
        )


def build_invoker(
    config: CaptureMemConfig, store: ServerStore, generator: TextGenerator | None = None
) -> WorkerInvoker:
    """Remote workers when `worker_url` is configured, in-process workers otherwise."""
    if config.worker_url:
        return HttpWorkerInvoker(
            config.worker_url,
            service_key=config.service_key,
            timeout_s=max(config.request_timeout_s, 60.0),
        )
    return LocalWorkerInvoker(
        build_workers(
            store, generator or build_generator(config), max_attempts=config.dispatch_max_attempts
        )
    )
