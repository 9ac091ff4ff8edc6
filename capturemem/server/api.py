from __future__ import annotations

import hmac
import json
import logging
import re
import traceback
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler
from typing import Any
from urllib.parse import unquote, urlparse

from ..config import CaptureMemConfig
from ..errors import InvalidTransition, ValidationError
from .dispatcher import Dispatcher
from .generation import TextGenerator, build_generator
from .invoker import INTERNAL_TRIGGER_HEADER, build_invoker
from .store import PART_AUDIO, PART_MEDIA, ServerStore
from .workers import WORKER_TYPES

logger = logging.getLogger(__name__)

MAX_JSON_BODY_BYTES = 1024 * 1024

_MEMORY_RE = re.compile(r"^/v1/memories/(?P<memory_id>[^/]+)$")
_PROCESSING_RE = re.compile(r"^/v1/memories/(?P<memory_id>[^/]+)/processing$")
_REPROCESS_RE = re.compile(r"^/v1/memories/(?P<memory_id>[^/]+)/reprocess$")
_AUDIO_RE = re.compile(r"^/v1/memories/(?P<memory_id>[^/]+)/audio$")
_MEDIA_RE = re.compile(r"^/v1/memories/(?P<memory_id>[^/]+)/media/(?P<position>\d+)$")
_PROCESS_RE = re.compile(r"^/v1/process/(?P<kind>[^/]+)$")


class PayloadTooLarge(ValueError):
    pass


class InvalidContentLength(ValueError):
    pass


def _read_body(handler: BaseHTTPRequestHandler, limit: int) -> bytes:
    raw_length = handler.headers.get("Content-Length", "0") or "0"
    try:
        length = int(raw_length)
    except ValueError as exc:
        raise InvalidContentLength("invalid_content_length") from exc
    if length <= 0:
        return b""
    if length > limit:
        raise PayloadTooLarge("payload_too_large")
    return handler.rfile.read(length)


def _parse_json_body(raw: bytes) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        data = json.loads(raw.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _send_json(handler: BaseHTTPRequestHandler, payload: dict[str, Any], status: int = 200) -> None:
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json; charset=utf-8")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def _send_error(
    handler: BaseHTTPRequestHandler, status: int, error: str, message: str | None = None
) -> None:
    payload: dict[str, Any] = {"error": error}
    if message:
        payload["message"] = message
    _send_json(handler, payload, status=status)


def authorize_internal(headers: Any, service_key: str | None) -> tuple[int, str] | None:
    """Check a trusted internal call. Returns (status, error) when rejected."""
    if str(headers.get(INTERNAL_TRIGGER_HEADER) or "").lower() != "true":
        return 403, "internal_trigger_required"
    if not service_key:
        return 403, "service_key_not_configured"
    auth = str(headers.get("Authorization") or "")
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return 401, "unauthorized"
    if not hmac.compare_digest(token.strip().encode("utf-8"), service_key.encode("utf-8")):
        return 401, "unauthorized"
    return None


def build_api_handler(
    config: CaptureMemConfig,
    *,
    generator: TextGenerator | None = None,
    store_factory: Callable[[], ServerStore] | None = None,
):
    def _default_store() -> ServerStore:
        return ServerStore(config.server_db_path, blob_dir=config.blob_dir)

    make_store = store_factory or _default_store
    resolved_generator: list[TextGenerator] = [generator] if generator is not None else []

    def _generator() -> TextGenerator:
        if not resolved_generator:
            resolved_generator.append(build_generator(config))
        return resolved_generator[0]

    class CaptureMemHandler(BaseHTTPRequestHandler):
        def log_message(self, format: str, *args: object) -> None:  # noqa: A003
            logger.debug("http %s", format % args)

        def _reject_untrusted(self) -> bool:
            rejected = authorize_internal(self.headers, config.service_key)
            if rejected is None:
                return False
            status, error = rejected
            _send_error(self, status, error)
            return True

        def do_GET(self) -> None:  # noqa: N802
            path = urlparse(self.path).path
            if path == "/v1/status":
                store = make_store()
                try:
                    _send_json(
                        self,
                        {
                            "jobs": store.job_status_counts(),
                            "dispatcher": store.dispatcher_state(),
                        },
                    )
                finally:
                    store.close()
                return

            match = _PROCESSING_RE.match(path)
            if match:
                memory_id = unquote(match["memory_id"])
                store = make_store()
                try:
                    job = store.get_job(memory_id)
                    if job is None:
                        _send_error(self, 404, "not_found", f"no job for {memory_id}")
                        return
                    _send_json(self, job.as_dict())
                finally:
                    store.close()
                return

            match = _MEMORY_RE.match(path)
            if match:
                memory_id = unquote(match["memory_id"])
                store = make_store()
                try:
                    memory = store.get_memory(memory_id)
                    if memory is None:
                        _send_error(self, 404, "not_found", f"no memory {memory_id}")
                        return
                    memory["attachments"] = store.list_attachments(memory_id)
                    job = store.get_job(memory_id)
                    memory["processing"] = job.as_dict() if job is not None else None
                    _send_json(self, memory)
                finally:
                    store.close()
                return

            _send_error(self, 404, "not_found")

        def do_PUT(self) -> None:  # noqa: N802
            path = urlparse(self.path).path
            audio = _AUDIO_RE.match(path)
            media = _MEDIA_RE.match(path)
            if not audio and not media:
                _send_error(self, 404, "not_found")
                return
            try:
                raw = _read_body(self, config.max_part_bytes)
            except PayloadTooLarge:
                _send_error(self, 413, "payload_too_large")
                return
            except InvalidContentLength:
                _send_error(self, 400, "invalid_content_length")
                return
            if audio:
                memory_id, part, position = unquote(audio["memory_id"]), PART_AUDIO, 0
            else:
                assert media is not None
                memory_id, part, position = (
                    unquote(media["memory_id"]),
                    PART_MEDIA,
                    int(media["position"]),
                )
            content_type = self.headers.get("Content-Type")
            store = make_store()
            try:
                result = store.attach_part(memory_id, part, position, raw, content_type)
            except KeyError:
                _send_error(self, 404, "not_found", f"no memory {memory_id}")
            except ValidationError as exc:
                _send_error(self, 400, "invalid_part", str(exc))
            except Exception:
                logger.exception("attach_part_failed memory_id=%s part=%s", memory_id, part)
                _send_error(self, 500, "internal_error")
            else:
                _send_json(self, {"ack": True, **result})
            finally:
                store.close()

        def do_POST(self) -> None:  # noqa: N802
            path = urlparse(self.path).path
            try:
                raw = _read_body(self, MAX_JSON_BODY_BYTES)
            except PayloadTooLarge:
                _send_error(self, 413, "payload_too_large")
                return
            except InvalidContentLength:
                _send_error(self, 400, "invalid_content_length")
                return

            if path == "/v1/memories":
                self._create_memory(raw)
                return
            match = _REPROCESS_RE.match(path)
            if match:
                self._reprocess(unquote(match["memory_id"]))
                return
            match = _PROCESS_RE.match(path)
            if match:
                self._process(unquote(match["kind"]), raw)
                return
            if path == "/v1/dispatch":
                self._dispatch()
                return
            _send_error(self, 404, "not_found")

        def _create_memory(self, raw: bytes) -> None:
            data = _parse_json_body(raw)
            if data is None:
                _send_error(self, 400, "invalid_json")
                return
            store = make_store()
            try:
                memory_id, created = store.create_memory(
                    str(data.get("localId") or ""), str(data.get("kind") or ""), data
                )
            except ValidationError as exc:
                _send_error(self, 400, "invalid_memory", str(exc))
            except Exception:
                logger.exception("create_memory_failed")
                _send_error(self, 500, "internal_error")
            else:
                _send_json(
                    self,
                    {"memoryId": memory_id, "created": created},
                    status=201 if created else 200,
                )
            finally:
                store.close()

        def _reprocess(self, memory_id: str) -> None:
            store = make_store()
            try:
                job = store.reprocess(memory_id)
            except KeyError:
                _send_error(self, 404, "not_found", f"no job for {memory_id}")
            except InvalidTransition as exc:
                _send_error(self, 409, "invalid_transition", str(exc))
            else:
                _send_json(self, job.as_dict())
            finally:
                store.close()

        def _process(self, kind: str, raw: bytes) -> None:
            if self._reject_untrusted():
                return
            if kind not in WORKER_TYPES:
                _send_error(self, 404, "unknown_kind", kind)
                return
            data = _parse_json_body(raw)
            memory_id = str((data or {}).get("memoryId") or "").strip()
            if not memory_id:
                _send_error(self, 400, "memory_id_required")
                return
            store = make_store()
            try:
                worker = WORKER_TYPES[kind](
                    store, _generator(), max_attempts=config.dispatch_max_attempts
                )
                outcome = worker.process(memory_id, trusted=True)
            except Exception as exc:
                logger.exception("process_failed kind=%s memory_id=%s", kind, memory_id)
                _send_error(self, 500, "internal_error", str(exc))
                return
            finally:
                store.close()
            payload = {
                "ok": outcome.ok,
                "memoryId": memory_id,
                "state": outcome.state,
                "terminal": outcome.terminal,
            }
            if outcome.ok:
                payload["title"] = outcome.title
                _send_json(self, payload)
                return
            payload["error"] = "processing_failed"
            payload["message"] = outcome.error
            _send_json(self, payload, status=404 if outcome.error == "Memory not found" else 422)

        def _dispatch(self) -> None:
            if self._reject_untrusted():
                return
            store = make_store()
            try:
                dispatcher = Dispatcher(
                    store,
                    build_invoker(config, store, None if config.worker_url else _generator()),
                    batch_size=config.dispatch_batch_size,
                    max_attempts=config.dispatch_max_attempts,
                    stale_after_s=config.dispatch_stale_after_s,
                )
                result = dispatcher.run_once()
                store.set_dispatcher_ok()
            except Exception as exc:
                logger.exception("dispatch_failed")
                store.set_dispatcher_error(str(exc), traceback.format_exc())
                _send_error(self, 500, "internal_error", str(exc))
            else:
                _send_json(self, result.as_dict())
            finally:
                store.close()

    return CaptureMemHandler
