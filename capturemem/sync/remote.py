from __future__ import annotations

import http.client
import mimetypes
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote

from ..errors import ResourceError, RetryableRemoteError, TerminalRemoteError
from . import http_client

RETRYABLE_STATUSES = frozenset({408, 425, 429})


class RemoteMemoryClient(Protocol):
    def create_memory(self, local_id: str, kind: str, fields: dict[str, Any]) -> str: ...

    def attach_audio(self, server_memory_id: str, path: str) -> bool: ...

    def attach_media(self, server_memory_id: str, path: str, position: int) -> bool: ...


def classify_status(status: int, payload: dict[str, Any] | None, *, action: str) -> None:
    """Raise the remote error matching a non-2xx HTTP status."""

    if 200 <= status < 300:
        return
    detail = http_client.error_detail(payload)
    suffix = f" ({status}: {detail})" if detail else f" ({status})"
    message = f"{action} failed{suffix}"
    if status >= 500 or status in RETRYABLE_STATUSES:
        raise RetryableRemoteError(message, status=status)
    raise TerminalRemoteError(message, status=status)


def _read_part(path: str) -> tuple[bytes, str]:
    part = Path(path).expanduser()
    try:
        data = part.read_bytes()
    except FileNotFoundError as exc:
        raise ResourceError(f"file not found: {path}", required=True) from exc
    content_type = mimetypes.guess_type(part.name)[0] or "application/octet-stream"
    return data, content_type


class HttpRemoteMemoryClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 10.0,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.base_url = http_client.build_base_url(base_url)
        if not self.base_url:
            raise ValueError("base_url is required")
        self.timeout_s = timeout_s
        self.headers = dict(headers or {})

    def _request(
        self,
        method: str,
        path: str,
        *,
        action: str,
        body: dict[str, Any] | None = None,
        body_bytes: bytes | None = None,
        content_type: str = "application/json",
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            status, payload = http_client.request_json(
                method,
                url,
                headers=self.headers,
                body=body,
                body_bytes=body_bytes,
                content_type=content_type,
                timeout_s=self.timeout_s,
            )
        except (OSError, http.client.HTTPException) as exc:
            detail = str(exc).strip() or exc.__class__.__name__
            raise RetryableRemoteError(f"{action} failed: {detail}") from exc
        classify_status(status, payload, action=action)
        if payload is None:
            raise RetryableRemoteError(f"{action} failed: empty response", status=status)
        return payload

    def create_memory(self, local_id: str, kind: str, fields: dict[str, Any]) -> str:
        body = {"localId": local_id, "kind": kind, **fields}
        payload = self._request("POST", "/v1/memories", action="create memory", body=body)
        memory_id = str(payload.get("memoryId") or "").strip()
        if not memory_id:
            raise RetryableRemoteError("create memory failed: response missing memoryId")
        return memory_id

    def attach_audio(self, server_memory_id: str, path: str) -> bool:
        data, content_type = _read_part(path)
        payload = self._request(
            "PUT",
            f"/v1/memories/{quote(server_memory_id, safe='')}/audio",
            action="attach audio",
            body_bytes=data,
            content_type=content_type,
        )
        return bool(payload.get("ack"))

    def attach_media(self, server_memory_id: str, path: str, position: int) -> bool:
        data, content_type = _read_part(path)
        payload = self._request(
            "PUT",
            f"/v1/memories/{quote(server_memory_id, safe='')}/media/{int(position)}",
            action="attach media",
            body_bytes=data,
            content_type=content_type,
        )
        return bool(payload.get("ack"))
