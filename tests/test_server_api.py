from __future__ import annotations

import http.client
import json
import threading
from http.server import ThreadingHTTPServer
from pathlib import Path
from typing import Any

from capturemem.config import CaptureMemConfig
from capturemem.server.daemon import build_server
from capturemem.server.generation import HeuristicGenerator
from capturemem.server.invoker import trusted_headers
from capturemem.server.store import ServerStore

SERVICE_KEY = "test-service-key"


def _config(tmp_path: Path, **overrides: Any) -> CaptureMemConfig:
    config = CaptureMemConfig(
        server_db_path=str(tmp_path / "server.sqlite"),
        blob_dir=str(tmp_path / "blobs"),
        service_key=SERVICE_KEY,
        generator_provider="heuristic",
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def _start_server(config: CaptureMemConfig) -> tuple[ThreadingHTTPServer, int]:
    server = build_server(config, "127.0.0.1", 0, generator=HeuristicGenerator())
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server, int(server.server_address[1])


def _request(
    port: int,
    method: str,
    path: str,
    *,
    body: dict[str, Any] | bytes | None = None,
    headers: dict[str, str] | None = None,
) -> tuple[int, dict[str, Any]]:
    conn = http.client.HTTPConnection("127.0.0.1", port, timeout=5)
    try:
        request_headers = dict(headers or {})
        if isinstance(body, dict):
            data: bytes | None = json.dumps(body).encode("utf-8")
            request_headers["Content-Type"] = "application/json"
        else:
            data = body
        conn.request(method, path, body=data, headers=request_headers)
        resp = conn.getresponse()
        raw = resp.read()
        return resp.status, json.loads(raw.decode("utf-8")) if raw else {}
    finally:
        conn.close()


def test_create_memory_is_idempotent(tmp_path: Path) -> None:
    server, port = _start_server(_config(tmp_path))
    try:
        body = {"localId": "L1", "kind": "moment", "text": "Lunch with Sam", "tags": ["food"]}
        status, created = _request(port, "POST", "/v1/memories", body=body)
        again_status, again = _request(port, "POST", "/v1/memories", body=body)
        memory_status, memory = _request(port, "GET", f"/v1/memories/{created['memoryId']}")
    finally:
        server.shutdown()

    assert status == 201
    assert created["created"] is True
    assert again_status == 200
    assert again == {"memoryId": created["memoryId"], "created": False}
    assert memory_status == 200
    assert memory["tags"] == ["food"]
    assert memory["processing"]["state"] == "scheduled"
    assert memory["attachments"] == []


def test_create_memory_validation(tmp_path: Path) -> None:
    server, port = _start_server(_config(tmp_path))
    try:
        bad_json = _request(port, "POST", "/v1/memories", body=b"{nope")
        bad_kind = _request(
            port, "POST", "/v1/memories", body={"localId": "L1", "kind": "diary", "text": "x"}
        )
        no_text = _request(
            port, "POST", "/v1/memories", body={"localId": "L1", "kind": "moment", "text": " "}
        )
    finally:
        server.shutdown()

    assert bad_json == (400, {"error": "invalid_json"})
    assert bad_kind[0] == 400
    assert bad_kind[1]["error"] == "invalid_memory"
    assert no_text[0] == 400


def test_malformed_content_length_is_rejected(tmp_path: Path) -> None:
    server, port = _start_server(_config(tmp_path))
    try:
        post = _request(port, "POST", "/v1/memories", headers={"Content-Length": "abc"})
        put = _request(
            port, "PUT", "/v1/memories/anything/audio", headers={"Content-Length": "12kb"}
        )
        status, _ = _request(port, "GET", "/v1/status")
    finally:
        server.shutdown()

    assert post == (400, {"error": "invalid_content_length"})
    assert put == (400, {"error": "invalid_content_length"})
    assert status == 200


def test_parts_are_stored_and_limited(tmp_path: Path) -> None:
    server, port = _start_server(_config(tmp_path, max_part_bytes=16))
    try:
        _, created = _request(
            port, "POST", "/v1/memories", body={"localId": "L1", "kind": "moment", "text": "Beach"}
        )
        memory_id = created["memoryId"]
        audio = _request(
            port,
            "PUT",
            f"/v1/memories/{memory_id}/audio",
            body=b"RIFFdata",
            headers={"Content-Type": "audio/wav"},
        )
        media = _request(port, "PUT", f"/v1/memories/{memory_id}/media/1", body=b"\x89PNG")
        too_big = _request(port, "PUT", f"/v1/memories/{memory_id}/media/2", body=b"x" * 17)
        unknown = _request(port, "PUT", "/v1/memories/nope/audio", body=b"data")
        _, memory = _request(port, "GET", f"/v1/memories/{memory_id}")
    finally:
        server.shutdown()

    assert audio[0] == 200
    assert audio[1]["ack"] is True
    assert audio[1]["blobRef"].startswith("sha256:")
    assert media[0] == 200
    assert media[1]["position"] == 1
    assert too_big == (413, {"error": "payload_too_large"})
    assert unknown[0] == 404
    assert [(a["part"], a["position"]) for a in memory["attachments"]] == [
        ("audio", 0),
        ("media", 1),
    ]
    assert (tmp_path / "blobs").exists()


def test_internal_endpoints_require_trusted_caller(tmp_path: Path) -> None:
    server, port = _start_server(_config(tmp_path))
    try:
        no_trigger = _request(port, "POST", "/v1/process/moment", body={"memoryId": "m1"})
        wrong_key = _request(
            port,
            "POST",
            "/v1/dispatch",
            headers=trusted_headers("not-the-key"),
        )
        no_key = _request(
            port,
            "POST",
            "/v1/dispatch",
            headers={"X-Internal-Trigger": "true"},
        )
    finally:
        server.shutdown()

    assert no_trigger == (403, {"error": "internal_trigger_required"})
    assert wrong_key == (401, {"error": "unauthorized"})
    assert no_key == (401, {"error": "unauthorized"})


def test_process_endpoint_runs_worker(tmp_path: Path) -> None:
    server, port = _start_server(_config(tmp_path))
    headers = trusted_headers(SERVICE_KEY)
    try:
        _, created = _request(
            port,
            "POST",
            "/v1/memories",
            body={"localId": "L1", "kind": "moment", "text": "Lunch with Sam"},
        )
        memory_id = created["memoryId"]
        unknown_kind = _request(
            port, "POST", "/v1/process/diary", body={"memoryId": memory_id}, headers=headers
        )
        missing = _request(
            port, "POST", "/v1/process/moment", body={"memoryId": "nope"}, headers=headers
        )
        status, payload = _request(
            port, "POST", "/v1/process/moment", body={"memoryId": memory_id}, headers=headers
        )
        repeat = _request(
            port, "POST", "/v1/process/moment", body={"memoryId": memory_id}, headers=headers
        )
        _, processing = _request(port, "GET", f"/v1/memories/{memory_id}/processing")
    finally:
        server.shutdown()

    assert unknown_kind[0] == 404
    assert missing[0] == 404
    assert status == 200
    assert payload["ok"] is True
    assert payload["state"] == "complete"
    assert payload["title"] == "Lunch with Sam"
    assert repeat[0] == 422
    assert repeat[1]["ok"] is False
    assert processing["state"] == "complete"


def test_dispatch_and_reprocess(tmp_path: Path) -> None:
    config = _config(tmp_path)
    server, port = _start_server(config)
    headers = trusted_headers(SERVICE_KEY)
    try:
        _, good = _request(
            port,
            "POST",
            "/v1/memories",
            body={"localId": "L1", "kind": "memento", "text": "Grandma's ring"},
        )
        _, short = _request(
            port, "POST", "/v1/memories", body={"localId": "L2", "kind": "moment", "text": "ab"}
        )
        dispatch_status, dispatched = _request(port, "POST", "/v1/dispatch", headers=headers)
        complete_reprocess = _request(port, "POST", f"/v1/memories/{good['memoryId']}/reprocess")
        failed_reprocess = _request(port, "POST", f"/v1/memories/{short['memoryId']}/reprocess")
        missing_reprocess = _request(port, "POST", "/v1/memories/nope/reprocess")
        _, status = _request(port, "GET", "/v1/status")
    finally:
        server.shutdown()

    assert dispatch_status == 200
    assert dispatched["claimed"] == 2
    assert dispatched["invoked"] == 1
    assert dispatched["failed"] == 1
    assert complete_reprocess[0] == 409
    assert failed_reprocess[0] == 200
    assert failed_reprocess[1]["state"] == "scheduled"
    assert failed_reprocess[1]["attempts"] == 0
    assert missing_reprocess[0] == 404
    assert status["jobs"]["complete"] == 1
    assert status["jobs"]["scheduled"] == 1
    assert status["dispatcher"]["last_ok_at"]

    store = ServerStore(config.server_db_path, blob_dir=config.blob_dir)
    try:
        memory = store.get_memory(good["memoryId"])
    finally:
        store.close()
    assert memory is not None
    assert memory["generated_title"] == "Grandma's ring"


def test_unknown_routes_are_404(tmp_path: Path) -> None:
    server, port = _start_server(_config(tmp_path))
    try:
        get_status, _ = _request(port, "GET", "/v1/nothing")
        post_status, _ = _request(port, "POST", "/v1/nothing", body={})
        put_status, _ = _request(port, "PUT", "/v1/memories/m1", body=b"x")
    finally:
        server.shutdown()

    assert get_status == 404
    assert post_status == 404
    assert put_status == 404
