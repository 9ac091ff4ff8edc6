from __future__ import annotations

import socket
from pathlib import Path

import pytest

from capturemem.errors import ResourceError, RetryableRemoteError, TerminalRemoteError
from capturemem.sync import HttpRemoteMemoryClient, classify_status


@pytest.mark.parametrize("status", [500, 502, 503, 408, 429])
def test_retryable_statuses(status: int) -> None:
    with pytest.raises(RetryableRemoteError) as excinfo:
        classify_status(status, {"error": "busy"}, action="create memory")
    assert excinfo.value.status == status


@pytest.mark.parametrize("status", [400, 401, 403, 404, 413])
def test_terminal_statuses(status: int) -> None:
    with pytest.raises(TerminalRemoteError, match=r"create memory failed"):
        classify_status(
            status,
            {"error": "invalid_memory", "message": "text is required"},
            action="create memory",
        )


def test_success_status_does_not_raise() -> None:
    classify_status(201, {"memoryId": "m1"}, action="create memory")


def _closed_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


def test_unreachable_server_is_retryable() -> None:
    client = HttpRemoteMemoryClient(f"127.0.0.1:{_closed_port()}", timeout_s=1)
    with pytest.raises(RetryableRemoteError):
        client.create_memory("L1", "moment", {"text": "Lunch"})


def test_missing_part_file_is_a_resource_error(tmp_path: Path) -> None:
    client = HttpRemoteMemoryClient("http://127.0.0.1:1")
    with pytest.raises(ResourceError) as excinfo:
        client.attach_audio("m1", str(tmp_path / "missing.m4a"))
    assert excinfo.value.required is True


def test_base_url_is_required() -> None:
    with pytest.raises(ValueError):
        HttpRemoteMemoryClient("  ")
