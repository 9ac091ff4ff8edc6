from __future__ import annotations

import socket
import threading

import pytest

from capturemem.sync import ManualConnectivity, PeriodicConnectivityCheck, tcp_probe


def test_manual_connectivity_publishes_only_changes() -> None:
    connectivity = ManualConnectivity()
    seen: list[bool] = []
    subscription = connectivity.subscribe(seen.append)

    connectivity.set_online(True)
    connectivity.set_online(True)
    connectivity.set_online(False)
    subscription.cancel()
    connectivity.set_online(True)

    assert seen == [True, False]
    assert subscription.active is False


def test_periodic_check_requires_a_probe() -> None:
    with pytest.raises(TypeError):
        PeriodicConnectivityCheck(None, interval_s=1)  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        PeriodicConnectivityCheck(lambda: True, interval_s=0)


def test_periodic_check_treats_probe_errors_as_offline() -> None:
    answers = iter([True, RuntimeError("dns"), True])

    def _probe() -> bool:
        answer = next(answers)
        if isinstance(answer, Exception):
            raise answer
        return answer

    check = PeriodicConnectivityCheck(_probe, interval_s=60)
    seen: list[bool] = []
    check.subscribe(seen.append)

    assert check.check() is True
    assert check.check() is False
    assert check.check() is True
    assert seen == [True, False, True]


def test_periodic_check_thread_publishes_and_stops() -> None:
    online = threading.Event()
    check = PeriodicConnectivityCheck(lambda: True, interval_s=0.05)
    check.subscribe(lambda value: online.set() if value else None)
    check.start()
    try:
        assert online.wait(2)
        assert check.is_online() is True
    finally:
        check.stop()


def test_tcp_probe_sees_listening_socket() -> None:
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    port = listener.getsockname()[1]
    try:
        assert tcp_probe(f"http://127.0.0.1:{port}", timeout_s=1)() is True
    finally:
        listener.close()
    assert tcp_probe(f"http://127.0.0.1:{port}", timeout_s=0.5)() is False
