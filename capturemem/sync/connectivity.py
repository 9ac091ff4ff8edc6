from __future__ import annotations

import logging
import socket
import threading
from collections.abc import Callable
from typing import Protocol
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

ConnectivityCallback = Callable[[bool], None]


class Subscription:
    """Cancellable handle returned by every subscribe() call."""

    def __init__(self, cancel: Callable[[], None]) -> None:
        self._cancel = cancel
        self._active = True
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
        self._cancel()


class ConnectivitySource(Protocol):
    def is_online(self) -> bool: ...

    def subscribe(self, callback: ConnectivityCallback) -> Subscription: ...


class _Subscribers:
    def __init__(self) -> None:
        self._callbacks: dict[int, ConnectivityCallback] = {}
        self._next_id = 0
        self._lock = threading.Lock()

    def add(self, callback: ConnectivityCallback) -> Subscription:
        with self._lock:
            token = self._next_id
            self._next_id += 1
            self._callbacks[token] = callback

        def _remove() -> None:
            with self._lock:
                self._callbacks.pop(token, None)

        return Subscription(_remove)

    def publish(self, online: bool) -> None:
        with self._lock:
            callbacks = list(self._callbacks.values())
        for callback in callbacks:
            try:
                callback(online)
            except Exception:
                logger.exception("connectivity_callback_failed")


class ManualConnectivity:
    """Connectivity driven explicitly by the caller (tests, CLI one-shots)."""

    def __init__(self, online: bool = False) -> None:
        self._online = online
        self._subscribers = _Subscribers()

    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        changed = online != self._online
        self._online = online
        if changed:
            self._subscribers.publish(online)

    def subscribe(self, callback: ConnectivityCallback) -> Subscription:
        return self._subscribers.add(callback)


class PeriodicConnectivityCheck:
    """Runs `probe` every `interval_s` seconds and publishes online/offline changes.

    The probe is the tick's computation and is required; there is no default
    that would produce ticks without checking anything.
    """

    def __init__(self, probe: Callable[[], bool], interval_s: float) -> None:
        if not callable(probe):
            raise TypeError("probe must be callable")
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self._probe = probe
        self.interval_s = interval_s
        self._online = False
        self._subscribers = _Subscribers()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def is_online(self) -> bool:
        return self._online

    def subscribe(self, callback: ConnectivityCallback) -> Subscription:
        return self._subscribers.add(callback)

    def check(self) -> bool:
        try:
            online = bool(self._probe())
        except Exception:
            logger.exception("connectivity_probe_failed")
            online = False
        changed = online != self._online
        self._online = online
        if changed:
            logger.info("connectivity_changed online=%s", online)
            self._subscribers.publish(online)
        return online

    def _run(self) -> None:
        self.check()
        while not self._stop.wait(self.interval_s):
            self.check()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="capturemem-connectivity", daemon=True
        )
        self._thread.start()

    def stop(self, timeout_s: float | None = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout_s)
        self._thread = None


def tcp_probe(url: str, *, timeout_s: float = 2.0) -> Callable[[], bool]:
    parsed = urlparse(url if "://" in url else f"http://{url}")
    host = parsed.hostname or "127.0.0.1"
    port = parsed.port or (443 if parsed.scheme == "https" else 80)

    def _probe() -> bool:
        try:
            infos = socket.getaddrinfo(host, port, socket.AF_UNSPEC, socket.SOCK_STREAM)
        except OSError:
            return False
        for family, socktype, proto, _canon, address in infos:
            try:
                with socket.socket(family, socktype, proto) as sock:
                    sock.settimeout(timeout_s)
                    if sock.connect_ex(address) == 0:
                        return True
            except OSError:
                continue
        return False

    return _probe
