from __future__ import annotations


class CaptureMemError(Exception):
    """Base class for errors raised by capturemem."""


class ValidationError(CaptureMemError, ValueError):
    """Malformed or empty input. Terminal: never retried automatically."""


class TransientError(CaptureMemError):
    """Network, timeout or upstream 5xx failure. Retried with backoff."""


class ResourceError(CaptureMemError):
    """A local resource (file, quota) is unavailable."""

    def __init__(self, message: str, *, required: bool) -> None:
        super().__init__(message)
        self.required = required


class RemoteError(CaptureMemError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class RetryableRemoteError(RemoteError, TransientError):
    pass


class TerminalRemoteError(RemoteError):
    pass


class GenerationError(TransientError):
    """An enrichment step produced no usable output."""


class InvalidTransition(CaptureMemError):
    def __init__(self, memory_id: str, from_state: str, to_state: str) -> None:
        super().__init__(f"invalid transition {from_state} -> {to_state} for {memory_id}")
        self.memory_id = memory_id
        self.from_state = from_state
        self.to_state = to_state
