from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/capturemem/config.json").expanduser()

CONFIG_ENV_OVERRIDES = {
    "queue_db_path": "CAPTUREMEM_QUEUE_DB",
    "server_db_path": "CAPTUREMEM_SERVER_DB",
    "blob_dir": "CAPTUREMEM_BLOB_DIR",
    "server_url": "CAPTUREMEM_SERVER_URL",
    "server_host": "CAPTUREMEM_SERVER_HOST",
    "server_port": "CAPTUREMEM_SERVER_PORT",
    "service_key": "CAPTUREMEM_SERVICE_KEY",
    "request_timeout_s": "CAPTUREMEM_REQUEST_TIMEOUT_S",
    "sync_max_attempts": "CAPTUREMEM_SYNC_MAX_ATTEMPTS",
    "sync_backoff_base_s": "CAPTUREMEM_SYNC_BACKOFF_BASE_S",
    "sync_backoff_cap_s": "CAPTUREMEM_SYNC_BACKOFF_CAP_S",
    "sync_concurrency": "CAPTUREMEM_SYNC_CONCURRENCY",
    "sync_lease_ttl_s": "CAPTUREMEM_SYNC_LEASE_TTL_S",
    "sync_check_interval_s": "CAPTUREMEM_SYNC_CHECK_INTERVAL_S",
    "dispatch_batch_size": "CAPTUREMEM_DISPATCH_BATCH_SIZE",
    "dispatch_max_attempts": "CAPTUREMEM_DISPATCH_MAX_ATTEMPTS",
    "dispatch_interval_s": "CAPTUREMEM_DISPATCH_INTERVAL_S",
    "dispatch_stale_after_s": "CAPTUREMEM_DISPATCH_STALE_AFTER_S",
    "worker_url": "CAPTUREMEM_WORKER_URL",
    "generator_provider": "CAPTUREMEM_GENERATOR_PROVIDER",
    "generator_model": "CAPTUREMEM_GENERATOR_MODEL",
    "generator_api_key": "CAPTUREMEM_GENERATOR_API_KEY",
    "generator_base_url": "CAPTUREMEM_GENERATOR_BASE_URL",
    "title_max_chars": "CAPTUREMEM_TITLE_MAX_CHARS",
    "max_part_bytes": "CAPTUREMEM_MAX_PART_BYTES",
}

_INT_KEYS = {
    "server_port",
    "sync_max_attempts",
    "sync_concurrency",
    "sync_check_interval_s",
    "dispatch_batch_size",
    "dispatch_max_attempts",
    "dispatch_interval_s",
    "dispatch_stale_after_s",
    "title_max_chars",
    "max_part_bytes",
}
_FLOAT_KEYS = {
    "request_timeout_s",
    "sync_backoff_base_s",
    "sync_backoff_cap_s",
    "sync_lease_ttl_s",
}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("CAPTUREMEM_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def write_config_file(data: dict[str, Any], path: Path | None = None) -> Path:
    config_path = get_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
    return config_path


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class CaptureMemConfig:
    queue_db_path: str = "~/.capturemem/queue.sqlite"
    server_db_path: str = "~/.capturemem/server.sqlite"
    blob_dir: str = "~/.capturemem/blobs"
    server_url: str = "http://127.0.0.1:7447"
    server_host: str = "127.0.0.1"
    server_port: int = 7447
    # Shared secret for trusted internal calls (dispatcher -> worker).
    service_key: str | None = None
    request_timeout_s: float = 10.0
    sync_max_attempts: int = 5
    sync_backoff_base_s: float = 2.0
    sync_backoff_cap_s: float = 300.0
    sync_concurrency: int = 1
    # A drain lease not renewed within this many seconds can be taken over.
    sync_lease_ttl_s: float = 300.0
    sync_check_interval_s: int = 30
    dispatch_batch_size: int = 10
    dispatch_max_attempts: int = 3
    dispatch_interval_s: int = 30
    # 0 disables the stale `processing` sweep.
    dispatch_stale_after_s: int = 0
    worker_url: str | None = None
    generator_provider: str = "openai"
    generator_model: str | None = None
    generator_api_key: str | None = None
    generator_base_url: str | None = None
    title_max_chars: int = 60
    max_part_bytes: int = 50 * 1024 * 1024


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def load_config(path: Path | None = None) -> CaptureMemConfig:
    cfg = CaptureMemConfig()
    config_path = get_config_path(path)
    if config_path.exists():
        try:
            data = json.loads(config_path.read_text())
        except json.JSONDecodeError:
            data = {}
        if isinstance(data, dict):
            cfg = _apply_dict(cfg, data)
    cfg = _apply_dict(cfg, get_env_overrides())
    return cfg


def _apply_dict(cfg: CaptureMemConfig, data: dict[str, Any]) -> CaptureMemConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        if key in _INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key in _FLOAT_KEYS:
            setattr(cfg, key, _parse_float(value, getattr(cfg, key), key=key))
            continue
        if isinstance(value, str) and not value.strip() and key in {
            "service_key",
            "worker_url",
            "generator_model",
            "generator_api_key",
            "generator_base_url",
        }:
            setattr(cfg, key, None)
            continue
        setattr(cfg, key, value)
    return cfg
