from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_SETTINGS_PATH = Path("~/.sessionmem/settings.json").expanduser()

CONFIG_ENV_OVERRIDES = {
    "db_path": "SESSIONMEM_DB",
    "context_observations": "SESSIONMEM_CONTEXT_OBSERVATIONS",
    "context_summaries": "SESSIONMEM_CONTEXT_SUMMARIES",
    "log_level": "SESSIONMEM_LOG_LEVEL",
    "log_dir": "SESSIONMEM_LOG_DIR",
    "worker_host": "SESSIONMEM_WORKER_HOST",
    "worker_port": "SESSIONMEM_WORKER_PORT",
}

# Upper-case keys written by earlier settings files.
LEGACY_KEYS = {
    "CONTEXT_OBSERVATIONS": "context_observations",
    "LOG_LEVEL": "log_level",
    "WORKER_PORT": "worker_port",
    "WORKER_HOST": "worker_host",
}

INT_KEYS = {"context_observations", "context_summaries", "worker_port"}


def get_settings_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("SESSIONMEM_SETTINGS", DEFAULT_SETTINGS_PATH))
    return candidate.expanduser()


def read_settings_file(path: Path | None = None) -> dict[str, Any]:
    settings_path = get_settings_path(path)
    if not settings_path.exists():
        return {}
    raw = settings_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid settings json") from exc
    if not isinstance(data, dict):
        raise ValueError("settings must be an object")
    return data


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class SessionMemConfig:
    db_path: str = "~/.sessionmem/memory.sqlite"
    context_observations: int = 50
    context_summaries: int = 10
    log_level: str = "INFO"
    log_dir: str = "~/.sessionmem/logs"
    worker_host: str = "127.0.0.1"
    worker_port: int = 37779


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def load_config(path: Path | None = None) -> SessionMemConfig:
    cfg = SessionMemConfig()
    try:
        data = read_settings_file(path)
    except ValueError as exc:
        warnings.warn(
            f"Ignoring settings file {get_settings_path(path)}: {exc}",
            RuntimeWarning,
            stacklevel=2,
        )
        data = {}
    cfg = _apply_dict(cfg, data)
    return _apply_dict(cfg, get_env_overrides())


def _apply_dict(cfg: SessionMemConfig, data: dict[str, Any]) -> SessionMemConfig:
    # Legacy keys first so a modern key in the same file wins.
    ordered = sorted(data.items(), key=lambda item: item[0] not in LEGACY_KEYS)
    for raw_key, value in ordered:
        key = LEGACY_KEYS.get(raw_key, raw_key)
        if not hasattr(cfg, key) or value is None:
            continue
        if key in INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        setattr(cfg, key, str(value))
    return cfg
