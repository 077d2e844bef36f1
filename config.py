from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

import yaml

USER_CONFIG_PATH = Path.home() / ".taskscope_config.yaml"
DEFAULT_API_URL = "https://app.asana.com/api/1.0"
DEFAULT_CACHE_DIR = Path.home() / ".cache" / "taskscope"


def _load_config() -> Dict[str, Any]:
    if not USER_CONFIG_PATH.exists():
        return {}
    try:
        return yaml.safe_load(USER_CONFIG_PATH.read_text()) or {}
    except (yaml.YAMLError, OSError):
        return {}


def _save_config(data: Dict[str, Any]) -> None:
    if not data:
        if USER_CONFIG_PATH.exists():
            USER_CONFIG_PATH.unlink()
        return
    USER_CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
    USER_CONFIG_PATH.write_text(yaml.safe_dump(data, allow_unicode=True), encoding="utf-8")


def _set_value(key: str, value: str) -> None:
    data = _load_config()
    value = (value or "").strip()
    if value:
        data[key] = value
    else:
        data.pop(key, None)
    _save_config(data)


def get_user_token() -> str:
    return os.getenv("TASKSCOPE_TOKEN") or str(_load_config().get("token", "") or "")


def set_user_token(value: str) -> None:
    _set_value("token", value)


def set_user_id(value: str) -> None:
    _set_value("user_id", value)


def set_workspace(value: str) -> None:
    _set_value("workspace", value)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    api_url: str
    user_id: str
    workspace: str
    cache_dir: Path
    cache_ttl_seconds: int
    sync_workers: int
    background_delay: float
    cache_max_bytes: int


def load_settings() -> Settings:
    """Settings from ~/.taskscope_config.yaml, overridden by TASKSCOPE_* variables."""
    data = _load_config()
    cache_dir = os.getenv("TASKSCOPE_CACHE_DIR") or data.get("cache_dir")
    return Settings(
        api_url=os.getenv("TASKSCOPE_API_URL") or str(data.get("api_url") or DEFAULT_API_URL),
        user_id=os.getenv("TASKSCOPE_USER_ID") or str(data.get("user_id") or ""),
        workspace=os.getenv("TASKSCOPE_WORKSPACE") or str(data.get("workspace") or ""),
        cache_dir=Path(cache_dir).expanduser() if cache_dir else DEFAULT_CACHE_DIR,
        cache_ttl_seconds=max(1, _env_int("TASKSCOPE_CACHE_TTL_SECONDS", int(data.get("cache_ttl_seconds") or 86400))),
        sync_workers=max(1, _env_int("TASKSCOPE_SYNC_WORKERS", int(data.get("sync_workers") or 4))),
        background_delay=max(0.0, _env_float("TASKSCOPE_BACKGROUND_DELAY", float(data.get("background_delay") or 1.0))),
        cache_max_bytes=max(0, _env_int("TASKSCOPE_CACHE_MAX_BYTES", int(data.get("cache_max_bytes") or 5 * 1024 * 1024))),
    )
