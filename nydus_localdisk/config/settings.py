"""Settings storage for application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "NYDUS_LOCALDISK_SETTINGS_PATH",
        Path.home() / ".config" / "nydus-localdisk" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_FETCH_CONCURRENCY = 4
DEFAULT_COPY_BUFFER_SIZE = 1024 * 1024
DEFAULT_TARGET_DIR = "./workdir"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 300

DEFAULT_SETTINGS: dict[str, Any] = {
    "fetch_concurrency": DEFAULT_FETCH_CONCURRENCY,
    "copy_buffer_size": DEFAULT_COPY_BUFFER_SIZE,
    "default_target_dir": DEFAULT_TARGET_DIR,
    "insecure_registries": ["localhost", "127.0.0.1"],
    "request_timeout_seconds": DEFAULT_REQUEST_TIMEOUT_SECONDS,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_int(key: str, default: int = 0) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


load_settings()
