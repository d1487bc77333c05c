from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass
class Settings:
    log_level: str
    log_dir: str
    data_dir: str
    max_items: int
    log_flush_ms: int
    log_max_lines: int
    persist_debounce_ms: int
    persist_max_chars: int
    host: str
    port: int
    clear_logs_on_launch: bool

    @property
    def state_path(self) -> str:
        return os.path.join(self.data_dir, "tasks.json")

    @staticmethod
    def from_env() -> "Settings":
        default_home = str(Path(os.path.expanduser("~")) / ".fleettasks")
        default_log_dir = str(Path(default_home) / ".logs")
        default_data_dir = str(Path(default_home) / ".data")
        return Settings(
            log_level=os.getenv("FLEETTASKS_LOG_LEVEL", "info"),
            log_dir=os.getenv("FLEETTASKS_LOG_DIR") or default_log_dir,
            data_dir=os.getenv("FLEETTASKS_DATA_DIR") or default_data_dir,
            max_items=_int_env("FLEETTASKS_MAX_ITEMS", 50),
            log_flush_ms=_int_env("FLEETTASKS_LOG_FLUSH_MS", 120),
            log_max_lines=_int_env("FLEETTASKS_LOG_MAX_LINES", 2000),
            persist_debounce_ms=_int_env("FLEETTASKS_PERSIST_DEBOUNCE_MS", 1200),
            persist_max_chars=_int_env("FLEETTASKS_PERSIST_MAX_CHARS", 800_000),
            host=os.getenv("FLEETTASKS_HOST", "127.0.0.1"),
            port=_int_env("FLEETTASKS_PORT", 18791),
            clear_logs_on_launch=os.getenv("FLEETTASKS_CLEAR_LOGS_ON_LAUNCH", "false").lower() in {"1", "true", "yes"},
        )
