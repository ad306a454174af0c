from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from loguru import logger

APP_SETTINGS_KEY = "app_settings"


@dataclass(frozen=True)
class AppSettings:
    selected_microphone: Optional[str] = None
    word_count: int = 0
    hotkey: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppSettings":
        mic = data.get("selected_microphone")
        hotkey = data.get("hotkey")
        try:
            word_count = int(data.get("word_count") or 0)
        except (TypeError, ValueError):
            word_count = 0
        return cls(
            selected_microphone=mic if isinstance(mic, str) else None,
            word_count=max(0, word_count),
            hotkey=hotkey if isinstance(hotkey, str) else None,
        )


class SettingsStore:
    """Single keyed settings record persisted in SQLite."""

    def __init__(self, db_path: Path | str):
        self._db_path = Path(db_path)
        self._lock = threading.Lock()
        self.init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def init_schema(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS settings (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.commit()

    def _read_raw(self, key: str) -> Optional[str]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def get(self) -> Optional[AppSettings]:
        raw = self._read_raw(APP_SETTINGS_KEY)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Stored app settings are corrupt; ignoring them")
            return None
        if not isinstance(data, dict):
            return None
        return AppSettings.from_dict(data)

    def set(self, settings: AppSettings) -> None:
        payload = json.dumps(asdict(settings), ensure_ascii=False)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                    """,
                    (APP_SETTINGS_KEY, payload, datetime.now().isoformat()),
                )
                conn.commit()

    def initialize(self) -> AppSettings:
        """Return the stored record, writing the first-run default only when none exists."""
        current = self.get()
        if current is not None:
            return current
        if self._read_raw(APP_SETTINGS_KEY) is not None:
            # Present but unreadable: do not clobber it with defaults.
            return AppSettings()
        defaults = AppSettings()
        self.set(defaults)
        logger.info(f"Wrote default app settings to {self._db_path}")
        return defaults

    def update(self, **changes: Any) -> AppSettings:
        current = self.get() or AppSettings()
        merged = AppSettings.from_dict({**asdict(current), **changes})
        self.set(merged)
        return merged
