from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class SQLiteMemoryDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS chat_sessions (
                  session_key TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  state_json TEXT NOT NULL,
                  message_count INTEGER NOT NULL DEFAULT 0,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS chat_messages (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  session_key TEXT NOT NULL REFERENCES chat_sessions(session_key) ON DELETE CASCADE,
                  position INTEGER NOT NULL,
                  role TEXT NOT NULL,
                  content TEXT NOT NULL,
                  turn_number INTEGER NOT NULL,
                  created_at TEXT NOT NULL,
                  UNIQUE(session_key, position)
                );

                CREATE INDEX IF NOT EXISTS idx_chat_sessions_user_updated
                  ON chat_sessions(user_id, updated_at DESC);
                CREATE INDEX IF NOT EXISTS idx_chat_messages_session_position
                  ON chat_messages(session_key, position);
                """
            )
