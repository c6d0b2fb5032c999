from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any

from .database import SQLiteMemoryDB
from .session_policy_guard import SessionPolicyGuard
from .time_utils import to_iso, utc_now

logger = logging.getLogger(__name__)


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class ChatSessionStore:
    """SQLite-backed chat sessions: one JSON state snapshot plus an append-only message log."""

    DEFAULT_CONTEXT_MESSAGES = 20

    def __init__(self, db: SQLiteMemoryDB, guard: SessionPolicyGuard | None = None) -> None:
        self._db = db
        self.guard = guard or SessionPolicyGuard()

    def get_session(self, session_key: str) -> dict[str, Any] | None:
        self.guard.ensure_session_scope(session_key)
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT session_key, user_id, state_json, message_count, created_at, updated_at
                FROM chat_sessions
                WHERE session_key = ?
                """,
                (session_key,),
            ).fetchone()
        if not row:
            logger.debug("No session found: %s", session_key)
            return None
        return {
            "session_key": row["session_key"],
            "user_id": row["user_id"],
            "state": json.loads(row["state_json"]),
            "message_count": row["message_count"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    def load_or_create(
        self,
        *,
        user_id: str,
        session_key: str,
        initial_state: dict[str, Any],
    ) -> dict[str, Any]:
        existing = self.get_session(session_key)
        if existing:
            self.guard.ensure_user_scope(user_id, existing["user_id"])
            return existing

        now = to_iso(utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO chat_sessions (session_key, user_id, state_json, message_count, created_at, updated_at)
                VALUES (?, ?, ?, 0, ?, ?)
                """,
                (session_key, user_id, _json_dumps(initial_state), now, now),
            )
        logger.info("Created session %s for user %s", session_key, user_id)
        return {
            "session_key": session_key,
            "user_id": user_id,
            "state": initial_state,
            "message_count": 0,
            "created_at": now,
            "updated_at": now,
        }

    def save_state(self, *, user_id: str, session_key: str, state: dict[str, Any]) -> None:
        session = self.get_session(session_key)
        if not session:
            raise KeyError(f"Session not found: {session_key}")
        self.guard.ensure_user_scope(user_id, session["user_id"])
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE chat_sessions
                SET state_json = ?, updated_at = ?
                WHERE session_key = ?
                """,
                (_json_dumps(state), to_iso(utc_now()), session_key),
            )

    def append_messages(
        self,
        *,
        user_id: str,
        session_key: str,
        messages: list[dict[str, Any]],
    ) -> int:
        session = self.get_session(session_key)
        if not session:
            raise KeyError(f"Session not found: {session_key}")
        self.guard.ensure_user_scope(user_id, session["user_id"])
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            position = session["message_count"]
            for message in messages:
                conn.execute(
                    """
                    INSERT INTO chat_messages (session_key, position, role, content, turn_number, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session_key,
                        position,
                        self.guard.normalize_role(str(message.get("role") or "")),
                        str(message.get("content") or ""),
                        int(message.get("turn_number", 0)),
                        now,
                    ),
                )
                position += 1
            conn.execute(
                """
                UPDATE chat_sessions
                SET message_count = ?, updated_at = ?
                WHERE session_key = ?
                """,
                (position, now, session_key),
            )
        return position

    def load_messages(self, session_key: str, *, limit: int | None = None) -> list[dict[str, Any]]:
        """Return messages in conversation order; ``limit`` keeps only the most recent ones."""
        self.guard.ensure_session_scope(session_key)
        sql = """
            SELECT role, content, turn_number, position
            FROM chat_messages
            WHERE session_key = ?
        """
        params: list[Any] = [session_key]
        if limit is not None:
            sql += " ORDER BY position DESC LIMIT ?"
            params.append(max(0, limit))
        else:
            sql += " ORDER BY position ASC"
        with self._db.connection() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        if limit is not None:
            rows = list(reversed(rows))
        return [
            {"role": row["role"], "content": row["content"], "turn_number": row["turn_number"]}
            for row in rows
        ]

    def recent_context(self, session_key: str, limit: int | None = None) -> list[dict[str, Any]]:
        return self.load_messages(session_key, limit=limit or self.DEFAULT_CONTEXT_MESSAGES)

    def delete_old_sessions(self, days_old: int = 30) -> int:
        cutoff = to_iso(utc_now() - timedelta(days=max(1, days_old)))
        logger.info("Cleaning up sessions older than %s days (before %s)", days_old, cutoff)
        with self._db.connection() as conn:
            deleted = conn.execute(
                "DELETE FROM chat_sessions WHERE updated_at < ?",
                (cutoff,),
            ).rowcount
        logger.info("Cleaned up %s old sessions", deleted)
        return deleted

    def get_stats(self, user_id: str | None = None) -> dict[str, Any]:
        sql = "SELECT COUNT(*) AS total_sessions, COALESCE(SUM(message_count), 0) AS total_messages FROM chat_sessions"
        params: tuple[Any, ...] = ()
        if user_id:
            sql += " WHERE user_id = ?"
            params = (user_id,)
        with self._db.connection() as conn:
            row = conn.execute(sql, params).fetchone()
        total_sessions = int(row["total_sessions"])
        total_messages = int(row["total_messages"])
        return {
            "total_sessions": total_sessions,
            "total_messages": total_messages,
            "avg_messages_per_session": total_messages / total_sessions if total_sessions else 0.0,
        }
