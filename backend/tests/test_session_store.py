from __future__ import annotations

from datetime import timedelta

import pytest

from balli_memory import SessionPolicyError, SessionPolicyGuard
from balli_memory.time_utils import parse_iso, to_iso, utc_now


def _create(store, session_key="session-1", user_id="user-a"):
    return store.load_or_create(user_id=user_id, session_key=session_key, initial_state={"turn_count": 0})


def _turn(turn_number: int, user_text: str, assistant_text: str) -> list[dict]:
    return [
        {"role": "user", "content": user_text, "turn_number": turn_number},
        {"role": "model", "content": assistant_text, "turn_number": turn_number},
    ]


def test_load_or_create_is_idempotent(session_store):
    created = _create(session_store)
    again = _create(session_store)

    assert created["message_count"] == 0
    assert again["state"] == {"turn_count": 0}
    assert again["created_at"] == created["created_at"]


def test_cross_user_session_access_is_blocked(session_store):
    _create(session_store)
    with pytest.raises(SessionPolicyError):
        _create(session_store, user_id="user-b")
    with pytest.raises(SessionPolicyError):
        session_store.save_state(user_id="user-b", session_key="session-1", state={})
    with pytest.raises(SessionPolicyError):
        session_store.append_messages(user_id="user-b", session_key="session-1", messages=_turn(1, "x", "y"))


@pytest.mark.parametrize("session_key", ["", "../etc", "has space", "x" * 200])
def test_invalid_session_keys_are_rejected(session_store, session_key):
    with pytest.raises(SessionPolicyError):
        session_store.get_session(session_key)


def test_messages_are_append_only_and_ordered(session_store):
    _create(session_store)
    assert session_store.append_messages(user_id="user-a", session_key="session-1", messages=_turn(1, "a", "b")) == 2
    assert session_store.append_messages(user_id="user-a", session_key="session-1", messages=_turn(2, "c", "d")) == 4

    messages = session_store.load_messages("session-1")
    assert [m["content"] for m in messages] == ["a", "b", "c", "d"]
    assert [m["role"] for m in messages] == ["user", "assistant", "user", "assistant"]
    assert [m["turn_number"] for m in messages] == [1, 1, 2, 2]
    assert session_store.get_session("session-1")["message_count"] == 4


def test_recent_context_keeps_latest_messages_in_order(session_store):
    _create(session_store)
    for turn in range(1, 13):
        session_store.append_messages(
            user_id="user-a", session_key="session-1", messages=_turn(turn, f"q{turn}", f"a{turn}")
        )

    recent = session_store.recent_context("session-1")
    assert len(recent) == session_store.DEFAULT_CONTEXT_MESSAGES
    assert recent[0]["content"] == "q3"
    assert recent[-1]["content"] == "a12"
    assert [m["content"] for m in session_store.recent_context("session-1", 2)] == ["q12", "a12"]
    assert len(session_store.load_messages("session-1")) == 24


def test_unknown_role_is_rejected(session_store):
    _create(session_store)
    with pytest.raises(SessionPolicyError):
        session_store.append_messages(
            user_id="user-a",
            session_key="session-1",
            messages=[{"role": "system", "content": "x", "turn_number": 1}],
        )
    assert session_store.get_session("session-1")["message_count"] == 0


def test_save_state_replaces_snapshot(session_store):
    _create(session_store)
    session_store.save_state(user_id="user-a", session_key="session-1", state={"turn_count": 3, "user_id": "user-a"})
    assert session_store.get_session("session-1")["state"] == {"turn_count": 3, "user_id": "user-a"}

    with pytest.raises(KeyError):
        session_store.save_state(user_id="user-a", session_key="missing", state={})


def test_delete_old_sessions_removes_sessions_and_messages(session_store):
    _create(session_store, "old-session")
    _create(session_store, "fresh-session")
    session_store.append_messages(user_id="user-a", session_key="old-session", messages=_turn(1, "a", "b"))
    stale = to_iso(utc_now() - timedelta(days=45))
    with session_store._db.connection() as conn:
        conn.execute("UPDATE chat_sessions SET updated_at = ? WHERE session_key = ?", (stale, "old-session"))

    assert session_store.delete_old_sessions(30) == 1
    assert session_store.get_session("old-session") is None
    assert session_store.load_messages("old-session") == []
    assert session_store.get_session("fresh-session") is not None


def test_stats_are_scoped_by_user(session_store):
    _create(session_store, "s-1")
    _create(session_store, "s-2")
    _create(session_store, "s-3", user_id="user-b")
    session_store.append_messages(user_id="user-a", session_key="s-1", messages=_turn(1, "a", "b"))
    session_store.append_messages(user_id="user-a", session_key="s-1", messages=_turn(2, "c", "d"))
    session_store.append_messages(user_id="user-b", session_key="s-3", messages=_turn(1, "e", "f"))

    assert session_store.get_stats("user-a") == {
        "total_sessions": 2,
        "total_messages": 4,
        "avg_messages_per_session": 2.0,
    }
    assert session_store.get_stats()["total_messages"] == 6
    assert session_store.get_stats("nobody")["avg_messages_per_session"] == 0.0


def test_session_access_check():
    guard = SessionPolicyGuard()
    assert guard.check_session_access("user-a", None).allowed
    assert guard.check_session_access("user-a", "user-a").allowed
    denied = guard.check_session_access("user-a", "user-b")
    assert not denied.allowed
    assert denied.reason


def test_parse_iso_handles_zulu_and_naive_values():
    assert parse_iso("2026-03-01T10:00:00Z").utcoffset() == timedelta(0)
    assert parse_iso("2026-03-01T10:00:00").utcoffset() == timedelta(0)
    assert parse_iso("not a date") is None
    assert parse_iso(None) is None
