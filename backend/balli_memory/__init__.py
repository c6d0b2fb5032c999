from .database import SQLiteMemoryDB
from .session_policy_guard import SessionAccess, SessionPolicyError, SessionPolicyGuard
from .session_store import ChatSessionStore

__all__ = [
    "SQLiteMemoryDB",
    "ChatSessionStore",
    "SessionAccess",
    "SessionPolicyGuard",
    "SessionPolicyError",
]
