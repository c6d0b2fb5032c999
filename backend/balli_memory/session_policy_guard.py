from __future__ import annotations

import re
from dataclasses import dataclass


class SessionPolicyError(Exception):
    pass


@dataclass(frozen=True)
class SessionAccess:
    allowed: bool
    reason: str | None = None


class SessionPolicyGuard:
    _SESSION_KEY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{0,127}$")
    _ALLOWED_ROLES = {"user", "assistant", "model"}

    def ensure_session_scope(self, session_key: str) -> None:
        if not session_key or not self._SESSION_KEY_RE.fullmatch(session_key):
            raise SessionPolicyError("Invalid session scope.")

    def ensure_user_scope(self, requested_user_id: str, owner_user_id: str) -> None:
        if requested_user_id != owner_user_id:
            raise SessionPolicyError("Cross-user session access is blocked.")

    def check_session_access(self, requested_user_id: str, owner_user_id: str | None) -> SessionAccess:
        if owner_user_id is None or owner_user_id == requested_user_id:
            return SessionAccess(allowed=True)
        return SessionAccess(allowed=False, reason="Session belongs to another user.")

    def normalize_role(self, role: str) -> str:
        cleaned = (role or "").strip().lower()
        if cleaned not in self._ALLOWED_ROLES:
            raise SessionPolicyError(f"Unsupported message role: {role!r}")
        # Stored history always uses "assistant"; "model" is accepted from callers.
        return "assistant" if cleaned == "model" else cleaned
