from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from starlette.background import BackgroundTask

from balli_llm import generate_text, llm_chat_reply
from balli_memory import ChatSessionStore, SessionPolicyError, SQLiteMemoryDB
from balli_reference_core import (
    ConversationState,
    DetectedReference,
    ReferenceType,
    ResolvedReference,
    StateSettings,
    build_context_guidance,
    detect_references,
    extract_conversation_state,
    get_most_salient_entity,
    get_primary_reference,
    get_required_layers,
    initialize_conversation_state,
    resolve_references,
)

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


_bootstrap_local_env()

logging.basicConfig(
    level=getattr(logging, (os.getenv("BALLI_LOG_LEVEL") or "INFO").strip().upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("balli")


FALLBACK_REPLY = (
    "Şu anda sana düzgün bir cevap hazırlayamıyorum. "
    "Birkaç dakika sonra tekrar sorar mısın?"
)


class ChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=4000)
    session_key: str | None = None


class AnalyzeRequest(BaseModel):
    message: str = Field(min_length=1, max_length=4000)
    session_key: str | None = None


class CleanupRequest(BaseModel):
    days_old: int = Field(default=30, ge=1)


def _env_positive_int(name: str, default: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > 0 else default


class BalliApp:
    def __init__(self) -> None:
        db_path = os.getenv(
            "BALLI_DB_PATH",
            str((Path(__file__).resolve().parent / "balli.sqlite")),
        )
        self.db = SQLiteMemoryDB(db_path)
        self.sessions = ChatSessionStore(self.db)
        self.settings = StateSettings.from_env()
        self.context_messages = _env_positive_int("BALLI_CONTEXT_MESSAGES", ChatSessionStore.DEFAULT_CONTEXT_MESSAGES)

    def open_session(self, *, user_id: str, session_key: str) -> tuple[ConversationState, dict[str, Any]]:
        session = self.sessions.load_or_create(
            user_id=user_id,
            session_key=session_key,
            initial_state=initialize_conversation_state(user_id).to_dict(),
        )
        return ConversationState.from_dict(session["state"]), session

    def peek_state(self, *, user_id: str, session_key: str) -> ConversationState:
        session = self.sessions.get_session(session_key)
        if session is None:
            return initialize_conversation_state(user_id)
        self.sessions.guard.ensure_user_scope(user_id, session["user_id"])
        return ConversationState.from_dict(session["state"])

    async def update_state(self, *, user_id: str, session_key: str) -> None:
        # Last write wins when two turns of one session overlap.
        try:
            session = self.sessions.get_session(session_key)
            if session is None:
                return
            previous = ConversationState.from_dict(session["state"])
            result = await extract_conversation_state(
                self.sessions.load_messages(session_key),
                previous,
                generate=generate_text,
                settings=self.settings,
                user_id=user_id,
            )
            if result.state is previous:
                return
            self.sessions.save_state(user_id=user_id, session_key=session_key, state=result.state.to_dict())
            logger.info(
                "Updated session state %s (turn %s, %sms, fallback: %s)",
                session_key,
                result.state.turn_count,
                result.extraction_time,
                result.used_fallback,
            )
        except Exception:
            logger.exception("State update failed for session %s", session_key)


container = BalliApp()
app = FastAPI(title="Balli Backend")

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in allowed_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_TRUSTED_USER_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{1,63}$")


def _validated_trusted_user_id(x_user_id: str) -> str:
    candidate = x_user_id.strip()
    if not candidate or not _TRUSTED_USER_ID_RE.fullmatch(candidate):
        raise HTTPException(status_code=400, detail="Invalid X-User-Id")
    return candidate


def get_user_id(auth_header: str | None) -> str:
    raw = (auth_header or "").replace("Bearer", "", 1).strip()
    if not raw:
        if os.getenv("ALLOW_ANON", "false").lower() == "true":
            return "demo-user"
        raise HTTPException(status_code=401, detail="Missing Authorization")
    # Bearer token is opaque; identity claims are not trusted without upstream verification.
    if len(raw) > 96:
        return f"token_{hashlib.sha256(raw.encode('utf-8')).hexdigest()[:24]}"
    return raw


def resolve_user_id(authorization: str | None, x_user_id: str | None) -> str:
    if x_user_id is not None:
        return _validated_trusted_user_id(x_user_id)
    return get_user_id(authorization)


def _session_key_for(user_id: str, session_key: str | None) -> str:
    return session_key or f"session-{hashlib.sha1(user_id.encode('utf-8')).hexdigest()[:24]}"


def _emit_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def _references_payload(
    references: list[DetectedReference],
    primary: DetectedReference,
    resolved: list[ResolvedReference],
) -> dict[str, Any]:
    return {
        "detected": [ref.as_dict() for ref in references if ref.type is not ReferenceType.NONE],
        "primary": primary.as_dict(),
        "required_layers": sorted(get_required_layers(references)),
        "resolved": [item.as_dict() for item in resolved],
    }


def build_system_prompt(reference_guidance: str) -> str:
    sections = [
        "<identity>\n"
        "Senin adın Balli. Kullanıcının diyabet ve beslenme konusunda bilgili, yakın bir arkadaşısın.\n"
        "</identity>",
        "<communication_style>\n"
        "- Samimi ve sıcak bir arkadaş gibi konuş, asistan gibi değil\n"
        "- Doğal Türkçe kullan, gereksiz açıklamalar yapma\n"
        "- Empati yap ama patronize etme\n"
        "- Kısa ve öz cevaplar ver\n"
        "</communication_style>",
        "<critical_rules>\n"
        "- İnsülin hesaplaması YAPMA, sen doktor değilsin\n"
        "- Öğün atlama veya doz değiştirme önerme\n"
        '- Bilmediğin konularda "Bu konuda bilgim yok" de\n'
        "</critical_rules>",
    ]
    if reference_guidance:
        sections.append(f"<reference_guidance>{reference_guidance}</reference_guidance>")
    sections.append(
        "<response_approach>\n"
        "1. Önce reference_guidance bölümünü oku ve mesajdaki gizli referansları çöz\n"
        "2. Cevapları kısa tut, detay istenmedikçe\n"
        "3. Konuşmanın önceki kısmıyla tutarlı kal\n"
        "</response_approach>"
    )
    return "\n\n".join(sections)


def _next_turn_number(state: ConversationState, recent: list[dict[str, Any]]) -> int:
    last_logged = max((int(message.get("turn_number") or 0) for message in recent), default=0)
    return max(state.turn_count, last_logged) + 1


@app.post("/chat/stream")
def chat_stream(
    payload: ChatRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    session_key = _session_key_for(user_id, payload.session_key)
    turn = {"recorded": False}

    def event_stream():
        try:
            state, _session = container.open_session(user_id=user_id, session_key=session_key)

            references = detect_references(payload.message)
            primary = get_primary_reference(references)
            logger.info("Primary reference: %s (confidence %.2f)", primary.type.value, primary.confidence)
            resolved = resolve_references(payload.message, references, state)
            guidance = build_context_guidance(resolved)
            yield _emit_sse("references", _references_payload(references, primary, resolved))

            history = container.sessions.recent_context(session_key, container.context_messages)
            reply = llm_chat_reply(
                system_prompt=build_system_prompt(guidance),
                message=payload.message,
                history=history,
                fallback_reply=FALLBACK_REPLY,
            )
            for chunk in reply:
                yield _emit_sse("token", {"delta": chunk})
            yield _emit_sse("message", {"text": reply})

            turn_number = _next_turn_number(state, history)
            container.sessions.append_messages(
                user_id=user_id,
                session_key=session_key,
                messages=[
                    {"role": "user", "content": payload.message, "turn_number": turn_number},
                    {"role": "assistant", "content": reply, "turn_number": turn_number},
                ],
            )
            turn["recorded"] = True
        except SessionPolicyError as exc:
            yield _emit_sse("error", {"message": str(exc)})
        except Exception as exc:
            logger.exception("chat_stream error: %s", exc)
            yield _emit_sse("error", {"message": "Chat pipeline error."})

    async def update_state_after_turn() -> None:
        if turn["recorded"]:
            await container.update_state(user_id=user_id, session_key=session_key)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        background=BackgroundTask(update_state_after_turn),
    )


def _owned_session(user_id: str, session_key: str) -> dict[str, Any]:
    try:
        session = container.sessions.get_session(session_key)
    except SessionPolicyError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    access = container.sessions.guard.check_session_access(user_id, session["user_id"])
    if not access.allowed:
        raise HTTPException(status_code=403, detail=access.reason)
    return session


@app.get("/sessions/stats")
def sessions_stats(
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    return container.sessions.get_stats(user_id)


@app.post("/sessions/cleanup")
def sessions_cleanup(
    payload: CleanupRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    resolve_user_id(authorization, x_user_id)
    deleted = container.sessions.delete_old_sessions(payload.days_old)
    return {"deleted": deleted, "days_old": payload.days_old}


@app.get("/sessions/{session_key}/state")
def session_state(
    session_key: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    session = _owned_session(user_id, session_key)
    state = ConversationState.from_dict(session["state"])
    salient = get_most_salient_entity(state)
    return {
        "session_key": session["session_key"],
        "message_count": session["message_count"],
        "updated_at": session["updated_at"],
        "state": state.to_dict(),
        "most_salient": (
            {
                "name": salient.name,
                "salience": salient.salience,
                "type": salient.type,
                "turn_delta": salient.turn_delta,
            }
            if salient
            else None
        ),
    }


@app.post("/references/analyze")
def references_analyze(
    payload: AnalyzeRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    session_key = _session_key_for(user_id, payload.session_key)
    try:
        container.sessions.guard.ensure_session_scope(session_key)
    except SessionPolicyError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        state = container.peek_state(user_id=user_id, session_key=session_key)
    except SessionPolicyError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    references = detect_references(payload.message)
    primary = get_primary_reference(references)
    resolved = resolve_references(payload.message, references, state)
    return {
        **_references_payload(references, primary, resolved),
        "guidance": build_context_guidance(resolved),
    }
