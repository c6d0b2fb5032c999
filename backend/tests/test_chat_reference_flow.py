from __future__ import annotations

import json

import pytest

from sse_utils import event_payloads, parse_sse_events, token_text

TURN_ONE_EXTRACTION = {
    "entities": {"foods": [{"name": "yulaf", "salience": 1.0}]},
    "discourse": {
        "current_topic": "kahvaltı",
        "last_question": {"type": "what", "subject": "kahvaltı", "verb": "ne yemeli"},
        "last_statement": {"claim": "yulaf iyi bir kahvaltı seçeneği", "by": "assistant"},
    },
    "ai_outputs": {"lists_presented": [{"items": ["yulaf", "yumurta"], "context": "kahvaltı önerileri"}]},
}


@pytest.fixture
def fake_llm(backend_module, monkeypatch):
    calls: list[dict] = []
    extractions: list[str] = []

    def fake_chat_reply(*, system_prompt, message, history, fallback_reply, config=None):
        calls.append({"system_prompt": system_prompt, "message": message, "history": list(history)})
        return f"Cevap {len(calls)}"

    async def fake_generate(prompt, config):
        extractions.append(prompt)
        return json.dumps(TURN_ONE_EXTRACTION)

    monkeypatch.setattr(backend_module, "llm_chat_reply", fake_chat_reply)
    monkeypatch.setattr(backend_module, "generate_text", fake_generate)
    return calls, extractions


def _chat(client, headers, message, session_key="session-user-a"):
    return client.post("/chat/stream", headers=headers, json={"message": message, "session_key": session_key})


def test_chat_stream_sse_contract(client, auth_headers, fake_llm):
    response = _chat(client, auth_headers("user-a"), "Kahvaltıda ne yemeliyim?")
    assert response.status_code == 200
    assert "text/event-stream" in response.headers.get("content-type", "")

    events = parse_sse_events(response.text)
    event_types = [event.get("event") for event in events]
    assert event_types[0] == "references"
    assert set(event_types) == {"references", "token", "message"}

    references = event_payloads(events, "references")[0]
    assert references["primary"]["type"] == "none"
    assert references["detected"] == []
    assert references["resolved"] == []
    assert token_text(events) == "Cevap 1"
    assert event_payloads(events, "message") == [{"text": "Cevap 1"}]


def test_follow_up_ellipsis_is_resolved_from_stored_state(client, auth_headers, fake_llm):
    calls, extractions = fake_llm
    headers = auth_headers("user-a")

    _chat(client, headers, "Kahvaltıda ne yemeliyim?")
    assert "REFERENCE RESOLUTION GUIDANCE" not in calls[0]["system_prompt"]
    assert len(extractions) == 1

    state = client.get("/sessions/session-user-a/state", headers=headers).json()
    assert state["message_count"] == 2
    assert state["state"]["discourse"]["last_question"]["subject"] == "kahvaltı"
    assert state["most_salient"]["name"] == "yulaf"

    response = _chat(client, headers, "ya akşam?")
    events = parse_sse_events(response.text)
    references = event_payloads(events, "references")[0]
    assert references["primary"]["type"] == "ellipsis"
    assert references["required_layers"] == ["discourse"]
    assert references["resolved"][0]["resolved_to"] == "ya akşam kahvaltı ne yemeli?"

    system_prompt = calls[1]["system_prompt"]
    assert "<reference_guidance>" in system_prompt
    assert "REFERENCE RESOLUTION GUIDANCE:" in system_prompt
    assert "ya akşam kahvaltı ne yemeli?" in system_prompt
    assert [item["content"] for item in calls[1]["history"]] == ["Kahvaltıda ne yemeliyim?", "Cevap 1"]

    assert "[user, turn 2]: ya akşam?" in extractions[1]
    assert "Kahvaltıda ne yemeliyim?" not in extractions[1].split("NEW MESSAGES TO PROCESS:")[1]
    state = client.get("/sessions/session-user-a/state", headers=headers).json()
    assert state["message_count"] == 4
    assert state["state"]["turn_count"] == 2
    assert state["state"]["discourse"]["previous_topic"] == "kahvaltı"


def test_without_providers_reply_and_state_use_fallbacks(client, auth_headers, backend_module):
    headers = auth_headers("user-a")
    response = _chat(client, headers, "Lantus vurdum, şekerim 180 mg/dl")
    events = parse_sse_events(response.text)
    assert event_payloads(events, "message") == [{"text": backend_module.FALLBACK_REPLY}]

    state = client.get("/sessions/session-user-a/state", headers=headers).json()["state"]
    assert [item["name"] for item in state["entities"]["medications"]] == ["Lantus"]
    assert state["entities"]["medications"][0]["mentioned_by"] == "user"
    assert state["entities"]["measurements"][0]["value"] == 180
    assert state["message_count"] == 2


def test_background_update_failure_is_not_surfaced(client, auth_headers, backend_module, fake_llm, monkeypatch):
    def broken_save_state(**kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(backend_module.container.sessions, "save_state", broken_save_state)
    response = _chat(client, auth_headers("user-a"), "Merhaba")
    assert response.status_code == 200
    assert "error" not in [event.get("event") for event in parse_sse_events(response.text)]

    session = backend_module.container.sessions.get_session("session-user-a")
    assert session["message_count"] == 2
    assert session["state"]["message_count"] == 0


def test_session_scope_violations_stream_an_error(client, auth_headers, fake_llm):
    _chat(client, auth_headers("user-a"), "Merhaba")

    events = parse_sse_events(_chat(client, auth_headers("user-b"), "Merhaba").text)
    assert [event.get("event") for event in events] == ["error"]
    assert "Cross-user" in event_payloads(events, "error")[0]["message"]

    events = parse_sse_events(_chat(client, auth_headers("user-a"), "Merhaba", session_key="bad key").text)
    assert event_payloads(events, "error") == [{"message": "Invalid session scope."}]


def test_default_session_key_is_derived_from_user(client, auth_headers, backend_module, fake_llm):
    _chat(client, auth_headers("user-a"), "Merhaba", session_key=None)
    assert backend_module.container.sessions.get_stats("user-a")["total_sessions"] == 1


def test_requests_require_identity(client):
    assert client.post("/chat/stream", json={"message": "Merhaba"}).status_code == 401
    assert client.get("/sessions/stats").status_code == 401
    assert client.get("/sessions/stats", headers={"X-User-Id": "bad id!"}).status_code == 400


def test_session_state_endpoint_is_owner_scoped(client, auth_headers, fake_llm):
    _chat(client, auth_headers("user-a"), "Merhaba")
    assert client.get("/sessions/session-user-a/state", headers=auth_headers("user-b")).status_code == 403
    assert client.get("/sessions/unknown-session/state", headers=auth_headers("user-a")).status_code == 404
    assert client.get("/sessions/bad%20key/state", headers=auth_headers("user-a")).status_code == 400


def test_stats_and_cleanup_endpoints(client, auth_headers, fake_llm):
    headers = auth_headers("user-a")
    _chat(client, headers, "Merhaba")
    _chat(client, headers, "Merhaba", session_key="session-user-a-2")

    stats = client.get("/sessions/stats", headers=headers).json()
    assert stats == {"total_sessions": 2, "total_messages": 4, "avg_messages_per_session": 2.0}

    cleanup = client.post("/sessions/cleanup", headers=headers, json={"days_old": 30})
    assert cleanup.json() == {"deleted": 0, "days_old": 30}
    assert client.post("/sessions/cleanup", headers=headers, json={"days_old": 0}).status_code == 422


def test_analyze_previews_resolution_without_generation(client, auth_headers, fake_llm):
    calls, extractions = fake_llm
    headers = auth_headers("user-a")

    preview = client.post("/references/analyze", headers=headers, json={"message": "Bunu yiyebilir miyim?"}).json()
    assert preview["primary"]["type"] == "definite"
    assert preview["resolved"][0]["resolved_to"] == "unknown"
    assert "no clear antecedent" in preview["guidance"]

    _chat(client, headers, "Kahvaltıda ne yemeliyim?")
    preview = client.post(
        "/references/analyze",
        headers=headers,
        json={"message": "İkincisi nasıl hazırlanır?", "session_key": "session-user-a"},
    ).json()
    assert preview["resolved"][0]["resolved_to"] == "yumurta"
    assert len(calls) == 1
    assert len(extractions) == 1

    denied = client.post(
        "/references/analyze",
        headers=auth_headers("user-b"),
        json={"message": "Bunu?", "session_key": "session-user-a"},
    )
    assert denied.status_code == 403
