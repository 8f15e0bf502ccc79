import asyncio

import jwt
import pytest
from fastapi.testclient import TestClient

from livecoach import server
from livecoach.services.registry import ServiceRegistry


@pytest.fixture
def registry(monkeypatch, fakes, modules, catalog, session_store, feedback_store, fast_coach, fast_pipeline):
    reg = ServiceRegistry(
        modules=modules,
        catalog=catalog,
        chat_service=fakes.ChatService(fakes.Chat(replies=("Slice it thin.",))),
        session_store=session_store,
        feedback_store=feedback_store,
        coach=fast_coach,
        pipeline=fast_pipeline,
    )
    monkeypatch.setattr(server, "registry", reg)
    return reg


@pytest.fixture
def client(registry):
    with TestClient(server.app) as c:
        yield c


def receive_until(ws, msg_type, limit=50):
    for _ in range(limit):
        msg = ws.receive_json()
        if msg["type"] == msg_type:
            return msg
    raise AssertionError(f"no {msg_type} message")


class TestRest:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["active_sessions"] == 0

    def test_token_round_trip(self, client):
        body = client.get("/token", params={"module_id": "sandwich-making", "session_token": "abc"}).json()
        assert body["session_token"] == "abc"
        payload = server.read_session_token(body["token"])
        assert payload["module_id"] == "sandwich-making"

    def test_token_generates_session_token(self, client):
        body = client.get("/token", params={"module_id": "sandwich-making"}).json()
        assert len(body["session_token"]) == 32

    def test_tampered_token_rejected(self):
        forged = jwt.encode({"module_id": "m", "session_token": "t"}, "wrong-secret", algorithm="HS256")
        with pytest.raises(jwt.InvalidTokenError):
            server.read_session_token(forged)

    def test_unknown_session(self, client):
        assert client.get("/session/nope").status_code == 404
        assert client.get("/sessions").json() == {}

    def test_summary(self, client, session_store):
        asyncio.run(session_store.put("sandwich-making", "tok", {
            "current_step_index": 2,
            "score": 90,
            "live_coach_events": [
                {"event_type": "step_advance", "step_index": 0, "timestamp": 100.0, "module_id": "sandwich-making"},
                {"event_type": "step_advance", "step_index": 1, "timestamp": 160.0, "module_id": "sandwich-making"},
            ],
        }))
        body = client.get("/modules/sandwich-making/sessions/tok/summary").json()
        assert body["score"] == 90
        assert body["started_at"] == 100.0
        assert body["durations_per_step"] == {"0": 60.0}

    def test_summary_missing(self, client):
        assert client.get("/modules/sandwich-making/sessions/none/summary").status_code == 404

    def test_feedback(self, client, feedback_store):
        log_id = asyncio.run(feedback_store.log_interaction("tok", "sandwich-making", 0, "p", "answer"))
        resp = client.post(f"/feedback/{log_id}", json={"feedback": "Good"})
        assert resp.status_code == 200
        assert resp.json()["feedback"] == "good"
        assert feedback_store.get(log_id).feedback == "good"

    def test_feedback_unknown_log(self, client):
        assert client.post("/feedback/missing", json={"feedback": "good"}).status_code == 404


class TestDetectionParsing:
    def test_bad_entries_skipped(self):
        objects = server._parse_detections([
            {"label": "knife", "score": "high"},
            {"label": "bread", "box": None, "score": "0.8"},
            {"score": 0.5},
            "toaster",
        ], "s1")
        assert [(o.label, o.score) for o in objects] == [("bread", 0.8)]

    def test_non_list_payload(self):
        assert server._parse_detections({"label": "knife"}, "s1") == []


class TestWebSocket:
    def test_ping(self, client):
        with client.websocket_connect("/ws/coach") as ws:
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_input_without_session(self, client):
        with client.websocket_connect("/ws/coach") as ws:
            ws.send_json({"type": "advance"})
            assert ws.receive_json()["message"] == "No active session"

    def test_bad_token(self, client):
        with client.websocket_connect("/ws/coach") as ws:
            ws.send_json({"type": "start_session", "token": "not-a-jwt"})
            assert receive_until(ws, "error")["message"].startswith("Invalid session")

    def test_unknown_module(self, client):
        with client.websocket_connect("/ws/coach") as ws:
            ws.send_json({"type": "start_session", "module_id": "nope"})
            assert "nope" in receive_until(ws, "error")["message"]

    def test_malformed_detection_keeps_session(self, client, registry):
        with client.websocket_connect("/ws/coach") as ws:
            ws.send_json({"type": "start_session", "module_id": "sandwich-making",
                          "session_token": "tok", "vision": False})
            receive_until(ws, "session_started")
            ws.send_json({"type": "detections", "objects": [
                {"label": "knife", "score": "high"},
                {"label": "bread", "box": 7},
                {"label": "cutting board", "score": 0.9},
            ]})
            ws.send_json({"type": "detections", "objects": "knife"})
            ws.send_json({"type": "ping"})
            receive_until(ws, "pong")
            assert registry.active_count == 1
            svc = next(iter(registry.all_services.values()))
            assert svc.telemetry.snapshots_received == 2
            ws.send_json({"type": "stop_session"})
            receive_until(ws, "session_stopped")

    def test_voice_session(self, client, registry):
        with client.websocket_connect("/ws/coach") as ws:
            ws.send_json({"type": "start_session", "module_id": "sandwich-making",
                          "session_token": "tok", "vision": False})
            starting = receive_until(ws, "session_starting")
            assert starting["data"]["session_token"] == "tok"
            started = receive_until(ws, "session_started")
            assert started["data"]["session"]["status"] == "listening"
            assert registry.active_count == 1

            ws.send_json({"type": "transcript", "text": "hey adapt how thin?", "is_final": True})
            final = None
            while final is None:
                msg = ws.receive_json()
                if msg["type"] == "ai_text" and msg["final"]:
                    final = msg
            assert final["text"] == "Slice it thin."
            speak = receive_until(ws, "speak")
            assert speak["text"] == "Slice it thin."
            assert speak["voice"] == "coach"
            ws.send_json({"type": "speech_done", "speech_id": speak["speech_id"]})

            ws.send_json({"type": "advance"})
            step = receive_until(ws, "step")
            assert step["step_index"] == 1

            ws.send_json({"type": "stop_session"})
            stopped = receive_until(ws, "session_stopped")
            assert stopped["data"]["step_index"] == 1
        assert registry.active_count == 0
