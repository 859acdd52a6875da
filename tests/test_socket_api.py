import base64
import itertools
import json

import pytest
from fastapi.testclient import TestClient

from processing.pipeline import FALLBACK_MARKER
from processing.summarizer import Summarizer
from server.app import create_app
from server.connections import ConnectionManager

from conftest import WEBM_HEADER, FakeBackend

_ack_ids = itertools.count(1)


@pytest.fixture
def app(db, pipeline):
    return create_app(db, pipeline, ConnectionManager(heartbeat_timeout=90, sweep_interval=15))


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def emit(ws, event: str, data: dict | None = None) -> int:
    ack_id = next(_ack_ids)
    ws.send_text(json.dumps({"event": event, "data": data or {}, "ack": ack_id}))
    return ack_id


def receive_until(ws, predicate, limit: int = 50) -> list[dict]:
    messages = []
    for _ in range(limit):
        message = ws.receive_json()
        messages.append(message)
        if predicate(message):
            return messages
    raise AssertionError(f"condition not met in {limit} messages: {messages}")


def ack_for(ack_id: int):
    return lambda m: m["event"] == "ack" and m["ack"] == ack_id


def request(ws, event: str, data: dict | None = None) -> tuple[dict, list[dict]]:
    ack_id = emit(ws, event, data)
    messages = receive_until(ws, ack_for(ack_id))
    return messages[-1]["data"], messages[:-1]


def test_health(client) -> None:
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_full_session_over_websocket(client, db) -> None:
    with client.websocket_connect("/ws") as ws:
        ack, pushed = request(ws, "start", {"userId": "u1", "title": "Standup"})
        assert ack["success"] is True
        session_id = ack["sessionId"]
        assert ack["timestamp"]
        assert pushed[0]["event"] == "status"
        assert pushed[0]["data"]["status"] == "recording"
        assert db.get_session(session_id)["state"] == "recording"

        for index, data in enumerate([WEBM_HEADER + b"one", b"two"]):
            ack, _ = request(ws, "chunk", {
                "sessionId": session_id, "chunkIndex": index, "audioData": _b64(data),
            })
            assert ack == {
                "success": True,
                "chunkId": ack["chunkId"],
                "chunkIndex": index,
                "sessionId": session_id,
            }

        end_ack = emit(ws, "end", {"sessionId": session_id})
        messages = receive_until(ws, lambda m: m["event"] == "completed")

    acks = [m for m in messages if m["event"] == "ack"]
    assert acks[0]["ack"] == end_ack and acks[0]["data"]["success"] is True
    statuses = [m["data"]["status"] for m in messages if m["event"] == "status"]
    assert statuses == ["processing", "completed"]
    completed = messages[-1]["data"]
    assert completed["sessionId"] == session_id
    assert completed["summaryId"]

    response = client.get(completed["downloadReference"])
    assert response.status_code == 200
    assert "attachment" in response.headers["content-disposition"]
    assert "hello from the whole session" in response.text
    assert "ship friday" in response.text

    detail = client.get(f"/api/sessions/{session_id}").json()
    assert detail["state"] == "completed"
    assert detail["summary"]["id"] == completed["summaryId"]
    assert [c["chunkIndex"] for c in detail["chunks"]] == [0, 1]


def test_chunk_while_paused_fails_with_ack_and_error_event(client, db) -> None:
    with client.websocket_connect("/ws") as ws:
        ack, _ = request(ws, "start", {"userId": "u1"})
        session_id = ack["sessionId"]
        ack, _ = request(ws, "pause", {"sessionId": session_id})
        assert ack == {"success": True, "sessionId": session_id}

        ack, _ = request(ws, "chunk", {
            "sessionId": session_id, "chunkIndex": 0, "audioData": _b64(WEBM_HEADER),
        })
        error = ws.receive_json()

    assert ack["success"] is False
    assert "not recording" in ack["error"]
    assert error["event"] == "error"
    assert "not recording" in error["data"]["message"]
    assert db.list_chunks(session_id) == []


def test_invalid_payloads_are_rejected_before_side_effects(client, db) -> None:
    with client.websocket_connect("/ws") as ws:
        ack, _ = request(ws, "start", {"userId": ""})
        assert ack["success"] is False
        assert "Invalid payload" in ack["error"]
        assert ws.receive_json()["event"] == "error"

        ack, _ = request(ws, "chunk", {"sessionId": "s", "chunkIndex": -1, "audioData": "AAAA"})
        assert ack["success"] is False
        assert "chunkIndex" in ack["error"]
        ws.receive_json()

        ack, _ = request(ws, "chunk", {"sessionId": "s", "chunkIndex": 0, "audioData": "%%%"})
        assert "base64" in ack["error"]
        ws.receive_json()

        ws.send_text("not json")
        error = ws.receive_json()
        assert error == {"event": "error", "data": {"message": "Invalid JSON", "timestamp": error["data"]["timestamp"]}}

        ack, _ = request(ws, "teleport", {})
        assert ack == {"success": False, "error": "Unknown event: teleport"}

    assert db.list_sessions() == []


def test_unknown_session_and_illegal_transition(client) -> None:
    with client.websocket_connect("/ws") as ws:
        ack, _ = request(ws, "pause", {"sessionId": "missing"})
        assert ack["success"] is False
        assert "not found" in ack["error"]
        ws.receive_json()

        ack, _ = request(ws, "start", {"userId": "u1"})
        ack, _ = request(ws, "resume", {"sessionId": ack["sessionId"]})
        assert ack["success"] is False
        assert "'recording' to 'recording'" in ack["error"]


def test_heartbeat_ack_carries_server_time(client) -> None:
    with client.websocket_connect("/ws") as ws:
        ack, _ = request(ws, "heartbeat", {"timestamp": 1760000000000})
    assert ack["success"] is True
    assert ack["serverTime"]


def test_summarization_failure_still_completes_once(client, pipeline, db) -> None:
    pipeline.summarizer = Summarizer(FakeBackend(error=RuntimeError("quota exceeded")))

    with client.websocket_connect("/ws") as ws:
        ack, _ = request(ws, "start", {"userId": "u1"})
        session_id = ack["sessionId"]
        request(ws, "chunk", {"sessionId": session_id, "chunkIndex": 0, "audioData": _b64(WEBM_HEADER)})
        emit(ws, "end", {"sessionId": session_id})
        messages = receive_until(ws, lambda m: m["event"] == "completed")

    assert sum(1 for m in messages if m["event"] == "completed") == 1
    assert messages[-1]["data"]["summary"].startswith(FALLBACK_MARKER)
    assert db.get_summary(session_id)["content"].startswith(FALLBACK_MARKER)


def test_delete_session(client, db) -> None:
    with client.websocket_connect("/ws") as ws:
        ack, _ = request(ws, "start", {"userId": "u1"})
    session_id = ack["sessionId"]

    assert client.delete(f"/api/sessions/{session_id}").json() == {"deleted": True}
    assert client.get(f"/api/sessions/{session_id}").status_code == 404
    assert client.get(f"/api/download/{session_id}").status_code == 404


def test_binary_frame_is_rejected_and_connection_stays_open(client) -> None:
    with client.websocket_connect("/ws") as ws:
        ws.send_bytes(b"\x00\x01garbage")
        error = ws.receive_json()
        assert error["event"] == "error"
        assert error["data"]["message"] == "Binary frames are not supported"

        ack, _ = request(ws, "heartbeat", {"timestamp": 1760000000000})
    assert ack["success"] is True


def test_delete_releases_session_lock(client, pipeline) -> None:
    with client.websocket_connect("/ws") as ws:
        ack, _ = request(ws, "start", {"userId": "u1"})
        session_id = ack["sessionId"]
        request(ws, "pause", {"sessionId": session_id})
    assert session_id in pipeline._locks

    assert client.delete(f"/api/sessions/{session_id}").status_code == 200
    assert session_id not in pipeline._locks
