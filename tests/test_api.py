import pytest
from fastapi.testclient import TestClient

from ponder.application.agent_service import AgentService
from ponder.application.api.api_server import create_app
from ponder.config import AgentSettings

from conftest import ScriptedModel, word_count


def make_client(model=None):
    service = AgentService(
        model or ScriptedModel(),
        AgentSettings(run_timeout_seconds=5.0),
        token_counter=word_count,
    )
    return TestClient(create_app(service, configure_logging=False))


@pytest.fixture
def client():
    with make_client() as client:
        yield client


def create_session(client):
    response = client.post("/sessions")
    assert response.status_code == 201
    return response.json()["session_id"]


def test_health(client):
    body = client.get("/health").json()

    assert body["status"] == "healthy"
    assert body["active_runs"] == 0


def test_session_lifecycle(client):
    response = client.post("/sessions")
    assert response.status_code == 201
    created = response.json()
    session_id = created["session_id"]
    assert created["websocket_url"] == f"/ws/sessions/{session_id}"
    assert created["budget"] == 100000

    assert client.get("/sessions").json() == {"sessions": [session_id]}

    details = client.get(f"/sessions/{session_id}").json()
    assert details["session_id"] == session_id
    assert details["status"] is None
    assert details["token_usage"]["remaining"] == 100000

    assert client.delete(f"/sessions/{session_id}").status_code == 204
    assert client.get("/sessions").json() == {"sessions": []}
    assert client.get(f"/sessions/{session_id}").status_code == 404


def test_run_goal_and_fetch_log(client):
    session_id = create_session(client)

    response = client.post(f"/sessions/{session_id}/runs", json={"goal": "say hi", "request_id": "req_fixed"})
    assert response.status_code == 200
    body = response.json()
    assert body["outcome"] == "completed"
    assert body["status"] == "completed"
    assert body["response"] == "Default answer"
    assert body["request_id"] == "req_fixed"
    assert body["error"] is None

    log = client.get(f"/sessions/{session_id}/log").json()
    assert log["request_id"] == "req_fixed"
    assert log["entries"][0]["type"] == "thought"

    text = client.get(f"/sessions/{session_id}/log", params={"format": "text"})
    assert "TRAJECTORY LOG: req_fixed" in text.text

    assert client.get(f"/sessions/{session_id}").json()["status"] == "completed"


def test_run_errors(client):
    assert client.post("/sessions/missing/runs", json={"goal": "x"}).status_code == 404
    assert client.delete("/sessions/missing/runs").status_code == 404
    assert client.get("/sessions/missing/log").status_code == 404

    session_id = create_session(client)
    assert client.post(f"/sessions/{session_id}/runs", json={"goal": ""}).status_code == 422


def test_failed_run_returns_partial_result():
    model = ScriptedModel({"reason": [ValueError("model exploded")]})
    with make_client(model) as client:
        session_id = create_session(client)
        response = client.post(f"/sessions/{session_id}/runs", json={"goal": "anything"})

    assert response.status_code == 502
    body = response.json()
    assert body["outcome"] == "failed"
    assert body["error_type"] == "error"
    assert body["error"] == "model exploded"


def receive_until_result(websocket):
    events = []
    while True:
        event = websocket.receive_json()
        events.append(event)
        if event["type"] == "result":
            return events


def test_websocket_run(client):
    session_id = create_session(client)

    with client.websocket_connect(f"/ws/sessions/{session_id}") as websocket:
        connected = websocket.receive_json()
        assert connected["type"] == "connection"
        assert connected["status"] == "connected"

        websocket.send_json({"type": "user_message", "content": "say hi"})
        events = receive_until_result(websocket)

        phases = [e["payload"]["phase"] for e in events if e["type"] == "status"]
        assert phases[0] == "idle"
        assert "thinking" in phases
        assert "done" in phases

        markdown = "".join(e["payload"] for e in events if e["type"] == "markdown")
        assert markdown == "Default answer"

        result = events[-1]["payload"]
        assert result["outcome"] == "completed"
        assert result["response"] == "Default answer"

        websocket.send_json({"type": "cancel"})
        error = websocket.receive_json()
        assert error["type"] == "error"
        assert error["error_code"] == "no_active_run"

        websocket.send_json({"type": "user_message", "content": ""})
        assert websocket.receive_json()["error_code"] == "invalid_message"

        websocket.send_json({"type": "shout"})
        assert websocket.receive_json()["error_code"] == "unsupported_event"
