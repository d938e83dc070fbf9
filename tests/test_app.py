import pytest
from fastapi.testclient import TestClient

from relay.agents.base import TaskAborted, TaskClient, TaskStream
from relay.agents.events import AssistantText, ResultSummary, SessionIdAnnounced
from relay.server.app import create_app
from relay.server.sessions import SESSION_FILE_NAME
from relay.server.settings import SettingsStore


class _ScriptedClient(TaskClient):
    """Completes immediately, or blocks until aborted when ``block`` is set."""

    def __init__(self, block: bool = False) -> None:
        self.block = block
        self.prompts: list[str] = []

    def start(self, working_dir, prompt, token, options):
        self.prompts.append(prompt)

        async def run():
            yield SessionIdAnnounced(session_id="sid-app")
            if self.block:
                await token.wait()
                raise TaskAborted()
            yield AssistantText(text=f"echo: {prompt}")
            yield ResultSummary(text=f"echo: {prompt}", session_id="sid-app")

        return TaskStream(run())


def _make_app(tmp_path, client, **kwargs):
    return create_app(
        work_dir=tmp_path,
        client=client,
        settings_store=SettingsStore(),
        **kwargs,
    )


@pytest.fixture
def app(tmp_path):
    return _make_app(tmp_path, _ScriptedClient(block=True))


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
    assert resp.json()["channels"] == 0


def test_message_dispatched_then_queued_then_cancelled(client):
    first = client.post("/api/channels/c1/messages", json={"text": "one", "label": "general"})
    second = client.post("/api/channels/c1/messages", json={"text": "two"})

    assert first.json() == {"status": "dispatched"}
    assert second.json()["status"] == "queued"
    assert second.json()["position"] == 1

    channel = client.get("/api/channels/c1").json()
    assert channel["busy"] is True
    assert channel["queued"] == 1
    assert channel["label"] == "general"

    resp = client.post("/api/channels/c1/cancel")
    assert resp.json() == {"cancelled": True, "discarded": 1}
    assert client.get("/api/channels/c1").json()["busy"] is False


def test_cancel_idle_channel(client):
    resp = client.post("/api/channels/nope/cancel")
    assert resp.json() == {"cancelled": False, "discarded": 0}


def test_reset_idle_channel(client):
    resp = client.post("/api/channels/c1/reset")
    assert resp.json() == {"cancelled": False, "discarded": 0}


def test_unknown_channel_is_404(client):
    assert client.get("/api/channels/missing").status_code == 404


@pytest.mark.parametrize("body", [
    {},
    {"text": "   "},
    {"text": "hi", "label": 3},
    {"text": "hi", "new_session": "yes"},
    {"text": "hi", "new_session": True, "continue": True},
])
def test_invalid_message_bodies(client, body):
    assert client.post("/api/channels/c1/messages", json=body).status_code == 400


def test_restores_sessions_on_startup(tmp_path):
    (tmp_path / SESSION_FILE_NAME).write_text('{"c9": {"sessionId": "sid-saved", "channelName": "ops"}}')
    with TestClient(_make_app(tmp_path, _ScriptedClient())) as c:
        channels = c.get("/api/channels").json()
    assert channels[0]["channel_key"] == "c9"
    assert channels[0]["session_id"] == "sid-saved"


# --- settings ---


def test_get_settings_returns_defaults(client):
    data = client.get("/api/settings").json()
    assert data["timeouts.startup"] == 30.0
    assert data["timeouts.activity"] == 300.0
    assert data["claude.model"] is None


def test_put_settings_bulk_update(client):
    resp = client.put("/api/settings", json={"timeouts.activity": 120, "claude.model": "opus"})
    assert resp.status_code == 200
    data = client.get("/api/settings").json()
    assert data["timeouts.activity"] == 120
    assert data["claude.model"] == "opus"


def test_put_settings_rejects_unknown_keys(client):
    resp = client.put("/api/settings", json={"bogus.key": 1})
    assert resp.status_code == 400


def test_single_setting_roundtrip(client):
    assert client.put("/api/settings/timeouts.startup", json={"value": 10}).status_code == 200
    assert client.get("/api/settings/timeouts.startup").json()["value"] == 10
    client.delete("/api/settings/timeouts.startup")
    assert client.get("/api/settings/timeouts.startup").json()["value"] == 30.0


def test_single_setting_errors(client):
    assert client.get("/api/settings/nope").status_code == 404
    assert client.put("/api/settings/timeouts.startup", json={}).status_code == 400
    assert client.put("/api/settings/timeouts.startup", json={"value": -1}).status_code == 400


# --- websocket ---


def test_websocket_message_roundtrip(tmp_path):
    app = _make_app(tmp_path, _ScriptedClient())
    with TestClient(app) as c, c.websocket_connect("/ws/c1?label=general") as ws:
        hello = ws.receive_json()
        assert hello == {"type": "connected", "channel": "c1", "busy": False, "session_id": None}

        ws.send_json({"type": "message", "text": "hi"})
        frames = []
        while True:
            frame = ws.receive_json()
            frames.append(frame)
            if frame["type"] == "batch" and frame["events"][-1]["type"] == "completion":
                break

    submitted = [f for f in frames if f["type"] == "submitted"]
    assert submitted == [{"type": "submitted", "status": "dispatched"}]
    events = [e for f in frames if f["type"] == "batch" for e in f["events"]]
    assert events[0]["type"] == "task_started"
    assert events[-1]["text"] == "echo: hi"
    assert events[-1]["session_id"] == "sid-app"


def test_websocket_rejects_bad_frames(client):
    with client.websocket_connect("/ws/c1") as ws:
        ws.receive_json()
        ws.send_text("not json")
        assert ws.receive_json() == {"type": "error", "message": "Invalid JSON"}
        ws.send_json({"type": "explode"})
        assert "Unknown message type" in ws.receive_json()["message"]
        ws.send_json({"type": "message"})
        assert "Missing required field" in ws.receive_json()["message"]


def test_websocket_cancel(client):
    with client.websocket_connect("/ws/c1") as ws:
        ws.receive_json()
        ws.send_json({"type": "cancel"})
        assert ws.receive_json() == {"type": "cancel_result", "cancelled": False, "discarded": 0}


@pytest.mark.parametrize("frame", [
    {"type": "message", "text": "hi", "new_session": True, "continue": True},
    {"type": "message", "text": "hi", "new_session": "yes"},
    {"type": "message", "text": "   "},
    {"type": "message", "text": 42},
])
def test_websocket_message_uses_rest_validation(client, frame):
    with client.websocket_connect("/ws/c1") as ws:
        ws.receive_json()
        ws.send_json(frame)
        reply = ws.receive_json()
    assert reply["type"] == "error"
    assert client.get("/api/channels/c1").status_code == 404
