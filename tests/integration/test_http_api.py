import json

import pytest
from fastapi.testclient import TestClient

from fiqh_assistant.agents.chat_agent import set_engine
from fiqh_assistant.agents.http_api import app
from fiqh_assistant.pipelines.speech import TimelineOutput
from fiqh_assistant.schemas.models import Source, StreamChunk

SSE_HEADERS = {"Accept": "text/event-stream"}


def _events(body: str):
    events = []
    for block in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines() if ": " in line)
        events.append((lines["event"], json.loads(lines["data"])))
    return events


@pytest.fixture
def engine(make_engine):
    engine = make_engine()
    set_engine(engine)
    return engine


@pytest.fixture
def client(engine):
    with TestClient(app) as test_client:
        yield test_client


def test_status_and_intro_conversation(client):
    status = client.get("/v1/status")
    assert status.status_code == 200
    assert "X-Request-ID" in status.headers
    assert status.json()["status"] == "connected"
    assert status.json()["setup_required"] is False

    conversation = client.get("/v1/conversation").json()
    assert conversation["active_session_id"] is None
    assert conversation["messages"][0]["id"] == "welcome"


def test_chat_creates_session_and_lists_it(client, provider, remote):
    provider.chunks = [
        StreamChunk(text="Zakat is due "),
        StreamChunk(text="after one lunar year.", sources=[Source(uri="https://suffahpk.com/zakat", title="Zakat")]),
    ]

    response = client.post("/v1/chat", json={"prompt": "When is zakat due?"})

    assert response.status_code == 200
    body = response.json()
    session_id = body["session_id"]
    assert body["message"]["content"] == "Zakat is due after one lunar year."
    assert body["message"]["sources"][0]["uri"] == "https://suffahpk.com/zakat"
    assert body["notice"] is None

    sessions = client.get("/v1/sessions").json()
    assert sessions["active_session_id"] == session_id
    assert sessions["sessions"][0]["title"] == "When is zakat due?..."
    assert sessions["sessions"][0]["message_count"] == 3

    detail = client.get(f"/v1/sessions/{session_id}").json()
    assert "createdAt" in detail
    assert [m["role"] for m in detail["messages"]] == ["assistant", "user", "assistant"]

    share = client.get(f"/v1/messages/{body['message']['id']}/share").json()
    assert share["text"].startswith("*Al-Fiqh Assistant*\n\nZakat is due after one lunar year.")
    assert share["text"].endswith("Verified Reference:\nN/A")


def test_chat_streams_server_sent_events(client, provider):
    provider.chunks = [StreamChunk(text="Fasting "), StreamChunk(text="is fard.")]

    response = client.post("/v1/chat?stream=true", json={"prompt": "Is fasting fard?"}, headers=SSE_HEADERS)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = _events(response.text)
    kinds = [kind for kind, _ in events]
    assert kinds == ["user", "chunk", "chunk", "completed"]
    assert "".join(data["delta"] for kind, data in events if kind == "chunk") == "Fasting is fard."
    completed = events[-1][1]
    assert completed["message"]["content"] == "Fasting is fard."
    assert completed["session_id"] is not None


def test_chat_validation_errors(client, engine):
    assert client.post("/v1/chat", json={"prompt": "   "}).status_code == 422
    assert client.post("/v1/chat", json={"prompt": "q", "reply_to_id": "nope"}).status_code == 404
    assert client.post("/v1/chat?stream=true", json={"prompt": "q"}).status_code == 406

    engine.is_loading = True
    try:
        assert client.post("/v1/chat", json={"prompt": "q"}).status_code == 409
        assert client.post("/v1/sessions/any/activate").status_code == 409
    finally:
        engine.is_loading = False


def test_interrupted_reply_maps_to_notice(client, provider):
    provider.fail_after = 0

    response = client.post("/v1/chat", json={"prompt": "q"})
    assert response.status_code == 502
    assert response.json()["detail"] == "Knowledge retrieval interrupted."

    status = client.get("/v1/status").json()
    assert status["notice"]["message"] == "Knowledge retrieval interrupted."

    assert client.delete("/v1/notice").status_code == 204
    assert client.get("/v1/status").json()["notice"] is None

    streamed = client.post("/v1/chat?stream=true", json={"prompt": "again"}, headers=SSE_HEADERS)
    kinds = [kind for kind, _ in _events(streamed.text)]
    assert kinds == ["user", "error"]


def test_session_management(client, remote):
    first = client.post("/v1/chat", json={"prompt": "first"}).json()["session_id"]
    fresh = client.post("/v1/sessions/new").json()
    assert fresh["active_session_id"] is None
    second = client.post("/v1/chat", json={"prompt": "second"}).json()["session_id"]

    activated = client.post(f"/v1/sessions/{first}/activate")
    assert activated.status_code == 200
    assert activated.json()["active_session_id"] == first
    assert client.post("/v1/sessions/missing/activate").status_code == 404

    assert client.delete(f"/v1/sessions/{first}").status_code == 204
    assert client.delete(f"/v1/sessions/{first}").status_code == 404
    assert client.get(f"/v1/sessions/{first}").status_code == 404
    assert client.get("/v1/conversation").json()["active_session_id"] is None
    assert [s["id"] for s in client.get("/v1/sessions").json()["sessions"]] == [second]

    reconnect = client.post("/v1/sync/reconnect")
    assert reconnect.status_code == 200
    assert reconnect.json()["status"] == "connected"
    assert first not in remote.rows

    metrics = client.get("/v1/metrics").json()
    assert metrics["diagnostics"]["sessions"] == {"total": 1, "pending_remote_writes": 0}
    assert metrics["/v1/chat"]["count"] == 2


def test_preferences_round_trip(client, cache):
    assert client.get("/v1/preferences").json() == {"voice": "Ayesha", "language": "en"}

    updated = client.put("/v1/preferences", json={"voice": "Ahmed", "language": "ur"})
    assert updated.json() == {"voice": "Ahmed", "language": "ur"}
    assert cache.load_preferences().voice == "Ahmed"
    assert client.put("/v1/preferences", json={"voice": "Robot"}).status_code == 422


def test_speech_schedule_and_stop(client, engine, output):
    reply = client.post("/v1/chat", json={"prompt": "q"}).json()["message"]

    speech = client.post(f"/v1/messages/{reply['id']}/speech")
    assert speech.status_code == 200
    body = speech.json()
    assert [segment["text"] for segment in body["segments"]] == ["Wudu is required."]
    assert body["total_duration"] == pytest.approx(0.1)

    assert client.post(f"/v1/messages/{reply['id']}/speech?audio=true").status_code == 409
    assert client.post("/v1/messages/missing/speech").status_code == 404

    assert client.delete("/v1/speech").status_code == 204
    assert all(handle.stopped for handle in output.handles)


def test_speech_wav_from_timeline_output(make_engine):
    engine = make_engine(output_factory=TimelineOutput)
    set_engine(engine)
    with TestClient(app) as client:
        reply = client.post("/v1/chat", json={"prompt": "q"}).json()["message"]
        response = client.post(f"/v1/messages/{reply['id']}/speech?audio=true")

    assert response.status_code == 200
    assert response.headers["content-type"] == "audio/wav"
    assert response.content[:4] == b"RIFF"
