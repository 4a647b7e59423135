import base64

import pytest
from fastapi.testclient import TestClient

from storymode.agents import story_agent
from storymode.agents.http_api import app
from storymode.utils import profile_store, security
from storymode.utils.observability import get_metrics

MANAGED_ENVS = [
    "STORYMODE_LLM_API_KEY",
    "API_AUTH_TOKEN",
    "API_RATE_LIMIT",
    "API_RATE_WINDOW",
]


@pytest.fixture(autouse=True)
def clean_state(monkeypatch):
    for key in MANAGED_ENVS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(security, "_rate_limiter", None)
    monkeypatch.setattr(profile_store, "_PROFILE_STORE", profile_store.ProfileStore(ttl_seconds=3600))
    story_agent.reset_story_agent()
    get_metrics().reset()
    yield
    story_agent.reset_story_agent()
    get_metrics().reset()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.mark.smoke
def test_chat_round_trip_and_session_lifecycle(client):
    response = client.post("/v1/chat", json={"message": "I'm majoring in computer science and applying to MIT"})
    assert response.status_code == 200
    assert response.headers["X-Request-ID"]
    body = response.json()
    assert body["stage"] == "collection"
    assert body["profile"]["completeness"] == 29
    assert body["profile"]["major"] == "I'm majoring in computer science and applying to MIT"
    assert "major" not in body["missing_fields"]
    assert body["assistant_message"]["content"].startswith("[offline]")
    assert body["assistant_message"]["final"] is True

    session_id = body["session_id"]
    detail = client.get(f"/v1/session/{session_id}")
    assert detail.status_code == 200
    state = detail.json()
    assert [message["role"] for message in state["messages"]] == ["assistant", "user", "assistant"]
    assert state["profile"]["completeness"] == 29

    follow_up = client.post("/v1/chat", json={"message": "I love robotics", "session_id": session_id})
    assert follow_up.json()["profile"]["completeness"] == 43

    assert client.delete(f"/v1/session/{session_id}").status_code == 204
    assert client.get(f"/v1/session/{session_id}").status_code == 404
    assert client.delete(f"/v1/session/{session_id}").status_code == 404


def test_health_and_field_catalog(client):
    health = client.get("/v1/health")
    assert health.status_code == 200
    assert health.json()["generation_enabled"] is False

    fields = client.get("/v1/fields").json()["fields"]
    assert [item["name"] for item in fields] == [
        "major",
        "colleges",
        "essay_prompts",
        "extracurriculars",
        "classes",
        "hobbies",
        "awards",
    ]
    assert fields[0]["multi_valued"] is False


def test_empty_turn_is_rejected(client):
    response = client.post("/v1/chat", json={"message": "   "})
    assert response.status_code == 400


def test_streaming_requires_event_stream_accept(client):
    response = client.post("/v1/chat?stream=true", json={"message": "I enjoy chess"}, headers={"Accept": "application/json"})
    assert response.status_code == 406


def test_streaming_emits_turn_events(client):
    response = client.post(
        "/v1/chat?stream=true",
        json={"message": "I enjoy chess"},
        headers={"Accept": "text/event-stream"},
    )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    text = response.text
    positions = [text.index(f"event: {name}\n") for name in ("profile", "message", "chunk", "completed")]
    assert positions == sorted(positions)


def test_attachments_are_decoded_and_reported(client):
    payload = {
        "message": "",
        "attachments": [
            {
                "filename": "activities.txt",
                "mime_type": "text/plain",
                "content_base64": base64.b64encode(b"Robotics captain").decode(),
            },
            {
                "filename": "photo.png",
                "mime_type": "image/png",
                "content_base64": base64.b64encode(b"\x89PNG").decode(),
            },
        ],
    }
    body = client.post("/v1/chat", json=payload).json()
    assert body["user_message"]["attachments"] == ["activities.txt", "photo.png"]
    assert [(item["title"], item["description"]) for item in body["notifications"]] == [
        ("Attachment skipped", "Could not process photo.png")
    ]
    assert body["diagnostics"]["attachment_failures"] == 1


def test_invalid_base64_is_rejected(client):
    payload = {"message": "hi", "attachments": [{"filename": "a.txt", "content_base64": "!!not-base64!!"}]}
    assert client.post("/v1/chat", json=payload).status_code == 400


def test_api_key_is_enforced(client, monkeypatch):
    monkeypatch.setenv("API_AUTH_TOKEN", "secret")
    assert client.get("/v1/fields").status_code == 401
    assert client.get("/v1/fields", headers={"X-API-Key": "wrong"}).status_code == 401
    assert client.get("/v1/fields", headers={"X-API-Key": "secret"}).status_code == 200
    assert client.get("/v1/health").status_code == 200


def test_rate_limit_returns_429(client, monkeypatch):
    monkeypatch.setenv("API_RATE_LIMIT", "1")
    assert client.get("/v1/fields").status_code == 200
    assert client.get("/v1/fields").status_code == 429
