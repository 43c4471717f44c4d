"""
Tests for the HTTP and WebSocket surface.

Tests cover:
- Request validation and the {success: false, error} failure body
- Session start, listing and deletion
- Messaging, history and conversation routes against a fake handle
- Contact edits and quick replies
- Health, metrics and the /events stream
"""

import time

import pytest
from fastapi.testclient import TestClient

from chatsync.config import settings
from chatsync.handles import ChatInfo
from chatsync.main import build_services, create_app
from chatsync.models import Contact, Message
from chatsync.storage import Base, SessionLocal, engine
from tests.fakes import chat_history, make_raw


TEST_CONFIG = settings.model_copy(update={
    "CATCHUP_MAX_CHATS": 0,
    "SYNC_INTER_CHAT_DELAY_MS": 0,
    "LIST_CHATS_DELAY_MS": 0,
    "START_TIMEOUT_SECONDS": 2.0,
    "HISTORY_DEFAULT_LIMIT": 4,
})


@pytest.fixture(scope="function")
def services(provider):
    return build_services(TEST_CONFIG, provider=provider)


@pytest.fixture(scope="function")
def client(services):
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(create_app(services, restore_on_startup=False)) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)


def start(client, provider, name="905550000000", on_init="ready"):
    provider.on_init = on_init
    response = client.post("/start-session", json={"sessionName": name})
    assert response.status_code == 200
    return response.json()


def count_messages() -> int:
    with SessionLocal() as db:
        return db.query(Message).count()


def wait_for(predicate, timeout: float = 2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, "condition not met before timeout"
        time.sleep(0.02)


class TestValidation:
    def test_missing_session_name(self, client):
        response = client.post("/start-session", json={})

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert "sessionName" in data["error"]

    def test_blank_session_name(self, client):
        response = client.post("/delete-session", json={"sessionName": "   "})

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_invalid_json(self, client):
        response = client.post(
            "/send-message",
            content="not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400


class TestSessions:
    def test_start_returns_pairing_code(self, client, provider):
        data = start(client, provider, on_init="qr")

        assert data["success"] is True
        assert data["sessionId"] == "905550000000"
        assert data["status"] == "QR_READY"
        assert data["pairing"].startswith("data:image/svg+xml;base64,")

    def test_start_twice_reuses_handle(self, client, provider):
        start(client, provider, on_init="qr")
        data = start(client, provider, on_init="qr")

        assert data["status"] == "QR_READY"
        assert len(provider.calls) == 1

    def test_start_failure(self, client, provider):
        provider.on_init = "fail"
        response = client.post("/start-session", json={"sessionName": "broken"})

        assert response.status_code == 500
        data = response.json()
        assert data["success"] is False
        assert "browser failed to launch" in data["error"]

    def test_list_sessions(self, client, provider):
        start(client, provider, name="s1", on_init="qr")
        start(client, provider, name="s2", on_init="ready")

        response = client.get("/sessions")

        assert response.status_code == 200
        sessions = {s["name"]: s for s in response.json()["sessions"]}
        assert sessions["s1"]["status"] == "QR_READY"
        assert sessions["s1"]["pairing"].startswith("data:")
        assert sessions["s2"]["status"] == "CONNECTED"
        assert sessions["s2"]["pairing"] is None

    def test_delete_session_removes_history(self, client, provider, services):
        start(client, provider)
        services.ingestor.ingest("905550000000", make_raw("m1"))
        assert count_messages() == 1

        response = client.post("/delete-session", json={"sessionName": "905550000000"})

        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert provider.handles["905550000000"].logged_out
        assert count_messages() == 0
        assert client.get("/sessions").json()["sessions"] == []

    def test_delete_unknown_session(self, client):
        response = client.post("/delete-session", json={"sessionName": "nobody"})

        assert response.status_code == 200


class TestMessaging:
    def test_send_message(self, client, provider):
        start(client, provider)

        response = client.post("/send-message", json={
            "sessionName": "905550000000",
            "targetNumber": "+90 555 123 45 67",
            "text": "hi",
        })

        assert response.status_code == 200
        assert provider.handles["905550000000"].sent == [("905551234567@c.us", "hi")]

    def test_send_message_not_connected(self, client, provider):
        start(client, provider, on_init="qr")

        response = client.post("/send-message", json={
            "sessionName": "905550000000",
            "targetNumber": "905551234567",
            "text": "hi",
        })

        assert response.status_code == 409
        assert response.json()["success"] is False
        assert provider.handles["905550000000"].sent == []
        assert count_messages() == 0

    def test_send_message_unknown_session(self, client):
        response = client.post("/send-message", json={
            "sessionName": "nobody",
            "targetNumber": "905551234567",
            "text": "hi",
        })

        assert response.status_code == 409

    def test_fetch_history(self, client, provider, services):
        start(client, provider)
        for raw in reversed(chat_history("905551234567", 6)):
            services.ingestor.ingest("905550000000", raw)

        response = client.post("/fetch-history", json={
            "sessionName": "905550000000",
            "contactId": "905551234567",
            "limit": 10,
        })

        assert response.status_code == 200
        messages = response.json()["messages"]
        assert len(messages) == 6
        assert [m["timestamp"] for m in messages] == sorted(m["timestamp"] for m in messages)
        assert messages[0]["id"] == "905551234567-0"
        assert messages[0]["direction"] == "inbound"
        assert provider.handles["905550000000"].fetch_calls == []

    def test_fetch_history_uses_configured_default_limit(self, client, provider, services):
        start(client, provider)
        for raw in chat_history("905551234567", 6):
            services.ingestor.ingest("905550000000", raw)

        response = client.post("/fetch-history", json={
            "sessionName": "905550000000",
            "contactId": "905551234567",
        })

        assert response.status_code == 200
        ids = [m["id"] for m in response.json()["messages"]]
        assert ids == [f"905551234567-{i}" for i in range(2, 6)]

    def test_fetch_history_unknown_session(self, client):
        response = client.post("/fetch-history", json={"sessionName": "nobody", "contactId": "905551234567"})

        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_list_conversations(self, client, provider):
        provider.chats = [
            ChatInfo(id="905551111111@c.us", name="Old", unread_count=1, timestamp=100),
            ChatInfo(id="120363025@g.us", name="Group", is_group=True, timestamp=500),
            ChatInfo(id="905552222222@c.us", name="New", timestamp=300),
        ]
        start(client, provider)

        response = client.post("/list-conversations", json={"sessionName": "905550000000"})

        assert response.status_code == 200
        chats = response.json()["chats"]
        assert [c["phoneNumber"] for c in chats] == ["905552222222", "905551111111"]
        assert chats[1]["unreadCount"] == 1
        assert chats[0]["displayName"] == "New"

    def test_sync_selected(self, client, provider):
        provider.history = {"905551111111@c.us": chat_history("905551111111", 3)}
        start(client, provider)

        response = client.post("/sync-selected", json={
            "sessionName": "905550000000",
            "contactIds": ["905551111111"],
        })

        assert response.status_code == 200
        wait_for(lambda: count_messages() == 3)

    def test_sync_selected_not_connected(self, client, provider):
        start(client, provider, on_init="qr")

        response = client.post("/sync-selected", json={"sessionName": "905550000000", "contactIds": []})

        assert response.status_code == 409


class TestContacts:
    def test_update_contact(self, client, provider, services):
        start(client, provider)
        services.ingestor.ingest("905550000000", make_raw("m1", notify_name="Ali"))

        response = client.post("/update-contact", json={
            "sessionId": "905550000000",
            "contactId": "905551234567",
            "updates": {"displayName": "Ali Veli", "tags": ["vip", " "], "notes": "call back"},
        })

        assert response.status_code == 200
        with SessionLocal() as db:
            contact = db.query(Contact).one()
            assert contact.display_name == "Ali Veli"
            assert contact.tags == ["vip"]
            assert contact.notes == "call back"

    def test_update_missing_contact(self, client, provider):
        start(client, provider)

        response = client.post("/update-contact", json={
            "sessionId": "905550000000",
            "contactId": "905559999999",
            "updates": {"displayName": "Nobody"},
        })

        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_update_contact_unknown_session(self, client):
        response = client.post("/update-contact", json={
            "sessionId": "nobody",
            "contactId": "905551234567",
            "updates": {},
        })

        assert response.status_code == 404


class TestQuickReplies:
    def test_create_list_delete(self, client):
        created = client.post("/quick-replies", json={"title": "Hours", "message": "We open at 9"})
        assert created.status_code == 200
        reply_id = created.json()["data"]["id"]

        listed = client.get("/quick-replies").json()["data"]
        assert listed == [{"id": reply_id, "title": "Hours", "message": "We open at 9"}]

        deleted = client.post("/delete-quick-reply", json={"id": reply_id})
        assert deleted.status_code == 200
        assert client.get("/quick-replies").json()["data"] == []

    def test_delete_missing(self, client):
        response = client.post("/delete-quick-reply", json={"id": 999})

        assert response.status_code == 404
        assert response.json()["success"] is False


class TestProbes:
    def test_health_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_health_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_metrics(self, client, provider):
        start(client, provider)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
        assert "session_transitions_total" in response.text


class TestEventStream:
    def test_pairing_ready_is_streamed(self, client, provider):
        with client.websocket_connect("/events?session=905550000000") as websocket:
            start(client, provider, name="other", on_init="qr")
            start(client, provider, on_init="qr")

            event = websocket.receive_json()

        assert event["topic"] == "pairing-ready"
        assert event["session_name"] == "905550000000"
        assert event["payload"]["qr"].startswith("data:image/svg+xml")
