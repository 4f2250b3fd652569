import pytest
from fastapi import status
from fastapi.testclient import TestClient

from main import app


@pytest.fixture
def test_client():
    """Client with the application lifespan running (fresh engine per test)"""
    with TestClient(app) as client:
        yield client


@pytest.fixture
def signed_in(test_client):
    response = test_client.post(
        "/auth/sign-up",
        json={"email": "alice@example.com", "password": "secret-pass", "username": "alice"},
    )
    assert response.status_code == status.HTTP_200_OK
    return response.json()


class TestHealthEndpoints:
    def test_health_endpoint(self, test_client):
        response = test_client.get("/healthcheck")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert "version" in data

    def test_ping_endpoint(self, test_client):
        response = test_client.get("/monitoring/ping")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["message"] == "pong"

    def test_detailed_health(self, test_client):
        response = test_client.get("/monitoring/detailed")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["components"]["credential_store"]["status"] == "healthy"
        assert data["components"]["engine"]["session"]["state"] == "unauthenticated"
        assert "websockets" in data["components"]

    def test_detailed_health_signed_in(self, test_client, signed_in):
        data = test_client.get("/monitoring/detailed").json()

        assert data["status"] == "healthy"
        topics = data["components"]["engine"]["change_feed"]["topics"]
        assert all(topic["subscribed"] for topic in topics.values())


class TestAuthEndpoints:
    def test_session_before_sign_in(self, test_client):
        response = test_client.get("/auth/session")
        assert response.json()["state"] == "unauthenticated"
        assert response.json()["user_id"] is None

    def test_sign_up(self, test_client, signed_in):
        assert signed_in["state"] == "authenticated"
        assert signed_in["username"] == "alice"
        assert test_client.get("/auth/session").json()["user_id"] == signed_in["user_id"]

    def test_sign_up_invalid_email(self, test_client):
        response = test_client.post(
            "/auth/sign-up",
            json={"email": "nope", "password": "secret-pass", "username": "alice"},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"]["error_code"] == "VALIDATION_ERROR"

    def test_sign_in_wrong_password(self, test_client, signed_in):
        test_client.post("/auth/sign-out")

        response = test_client.post(
            "/auth/sign-in", json={"email": "alice@example.com", "password": "wrong"}
        )
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_sign_out(self, test_client, signed_in):
        response = test_client.post("/auth/sign-out")

        assert response.json()["state"] == "unauthenticated"
        assert test_client.get("/snapshot").json()["session"] is None


class TestChatEndpoints:
    def test_snapshot_hides_tokens(self, test_client, signed_in):
        data = test_client.get("/snapshot").json()

        assert data["session"]["user_id"] == signed_in["user_id"]
        assert "access_token" not in data["session"]
        assert "refresh_token" not in data["session"]

    def test_requires_session(self, test_client):
        response = test_client.get("/rooms")
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_self_chat_and_message(self, test_client, signed_in):
        room = test_client.post("/rooms", json={"other_user_id": signed_in["user_id"]}).json()
        assert room["label"] == "Notes to Self"

        sent = test_client.post(f"/rooms/{room['id']}/messages", json={"text": "remember milk"})
        assert sent.status_code == status.HTTP_200_OK
        assert sent.json()["text"] == "remember milk"

        rooms = test_client.get("/rooms").json()
        assert rooms[0]["last_message_preview"] == "remember milk"
        assert rooms[0]["unseen_count"] == 0

        opened = test_client.post(f"/rooms/{room['id']}/open").json()
        assert [m["text"] for m in opened["messages"]] == ["remember milk"]

        seen = test_client.post(f"/rooms/{room['id']}/seen").json()
        assert seen["ok"] is True

    def test_attachment_must_be_base64(self, test_client, signed_in):
        room = test_client.post("/rooms", json={"other_user_id": signed_in["user_id"]}).json()

        response = test_client.post(
            f"/rooms/{room['id']}/messages",
            json={"attachment": {"filename": "a.png", "data_base64": "***"}},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_user_search(self, test_client, signed_in):
        server = test_client.app.state.server
        server.store.tables["profiles"]["bob-id"] = {"id": "bob-id", "username": "bob"}

        response = test_client.get("/users/search", params={"username": "BO"})
        assert [p["username"] for p in response.json()] == ["bob"]

        blank = test_client.get("/users/search", params={"username": "  "})
        assert blank.status_code == status.HTTP_400_BAD_REQUEST

    def test_search_query_and_notifications(self, test_client, signed_in):
        assert test_client.put("/search", json={"query": "bo"}).json() == {"search_query": "bo"}
        assert test_client.get("/snapshot").json()["search_query"] == "bo"

        test_client.get("/users/search", params={"username": "zzz"})
        assert test_client.get("/snapshot").json()["notifications"]

        test_client.delete("/notifications")
        assert test_client.get("/snapshot").json()["notifications"] == []

    def test_update_profile(self, test_client, signed_in):
        response = test_client.put("/profile", json={"username": "alice2"})

        assert response.json()["username"] == "alice2"
        assert test_client.get("/auth/session").json()["username"] == "alice2"


class TestSnapshotWebSocket:
    def test_snapshot_on_connect_and_ping(self, test_client):
        with test_client.websocket_connect("/ws/snapshot") as websocket:
            first = websocket.receive_json()
            assert first["type"] == "snapshot"
            assert first["data"]["session"] is None

            websocket.send_json({"type": "ping"})
            assert websocket.receive_json() == {"type": "pong"}

            websocket.send_json({"type": "snapshot"})
            assert websocket.receive_json()["type"] == "snapshot"
