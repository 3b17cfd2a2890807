"""
Tests for conversation and message endpoints.
"""
from conftest import FAN_EMAIL, FAN_UID


class TestConversationEndpoints:
    """Test conversation endpoints."""

    def test_ensure_my_conversation(self, client, fan_headers):
        """A signed-in fan gets their conversation, created on first call."""
        response = client.post("/api/conversations", headers=fan_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["id"] == FAN_UID
        assert data["fan_email"] == FAN_EMAIL
        assert data["fan_display_name"] == "Fan One"
        assert data["first_message_from_member"] is None

        again = client.post("/api/conversations", headers=fan_headers, json={"display_name": "Someone Else"})
        assert again.status_code == 200
        assert again.json()["fan_display_name"] == "Fan One"

    def test_ensure_unauthenticated(self, client):
        response = client.post("/api/conversations")
        assert response.status_code == 401

    def test_creator_has_no_conversation(self, client, creator_headers):
        response = client.post("/api/conversations", headers=creator_headers)
        assert response.status_code == 403
        assert response.json()["error_code"] == "FORBIDDEN"

    def test_creator_inbox(self, client, fan_headers, other_fan_headers, creator_headers):
        client.post("/api/conversations", headers=fan_headers)
        client.post("/api/conversations", headers=other_fan_headers)
        client.post(f"/api/conversations/{FAN_UID}/messages", headers=fan_headers, json={"body": "hi"})

        response = client.get("/api/conversations", headers=creator_headers)
        assert response.status_code == 200
        assert [c["id"] for c in response.json()] == [FAN_UID, "fan-2"]

        requests_only = client.get("/api/conversations?requests_only=true", headers=creator_headers)
        assert [c["id"] for c in requests_only.json()] == [FAN_UID]

    def test_inbox_is_creator_only(self, client, fan_headers):
        response = client.get("/api/conversations", headers=fan_headers)
        assert response.status_code == 403

    def test_get_conversation_access(self, client, fan_headers, other_fan_headers, creator_headers):
        client.post("/api/conversations", headers=fan_headers)

        assert client.get(f"/api/conversations/{FAN_UID}", headers=fan_headers).status_code == 200
        assert client.get(f"/api/conversations/{FAN_UID}", headers=creator_headers).status_code == 200
        assert client.get(f"/api/conversations/{FAN_UID}", headers=other_fan_headers).status_code == 403

    def test_get_missing_conversation(self, client, creator_headers):
        response = client.get("/api/conversations/ghost", headers=creator_headers)
        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"


class TestMessageEndpoints:
    """Test message endpoints."""

    def test_send_and_list(self, client, fan_headers, creator_headers):
        client.post("/api/conversations", headers=fan_headers)

        sent = client.post(
            f"/api/conversations/{FAN_UID}/messages",
            headers=fan_headers,
            json={"body": "Hello!", "media": [{"kind": "image", "url": "https://cdn.example.com/a.jpg"}]},
        )
        assert sent.status_code == 200
        data = sent.json()
        assert data["sender_id"] == FAN_UID
        assert data["attachments"] == [{"kind": "image", "url": "https://cdn.example.com/a.jpg"}]

        reply = client.post(f"/api/conversations/{FAN_UID}/messages", headers=creator_headers, json={"body": "Hey!"})
        assert reply.status_code == 200

        listed = client.get(f"/api/conversations/{FAN_UID}/messages", headers=fan_headers)
        assert listed.status_code == 200
        assert [m["body"] for m in listed.json()] == ["Hello!", "Hey!"]

        conversation = client.get(f"/api/conversations/{FAN_UID}", headers=fan_headers).json()
        assert conversation["last_message_preview"] == "Hey!"
        assert conversation["first_message_from_member"] is True

    def test_send_empty_message(self, client, fan_headers):
        client.post("/api/conversations", headers=fan_headers)
        response = client.post(f"/api/conversations/{FAN_UID}/messages", headers=fan_headers, json={"body": "  "})
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_stranger_cannot_send_or_read(self, client, fan_headers, other_fan_headers):
        client.post("/api/conversations", headers=fan_headers)
        send = client.post(f"/api/conversations/{FAN_UID}/messages", headers=other_fan_headers, json={"body": "hi"})
        assert send.status_code == 403
        read = client.get(f"/api/conversations/{FAN_UID}/messages", headers=other_fan_headers)
        assert read.status_code == 403

    def test_send_to_missing_conversation(self, client, creator_headers):
        response = client.post("/api/conversations/ghost/messages", headers=creator_headers, json={"body": "hi"})
        assert response.status_code == 404

    def test_allocate_id_then_send(self, client, fan_headers):
        """Attachments are uploaded under a pre-allocated id, then the message is sent with it."""
        client.post("/api/conversations", headers=fan_headers)

        allocated = client.post(f"/api/conversations/{FAN_UID}/message-ids", headers=fan_headers)
        assert allocated.status_code == 200
        message_id = allocated.json()["message_id"]
        assert allocated.json()["upload_prefix"] == f"dm-attachments/{FAN_UID}/{message_id}/"

        first = client.post(
            f"/api/conversations/{FAN_UID}/messages",
            headers=fan_headers,
            json={"body": "v1", "message_id": message_id},
        )
        second = client.post(
            f"/api/conversations/{FAN_UID}/messages",
            headers=fan_headers,
            json={"body": "v2", "message_id": message_id},
        )
        assert second.json()["id"] == message_id
        assert second.json()["created_at"] == first.json()["created_at"]

        listed = client.get(f"/api/conversations/{FAN_UID}/messages", headers=fan_headers).json()
        assert [m["body"] for m in listed] == ["v2"]

    def test_allocate_id_for_stranger(self, client, fan_headers, other_fan_headers):
        client.post("/api/conversations", headers=fan_headers)
        response = client.post(f"/api/conversations/{FAN_UID}/message-ids", headers=other_fan_headers)
        assert response.status_code == 403

    def test_creator_sends_locked_media(self, client, fan_headers, creator_headers):
        client.post("/api/conversations", headers=fan_headers)
        response = client.post(
            f"/api/conversations/{FAN_UID}/messages",
            headers=creator_headers,
            json={"locked_media": [{"url": "https://cdn.example.com/x.jpg", "price_cents": 999}]},
        )
        assert response.status_code == 200
        locked = response.json()["attachments"][0]
        assert locked["kind"] == "locked"
        assert locked["price_cents"] == 999
        assert locked["unlock_id"]

    def test_locked_media_price_too_low(self, client, fan_headers, creator_headers):
        client.post("/api/conversations", headers=fan_headers)
        response = client.post(
            f"/api/conversations/{FAN_UID}/messages",
            headers=creator_headers,
            json={"locked_media": [{"url": "https://cdn.example.com/x.jpg", "price_cents": 5}]},
        )
        assert response.status_code == 422

    def test_stream_requires_participant(self, client, fan_headers, other_fan_headers):
        client.post("/api/conversations", headers=fan_headers)
        response = client.get(f"/api/conversations/{FAN_UID}/messages/stream", headers=other_fan_headers)
        assert response.status_code == 403

    def test_stream_missing_conversation(self, client, creator_headers):
        response = client.get("/api/conversations/nobody/messages/stream", headers=creator_headers)
        assert response.status_code == 404

    def test_resend_of_creator_message_forbidden(self, client, fan_headers, creator_headers):
        client.post("/api/conversations", headers=fan_headers)
        sent = client.post(f"/api/conversations/{FAN_UID}/messages", headers=creator_headers, json={"body": "mine"})
        response = client.post(
            f"/api/conversations/{FAN_UID}/messages",
            headers=fan_headers,
            json={"body": "not anymore", "message_id": sent.json()["id"]},
        )
        assert response.status_code == 403
        assert response.json()["error_code"] == "FORBIDDEN"


class TestNotificationEndpoints:
    """Notifications created by messaging, read back over the API."""

    def test_fan_message_reaches_creator(self, client, fan_headers, creator_headers):
        client.post("/api/conversations", headers=fan_headers)
        client.post(f"/api/conversations/{FAN_UID}/messages", headers=fan_headers, json={"body": "hi!"})

        count = client.get("/api/notifications/unread/count", headers=creator_headers)
        assert count.json() == {"count": 1}

        notifications = client.get("/api/notifications", headers=creator_headers).json()
        assert notifications[0]["type"] == "dm"
        assert notifications[0]["body"] == "Fan One: hi!"

        marked = client.patch(f"/api/notifications/{notifications[0]['id']}/read", headers=creator_headers)
        assert marked.status_code == 200
        assert marked.json()["read"] is True
        assert client.get("/api/notifications/unread/count", headers=creator_headers).json() == {"count": 0}

    def test_creator_message_reaches_fan(self, client, fan_headers, creator_headers):
        client.post("/api/conversations", headers=fan_headers)
        client.post(f"/api/conversations/{FAN_UID}/messages", headers=creator_headers, json={"body": "hello"})

        notifications = client.get("/api/notifications", headers=fan_headers).json()
        assert len(notifications) == 1
        assert notifications[0]["link"] == "/dms"
        assert client.get("/api/notifications", headers=creator_headers).json() == []

    def test_cannot_mark_someone_elses(self, client, fan_headers, other_fan_headers, creator_headers):
        client.post("/api/conversations", headers=fan_headers)
        client.post(f"/api/conversations/{FAN_UID}/messages", headers=creator_headers, json={"body": "hello"})
        notification_id = client.get("/api/notifications", headers=fan_headers).json()[0]["id"]

        response = client.patch(f"/api/notifications/{notification_id}/read", headers=other_fan_headers)
        assert response.status_code == 404
