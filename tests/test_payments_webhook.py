"""
Tests for the payment collaborator webhook.
"""
import json

import pytest

from conftest import CREATOR_UID, FAN_EMAIL, FAN_UID, WEBHOOK_SECRET
from fanchat.config import get_settings
from fanchat.models import ChatSession, Conversation, MediaUnlock
from fanchat.routes.payments import sign_payload, verify_signature


def post_event(client, event_type, data, secret=WEBHOOK_SECRET, signature=None):
    body = json.dumps({"type": event_type, "data": data}).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    headers["X-Payment-Signature"] = signature or sign_payload(body, secret)
    return client.post("/api/payments/webhook", content=body, headers=headers)


@pytest.fixture
def locked_message(store, fan_conversation):
    return store.append_message(
        FAN_UID, CREATOR_UID, None, "unlock me",
        locked_media=[{"url": "https://cdn.example.com/a.jpg", "price_cents": 500, "unlock_id": "pic"}],
    )


class TestSignature:
    def test_sign_and_verify(self):
        body = b'{"type": "x"}'
        signature = sign_payload(body, "s3cret")
        assert signature.startswith("sha256=")
        assert verify_signature(body, signature, "s3cret")
        assert not verify_signature(body, signature, "other")
        assert not verify_signature(body, None, "s3cret")

    def test_missing_signature(self, client, db):
        response = client.post("/api/payments/webhook", json={"type": "unlock.captured", "data": {}})
        assert response.status_code == 401

    def test_bad_signature(self, client, db):
        response = post_event(client, "unlock.captured", {}, secret="wrong-secret")
        assert response.status_code == 401

    def test_unconfigured_secret(self, client, db, monkeypatch):
        monkeypatch.setattr(get_settings(), "payment_webhook_secret", "")
        response = post_event(client, "unlock.captured", {})
        assert response.status_code == 500


class TestUnlockCaptured:
    def payload(self, message_id, unlock_id="pic"):
        return {
            "conversation_id": FAN_UID,
            "message_id": message_id,
            "unlock_id": unlock_id,
            "viewer_uid": FAN_UID,
            "amount_cents": 500,
            "payer_email": FAN_EMAIL,
        }

    def test_unlock_recorded_once(self, client, db, locked_message, fan_headers):
        first = post_event(client, "unlock.captured", self.payload(locked_message.id))
        assert first.status_code == 200
        assert first.json()["status"] == "recorded"

        redelivered = post_event(client, "unlock.captured", self.payload(locked_message.id))
        assert redelivered.status_code == 200
        assert redelivered.json()["unlock_id"] == first.json()["unlock_id"]
        assert db.query(MediaUnlock).count() == 1

        keys = client.get(f"/api/unlocks/conversations/{FAN_UID}", headers=fan_headers)
        assert keys.json() == {"conversation_id": FAN_UID, "keys": [f"{locked_message.id}:pic"]}

        history = client.get("/api/unlocks/history", headers=fan_headers).json()
        assert [u["unlock_id"] for u in history] == ["pic"]

    def test_unknown_item_ignored(self, client, db, locked_message):
        response = post_event(client, "unlock.captured", self.payload(locked_message.id, unlock_id="nope"))
        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert db.query(MediaUnlock).count() == 0

    def test_malformed_event(self, client, db):
        response = post_event(client, "unlock.captured", {"conversation_id": FAN_UID})
        assert response.status_code == 422

    def test_stranger_cannot_read_keys(self, client, db, locked_message, other_fan_headers):
        response = client.get(f"/api/unlocks/conversations/{FAN_UID}", headers=other_fan_headers)
        assert response.status_code == 403
        stream = client.get(f"/api/unlocks/conversations/{FAN_UID}/stream", headers=other_fan_headers)
        assert stream.status_code == 403


class TestPurchaseScheduled:
    def test_chat_session_purchase(self, client, db):
        response = post_event(client, "purchase.scheduled", {
            "purchase_id": "order-77",
            "fan_uid": FAN_UID,
            "fan_email": FAN_EMAIL,
            "fan_name": "Fan One",
            "treat_id": "chat-session-30",
            "scheduled_start": "2026-03-01T18:00:00+00:00",
        })
        assert response.status_code == 200
        assert response.json()["status"] == "scheduled"

        chat_session = db.query(ChatSession).one()
        assert chat_session.purchase_id == "order-77"
        assert chat_session.duration_minutes == 30
        assert chat_session.conversation_id == FAN_UID
        assert db.get(Conversation, FAN_UID) is not None

    def test_redelivered_purchase(self, client, db):
        data = {
            "purchase_id": "order-78",
            "fan_email": FAN_EMAIL,
            "treat_id": "chat-session",
            "scheduled_start": "2026-03-01T18:00:00Z",
        }
        first = post_event(client, "purchase.scheduled", data)
        second = post_event(client, "purchase.scheduled", data)
        assert first.json()["session_id"] == second.json()["session_id"]
        assert db.query(ChatSession).count() == 1
        assert db.query(ChatSession).one().conversation_id is None

    def test_creator_as_fan_left_unbound(self, client, db):
        response = post_event(client, "purchase.scheduled", {
            "purchase_id": "order-81",
            "fan_uid": CREATOR_UID,
            "treat_id": "chat-session-15",
            "scheduled_start": "2026-03-01T18:00:00Z",
        })
        assert response.status_code == 200
        assert response.json()["status"] == "scheduled"
        assert db.query(ChatSession).one().conversation_id is None
        assert db.query(Conversation).count() == 0

    def test_other_treats_ignored(self, client, db):
        response = post_event(client, "purchase.scheduled", {
            "purchase_id": "order-79",
            "treat_id": "shoutout",
            "scheduled_start": "2026-03-01T18:00:00Z",
        })
        assert response.json()["status"] == "ignored"
        assert db.query(ChatSession).count() == 0

    def test_unknown_event_type(self, client, db):
        response = post_event(client, "refund.issued", {"purchase_id": "order-80"})
        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
