"""
Tests for the unlock ledger.
"""
import pytest

from conftest import CREATOR_UID, FAN_UID, OTHER_UID
from fanchat.models import MediaUnlock
from fanchat.services.unlock_ledger import unlock_key


@pytest.fixture
def locked_message(store, fan_conversation):
    return store.append_message(
        FAN_UID, CREATOR_UID, None, "for your eyes only",
        locked_media=[
            {"url": "https://cdn.example.com/a.jpg", "price_cents": 500, "unlock_id": "pic"},
            {"url": "https://cdn.example.com/b.mp4", "price_cents": 1500, "media_type": "video", "unlock_id": "vid"},
        ],
    )


class TestRecordUnlock:
    def test_record_and_read_keys(self, ledger, locked_message):
        unlock = ledger.record_unlock(FAN_UID, locked_message.id, "pic", FAN_UID, 500, "Fan@Example.com")
        assert unlock is not None
        assert unlock.key == f"{locked_message.id}:pic"
        assert unlock.payer_email == "fan@example.com"
        assert ledger.unlock_keys(FAN_UID, FAN_UID) == {f"{locked_message.id}:pic"}

    def test_redelivery_is_ignored(self, ledger, locked_message, db):
        first = ledger.record_unlock(FAN_UID, locked_message.id, "pic", FAN_UID, 500, None)
        again = ledger.record_unlock(FAN_UID, locked_message.id, "pic", FAN_UID, 500, None)
        assert again.id == first.id
        assert db.query(MediaUnlock).count() == 1

    def test_record_id_is_deterministic(self, ledger, locked_message):
        unlock = ledger.record_unlock(FAN_UID, locked_message.id, "vid", FAN_UID, 1500, None)
        assert unlock.id == unlock_key(FAN_UID, locked_message.id, "vid", FAN_UID)

    def test_keys_are_per_viewer(self, ledger, locked_message):
        ledger.record_unlock(FAN_UID, locked_message.id, "pic", FAN_UID, 500, None)
        assert ledger.unlock_keys(FAN_UID, OTHER_UID) == set()

    @pytest.mark.parametrize(
        "conversation_id,message_id,unlock_id",
        [
            ("ghost", None, "pic"),
            (FAN_UID, "no-such-message", "pic"),
            (FAN_UID, None, "no-such-item"),
        ],
    )
    def test_stray_unlock_is_dropped(self, ledger, locked_message, db, conversation_id, message_id, unlock_id):
        result = ledger.record_unlock(
            conversation_id, message_id or locked_message.id, unlock_id, FAN_UID, 500, None
        )
        assert result is None
        assert db.query(MediaUnlock).count() == 0

    def test_message_from_other_conversation_is_dropped(self, ledger, store, locked_message, db):
        store.ensure_conversation(OTHER_UID, None, None)
        assert ledger.record_unlock(OTHER_UID, locked_message.id, "pic", OTHER_UID, 500, None) is None
        assert db.query(MediaUnlock).count() == 0

    def test_unlocks_for_viewer(self, ledger, locked_message, clock):
        ledger.record_unlock(FAN_UID, locked_message.id, "pic", FAN_UID, 500, None)
        clock.advance(minutes=1)
        ledger.record_unlock(FAN_UID, locked_message.id, "vid", FAN_UID, 1500, None)

        history = ledger.unlocks_for_viewer(FAN_UID)
        assert [u.unlock_id for u in history] == ["vid", "pic"]
        assert ledger.unlocks_for_viewer(OTHER_UID) == []
