"""Tests for client state types and the typing tracker."""

from datetime import datetime, timezone

import pytest

from chat.client.state import (
    ChatListEntry,
    LocalMessage,
    Mutation,
    MutationKind,
    MutationState,
    ScrollPosition,
    parse_timestamp,
)
from chat.client.typing import TypingTracker


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestParseTimestamp:
    def test_zulu_suffix(self):
        assert parse_timestamp("2026-03-02T12:00:00Z") == datetime(
            2026, 3, 2, 12, 0, tzinfo=timezone.utc
        )

    def test_naive_value_is_utc(self):
        assert parse_timestamp("2026-03-02T12:00:00").tzinfo == timezone.utc

    def test_none_and_datetime_pass_through(self):
        value = datetime(2026, 3, 2, tzinfo=timezone.utc)

        assert parse_timestamp(None) is None
        assert parse_timestamp(value) is value


class TestLocalMessage:
    PAYLOAD = {
        "id": "m1",
        "conversation": "c1",
        "sender": 7,
        "content": "hi",
        "created_at": "2026-03-02T12:00:00Z",
        "read_by": [8],
    }

    def test_from_payload(self):
        message = LocalMessage.from_payload(self.PAYLOAD)

        assert message.conversation_id == "c1"
        assert message.sender_id == "7"
        assert message.read_by == ["8"]
        assert message.status == "sent"
        assert message.is_temporary is False

    def test_server_view_ignores_ui_flags(self):
        message = LocalMessage.from_payload(self.PAYLOAD)
        flagged = message.copy()
        flagged.is_new = True
        flagged.is_deleting = True

        assert flagged.server_view() == message.server_view()
        assert "is_new" not in message.server_view()

    def test_copy_does_not_share_read_by(self):
        message = LocalMessage.from_payload(self.PAYLOAD)
        snapshot = message.copy()

        message.read_by.append("9")

        assert snapshot.read_by == ["8"]

    def test_deleted_sender(self):
        message = LocalMessage.from_payload({**self.PAYLOAD, "sender": None})

        assert message.sender_id is None


class TestMutation:
    def test_commit(self):
        mutation = Mutation(MutationKind.SEND, "c1", "temp-1")

        mutation.commit()

        assert mutation.state is MutationState.COMMITTED
        assert not mutation.is_pending

    def test_rollback_keeps_error(self):
        mutation = Mutation(MutationKind.EDIT, "c1", "m1")
        error = RuntimeError("nope")

        mutation.rollback(error)

        assert mutation.state is MutationState.ROLLED_BACK
        assert mutation.error is error

    def test_finishes_once(self):
        mutation = Mutation(MutationKind.DELETE, "c1", "m1")
        mutation.commit()

        with pytest.raises(RuntimeError):
            mutation.rollback()


class TestScrollPosition:
    def test_thresholds(self):
        position = ScrollPosition(scroll_top=99, scroll_height=1000, client_height=820)

        assert position.distance_from_bottom == 81
        assert position.is_near_top(100)
        assert position.is_near_bottom(100)
        assert not position.is_near_top(99)


class TestChatListEntry:
    def test_ignores_unknown_fields(self):
        entry = ChatListEntry.from_payload(
            {"id": 5, "title": "Team", "unread_count": 2, "participants": []}
        )

        assert entry.id == "5"
        assert entry.unread_count == 2


class TestTypingTracker:
    def test_started_and_stopped(self):
        tracker = TypingTracker(clock=FakeClock())

        tracker.started("c1", "u1")
        tracker.started("c1", "u2")
        tracker.stopped("c1", "u1")

        assert tracker.typing_users("c1") == ["u2"]

    def test_entries_expire(self):
        clock = FakeClock()
        tracker = TypingTracker(expiry=5.0, clock=clock)
        tracker.started("c1", "u1")

        clock.now += 4.9
        assert tracker.is_typing("c1", "u1")

        clock.now += 1
        assert not tracker.is_typing("c1", "u1")

    def test_refresh_extends_deadline(self):
        clock = FakeClock()
        tracker = TypingTracker(expiry=5.0, clock=clock)
        tracker.started("c1", "u1")

        clock.now += 4
        tracker.started("c1", "u1")
        clock.now += 4

        assert tracker.is_typing("c1", "u1")

    def test_clear_chat(self):
        tracker = TypingTracker(clock=FakeClock())
        tracker.started("c1", "u1")
        tracker.started("c2", "u1")

        tracker.clear_chat("c1")

        assert tracker.typing_users("c1") == []
        assert tracker.typing_users("c2") == ["u1"]
