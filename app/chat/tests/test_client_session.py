"""
Tests for ChatSession.

ChatSession is driven against FakeChatApi, an in-memory server double.
Requests can be held open with an asyncio.Event to observe the optimistic
state and to reorder responses.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from chat.client import NETWORK_ERROR, ApiError, ChatPhase, MutationState, ScrollPosition
from chat.client.session import (
    DELETE_TIMEOUT_MESSAGE,
    EDIT_TIMEOUT_MESSAGE,
    PAGE_SIZE,
    UNEXPECTED_ERROR_MESSAGE,
    ChatSession,
    error_message,
)
from chat.client.state import LocalMessage
from chat.events import (
    ConversationRead,
    MessageCreated,
    MessageDeleted,
    MessageEdited,
    PresenceChanged,
    TypingStarted,
    TypingStopped,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
ME = "user-me"
PEER = "user-peer"
CHAT = "chat-1"
OTHER_CHAT = "chat-2"


def message_payload(message_id, chat_id=CHAT, sender=PEER, minutes_ago=1, content=None):
    created_at = NOW - timedelta(minutes=minutes_ago)
    return {
        "id": message_id,
        "conversation": chat_id,
        "sender": sender,
        "content": content if content is not None else f"content of {message_id}",
        "media": None,
        "status": "sent",
        "created_at": created_at.isoformat().replace("+00:00", "Z"),
        "edited_at": None,
        "delivered_at": created_at.isoformat(),
        "read_by": [],
    }


def history(count, chat_id=CHAT):
    """count messages, newest first as the server returns them."""
    return [
        message_payload(f"{chat_id}-m{i}", chat_id=chat_id, minutes_ago=count - i)
        for i in reversed(range(count))
    ]


class FakeChatApi:
    def __init__(self):
        self.histories = {}
        self.conversations = []
        self.calls = []
        self.failures = {}
        self.gates = {}
        self.on_send = None
        self._next_id = 0

    async def _enter(self, operation):
        self.calls.append(operation)
        gate = self.gates.get(operation)
        if gate is not None:
            await gate.wait()
        error = self.failures.get(operation)
        if error is not None:
            raise error

    async def list_messages(self, chat_id, limit, offset):
        await self._enter(("list_messages", chat_id))
        return self.histories.get(chat_id, [])[offset : offset + limit]

    async def send_message(self, chat_id, content, media=None):
        await self._enter(("send_message", chat_id))
        self._next_id += 1
        payload = message_payload(
            f"server-{self._next_id}", chat_id=chat_id, sender=ME, minutes_ago=0, content=content
        )
        payload["media"] = media
        if self.on_send is not None:
            self.on_send(payload)
        return payload

    async def edit_message(self, chat_id, message_id, content):
        await self._enter(("edit_message", chat_id))
        return {"id": message_id, "content": content, "edited_at": NOW.isoformat()}

    async def delete_message(self, chat_id, message_id, for_all=True):
        await self._enter(("delete_message", chat_id))

    async def mark_read(self, chat_id):
        await self._enter(("mark_read", chat_id))
        return {"unread_count": 0}

    async def list_conversations(self):
        await self._enter(("list_conversations",))
        return self.conversations


@pytest.fixture
def api():
    fake = FakeChatApi()
    fake.histories[CHAT] = history(60)
    fake.histories[OTHER_CHAT] = history(3, chat_id=OTHER_CHAT)
    fake.conversations = [
        {"id": CHAT, "title": "Peer", "conversation_type": "direct", "unread_count": 4},
        {"id": OTHER_CHAT, "title": "Team", "conversation_type": "group", "unread_count": 0},
    ]
    return fake


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def session(api, notifications):
    chat_session = ChatSession(api, ME, notify=notifications.append, now=lambda: NOW)
    yield chat_session
    chat_session.close()


@pytest.fixture
async def loaded(session):
    await session.load_chats()
    await session.select_chat(CHAT)
    return session


def own_message(session, message_id="mine", minutes_ago=1):
    message = LocalMessage.from_payload(
        message_payload(message_id, sender=ME, minutes_ago=minutes_ago, content="original")
    )
    session.messages.append(message)
    return message


# =============================================================================
# Loading and pagination
# =============================================================================


class TestSelectChat:
    async def test_loads_newest_page_oldest_first(self, loaded, api):
        assert loaded.phase is ChatPhase.LOADED
        assert len(loaded.messages) == PAGE_SIZE
        assert loaded.messages[-1].id == f"{CHAT}-m59"
        assert loaded.messages[0].id == f"{CHAT}-m10"
        assert loaded.has_more is True
        assert loaded.offset == PAGE_SIZE
        assert loaded.scroll_to_bottom_requested is True

    async def test_marks_chat_read(self, loaded, api):
        assert ("mark_read", CHAT) in api.calls
        assert loaded.get_chat(CHAT).unread_count == 0

    async def test_short_history_has_no_more(self, session):
        await session.select_chat(OTHER_CHAT)

        assert len(session.messages) == 3
        assert session.has_more is False

    async def test_failure_returns_to_idle(self, session, api, notifications):
        api.failures[("list_messages", CHAT)] = ApiError(0, NETWORK_ERROR)

        assert await session.select_chat(CHAT) is False

        assert session.phase is ChatPhase.IDLE
        assert notifications == [UNEXPECTED_ERROR_MESSAGE]

    async def test_stale_response_is_dropped(self, session, api):
        """
        Why it matters: switching chats quickly must never show the previous
        chat's history in the new chat.
        """
        gate = asyncio.Event()
        api.gates[("list_messages", CHAT)] = gate

        first = asyncio.create_task(session.select_chat(CHAT))
        await asyncio.sleep(0)
        assert session.phase is ChatPhase.LOADING_INITIAL

        assert await session.select_chat(OTHER_CHAT) is True
        gate.set()
        assert await first is False

        assert session.selected_chat_id == OTHER_CHAT
        assert {m.conversation_id for m in session.messages} == {OTHER_CHAT}

    async def test_messages_arriving_during_initial_load_are_kept(self, session, api):
        """
        Why it matters: a message committed after the history query ran is
        only delivered live; dropping it while the page loads loses it until
        the chat is reopened.
        """
        gate = asyncio.Event()
        api.gates[("list_messages", OTHER_CHAT)] = gate
        in_page = message_payload("live-1", chat_id=OTHER_CHAT, minutes_ago=0)
        after_page = message_payload("live-2", chat_id=OTHER_CHAT, minutes_ago=0)

        task = asyncio.create_task(session.select_chat(OTHER_CHAT))
        await asyncio.sleep(0)
        session.apply_event(MessageCreated(conversation_id=OTHER_CHAT, message=in_page))
        session.apply_event(MessageCreated(conversation_id=OTHER_CHAT, message=after_page))
        api.histories[OTHER_CHAT].insert(0, in_page)
        gate.set()
        assert await task is True

        assert [m.id for m in session.messages] == [
            f"{OTHER_CHAT}-m0",
            f"{OTHER_CHAT}-m1",
            f"{OTHER_CHAT}-m2",
            "live-1",
            "live-2",
        ]

    async def test_buffered_messages_are_dropped_on_switch(self, session, api):
        gate = asyncio.Event()
        api.gates[("list_messages", CHAT)] = gate

        first = asyncio.create_task(session.select_chat(CHAT))
        await asyncio.sleep(0)
        session.apply_event(
            MessageCreated(conversation_id=CHAT, message=message_payload("live-1"))
        )

        assert await session.select_chat(OTHER_CHAT) is True
        gate.set()
        await first

        assert "live-1" not in {m.id for m in session.messages}

    async def test_close_chat_resets(self, loaded):
        loaded.close_chat()

        assert loaded.selected_chat_id is None
        assert loaded.phase is ChatPhase.IDLE
        assert loaded.messages == []


class TestLoadMore:
    async def test_prepends_older_page(self, loaded):
        assert await loaded.load_more() is True

        assert len(loaded.messages) == 60
        assert loaded.messages[0].id == f"{CHAT}-m0"
        assert loaded.messages[-1].id == f"{CHAT}-m59"
        assert loaded.has_more is False
        assert loaded.offset == 60

    async def test_stops_at_start_of_history(self, loaded, api):
        await loaded.load_more()
        calls = len(api.calls)

        assert await loaded.load_more() is False
        assert len(api.calls) == calls

    async def test_exact_page_then_empty_page(self, session, api):
        api.histories[CHAT] = history(PAGE_SIZE)
        await session.select_chat(CHAT)
        assert session.has_more is True

        await session.load_more()

        assert len(session.messages) == PAGE_SIZE
        assert session.has_more is False

    async def test_suppressed_while_in_flight(self, loaded, api):
        gate = asyncio.Event()
        api.gates[("list_messages", CHAT)] = gate

        first = asyncio.create_task(loaded.load_more())
        await asyncio.sleep(0)
        assert loaded.phase is ChatPhase.LOADING_MORE

        assert await loaded.load_more() is False
        gate.set()
        assert await first is True
        assert api.calls.count(("list_messages", CHAT)) == 2

    async def test_skips_messages_already_shown(self, loaded, api):
        # A message arrived live and shifted the server's offsets by one
        api.histories[CHAT].insert(0, message_payload("live", minutes_ago=0))

        await loaded.load_more()

        ids = [m.id for m in loaded.messages]
        assert len(ids) == len(set(ids))

    async def test_failure_keeps_loaded_state(self, loaded, api, notifications):
        api.failures[("list_messages", CHAT)] = ApiError(500, "HTTP_500", "boom")

        assert await loaded.load_more() is False

        assert loaded.phase is ChatPhase.LOADED
        assert len(loaded.messages) == PAGE_SIZE
        assert notifications == ["boom"]


class TestScrolling:
    async def test_near_top_loads_more(self, loaded):
        await loaded.on_scroll(ScrollPosition(scroll_top=50, scroll_height=5000, client_height=600))

        assert len(loaded.messages) == 60

    async def test_away_from_top_does_nothing(self, loaded):
        await loaded.on_scroll(ScrollPosition(scroll_top=100, scroll_height=5000, client_height=600))

        assert len(loaded.messages) == PAGE_SIZE

    async def test_incoming_message_scrolls_only_near_bottom(self, loaded):
        loaded.scroll_to_bottom_requested = False
        await loaded.on_scroll(ScrollPosition(scroll_top=2000, scroll_height=5000, client_height=600))

        loaded.apply_event(MessageCreated(CHAT, message_payload("incoming", minutes_ago=0)))
        assert loaded.scroll_to_bottom_requested is False

        await loaded.on_scroll(ScrollPosition(scroll_top=4350, scroll_height=5000, client_height=600))
        loaded.apply_event(MessageCreated(CHAT, message_payload("incoming-2", minutes_ago=0)))
        assert loaded.scroll_to_bottom_requested is True

    async def test_own_send_always_scrolls(self, loaded):
        loaded.scroll_to_bottom_requested = False
        await loaded.on_scroll(ScrollPosition(scroll_top=2000, scroll_height=5000, client_height=600))

        await loaded.send("hello")

        assert loaded.scroll_to_bottom_requested is True


# =============================================================================
# Server events
# =============================================================================


class TestApplyEvent:
    async def test_created_in_selected_chat_is_appended_once(self, loaded):
        event = MessageCreated(CHAT, message_payload("new-1", minutes_ago=0))

        loaded.apply_event(event)
        loaded.apply_event(event)

        assert [m.id for m in loaded.messages].count("new-1") == 1
        assert loaded.messages[-1].is_new is True
        assert loaded.get_chat(CHAT).unread_count == 0

    async def test_new_flag_clears(self, loaded):
        loaded.apply_event(MessageCreated(CHAT, message_payload("new-1", minutes_ago=0)))

        await asyncio.sleep(0.6)

        assert loaded.messages[-1].is_new is False

    async def test_created_in_other_chat_counts_unread(self, loaded):
        loaded.apply_event(MessageCreated(OTHER_CHAT, message_payload("x", chat_id=OTHER_CHAT)))

        other = loaded.get_chat(OTHER_CHAT)
        assert other.unread_count == 1
        assert loaded.chats[0] is other
        assert other.last_message["content"] == "content of x"
        assert all(m.id != "x" for m in loaded.messages)

    async def test_own_message_elsewhere_is_not_unread(self, loaded):
        loaded.apply_event(
            MessageCreated(OTHER_CHAT, message_payload("x", chat_id=OTHER_CHAT, sender=ME))
        )

        assert loaded.get_chat(OTHER_CHAT).unread_count == 0

    async def test_created_for_unknown_chat_adds_entry(self, loaded):
        loaded.apply_event(MessageCreated("chat-new", message_payload("x", chat_id="chat-new")))

        assert loaded.chats[0].id == "chat-new"
        assert loaded.chats[0].unread_count == 1

    async def test_created_clears_sender_typing(self, loaded):
        loaded.apply_event(TypingStarted(CHAT, PEER))
        assert loaded.typing.is_typing(CHAT, PEER)

        loaded.apply_event(MessageCreated(CHAT, message_payload("new-1", minutes_ago=0)))

        assert not loaded.typing.is_typing(CHAT, PEER)

    async def test_edited(self, loaded):
        target = loaded.messages[-1]

        loaded.apply_event(MessageEdited(CHAT, target.id, "changed", "2026-03-02T12:00:00Z"))

        assert target.content == "changed"
        assert target.edited_at == NOW

    async def test_deleted(self, loaded):
        target = loaded.messages[-1]

        loaded.apply_event(MessageDeleted(CHAT, target.id))

        assert loaded._find(target.id) is None

    async def test_events_for_other_chat_leave_messages_alone(self, loaded):
        target = loaded.messages[-1]
        original = target.content

        loaded.apply_event(MessageEdited(OTHER_CHAT, target.id, "changed", NOW.isoformat()))
        loaded.apply_event(MessageDeleted(OTHER_CHAT, target.id))

        assert loaded._find(target.id).content == original

    async def test_presence(self, session):
        session.apply_event(PresenceChanged(PEER, "online"))
        assert PEER in session.online_users

        session.apply_event(PresenceChanged(PEER, "away"))
        assert PEER in session.online_users

        session.apply_event(PresenceChanged(PEER, "offline", NOW.isoformat()))
        assert PEER not in session.online_users

    async def test_typing(self, session):
        session.apply_event(TypingStarted(CHAT, ME))
        session.apply_event(TypingStarted(CHAT, PEER))
        assert session.typing.typing_users(CHAT) == [PEER]

        session.apply_event(TypingStopped(CHAT, PEER))
        assert session.typing.typing_users(CHAT) == []

    async def test_peer_read_receipt(self, loaded):
        early = own_message(loaded, "early", minutes_ago=10)
        late = own_message(loaded, "late", minutes_ago=1)
        read_at = (NOW - timedelta(minutes=5)).isoformat()

        loaded.apply_event(ConversationRead(CHAT, PEER, read_at))

        assert early.read_by == [PEER]
        assert late.read_by == []
        assert loaded.read_markers[CHAT][PEER] == NOW - timedelta(minutes=5)

    async def test_own_read_elsewhere_clears_unread(self, loaded):
        loaded.get_chat(OTHER_CHAT).unread_count = 3

        loaded.apply_event(ConversationRead(OTHER_CHAT, ME, NOW.isoformat()))

        assert loaded.get_chat(OTHER_CHAT).unread_count == 0

    def test_unknown_event_type(self, session):
        with pytest.raises(TypeError):
            session.apply_event(object())


# =============================================================================
# Optimistic mutations
# =============================================================================


class TestSend:
    async def test_temporary_message_is_replaced(self, loaded, api):
        gate = asyncio.Event()
        api.gates[("send_message", CHAT)] = gate

        task = asyncio.create_task(loaded.send("hello"))
        await asyncio.sleep(0)
        pending = loaded.messages[-1]
        assert pending.is_temporary
        assert pending.status == "sending"
        assert pending.sender_id == ME

        gate.set()
        mutation = await task

        assert mutation.state is MutationState.COMMITTED
        assert loaded.messages[-1].id == "server-1"
        assert loaded.messages[-1].status == "sent"
        assert not any(m.is_temporary for m in loaded.messages)
        assert loaded.chats[0].id == CHAT

    async def test_echo_event_before_response(self, loaded, api):
        """
        Why it matters: the broadcast of our own message can beat the HTTP
        response; the chat must still show it once.
        """
        api.on_send = lambda payload: loaded.apply_event(MessageCreated(CHAT, payload))

        await loaded.send("hello")

        ids = [m.id for m in loaded.messages]
        assert ids.count("server-1") == 1
        assert not any(m.is_temporary for m in loaded.messages)

    async def test_failure_removes_temporary(self, loaded, api, notifications):
        api.failures[("send_message", CHAT)] = ApiError(0, NETWORK_ERROR, "timed out")
        before = [m.id for m in loaded.messages]

        mutation = await loaded.send("hello")

        assert mutation.state is MutationState.ROLLED_BACK
        assert [m.id for m in loaded.messages] == before
        assert notifications == [UNEXPECTED_ERROR_MESSAGE]

    async def test_server_message_is_shown(self, loaded, api, notifications):
        api.failures[("send_message", CHAT)] = ApiError(
            403, "NOT_PARTICIPANT", "You are not a participant in this conversation"
        )

        await loaded.send("hello")

        assert notifications == ["You are not a participant in this conversation"]

    @pytest.mark.parametrize("content", ["", "   ", None])
    async def test_empty_message_is_not_sent(self, loaded, api, content):
        assert await loaded.send(content) is None
        assert ("send_message", CHAT) not in api.calls

    async def test_media_only_message(self, loaded):
        media = {"kind": "image", "url": "https://cdn.example.com/a.png"}
        mutation = await loaded.send(None, media=media)

        assert mutation.state is MutationState.COMMITTED
        assert loaded.messages[-1].media == media

    async def test_requires_selected_chat(self, session):
        assert await session.send("hello") is None


class TestEdit:
    async def test_applies_immediately_then_commits(self, loaded, api):
        message = own_message(loaded)
        assert loaded.begin_edit(message.id) is True
        gate = asyncio.Event()
        api.gates[("edit_message", CHAT)] = gate

        task = asyncio.create_task(loaded.edit(message.id, "updated"))
        await asyncio.sleep(0)
        assert message.content == "updated"
        assert message.is_editing is False

        gate.set()
        mutation = await task

        assert mutation.state is MutationState.COMMITTED
        assert mutation.previous.content == "original"
        assert message.edited_at == NOW

    async def test_rolls_back_on_expired_window(self, loaded, api, notifications):
        message = own_message(loaded)
        api.failures[("edit_message", CHAT)] = ApiError(
            403, "EDIT_TIME_EXPIRED", "Edit window has closed"
        )

        mutation = await loaded.edit(message.id, "updated")

        assert mutation.state is MutationState.ROLLED_BACK
        assert message.content == "original"
        assert message.edited_at is None
        assert notifications == [EDIT_TIMEOUT_MESSAGE]

    async def test_unknown_message(self, loaded):
        assert await loaded.edit("missing", "x") is None

    async def test_cancel_edit(self, loaded):
        message = own_message(loaded)
        loaded.begin_edit(message.id)

        loaded.cancel_edit(message.id)

        assert message.is_editing is False

    async def test_cannot_begin_edit_on_peer_message(self, loaded):
        assert loaded.begin_edit(loaded.messages[-1].id) is False


class TestDelete:
    async def test_flags_then_removes(self, loaded, api):
        target = loaded.messages[-1]
        gate = asyncio.Event()
        api.gates[("delete_message", CHAT)] = gate

        task = asyncio.create_task(loaded.delete(target.id))
        await asyncio.sleep(0)
        assert target.is_deleting is True

        gate.set()
        mutation = await task

        assert mutation.state is MutationState.COMMITTED
        assert loaded._find(target.id) is None

    async def test_rolls_back_on_expired_window(self, loaded, api, notifications):
        target = loaded.messages[-1]
        api.failures[("delete_message", CHAT)] = ApiError(
            403, "DELETE_TIME_EXPIRED", "Delete window has closed"
        )

        mutation = await loaded.delete(target.id)

        assert mutation.state is MutationState.ROLLED_BACK
        assert loaded._find(target.id) is target
        assert target.is_deleting is False
        assert notifications == [DELETE_TIMEOUT_MESSAGE]

    async def test_deleted_event_during_request(self, loaded, api):
        target = loaded.messages[-1]
        gate = asyncio.Event()
        api.gates[("delete_message", CHAT)] = gate

        task = asyncio.create_task(loaded.delete(target.id))
        await asyncio.sleep(0)
        loaded.apply_event(MessageDeleted(CHAT, target.id))
        gate.set()
        mutation = await task

        assert mutation.state is MutationState.COMMITTED
        assert loaded._find(target.id) is None


class TestCanEdit:
    def test_own_recent_message(self, session):
        assert session.can_edit(own_message(session, minutes_ago=14)) is True

    def test_window_closed(self, session):
        assert session.can_edit(own_message(session, minutes_ago=15)) is False

    def test_peer_message(self, session):
        message = LocalMessage.from_payload(message_payload("p"))

        assert session.can_edit(message) is False

    def test_temporary_message(self, session):
        message = own_message(session)
        message.id = "temp-123"

        assert session.can_edit(message) is False


class TestErrorMessage:
    @pytest.mark.parametrize(
        "error, expected",
        [
            (ApiError(403, "EDIT_TIME_EXPIRED", "x"), EDIT_TIMEOUT_MESSAGE),
            (ApiError(403, "DELETE_TIME_EXPIRED", "x"), DELETE_TIMEOUT_MESSAGE),
            (ApiError(0, NETWORK_ERROR, "refused"), UNEXPECTED_ERROR_MESSAGE),
            (ApiError(500, "HTTP_500", ""), UNEXPECTED_ERROR_MESSAGE),
            (ApiError(409, "ALREADY_DELETED", "Message already deleted"), "Message already deleted"),
        ],
    )
    def test_mapping(self, error, expected):
        assert error_message(error) == expected
