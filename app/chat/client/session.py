"""
Chat synchronization state machine.

ChatSession holds what one user's chat screen shows and keeps it in step with
the server:

    IDLE --select_chat--> LOADING_INITIAL --ok--> LOADED --near top--> LOADING_MORE
                                 |                  ^                      |
                                 +--error--> IDLE   +----------------------+

History is fetched newest first, PAGE_SIZE rows at a time, and reversed into
chronological order. A page shorter than PAGE_SIZE means the start of the
chat was reached. Responses for a chat that is no longer selected are
dropped by comparing the selection token taken before the request.

Mutations are optimistic. send appends a temporary record, edit rewrites the
content, delete flags the record; each is undone if the server refuses.
Errors are reported through ``notify`` and never retried.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from chat.client.api import ApiError, ChatApi
from chat.client.state import (
    ChatListEntry,
    ChatPhase,
    LocalMessage,
    Mutation,
    MutationKind,
    ScrollPosition,
    parse_timestamp,
)
from chat.client.typing import TypingTracker
from chat.events import (
    ChatEvent,
    ConversationRead,
    MessageCreated,
    MessageDeleted,
    MessageEdited,
    PresenceChanged,
    TypingStarted,
    TypingStopped,
)

logger = logging.getLogger(__name__)

PAGE_SIZE = 50
NEAR_TOP_THRESHOLD_PX = 100
NEAR_BOTTOM_THRESHOLD_PX = 100
NEW_FLAG_SECONDS = 0.5
EDIT_WINDOW = timedelta(minutes=15)

EDIT_TIMEOUT_MESSAGE = "Messages can only be edited within 15 minutes"
DELETE_TIMEOUT_MESSAGE = "Messages can only be deleted within 15 minutes"
UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred"

ERROR_MESSAGES = {
    "EDIT_TIME_EXPIRED": EDIT_TIMEOUT_MESSAGE,
    "DELETE_TIME_EXPIRED": DELETE_TIMEOUT_MESSAGE,
}


def error_message(error: ApiError) -> str:
    """User-facing text for a failed call."""
    if error.error_code in ERROR_MESSAGES:
        return ERROR_MESSAGES[error.error_code]
    if error.is_network_error or not error.message:
        return UNEXPECTED_ERROR_MESSAGE
    return error.message


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChatSession:
    """
    Client view of one user's chats.

    Args:
        api: Server access (RestChatApi or a test double)
        user_id: The signed-in user
        notify: Called with a user-facing message when something fails
        now: Wall clock, used for optimistic timestamps and edit eligibility
        typing: Typing tracker; a fresh one by default

    Attributes:
        selected_chat_id: Chat on screen, or None
        phase: Load phase of the selected chat
        messages: Selected chat's messages, oldest first
        has_more: Older history may exist on the server
        chats: Chat list, most recently active first
        online_users: Users last reported online or away
        read_markers: chat id -> {user id: read_at}
        mutations: Every optimistic mutation issued, in order
        scroll_to_bottom_requested: Set when new content should scroll the
            view to the latest message; the UI clears it after scrolling
    """

    def __init__(
        self,
        api: ChatApi,
        user_id,
        notify: Callable[[str], None] | None = None,
        now: Callable[[], datetime] = utc_now,
        typing: TypingTracker | None = None,
    ):
        self.api = api
        self.user_id = str(user_id)
        self.notify = notify or (lambda message: logger.warning(f"Chat error: {message}"))
        self.now = now
        self.typing = typing or TypingTracker()

        self.selected_chat_id: str | None = None
        self.phase = ChatPhase.IDLE
        self.messages: list[LocalMessage] = []
        self.offset = 0
        self.has_more = False

        self.chats: list[ChatListEntry] = []
        self.online_users: set[str] = set()
        self.read_markers: dict[str, dict[str, datetime]] = {}
        self.mutations: list[Mutation] = []

        self.last_scroll: ScrollPosition | None = None
        self.scroll_to_bottom_requested = False

        self._selection = 0
        self._timers: set[asyncio.TimerHandle] = set()
        # message.created for the selected chat received while its first page loads
        self._pending_created: list[LocalMessage] = []

    # -------------------------------------------------------------------------
    # Chat list and selection
    # -------------------------------------------------------------------------

    async def load_chats(self) -> bool:
        try:
            rows = await self.api.list_conversations()
        except ApiError as e:
            self.notify(error_message(e))
            return False
        self.chats = [ChatListEntry.from_payload(row) for row in rows]
        return True

    def get_chat(self, chat_id) -> ChatListEntry | None:
        chat_id = str(chat_id)
        return next((chat for chat in self.chats if chat.id == chat_id), None)

    async def select_chat(self, chat_id) -> bool:
        """
        Show a chat and load its most recent page.

        Returns True when the page was applied; False on failure or when
        another chat was selected before the response arrived.
        """
        chat_id = str(chat_id)
        self._selection += 1
        token = self._selection

        self.selected_chat_id = chat_id
        self.phase = ChatPhase.LOADING_INITIAL
        self.messages = []
        self._pending_created = []
        self.offset = 0
        self.has_more = False
        self.last_scroll = None

        try:
            page = await self.api.list_messages(chat_id, PAGE_SIZE, 0)
        except ApiError as e:
            if token == self._selection:
                self.phase = ChatPhase.IDLE
                self._pending_created = []
                self.notify(error_message(e))
            return False

        if token != self._selection:
            logger.debug(f"Dropping stale history page for chat {chat_id}")
            return False

        self.messages = [LocalMessage.from_payload(row) for row in reversed(page)]
        self._merge_pending_created()
        self.offset = len(page)
        self.has_more = len(page) == PAGE_SIZE
        self.phase = ChatPhase.LOADED
        self.scroll_to_bottom_requested = True

        await self._mark_read(chat_id, token)
        return True

    def close_chat(self) -> None:
        """Leave the selected chat; late responses for it are ignored."""
        self._selection += 1
        self.selected_chat_id = None
        self.phase = ChatPhase.IDLE
        self.messages = []
        self._pending_created = []
        self.offset = 0
        self.has_more = False

    def _merge_pending_created(self) -> None:
        """Append live messages that arrived during the initial load and are not in the page."""
        known = {message.id for message in self.messages}
        for message in self._pending_created:
            if message.id not in known:
                known.add(message.id)
                self.messages.append(message)
                self._flag_new(message)
        self._pending_created = []

    async def _mark_read(self, chat_id: str, token: int) -> None:
        try:
            await self.api.mark_read(chat_id)
        except ApiError as e:
            logger.warning(f"Failed to mark chat {chat_id} read: {e}")
            return

        chat = self.get_chat(chat_id)
        if chat is not None and token == self._selection:
            chat.unread_count = 0

    # -------------------------------------------------------------------------
    # Pagination and scrolling
    # -------------------------------------------------------------------------

    async def load_more(self) -> bool:
        """
        Prepend the next page of older messages.

        Does nothing unless the chat is LOADED with more history, so a call
        made while a page is in flight is suppressed.
        """
        if self.phase is not ChatPhase.LOADED or not self.has_more:
            return False

        chat_id = self.selected_chat_id
        token = self._selection
        self.phase = ChatPhase.LOADING_MORE

        try:
            page = await self.api.list_messages(chat_id, PAGE_SIZE, self.offset)
        except ApiError as e:
            if token == self._selection:
                self.phase = ChatPhase.LOADED
                self.notify(error_message(e))
            return False

        if token != self._selection:
            logger.debug(f"Dropping stale history page for chat {chat_id}")
            return False

        known = {message.id for message in self.messages}
        older = [
            LocalMessage.from_payload(row)
            for row in reversed(page)
            if str(row["id"]) not in known
        ]
        self.messages = older + self.messages
        self.offset += len(page)
        self.has_more = len(page) == PAGE_SIZE
        self.phase = ChatPhase.LOADED
        return True

    async def on_scroll(self, position: ScrollPosition) -> bool:
        """Record the viewport; near the top, fetch older history."""
        self.last_scroll = position
        if position.is_near_top(NEAR_TOP_THRESHOLD_PX):
            return await self.load_more()
        return False

    def is_near_bottom(self) -> bool:
        # Before the first scroll report the view sits at the latest message
        if self.last_scroll is None:
            return True
        return self.last_scroll.is_near_bottom(NEAR_BOTTOM_THRESHOLD_PX)

    # -------------------------------------------------------------------------
    # Server events
    # -------------------------------------------------------------------------

    def apply_event(self, event: ChatEvent) -> None:
        """Reconcile local state with one server event."""
        handler = self._handlers().get(type(event))
        if handler is None:
            raise TypeError(f"No handler for event {type(event).__name__}")
        handler(event)

    def _handlers(self) -> dict[type[ChatEvent], Callable[[ChatEvent], None]]:
        return {
            MessageCreated: self._on_message_created,
            MessageEdited: self._on_message_edited,
            MessageDeleted: self._on_message_deleted,
            PresenceChanged: self._on_presence_changed,
            TypingStarted: self._on_typing_started,
            TypingStopped: self._on_typing_stopped,
            ConversationRead: self._on_conversation_read,
        }

    def _on_message_created(self, event: MessageCreated) -> None:
        message = LocalMessage.from_payload(event.message)
        chat_id = str(event.conversation_id)
        from_peer = message.sender_id != self.user_id
        is_selected = chat_id == self.selected_chat_id

        self._touch_chat(chat_id, message, increment_unread=from_peer and not is_selected)

        if not is_selected:
            return
        if message.sender_id is not None:
            self.typing.stopped(chat_id, message.sender_id)

        if self.phase is ChatPhase.LOADING_INITIAL:
            self._pending_created.append(message)
            return
        if self._find(message.id) is not None:
            return
        self._append(message)

    def _on_message_edited(self, event: MessageEdited) -> None:
        if str(event.conversation_id) != self.selected_chat_id:
            return
        message = self._find(event.message_id)
        if message is None:
            return
        message.content = event.content
        message.edited_at = parse_timestamp(event.edited_at)

    def _on_message_deleted(self, event: MessageDeleted) -> None:
        if str(event.conversation_id) != self.selected_chat_id:
            return
        self._remove(event.message_id)

    def _on_presence_changed(self, event: PresenceChanged) -> None:
        if event.status == "offline":
            self.online_users.discard(str(event.user_id))
        else:
            self.online_users.add(str(event.user_id))

    def _on_typing_started(self, event: TypingStarted) -> None:
        if str(event.user_id) != self.user_id:
            self.typing.started(event.conversation_id, event.user_id)

    def _on_typing_stopped(self, event: TypingStopped) -> None:
        self.typing.stopped(event.conversation_id, event.user_id)

    def _on_conversation_read(self, event: ConversationRead) -> None:
        chat_id = str(event.conversation_id)
        reader_id = str(event.user_id)
        read_at = parse_timestamp(event.read_at)
        self.read_markers.setdefault(chat_id, {})[reader_id] = read_at

        if reader_id == self.user_id:
            chat = self.get_chat(chat_id)
            if chat is not None:
                chat.unread_count = 0
            return

        if chat_id != self.selected_chat_id:
            return
        for message in self.messages:
            if (
                message.sender_id == self.user_id
                and message.created_at is not None
                and message.created_at <= read_at
                and reader_id not in message.read_by
            ):
                message.read_by.append(reader_id)

    # -------------------------------------------------------------------------
    # Optimistic mutations
    # -------------------------------------------------------------------------

    async def send(self, content: str | None, media: dict | None = None) -> Mutation | None:
        """
        Append a temporary message, then replace it with the server's copy.

        Returns None when nothing can be sent (no chat selected, or neither
        content nor media).
        """
        chat_id = self.selected_chat_id
        if chat_id is None or (not (content or "").strip() and not media):
            return None

        temporary = LocalMessage(
            id=f"temp-{uuid.uuid4()}",
            conversation_id=chat_id,
            sender_id=self.user_id,
            content=content,
            media=media,
            status="sending",
            created_at=self.now(),
        )
        mutation = self._begin(MutationKind.SEND, chat_id, temporary.id)
        self._append(temporary, force_scroll=True)

        try:
            payload = await self.api.send_message(chat_id, content, media)
        except ApiError as e:
            self._remove(temporary.id)
            self._fail(mutation, e)
            return mutation

        saved = LocalMessage.from_payload(payload)
        if self._find(saved.id) is not None:
            # The message.created event won the race
            self._remove(temporary.id)
        elif self._find(temporary.id) is not None:
            temporary.id = saved.id
            temporary.content = saved.content
            temporary.media = saved.media
            temporary.created_at = saved.created_at or temporary.created_at
            temporary.status = "sent"
            temporary.delivered_at = saved.delivered_at or self.now()

        mutation.message_id = saved.id
        self._touch_chat(chat_id, saved, increment_unread=False)
        mutation.commit()
        return mutation

    def begin_edit(self, message_id) -> bool:
        message = self._find(message_id)
        if message is None or not self.can_edit(message):
            return False
        message.is_editing = True
        return True

    def cancel_edit(self, message_id) -> None:
        message = self._find(message_id)
        if message is not None:
            message.is_editing = False

    async def edit(self, message_id, content: str) -> Mutation | None:
        """
        Show the new content at once; restore the previous content if the
        server refuses the edit.
        """
        chat_id = self.selected_chat_id
        message = self._find(message_id)
        if chat_id is None or message is None:
            return None

        previous = message.copy()
        previous.is_editing = False
        mutation = self._begin(MutationKind.EDIT, chat_id, message.id, previous=previous)
        message.content = content
        message.is_editing = False

        try:
            payload = await self.api.edit_message(chat_id, message.id, content)
        except ApiError as e:
            current = self._find(message.id)
            if current is not None:
                current.content = previous.content
                current.edited_at = previous.edited_at
                current.is_editing = False
            self._fail(mutation, e)
            return mutation

        current = self._find(message.id)
        if current is not None:
            current.content = payload.get("content", content)
            current.edited_at = parse_timestamp(payload.get("edited_at"))
        mutation.commit()
        return mutation

    async def delete(self, message_id, for_all: bool = True) -> Mutation | None:
        """Flag the message as being deleted and drop it once the server agrees."""
        chat_id = self.selected_chat_id
        message = self._find(message_id)
        if chat_id is None or message is None:
            return None

        mutation = self._begin(MutationKind.DELETE, chat_id, message.id, previous=message.copy())
        message.is_deleting = True

        try:
            await self.api.delete_message(chat_id, message.id, for_all=for_all)
        except ApiError as e:
            current = self._find(message.id)
            if current is not None:
                current.is_deleting = False
            self._fail(mutation, e)
            return mutation

        self._remove(message.id)
        mutation.commit()
        return mutation

    def can_edit(self, message: LocalMessage) -> bool:
        """Whether to offer the edit action; the server re-checks."""
        if message.sender_id != self.user_id or message.is_temporary:
            return False
        if message.created_at is None:
            return False
        return self.now() - message.created_at < EDIT_WINDOW

    def _begin(self, kind: MutationKind, chat_id: str, message_id: str, previous=None) -> Mutation:
        mutation = Mutation(kind=kind, chat_id=chat_id, message_id=message_id, previous=previous)
        self.mutations.append(mutation)
        return mutation

    def _fail(self, mutation: Mutation, error: ApiError) -> None:
        mutation.rollback(error)
        logger.info(f"{mutation.kind.value} of {mutation.message_id} rolled back: {error!r}")
        self.notify(error_message(error))

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _find(self, message_id) -> LocalMessage | None:
        message_id = str(message_id)
        return next((m for m in self.messages if m.id == message_id), None)

    def _remove(self, message_id) -> None:
        message_id = str(message_id)
        self.messages = [m for m in self.messages if m.id != message_id]

    def _append(self, message: LocalMessage, force_scroll: bool = False) -> None:
        # Decide on auto-scroll before the list grows
        if force_scroll or self.is_near_bottom():
            self.scroll_to_bottom_requested = True
        self.messages.append(message)
        self._flag_new(message)

    def _flag_new(self, message: LocalMessage) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        message.is_new = True

        def clear():
            message.is_new = False
            self._timers.discard(handle)

        handle = loop.call_later(NEW_FLAG_SECONDS, clear)
        self._timers.add(handle)

    def _touch_chat(self, chat_id: str, message: LocalMessage, increment_unread: bool) -> None:
        """Update a chat's summary and move it to the top of the list."""
        chat = self.get_chat(chat_id)
        if chat is None:
            chat = ChatListEntry(id=chat_id)
        else:
            self.chats.remove(chat)

        chat.last_message = {
            "content": message.content,
            "sender_id": message.sender_id,
            "timestamp": message.created_at.isoformat() if message.created_at else None,
        }
        if increment_unread:
            chat.unread_count += 1
        self.chats.insert(0, chat)

    def close(self) -> None:
        """Cancel pending flag timers."""
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
