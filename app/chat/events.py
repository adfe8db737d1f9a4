"""
Real-time chat events.

Every frame sent over the WebSocket is one of the event classes below,
serialized with ``to_payload()`` and decoded with ``parse_event()``.
Subscribers dispatch on the event class instead of probing for fields.

Event kinds:
    message.created     - New message in a chat (full message payload)
    message.edited      - Content and edited_at of an existing message
    message.deleted     - Message removed; scope "all" or "self"
    presence.changed    - User went online/offline/away
    typing.started      - User started (or refreshed) typing in a chat
    typing.stopped      - Typing ended by stop signal, expiry or disconnect
    conversation.read   - User marked a chat as read

Payload format:
    {"type": "<kind>", ...event fields}

Note:
    This module does not import Django so the sync client can use it.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, ClassVar


@dataclass(frozen=True)
class ChatEvent:
    """Base class for events; subclasses set ``kind``."""

    kind: ClassVar[str] = ""

    def to_payload(self) -> dict[str, Any]:
        # Nested values are passed through as-is
        return {"type": self.kind, **{f.name: getattr(self, f.name) for f in fields(self)}}


@dataclass(frozen=True)
class MessageCreated(ChatEvent):
    kind: ClassVar[str] = "message.created"

    conversation_id: str
    message: dict

    @property
    def message_id(self) -> str:
        return str(self.message["id"])


@dataclass(frozen=True)
class MessageEdited(ChatEvent):
    kind: ClassVar[str] = "message.edited"

    conversation_id: str
    message_id: str
    content: str
    edited_at: str


@dataclass(frozen=True)
class MessageDeleted(ChatEvent):
    """
    A message was deleted.

    scope is "all" when deleted for every participant and "self" when only
    the receiving user hid it (delivered to that user's sessions only).
    """

    kind: ClassVar[str] = "message.deleted"

    conversation_id: str
    message_id: str
    scope: str = "all"


@dataclass(frozen=True)
class PresenceChanged(ChatEvent):
    kind: ClassVar[str] = "presence.changed"

    user_id: str
    status: str
    last_seen: str | None = None


@dataclass(frozen=True)
class TypingStarted(ChatEvent):
    kind: ClassVar[str] = "typing.started"

    conversation_id: str
    user_id: str


@dataclass(frozen=True)
class TypingStopped(ChatEvent):
    kind: ClassVar[str] = "typing.stopped"

    conversation_id: str
    user_id: str


@dataclass(frozen=True)
class ConversationRead(ChatEvent):
    kind: ClassVar[str] = "conversation.read"

    conversation_id: str
    user_id: str
    read_at: str


EVENT_TYPES: dict[str, type[ChatEvent]] = {
    cls.kind: cls
    for cls in (
        MessageCreated,
        MessageEdited,
        MessageDeleted,
        PresenceChanged,
        TypingStarted,
        TypingStopped,
        ConversationRead,
    )
}

TYPING_EVENTS = (TypingStarted, TypingStopped)


def parse_event(payload: dict[str, Any]) -> ChatEvent:
    """
    Decode a payload produced by ``ChatEvent.to_payload()``.

    Raises:
        ValueError: Unknown event type or missing required fields
    """
    kind = payload.get("type")
    event_cls = EVENT_TYPES.get(kind)
    if event_cls is None:
        raise ValueError(f"Unknown event type: {kind!r}")

    names = {f.name for f in fields(event_cls)}
    try:
        return event_cls(**{k: v for k, v in payload.items() if k in names})
    except TypeError as exc:
        raise ValueError(f"Malformed {kind} event: {exc}") from exc
