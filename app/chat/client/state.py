"""
Client-side state types.

LocalMessage carries the server fields of a message plus transient UI flags
(is_new, is_deleting, is_editing). The flags never leave the client:
server_view() strips them before any comparison with server records.

Every optimistic change is tracked as a Mutation that moves exactly once
from PENDING to COMMITTED or ROLLED_BACK.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any

SERVER_FIELDS = (
    "id",
    "conversation_id",
    "sender_id",
    "content",
    "media",
    "status",
    "created_at",
    "edited_at",
    "delivered_at",
    "read_by",
)


def parse_timestamp(value) -> datetime | None:
    """ISO-8601 string (with Z or offset) to an aware datetime."""
    if value is None or isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class LocalMessage:
    id: str
    conversation_id: str
    sender_id: str | None
    content: str | None = None
    media: dict | None = None
    status: str = "sent"
    created_at: datetime | None = None
    edited_at: datetime | None = None
    delivered_at: datetime | None = None
    read_by: list[str] = field(default_factory=list)

    # UI-only overlay
    is_new: bool = False
    is_deleting: bool = False
    is_editing: bool = False

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> LocalMessage:
        """Build from a MessageSerializer payload."""
        sender = payload.get("sender", payload.get("sender_id"))
        conversation = payload.get("conversation", payload.get("conversation_id"))
        return cls(
            id=str(payload["id"]),
            conversation_id=str(conversation),
            sender_id=str(sender) if sender is not None else None,
            content=payload.get("content"),
            media=payload.get("media"),
            status=payload.get("status") or "sent",
            created_at=parse_timestamp(payload.get("created_at")),
            edited_at=parse_timestamp(payload.get("edited_at")),
            delivered_at=parse_timestamp(payload.get("delivered_at")),
            read_by=[str(user_id) for user_id in payload.get("read_by") or []],
        )

    @property
    def is_temporary(self) -> bool:
        return self.id.startswith("temp-")

    def server_view(self) -> dict[str, Any]:
        """Server fields only; use for equality with server-sourced records."""
        return {name: getattr(self, name) for name in SERVER_FIELDS}

    def copy(self) -> LocalMessage:
        return replace(self, read_by=list(self.read_by))


class MutationState(enum.Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class MutationKind(enum.Enum):
    SEND = "send"
    EDIT = "edit"
    DELETE = "delete"


@dataclass
class Mutation:
    """
    One optimistic change awaiting the server.

    Attributes:
        kind: send, edit or delete
        chat_id: Chat the message belongs to
        message_id: Id the UI currently shows (temporary id for sends)
        previous: Snapshot taken before the optimistic change (None for sends)
        error: The failure that caused a rollback
    """

    kind: MutationKind
    chat_id: str
    message_id: str
    previous: LocalMessage | None = None
    state: MutationState = MutationState.PENDING
    error: Exception | None = None

    @property
    def is_pending(self) -> bool:
        return self.state is MutationState.PENDING

    def commit(self) -> None:
        self._finish(MutationState.COMMITTED)

    def rollback(self, error: Exception | None = None) -> None:
        self.error = error
        self._finish(MutationState.ROLLED_BACK)

    def _finish(self, state: MutationState) -> None:
        if self.state is not MutationState.PENDING:
            raise RuntimeError(f"Mutation already {self.state.value}")
        self.state = state


class ChatPhase(enum.Enum):
    IDLE = "idle"
    LOADING_INITIAL = "loading_initial"
    LOADED = "loaded"
    LOADING_MORE = "loading_more"


@dataclass(frozen=True)
class ScrollPosition:
    """Viewport geometry of the message list, in pixels."""

    scroll_top: float
    scroll_height: float
    client_height: float

    @property
    def distance_from_bottom(self) -> float:
        return self.scroll_height - self.scroll_top - self.client_height

    def is_near_top(self, threshold: float) -> bool:
        return self.scroll_top < threshold

    def is_near_bottom(self, threshold: float) -> bool:
        return self.distance_from_bottom < threshold


@dataclass
class ChatListEntry:
    """One row of the chat list."""

    id: str
    title: str = ""
    conversation_type: str = "direct"
    last_message: dict | None = None
    unread_count: int = 0

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ChatListEntry:
        names = {f.name for f in fields(cls)}
        values = {k: v for k, v in payload.items() if k in names}
        values["id"] = str(payload["id"])
        return cls(**values)
