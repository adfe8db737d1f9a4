"""
Chat synchronization client.

Keeps a UI-side view of one user's chats consistent with the server:

    api.py      ChatApi protocol and the httpx-based RestChatApi
    state.py    Local message overlay, mutation lifecycle, load phases
    typing.py   Client-side typing indicators with expiry
    session.py  ChatSession state machine (pagination, scroll, reconciliation,
                optimistic send/edit/delete with rollback)

Usage:
    api = RestChatApi("https://chat.example.com/api/v1/chat", token)
    session = ChatSession(api, user_id, notify=show_toast)
    await session.select_chat(chat_id)
    session.apply_event(parse_event(frame))

Note:
    Nothing in this package imports Django.
"""

from chat.client.api import NETWORK_ERROR, ApiError, ChatApi, RestChatApi
from chat.client.session import ChatSession
from chat.client.state import ChatPhase, LocalMessage, Mutation, MutationState, ScrollPosition
from chat.client.typing import TypingTracker

__all__ = [
    "NETWORK_ERROR",
    "ApiError",
    "ChatApi",
    "ChatPhase",
    "ChatSession",
    "LocalMessage",
    "Mutation",
    "MutationState",
    "RestChatApi",
    "ScrollPosition",
    "TypingTracker",
]
