"""
Fan-out of chat events over the Channels layer.

Groups:
    chat_{conversation_id} - every session of every participant of the chat
    user_{user_id}         - every session of one user

One group per chat keeps delivery order within a chat equal to publish
order. Nothing is ordered across chats.

Group messages have the shape:
    {"type": "chat.event", "event": <payload>, "origin_user_id": <str|None>}

ChatConsumer.chat_event() receives them and decides what reaches the socket.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

from chat.constants import chat_group_name, user_group_name

if TYPE_CHECKING:
    from collections.abc import Iterable

    from chat.events import ChatEvent

logger = logging.getLogger(__name__)

HANDLER_TYPE = "chat.event"


class ChatEventPublisher:
    """
    Publishes ChatEvents to channel-layer groups.

    Construct with an explicit channel layer (tests pass the in-memory
    layer); ``get_publisher()`` builds one from the default layer.
    """

    def __init__(self, channel_layer):
        self.channel_layer = channel_layer

    def _envelope(self, event: ChatEvent, origin_user_id=None) -> dict:
        return {
            "type": HANDLER_TYPE,
            "event": event.to_payload(),
            "origin_user_id": str(origin_user_id) if origin_user_id else None,
        }

    async def publish_to_chat(self, conversation_id, event: ChatEvent, origin_user_id=None) -> None:
        """Send an event to every session subscribed to a chat."""
        if self.channel_layer is None:
            logger.warning(f"No channel layer configured, dropping {event.kind}")
            return
        await self.channel_layer.group_send(
            chat_group_name(conversation_id),
            self._envelope(event, origin_user_id),
        )

    async def publish_to_user(self, user_id, event: ChatEvent, origin_user_id=None) -> None:
        """Send an event to every session of one user."""
        if self.channel_layer is None:
            logger.warning(f"No channel layer configured, dropping {event.kind}")
            return
        await self.channel_layer.group_send(
            user_group_name(user_id),
            self._envelope(event, origin_user_id),
        )

    async def publish_to_users(self, user_ids: Iterable, event: ChatEvent) -> None:
        for user_id in user_ids:
            await self.publish_to_user(user_id, event)

    # Sync facades for the service layer

    def publish_to_chat_sync(self, conversation_id, event: ChatEvent, origin_user_id=None) -> None:
        async_to_sync(self.publish_to_chat)(conversation_id, event, origin_user_id)

    def publish_to_user_sync(self, user_id, event: ChatEvent, origin_user_id=None) -> None:
        async_to_sync(self.publish_to_user)(user_id, event, origin_user_id)


def get_publisher() -> ChatEventPublisher:
    """Publisher bound to the default channel layer."""
    return ChatEventPublisher(get_channel_layer())
