"""
WebSocket consumers for the chat application.

Consumers:
    ChatConsumer: One socket per client session, carrying every chat of the user

Authentication:
    Users are authenticated via JWT token passed as query parameter or
    subprotocol. JWTAuthMiddleware attaches the user to self.scope["user"].

Channel Groups:
    chat_{conversation_id}: joined for every chat the user participates in
    user_{user_id}: events addressed to this user only (presence, self-deletes)

Message Types (from client):
    - heartbeat: Keep the session alive (every 30 seconds)
    - open: The user is looking at a chat; suppresses unread increments
    - close_chat: The user left the chat view
    - typing / stop_typing: Typing indicator for a chat
    - join: Subscribe to a chat created after the socket opened

Message Types (to client):
    - chat.events payloads (message.*, presence.changed, typing.*, conversation.read)
    - heartbeat.ack
    - error: {"type": "error", "code": ..., "message": ...}
"""

from __future__ import annotations

import logging
from uuid import UUID

from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncJsonWebsocketConsumer

from chat.constants import chat_group_name, user_group_name
from chat.events import TYPING_EVENTS, parse_event
from chat.middleware import SUBPROTOCOL_NAME
from chat.models import Participant
from chat.services import ConversationService, PresenceService

logger = logging.getLogger(__name__)


class ChatConsumer(AsyncJsonWebsocketConsumer):
    """
    WebSocket consumer for real-time chat functionality.

    Handles:
        - Connection authentication and group subscription
        - Session registration for online/offline presence
        - Typing indicators and open-chat tracking
        - Relaying chat events to the socket

    Attributes:
        user_id: String id of the authenticated user (after connect)
        conversation_ids: Chats whose group this socket joined
        open_conversation_id: Chat currently on screen, if any
        typing_conversation_ids: Chats this socket is typing in
    """

    connection_manager = None
    typing_coordinator = None

    def __init__(self, *args, connection_manager=None, typing_coordinator=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.connection_manager = connection_manager
        self.typing_coordinator = typing_coordinator
        self.user_id: str | None = None
        self.conversation_ids: set[str] = set()
        self.open_conversation_id: str | None = None
        self.typing_conversation_ids: set[str] = set()

    async def connect(self):
        """
        Handle WebSocket connection.

        Closes with 4001 when the user is not authenticated; otherwise joins
        the user group and every chat group and registers the session.
        """
        user = self.scope.get("user")
        if not user or not user.is_authenticated:
            logger.warning("Rejected unauthenticated WebSocket connection")
            await self.close(code=4001)
            return

        if self.connection_manager is None:
            from chat.connections import get_connection_manager

            self.connection_manager = get_connection_manager()
        if self.typing_coordinator is None:
            from chat.typing import get_typing_coordinator

            self.typing_coordinator = get_typing_coordinator()

        self.user_id = str(user.id)
        await self.channel_layer.group_add(user_group_name(self.user_id), self.channel_name)

        for conversation_id in await self._get_conversation_ids():
            await self._subscribe(conversation_id)

        if SUBPROTOCOL_NAME in self.scope.get("subprotocols", []):
            await self.accept(subprotocol=SUBPROTOCOL_NAME)
        else:
            await self.accept()

        peer_ids = await self._get_peer_ids()
        await self.connection_manager.connect(self.user_id, self.channel_name, peer_ids)
        logger.info(
            f"User {self.user_id} connected with {len(self.conversation_ids)} chats"
        )

    async def disconnect(self, close_code):
        """
        Handle WebSocket disconnection.

        Leaves all groups, unregisters the session and stops the typing
        signals this socket started. The open chat is forgotten only when
        no other session of the user is left, since every session shares
        one viewer entry. Safe to run more than once.
        """
        if self.user_id is None:
            return

        for conversation_id in list(self.conversation_ids):
            await self.channel_layer.group_discard(
                chat_group_name(conversation_id), self.channel_name
            )
        self.conversation_ids.clear()
        await self.channel_layer.group_discard(user_group_name(self.user_id), self.channel_name)

        peer_ids = await self._get_peer_ids()
        went_offline = await self.connection_manager.disconnect(
            self.user_id, self.channel_name, peer_ids
        )

        for conversation_id in list(self.typing_conversation_ids):
            await self.typing_coordinator.stop(conversation_id, self.user_id)
        self.typing_conversation_ids.clear()
        if went_offline:
            await self.typing_coordinator.clear_user(self.user_id)

        if self.open_conversation_id:
            if not await self.connection_manager.live_sessions(self.user_id):
                await database_sync_to_async(PresenceService.close_conversation)(
                    self.user_id, self.open_conversation_id
                )
            self.open_conversation_id = None

        logger.info(f"User {self.user_id} disconnected (code {close_code})")

    # -------------------------------------------------------------------------
    # Inbound frames
    # -------------------------------------------------------------------------

    async def receive_json(self, content, **kwargs):
        """
        Handle incoming WebSocket frames.

        Expected frame format:
            {"type": "heartbeat"}
            {"type": "open", "conversation_id": "<uuid>"}
            {"type": "typing", "conversation_id": "<uuid>"}
        """
        message_type = content.get("type") if isinstance(content, dict) else None
        handler = {
            "heartbeat": self._handle_heartbeat,
            "open": self._handle_open,
            "close_chat": self._handle_close_chat,
            "typing": self._handle_typing,
            "stop_typing": self._handle_stop_typing,
            "join": self._handle_join,
        }.get(message_type)

        if handler is None:
            await self._send_error("UNKNOWN_TYPE", f"Unknown message type: {message_type}")
            return
        await handler(content)

    async def _handle_heartbeat(self, content):
        await self.connection_manager.refresh(self.user_id, self.channel_name)
        if self.open_conversation_id:
            await database_sync_to_async(PresenceService.open_conversation)(
                self.user_id, self.open_conversation_id
            )
        await self.send_json({"type": "heartbeat.ack"})

    async def _handle_open(self, content):
        conversation_id = await self._require_conversation(content)
        if conversation_id is None:
            return

        if self.open_conversation_id and self.open_conversation_id != conversation_id:
            await database_sync_to_async(PresenceService.close_conversation)(
                self.user_id, self.open_conversation_id
            )
        result = await database_sync_to_async(PresenceService.open_conversation)(
            self.user_id, conversation_id
        )
        if result.success:
            self.open_conversation_id = conversation_id

    async def _handle_close_chat(self, content):
        conversation_id = await self._require_conversation(content)
        if conversation_id is None:
            return

        await database_sync_to_async(PresenceService.close_conversation)(
            self.user_id, conversation_id
        )
        if self.open_conversation_id == conversation_id:
            self.open_conversation_id = None

    async def _handle_typing(self, content):
        conversation_id = await self._require_conversation(content)
        if conversation_id is not None:
            await self.typing_coordinator.start(conversation_id, self.user_id)
            self.typing_conversation_ids.add(conversation_id)

    async def _handle_stop_typing(self, content):
        conversation_id = await self._require_conversation(content)
        if conversation_id is not None:
            await self.typing_coordinator.stop(conversation_id, self.user_id)
            self.typing_conversation_ids.discard(conversation_id)

    async def _handle_join(self, content):
        conversation_id = content.get("conversation_id")
        if not conversation_id:
            await self._send_error("INVALID_PAYLOAD", "conversation_id is required")
            return

        try:
            conversation_id = str(UUID(str(conversation_id)))
        except ValueError:
            await self._send_error("INVALID_PAYLOAD", "conversation_id must be a UUID")
            return

        if conversation_id in self.conversation_ids:
            return
        if not await self._is_participant(conversation_id):
            await self._send_error(
                "NOT_PARTICIPANT", "You are not a participant in this conversation"
            )
            return
        await self._subscribe(conversation_id)

    async def _require_conversation(self, content) -> str | None:
        """Chat id from a frame, if present and subscribed; otherwise reply with an error."""
        conversation_id = content.get("conversation_id")
        if not conversation_id:
            await self._send_error("INVALID_PAYLOAD", "conversation_id is required")
            return None

        conversation_id = str(conversation_id)
        if conversation_id not in self.conversation_ids:
            await self._send_error(
                "NOT_PARTICIPANT", "You are not a participant in this conversation"
            )
            return None
        return conversation_id

    async def _send_error(self, code: str, message: str):
        await self.send_json({"type": "error", "code": code, "message": message})

    # -------------------------------------------------------------------------
    # Channel layer handlers
    # -------------------------------------------------------------------------

    async def chat_event(self, message):
        """
        Handle chat.event group messages.

        Typing events are never delivered to the typist's own sessions.
        """
        try:
            event = parse_event(message["event"])
        except (KeyError, ValueError) as e:
            logger.warning(f"Dropping malformed chat event: {e}")
            return

        if isinstance(event, TYPING_EVENTS) and message.get("origin_user_id") == self.user_id:
            return

        await self.send_json(event.to_payload())

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _subscribe(self, conversation_id: str):
        await self.channel_layer.group_add(chat_group_name(conversation_id), self.channel_name)
        self.conversation_ids.add(conversation_id)

    @database_sync_to_async
    def _get_conversation_ids(self) -> list[str]:
        return ConversationService.get_conversation_ids(self.user_id)

    @database_sync_to_async
    def _get_peer_ids(self) -> list[str]:
        return ConversationService.get_peer_ids(self.user_id)

    @database_sync_to_async
    def _is_participant(self, conversation_id: str) -> bool:
        return Participant.objects.filter(
            conversation_id=conversation_id,
            user_id=self.user_id,
        ).exists()
