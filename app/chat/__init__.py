"""
Chat app for real-time direct messaging.

This app handles:
- Conversations (direct and group) with a fixed participant set
- Message send, edit and delete with time windows
- WebSocket fan-out of message, presence and typing events
- Read receipts and unread counters
- A synchronization client for UI layers (chat.client)

WebSocket Support:
    Uses Django Channels for real-time communication.
    See consumers.py for the WebSocket handler and routing.py for URLs.

Usage:
    from chat.services import MessageService

    message = MessageService.send_message(
        conversation_id=conversation.id,
        sender=user,
        content="Hello!",
    )

Note:
    chat.events and chat.client do not depend on Django and can be used by
    client processes that never configure settings.
"""
