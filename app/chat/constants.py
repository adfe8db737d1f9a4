"""
Constants and configuration for chat module features.

This module centralizes configuration values for:
- Message operations (edit/delete windows, content limits, media kinds)
- Presence tracking and the heartbeat contract
- Typing indicators
- History pagination

Time windows can be overridden through Django settings (populated from the
environment in config/settings.py).

Import example:
    from chat.constants import MESSAGE_CONFIG, PRESENCE_CONFIG
"""

from typing import Final

from django.conf import settings


# =============================================================================
# Message Configuration
# =============================================================================


class MESSAGE_CONFIG:
    """Configuration for message operations."""

    # Content limits
    MAX_CONTENT_LENGTH: Final[int] = 10000  # Characters

    # Mutation windows (exclusive upper bound on message age)
    EDIT_TIME_LIMIT_SECONDS: Final[int] = getattr(
        settings, "CHAT_EDIT_WINDOW_SECONDS", 900
    )
    DELETE_TIME_LIMIT_SECONDS: Final[int] = getattr(
        settings, "CHAT_DELETE_WINDOW_SECONDS", 900
    )

    # Media descriptor kinds accepted from the media store
    MEDIA_KINDS: Final[tuple] = ("image", "video", "audio")
    MAX_MEDIA_URL_LENGTH: Final[int] = 500

    # Status reported for persisted messages
    STATUS_SENT: Final[str] = "sent"


# =============================================================================
# Presence Configuration
# =============================================================================


class PRESENCE_CONFIG:
    """Configuration for presence tracking."""

    # Redis key prefixes
    KEY_PREFIX_USER_PRESENCE: Final[str] = "presence:user"
    KEY_PREFIX_CONVERSATION_PRESENCE: Final[str] = "presence:conv"
    KEY_PREFIX_SESSIONS: Final[str] = "sessions:user"

    # Heartbeat contract: clients ping every interval, sessions silent for
    # longer than the dead-peer timeout are swept
    HEARTBEAT_INTERVAL_SECONDS: Final[int] = getattr(
        settings, "CHAT_HEARTBEAT_INTERVAL_SECONDS", 30
    )
    DEAD_PEER_TIMEOUT_SECONDS: Final[int] = getattr(
        settings, "CHAT_DEAD_PEER_TIMEOUT_SECONDS", 60
    )

    # Presence entries live as long as a silent session
    PRESENCE_TTL_SECONDS: Final[int] = DEAD_PEER_TIMEOUT_SECONDS

    # "Has this chat open" entries are refreshed on every heartbeat and must
    # outlive one missed interval
    CONVERSATION_PRESENCE_TTL_SECONDS: Final[int] = (
        DEAD_PEER_TIMEOUT_SECONDS + HEARTBEAT_INTERVAL_SECONDS
    )

    # Upper bound for bulk presence lookups
    MAX_BULK_USERS: Final[int] = 100


# =============================================================================
# Typing Configuration
# =============================================================================


class TYPING_CONFIG:
    """Configuration for typing indicators."""

    # A typing signal expires this long after its last refresh
    TYPING_TIMEOUT_SECONDS: Final[float] = getattr(
        settings, "CHAT_TYPING_TIMEOUT_SECONDS", 5
    )


# =============================================================================
# Pagination Configuration
# =============================================================================


class PAGINATION_CONFIG:
    """Limit/offset pagination for chats and message history."""

    DEFAULT_LIMIT: Final[int] = 50
    MAX_LIMIT: Final[int] = 100


# =============================================================================
# Channel Group Names
# =============================================================================


def chat_group_name(conversation_id) -> str:
    """Channel-layer group receiving every event of one chat."""
    return f"chat_{conversation_id}"


def user_group_name(user_id) -> str:
    """Channel-layer group receiving events addressed to all sessions of one user."""
    return f"user_{user_id}"
