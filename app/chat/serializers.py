"""
Serializers for chat API.

Serializer Hierarchy:
    MessageSerializer: Message as returned by REST and carried in message.created
    MediaSerializer: {kind, url} descriptor from the media store
    MessageCreateSerializer: Send new message (content and/or media)
    MessageUpdateSerializer: Edit message content

    ConversationListSerializer: List view with summary and unread counter
    ConversationDetailSerializer: Adds per-participant unread counters
    ConversationCreateSerializer: Direct/group conversation creation

    PresenceSerializer: Presence status of one user
    BulkPresenceRequestSerializer: Bulk presence lookup body

Design Decisions:
    - Read and write serializers are separate
    - Write serializers only check shape; business rules live in services
    - All ids render as strings so payloads can go straight onto the channel layer
"""

from __future__ import annotations

from django.contrib.auth import get_user_model
from rest_framework import serializers

from authentication.serializers import UserSummarySerializer
from chat.constants import PRESENCE_CONFIG
from chat.models import Conversation, ConversationType, Message

User = get_user_model()


# =============================================================================
# Message Serializers
# =============================================================================


class MediaSerializer(serializers.Serializer):
    """Media descriptor returned by the media store."""

    kind = serializers.CharField(help_text="image, video or audio")
    url = serializers.CharField(help_text="URL of the stored media")


class MessageSerializer(serializers.ModelSerializer):
    """
    Message representation shared by the REST API and real-time events.

    status is always "sent" for stored messages; clients use "sending" for
    optimistic placeholders.
    """

    conversation = serializers.UUIDField(source="conversation_id", read_only=True)
    sender = serializers.UUIDField(source="sender_id", read_only=True, allow_null=True)
    media = serializers.SerializerMethodField(help_text="Media descriptor or null")
    status = serializers.CharField(read_only=True)
    read_by = serializers.SerializerMethodField(help_text="Ids of users who read the message")

    class Meta:
        model = Message
        fields = [
            "id",
            "conversation",
            "sender",
            "content",
            "media",
            "status",
            "created_at",
            "edited_at",
            "delivered_at",
            "read_by",
        ]
        read_only_fields = fields

    def get_media(self, obj: Message) -> dict | None:
        return obj.media

    def get_read_by(self, obj: Message) -> list[str]:
        if obj._state.adding:
            return []
        return [str(user.pk) for user in obj.read_by.all()]


class MessageCreateSerializer(serializers.Serializer):
    """Serializer for sending messages. At least one of content/media is required."""

    content = serializers.CharField(
        required=False,
        allow_blank=True,
        allow_null=True,
        trim_whitespace=False,
        help_text="Message text (max 10,000 characters after trimming)",
    )
    media = MediaSerializer(
        required=False,
        allow_null=True,
        help_text="Optional media descriptor",
    )


class MessageUpdateSerializer(serializers.Serializer):
    """Serializer for editing message content."""

    content = serializers.CharField(
        allow_blank=True,
        trim_whitespace=False,
        help_text="New message text",
    )


# =============================================================================
# Conversation Serializers
# =============================================================================


class ConversationListSerializer(serializers.ModelSerializer):
    """
    Serializer for conversation list view.

    Computed fields:
    - participants: Users in creation order
    - last_message: {content, sender_id, timestamp} or null
    - unread_count: Current user's unread counter
    """

    participants = serializers.SerializerMethodField(
        help_text="Participants in creation order"
    )
    last_message = serializers.SerializerMethodField(
        help_text="Most recent message summary"
    )
    unread_count = serializers.SerializerMethodField(
        help_text="Number of unread messages for the current user"
    )

    class Meta:
        model = Conversation
        fields = [
            "id",
            "conversation_type",
            "title",
            "participants",
            "last_message",
            "unread_count",
            "created_at",
        ]
        read_only_fields = fields

    def get_participants(self, obj: Conversation) -> list[dict]:
        users = [participant.user for participant in obj.participants.all()]
        return UserSummarySerializer(users, many=True).data

    def get_last_message(self, obj: Conversation) -> dict | None:
        if obj.last_message_at is None:
            return None
        return {
            "content": obj.last_message_content,
            "sender_id": str(obj.last_message_sender_id) if obj.last_message_sender_id else None,
            "timestamp": serializers.DateTimeField().to_representation(obj.last_message_at),
        }

    def get_unread_count(self, obj: Conversation) -> int:
        annotated = getattr(obj, "my_unread_count", None)
        if annotated is not None:
            return annotated

        request = self.context.get("request")
        if not request or not request.user.is_authenticated:
            return 0
        participant = obj.participants.filter(user=request.user).first()
        return participant.unread_count if participant else 0


class ConversationDetailSerializer(ConversationListSerializer):
    """Conversation details including every participant's unread counter."""

    unread_counts = serializers.SerializerMethodField(
        help_text="Mapping of participant id to unread counter"
    )

    class Meta(ConversationListSerializer.Meta):
        fields = ConversationListSerializer.Meta.fields + ["unread_counts"]

    def get_unread_counts(self, obj: Conversation) -> dict[str, int]:
        return {
            str(participant.user_id): participant.unread_count
            for participant in obj.participants.all()
        }


class ConversationCreateSerializer(serializers.Serializer):
    """
    Serializer for creating conversations.

    - Direct: exactly one other participant; returns the existing chat if any
    - Group: one or more other participants, optional title
    """

    conversation_type = serializers.ChoiceField(
        choices=ConversationType.choices,
        help_text="Type of conversation to create",
    )
    participant_ids = serializers.ListField(
        child=serializers.UUIDField(),
        min_length=1,
        help_text="User IDs of the other participants",
    )
    title = serializers.CharField(
        max_length=100,
        required=False,
        allow_blank=True,
        default="",
        help_text="Title for group conversations (ignored for direct)",
    )

    def validate(self, attrs: dict) -> dict:
        if attrs["conversation_type"] == ConversationType.DIRECT:
            if len(attrs["participant_ids"]) != 1:
                raise serializers.ValidationError(
                    {
                        "participant_ids": "Direct conversations require exactly one other participant"
                    }
                )
            attrs["title"] = ""
        return attrs

    def validate_participant_ids(self, value: list) -> list:
        """Ensure all participant IDs are active users other than the caller."""
        request = self.context.get("request")
        if request and request.user.id in value:
            raise serializers.ValidationError(
                "Cannot include yourself in participant list"
            )

        existing_set = set(
            User.objects.filter(id__in=value, is_active=True).values_list("id", flat=True)
        )
        invalid = [str(uid) for uid in value if uid not in existing_set]
        if invalid:
            raise serializers.ValidationError(f"Users not found or inactive: {invalid}")
        return value


# =============================================================================
# Presence Serializers
# =============================================================================


class PresenceSerializer(serializers.Serializer):
    """Presence status of one user."""

    user_id = serializers.CharField(help_text="User ID")
    status = serializers.CharField(help_text="online, away or offline")
    last_seen = serializers.CharField(
        allow_null=True,
        help_text="ISO timestamp of the last heartbeat, null when offline",
    )


class BulkPresenceRequestSerializer(serializers.Serializer):
    """Request body for bulk presence lookup."""

    user_ids = serializers.ListField(
        child=serializers.UUIDField(),
        min_length=1,
        max_length=PRESENCE_CONFIG.MAX_BULK_USERS,
        help_text=f"User IDs to query (max {PRESENCE_CONFIG.MAX_BULK_USERS})",
    )
