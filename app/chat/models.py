"""
Chat system models.

This module defines the data models for the chat system supporting:
- Direct (1:1) conversations between exactly two users
- Group conversations with a participant set fixed at creation

Models:
    Conversation: Container for messages with a denormalized last-message summary
    DirectConversationPair: Helper for enforcing uniqueness of direct conversations
    Participant: User membership with unread counter and read tracking
    Message: Individual message with optional media, read markers and deletion state

Design Decisions:
    - Participant sets never change after creation (no join/leave/roles)
    - Unread counters live on Participant and are only touched with F() expressions
    - A message is hidden for one user via deleted_for, for everyone via is_deleted
    - A message always has text content or a media descriptor
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.conf import settings
from django.db import models
from django.db.models import F, Q

from chat.constants import MESSAGE_CONFIG
from core.model_mixins import SoftDeleteMixin, UUIDPrimaryKeyMixin
from core.models import BaseModel

if TYPE_CHECKING:
    from authentication.models import User


class ConversationType(models.TextChoices):
    """
    Type of conversation.

    DIRECT: Exactly two participants, unique per user pair
    GROUP: Two or more participants, optional title
    """

    DIRECT = "direct", "Direct Message"
    GROUP = "group", "Group"


class MediaKind(models.TextChoices):
    """Kind of media descriptor attached to a message."""

    IMAGE = "image", "Image"
    VIDEO = "video", "Video"
    AUDIO = "audio", "Audio"


class Conversation(UUIDPrimaryKeyMixin, BaseModel):
    """
    A conversation between two or more users.

    Fields:
        conversation_type: Type of conversation (direct or group)
        title: Group title (empty string for direct conversations)
        created_by: User who created the conversation
        last_message_content: Preview of the most recent message
        last_message_sender: Sender of the most recent message
        last_message_at: Timestamp of most recent message (for sorting)

    Relationships:
        participants: Participant records, ordered by position
        messages: All Message records for this conversation
        direct_pair: DirectConversationPair if type is DIRECT
    """

    conversation_type = models.CharField(
        max_length=10,
        choices=ConversationType.choices,
        default=ConversationType.DIRECT,
        db_index=True,
        help_text="Type of conversation (direct or group)",
    )

    title = models.CharField(
        max_length=100,
        blank=True,
        default="",
        help_text="Title for group conversations (empty for direct)",
    )

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="created_conversations",
        help_text="User who created this conversation",
    )

    last_message_content = models.TextField(
        blank=True,
        default="",
        help_text="Content of the most recent message (for list rendering)",
    )

    last_message_sender = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
        help_text="Sender of the most recent message",
    )

    last_message_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Timestamp of most recent message (for sorting conversation lists)",
    )

    class Meta:
        db_table = "chat_conversation"
        ordering = ["-last_message_at", "-created_at"]
        indexes = [
            models.Index(
                fields=["-last_message_at"],
                name="chat_conv_last_msg_idx",
            ),
        ]

    def __str__(self) -> str:
        if self.conversation_type == ConversationType.DIRECT:
            return f"Direct({self.pk})"
        if self.title:
            return f"Group: {self.title}"
        return f"Group({self.pk})"

    @property
    def is_direct(self) -> bool:
        return self.conversation_type == ConversationType.DIRECT

    @property
    def is_group(self) -> bool:
        return self.conversation_type == ConversationType.GROUP

    @property
    def participant_ids(self) -> list:
        """Participant user ids in creation order."""
        return list(self.participants.values_list("user_id", flat=True))

    def get_participant_for_user(self, user: User) -> Participant | None:
        """Return the participant record for a user, or None if they are not a member."""
        return self.participants.filter(user=user).first()

    def has_participant(self, user_id) -> bool:
        return self.participants.filter(user_id=user_id).exists()


class DirectConversationPair(models.Model):
    """
    Enforces uniqueness of direct conversations between two users.

    Stores user pairs in canonical order (lower user id first) so that there
    is only one direct conversation per pair, regardless of who started it.

    Constraints:
        - UniqueConstraint(user_lower, user_higher): One conversation per pair
        - CheckConstraint(user_lower_id < user_higher_id): Canonical order
    """

    conversation = models.OneToOneField(
        Conversation,
        on_delete=models.CASCADE,
        primary_key=True,
        related_name="direct_pair",
        help_text="The direct conversation this pair represents",
    )

    user_lower = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="+",
        help_text="User with lower ID in this conversation pair",
    )

    user_higher = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="+",
        help_text="User with higher ID in this conversation pair",
    )

    class Meta:
        db_table = "chat_direct_conversation_pair"
        constraints = [
            models.UniqueConstraint(
                fields=["user_lower", "user_higher"],
                name="unique_direct_conversation_pair",
            ),
            models.CheckConstraint(
                condition=Q(user_lower_id__lt=F("user_higher_id")),
                name="user_lower_less_than_higher",
            ),
        ]

    def __str__(self) -> str:
        return f"DirectPair({self.user_lower_id}, {self.user_higher_id})"


class Participant(BaseModel):
    """
    Membership of a user in a conversation.

    Participants are created together with the conversation and never change
    afterwards; position preserves the order they were given in.

    Fields:
        conversation: Conversation this participation belongs to
        user: User participating in the conversation
        position: Order of the user in the participant list
        unread_count: Messages from others received while the chat was not open
        last_read_at: Last time user marked conversation as read
    """

    conversation = models.ForeignKey(
        Conversation,
        on_delete=models.CASCADE,
        related_name="participants",
        help_text="Conversation this participation belongs to",
    )

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="conversation_participations",
        help_text="User participating in the conversation",
    )

    position = models.PositiveSmallIntegerField(
        default=0,
        help_text="Order of this user in the conversation's participant list",
    )

    unread_count = models.PositiveIntegerField(
        default=0,
        help_text="Unread messages for this user (reset when the chat is marked read)",
    )

    last_read_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Last time user marked conversation as read",
    )

    class Meta:
        db_table = "chat_participant"
        ordering = ["position"]
        indexes = [
            models.Index(
                fields=["user", "conversation"],
                name="chat_part_user_conv_idx",
            ),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["conversation", "user"],
                name="unique_participation",
            ),
        ]

    def __str__(self) -> str:
        return f"Participant: {self.user_id} in {self.conversation_id} (unread={self.unread_count})"


class Message(UUIDPrimaryKeyMixin, SoftDeleteMixin, BaseModel):
    """
    A message within a conversation.

    Content and media:
        Either content is non-empty or a media descriptor (media_kind +
        media_url) is present. Both may be set (captioned media).

    Deletion:
        deleted_for: users who hid the message for themselves only
        is_deleted / deleted_at / deleted_by: deletion for everyone

    Fields:
        conversation: Conversation this message belongs to
        sender: User who sent the message
        content: Message text (may be blank for media-only messages)
        media_kind / media_url: Media descriptor returned by the media store
        edited_at: Set on every successful edit (null until edited)
        delivered_at: Set when the message is persisted and fanned out
        read_by: Recipients who have read the message
    """

    conversation = models.ForeignKey(
        Conversation,
        on_delete=models.CASCADE,
        related_name="messages",
        help_text="Conversation this message belongs to",
    )

    sender = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        related_name="sent_messages",
        help_text="User who sent this message",
    )

    content = models.TextField(
        blank=True,
        default="",
        help_text="Message text (blank for media-only messages)",
    )

    media_kind = models.CharField(
        max_length=10,
        choices=MediaKind.choices,
        blank=True,
        default="",
        help_text="Kind of attached media (blank when there is none)",
    )

    media_url = models.URLField(
        max_length=MESSAGE_CONFIG.MAX_MEDIA_URL_LENGTH,
        blank=True,
        default="",
        help_text="URL of the attached media",
    )

    edited_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the message content was last edited",
    )

    delivered_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the message was delivered to the broadcast channel",
    )

    deleted_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
        help_text="User who deleted the message for everyone",
    )

    read_by = models.ManyToManyField(
        settings.AUTH_USER_MODEL,
        blank=True,
        related_name="read_messages",
        help_text="Recipients who have read this message",
    )

    deleted_for = models.ManyToManyField(
        settings.AUTH_USER_MODEL,
        blank=True,
        related_name="hidden_messages",
        help_text="Users who deleted this message for themselves only",
    )

    class Meta:
        db_table = "chat_message"
        ordering = ["-created_at"]
        indexes = [
            models.Index(
                fields=["conversation", "-created_at"],
                name="chat_msg_conv_created_idx",
            ),
            models.Index(
                fields=["sender", "-created_at"],
                name="chat_msg_sender_idx",
            ),
        ]
        constraints = [
            models.CheckConstraint(
                condition=~Q(content="") | ~Q(media_url=""),
                name="chat_message_has_content_or_media",
            ),
        ]

    def __str__(self) -> str:
        preview = self.content[:50] + "..." if len(self.content) > 50 else self.content
        if not preview and self.media_kind:
            preview = f"[{self.media_kind}]"
        deleted_str = " [deleted]" if self.is_deleted else ""
        return f"User {self.sender_id}: {preview}{deleted_str}"

    @property
    def status(self) -> str:
        """Persisted messages are always sent; "sending" only exists client-side."""
        return MESSAGE_CONFIG.STATUS_SENT

    @property
    def media(self) -> dict | None:
        """Media descriptor as {kind, url}, or None."""
        if not self.media_url:
            return None
        return {"kind": self.media_kind, "url": self.media_url}

    @property
    def summary_text(self) -> str:
        """Text used for the conversation's last-message preview."""
        if self.content:
            return self.content
        return f"[{self.media_kind}]" if self.media_kind else ""
