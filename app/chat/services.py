"""
Chat system service layer.

This module provides the business logic for the chat system, encapsulating
all operations on conversations, messages and presence.

Services:
    ConversationService: Conversation creation and lookup
    MessageService: Send, edit, delete, list and mark-as-read
    PresenceService: Redis-backed online status and open-chat tracking

Design Principles:
    - Services are stateless (use class methods)
    - ConversationService and PresenceService return ServiceResult
    - MessageService raises core.exceptions errors, rendered by the API layer
    - Events are published only after the transaction commits

Usage:
    from chat.services import ConversationService, MessageService

    result = ConversationService.create_direct(user1, user2)
    conversation = result.data

    message = MessageService.send_message(
        conversation_id=conversation.id,
        sender=user1,
        content="Hello!",
    )
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from django.db import transaction
from django.db.models import F, OuterRef, Subquery
from django.utils import timezone
from django_redis import get_redis_connection

from chat.broadcast import get_publisher
from chat.constants import MESSAGE_CONFIG, PAGINATION_CONFIG, PRESENCE_CONFIG
from chat.events import (
    ChatEvent,
    ConversationRead,
    MessageCreated,
    MessageDeleted,
    MessageEdited,
)
from chat.models import (
    Conversation,
    ConversationType,
    DirectConversationPair,
    MediaKind,
    Message,
    Participant,
)
from chat.serializers import MessageSerializer
from core.exceptions import (
    AlreadyDeletedError,
    DeleteTimeoutError,
    EditTimeoutError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from core.services import BaseService, ServiceResult

if TYPE_CHECKING:
    from django.db.models import QuerySet

    from authentication.models import User

logger = logging.getLogger(__name__)


# =============================================================================
# Conversation Service
# =============================================================================


class ConversationService(BaseService):
    """
    Service for conversation lifecycle operations.

    Participants are fixed at creation; there is no add/remove/leave.

    Methods:
        create_direct: Create or retrieve direct conversation between two users
        create_group: Create a group conversation with a fixed member list
        list_for_user: User's conversations, most recently active first
        get_for_user: Single conversation with participation check
        get_peer_ids: Users sharing at least one conversation with a user
    """

    @classmethod
    def create_direct(
        cls,
        user1: User,
        user2: User,
    ) -> ServiceResult[Conversation]:
        """
        Create or retrieve a direct conversation between two users.

        Direct conversations are unique per user pair; an existing one is
        returned instead of creating a duplicate.

        Error codes:
            SAME_USER: Cannot create direct conversation with yourself
        """
        if user1.id == user2.id:
            return ServiceResult.failure(
                "Cannot create a direct conversation with yourself",
                error_code="SAME_USER",
            )

        user_lower, user_higher = (
            (user1, user2) if user1.id < user2.id else (user2, user1)
        )

        existing_pair = (
            DirectConversationPair.objects.select_related("conversation")
            .filter(user_lower=user_lower, user_higher=user_higher)
            .first()
        )
        if existing_pair is not None:
            cls.get_logger().debug(
                f"Found existing direct conversation {existing_pair.conversation_id} "
                f"between users {user_lower.id} and {user_higher.id}"
            )
            return ServiceResult.success(existing_pair.conversation)

        with cls.atomic():
            conversation = Conversation.objects.create(
                conversation_type=ConversationType.DIRECT,
                created_by=user1,
            )
            DirectConversationPair.objects.create(
                conversation=conversation,
                user_lower=user_lower,
                user_higher=user_higher,
            )
            Participant.objects.bulk_create(
                [
                    Participant(conversation=conversation, user=user1, position=0),
                    Participant(conversation=conversation, user=user2, position=1),
                ]
            )

        cls.get_logger().info(
            f"Created direct conversation {conversation.id} "
            f"between users {user_lower.id} and {user_higher.id}"
        )
        return ServiceResult.success(conversation)

    @classmethod
    def create_group(
        cls,
        creator: User,
        members: list[User],
        title: str = "",
    ) -> ServiceResult[Conversation]:
        """
        Create a group conversation.

        The creator is always the first participant; duplicates in members
        are ignored while keeping the given order.

        Error codes:
            TOO_FEW_PARTICIPANTS: A group needs the creator and at least one other user
        """
        ordered = [creator]
        seen = {creator.id}
        for member in members:
            if member.id not in seen:
                ordered.append(member)
                seen.add(member.id)

        if len(ordered) < 2:
            return ServiceResult.failure(
                "A group needs at least one other participant",
                error_code="TOO_FEW_PARTICIPANTS",
            )

        with cls.atomic():
            conversation = Conversation.objects.create(
                conversation_type=ConversationType.GROUP,
                title=(title or "").strip(),
                created_by=creator,
            )
            Participant.objects.bulk_create(
                [
                    Participant(conversation=conversation, user=user, position=index)
                    for index, user in enumerate(ordered)
                ]
            )

        cls.get_logger().info(
            f"User {creator.id} created group {conversation.id} "
            f"with {len(ordered)} participants"
        )
        return ServiceResult.success(conversation)

    @classmethod
    def list_for_user(cls, user: User) -> QuerySet[Conversation]:
        """
        Conversations the user participates in, most recent activity first.

        Each row is annotated with the caller's ``my_unread_count``.
        """
        my_unread = Participant.objects.filter(
            conversation=OuterRef("pk"), user=user
        ).values("unread_count")[:1]
        return (
            Conversation.objects.filter(participants__user=user)
            .annotate(my_unread_count=Subquery(my_unread))
            .select_related("last_message_sender")
            .prefetch_related("participants__user")
            .order_by(F("last_message_at").desc(nulls_last=True), "-created_at")
        )

    @classmethod
    def get_for_user(cls, conversation_id, user: User) -> ServiceResult[Conversation]:
        """
        Fetch a conversation the user participates in.

        Error codes:
            CONVERSATION_NOT_FOUND: No conversation with this id
            NOT_PARTICIPANT: User is not a participant
        """
        conversation = Conversation.objects.filter(id=conversation_id).first()
        if conversation is None:
            return ServiceResult.failure(
                "Conversation not found",
                error_code="CONVERSATION_NOT_FOUND",
            )
        if not conversation.has_participant(user.id):
            return ServiceResult.failure(
                "You are not a participant in this conversation",
                error_code="NOT_PARTICIPANT",
            )
        return ServiceResult.success(conversation)

    @classmethod
    def get_conversation_ids(cls, user_id) -> list[str]:
        """Ids of every conversation the user participates in."""
        return [
            str(conversation_id)
            for conversation_id in Participant.objects.filter(user_id=user_id).values_list(
                "conversation_id", flat=True
            )
        ]

    @classmethod
    def get_peer_ids(cls, user_id) -> list[str]:
        """Distinct users sharing at least one conversation with the user."""
        peer_ids = (
            Participant.objects.filter(
                conversation__participants__user_id=user_id,
            )
            .exclude(user_id=user_id)
            .values_list("user_id", flat=True)
            .distinct()
        )
        return [str(peer_id) for peer_id in peer_ids]


# =============================================================================
# Message Service (Mutation Gateway)
# =============================================================================


class MessageService(BaseService):
    """
    Service for message operations.

    Every mutation validates, persists with a single conditional write and
    publishes an event once the transaction commits. Concurrent edit and
    delete on the same message are last-write-wins: each write only
    applies while the message is still live.

    Methods:
        send_message: Send text and/or media to a conversation
        edit_message: Change the text of an own message inside the edit window
        delete_message: Hide a message for yourself or delete it for everyone
        get_visible_messages: History visible to a user, newest first
        list_messages: One clamped page of visible history
        mark_as_read: Reset unread counter and record read receipts
    """

    @staticmethod
    def _age_seconds(message: Message) -> float:
        return (timezone.now() - message.created_at).total_seconds()

    @staticmethod
    def _publish_to_chat(conversation_id, event: ChatEvent, origin_user_id=None) -> None:
        """Publish after commit; a broadcast failure never fails the mutation."""

        def send():
            try:
                get_publisher().publish_to_chat_sync(conversation_id, event, origin_user_id)
            except Exception:
                logger.exception(f"Failed to publish {event.kind} to chat {conversation_id}")

        transaction.on_commit(send)

    @staticmethod
    def _publish_to_user(user_id, event: ChatEvent) -> None:
        def send():
            try:
                get_publisher().publish_to_user_sync(user_id, event)
            except Exception:
                logger.exception(f"Failed to publish {event.kind} to user {user_id}")

        transaction.on_commit(send)

    @classmethod
    def _get_membership(cls, conversation_id, user: User) -> tuple[Conversation, Participant]:
        conversation = Conversation.objects.filter(id=conversation_id).first()
        if conversation is None:
            raise NotFoundError(
                "Conversation not found",
                error_code="CONVERSATION_NOT_FOUND",
                details={"conversation_id": str(conversation_id)},
            )
        participant = conversation.get_participant_for_user(user)
        if participant is None:
            raise ForbiddenError(
                "You are not a participant in this conversation",
                error_code="NOT_PARTICIPANT",
            )
        return conversation, participant

    @staticmethod
    def _clean_media(media: dict | None) -> tuple[str, str]:
        """Validate a {kind, url} descriptor; returns ("", "") when absent."""
        if not media:
            return "", ""
        kind = (media.get("kind") or "").strip().lower()
        url = (media.get("url") or "").strip()
        if kind not in MediaKind.values:
            raise ValidationError(
                f"Unsupported media kind: {kind or 'missing'}",
                error_code="INVALID_MEDIA",
                details={"allowed": list(MESSAGE_CONFIG.MEDIA_KINDS)},
            )
        if not url:
            raise ValidationError("Media URL is required", error_code="INVALID_MEDIA")
        if len(url) > MESSAGE_CONFIG.MAX_MEDIA_URL_LENGTH:
            raise ValidationError("Media URL is too long", error_code="INVALID_MEDIA")
        return kind, url

    @staticmethod
    def _check_length(content: str) -> None:
        if len(content) > MESSAGE_CONFIG.MAX_CONTENT_LENGTH:
            raise ValidationError(
                f"Message cannot exceed {MESSAGE_CONFIG.MAX_CONTENT_LENGTH} characters",
                error_code="CONTENT_TOO_LONG",
                details={"max_length": MESSAGE_CONFIG.MAX_CONTENT_LENGTH},
            )

    @classmethod
    def _get_message(cls, message_id, conversation_id=None) -> Message:
        messages = Message.objects.select_related("conversation").filter(id=message_id)
        if conversation_id is not None:
            messages = messages.filter(conversation_id=conversation_id)
        message = messages.first()
        if message is None:
            raise NotFoundError(
                "Message not found",
                error_code="MESSAGE_NOT_FOUND",
                details={"message_id": str(message_id)},
            )
        return message

    @classmethod
    def send_message(
        cls,
        conversation_id,
        sender: User,
        content: str | None = None,
        media: dict | None = None,
    ) -> Message:
        """
        Send a message to a conversation.

        Side effects:
            - Conversation last-message summary is updated
            - unread_count +1 for every other participant that does not
              currently have the chat open
            - message.created is published to the chat

        Raises:
            ValidationError: EMPTY_MESSAGE, CONTENT_TOO_LONG, INVALID_MEDIA
            NotFoundError: CONVERSATION_NOT_FOUND
            ForbiddenError: NOT_PARTICIPANT
        """
        content = content.strip() if content else ""
        media_kind, media_url = cls._clean_media(media)
        if not content and not media_url:
            raise ValidationError(
                "Message must have content or media",
                error_code="EMPTY_MESSAGE",
            )
        cls._check_length(content)

        conversation, _ = cls._get_membership(conversation_id, sender)
        viewer_ids = PresenceService.get_viewer_ids(conversation.id)

        with cls.atomic():
            now = timezone.now()
            message = Message.objects.create(
                conversation=conversation,
                sender=sender,
                content=content,
                media_kind=media_kind,
                media_url=media_url,
                delivered_at=now,
            )

            Conversation.objects.filter(pk=conversation.pk).update(
                last_message_content=message.summary_text,
                last_message_sender=sender,
                last_message_at=message.created_at,
                updated_at=now,
            )

            incremented = (
                Participant.objects.filter(conversation=conversation)
                .exclude(user=sender)
                .exclude(user_id__in=viewer_ids)
                .update(unread_count=F("unread_count") + 1, updated_at=now)
            )

            cls._publish_to_chat(
                conversation.id,
                MessageCreated(
                    conversation_id=str(conversation.id),
                    message=dict(MessageSerializer(message).data),
                ),
                origin_user_id=sender.id,
            )

        cls.get_logger().info(
            f"User {sender.id} sent message {message.id} to conversation "
            f"{conversation.id} ({incremented} unread counters incremented)"
        )
        return message

    @classmethod
    def edit_message(
        cls,
        message_id,
        editor: User,
        new_content: str,
        conversation_id=None,
    ) -> Message:
        """
        Edit the text of a message.

        Only the sender may edit, and only while the message is younger than
        the edit window. Content identical after trimming is a no-op: the
        original message is returned and nothing is written or published.
        When conversation_id is given the message must belong to that chat.

        Raises:
            NotFoundError: MESSAGE_NOT_FOUND (missing, deleted, or deleted concurrently)
            ForbiddenError: NOT_SENDER
            EditTimeoutError: EDIT_TIME_EXPIRED
            ValidationError: EMPTY_CONTENT, CONTENT_TOO_LONG
        """
        message = cls._get_message(message_id, conversation_id)
        if message.is_deleted or message.deleted_for.filter(pk=editor.pk).exists():
            raise NotFoundError("Message not found", error_code="MESSAGE_NOT_FOUND")

        if message.sender_id != editor.id:
            raise ForbiddenError(
                "You can only edit your own messages",
                error_code="NOT_SENDER",
            )

        if cls._age_seconds(message) >= MESSAGE_CONFIG.EDIT_TIME_LIMIT_SECONDS:
            raise EditTimeoutError(
                "Messages can only be edited within 15 minutes of sending",
                details={"limit_seconds": MESSAGE_CONFIG.EDIT_TIME_LIMIT_SECONDS},
            )

        new_content = new_content.strip() if new_content else ""
        if not new_content:
            raise ValidationError(
                "Message content cannot be empty",
                error_code="EMPTY_CONTENT",
            )
        cls._check_length(new_content)

        if new_content == message.content.strip():
            cls.get_logger().debug(f"Edit of message {message.id} left content unchanged")
            return message

        with cls.atomic():
            now = timezone.now()
            updated = Message.objects.filter(pk=message.pk, is_deleted=False).update(
                content=new_content,
                edited_at=now,
                updated_at=now,
            )
            if not updated:
                raise NotFoundError("Message not found", error_code="MESSAGE_NOT_FOUND")

            message.content = new_content
            message.edited_at = now
            message.updated_at = now

            cls._publish_to_chat(
                message.conversation_id,
                MessageEdited(
                    conversation_id=str(message.conversation_id),
                    message_id=str(message.id),
                    content=new_content,
                    edited_at=now.isoformat(),
                ),
                origin_user_id=editor.id,
            )

        cls.get_logger().info(f"User {editor.id} edited message {message.id}")
        return message

    @classmethod
    def delete_message(
        cls,
        message_id,
        requester: User,
        for_all: bool = False,
        conversation_id=None,
    ) -> Message:
        """
        Delete a message for the requester only or for everyone.

        for_all=False:
            Any participant hides the message from their own history, with no
            time window. Only the requester's sessions are notified.

        for_all=True:
            The sender may delete within the delete window. Staff users
            (moderators) may delete any message at any time, participant
            or not. The whole chat is notified.

        When conversation_id is given the message must belong to that chat.

        Raises:
            NotFoundError: MESSAGE_NOT_FOUND
            ForbiddenError: NOT_PARTICIPANT, NOT_SENDER
            DeleteTimeoutError: DELETE_TIME_EXPIRED
            AlreadyDeletedError: ALREADY_DELETED
        """
        message = cls._get_message(message_id, conversation_id)

        if not for_all:
            return cls._delete_for_self(message, requester)

        is_moderator = requester.is_moderator
        if not is_moderator:
            if not message.conversation.has_participant(requester.id):
                raise ForbiddenError(
                    "You are not a participant in this conversation",
                    error_code="NOT_PARTICIPANT",
                )
            if message.sender_id != requester.id:
                raise ForbiddenError(
                    "You can only delete your own messages for everyone",
                    error_code="NOT_SENDER",
                )

        if message.is_deleted:
            raise AlreadyDeletedError("Message is already deleted")

        if not is_moderator and cls._age_seconds(message) >= MESSAGE_CONFIG.DELETE_TIME_LIMIT_SECONDS:
            raise DeleteTimeoutError(
                "Messages can only be deleted within 15 minutes of sending",
                details={"limit_seconds": MESSAGE_CONFIG.DELETE_TIME_LIMIT_SECONDS},
            )

        with cls.atomic():
            now = timezone.now()
            updated = Message.objects.filter(pk=message.pk, is_deleted=False).update(
                is_deleted=True,
                deleted_at=now,
                deleted_by=requester,
                updated_at=now,
            )
            if not updated:
                raise AlreadyDeletedError("Message is already deleted")

            message.is_deleted = True
            message.deleted_at = now
            message.deleted_by = requester
            cls._refresh_summary(message.conversation)

            cls._publish_to_chat(
                message.conversation_id,
                MessageDeleted(
                    conversation_id=str(message.conversation_id),
                    message_id=str(message.id),
                    scope="all",
                ),
                origin_user_id=requester.id,
            )

        cls.get_logger().info(
            f"User {requester.id} deleted message {message.id} for everyone"
            f"{' (moderation)' if is_moderator and message.sender_id != requester.id else ''}"
        )
        return message

    @classmethod
    def _delete_for_self(cls, message: Message, requester: User) -> Message:
        if not message.conversation.has_participant(requester.id):
            raise ForbiddenError(
                "You are not a participant in this conversation",
                error_code="NOT_PARTICIPANT",
            )
        if message.is_deleted or message.deleted_for.filter(pk=requester.pk).exists():
            raise AlreadyDeletedError("Message is already deleted")

        with cls.atomic():
            message.deleted_for.add(requester)
            cls._publish_to_user(
                requester.id,
                MessageDeleted(
                    conversation_id=str(message.conversation_id),
                    message_id=str(message.id),
                    scope="self",
                ),
            )

        cls.get_logger().info(f"User {requester.id} deleted message {message.id} for themselves")
        return message

    @classmethod
    def _refresh_summary(cls, conversation: Conversation) -> None:
        """Point the last-message summary at the newest message still visible to everyone."""
        latest = (
            Message.objects.filter(conversation=conversation, is_deleted=False)
            .order_by("-created_at")
            .first()
        )
        Conversation.objects.filter(pk=conversation.pk).update(
            last_message_content=latest.summary_text if latest else "",
            last_message_sender=latest.sender if latest else None,
            last_message_at=latest.created_at if latest else None,
        )

    @classmethod
    def get_visible_messages(cls, conversation_id, user: User) -> QuerySet[Message]:
        """
        Messages of a conversation visible to the user, newest first.

        Excludes messages deleted for everyone and messages the user hid.

        Raises:
            NotFoundError: CONVERSATION_NOT_FOUND
            ForbiddenError: NOT_PARTICIPANT
        """
        conversation, _ = cls._get_membership(conversation_id, user)
        return (
            Message.objects.filter(conversation=conversation, is_deleted=False)
            .exclude(deleted_for=user)
            .select_related("sender")
            .prefetch_related("read_by")
            .order_by("-created_at", "-id")
        )

    @classmethod
    def list_messages(
        cls,
        conversation_id,
        user: User,
        limit: int = PAGINATION_CONFIG.DEFAULT_LIMIT,
        offset: int = 0,
    ) -> list[Message]:
        """
        One page of visible history, newest first.

        limit is clamped to 1..MAX_LIMIT and a negative offset counts as 0.
        """
        limit = max(1, min(int(limit), PAGINATION_CONFIG.MAX_LIMIT))
        offset = max(0, int(offset))
        queryset = cls.get_visible_messages(conversation_id, user)
        return list(queryset[offset : offset + limit])

    @classmethod
    def mark_as_read(cls, conversation_id, user: User) -> Participant:
        """
        Mark a conversation as read.

        Resets the user's unread counter, records a read receipt on every
        message from other senders and publishes conversation.read.

        Raises:
            NotFoundError: CONVERSATION_NOT_FOUND
            ForbiddenError: NOT_PARTICIPANT
        """
        conversation, participant = cls._get_membership(conversation_id, user)

        with cls.atomic():
            now = timezone.now()
            Participant.objects.filter(pk=participant.pk).update(
                unread_count=0,
                last_read_at=now,
                updated_at=now,
            )

            unread_ids = (
                Message.objects.filter(conversation=conversation, is_deleted=False)
                .exclude(sender=user)
                .exclude(read_by=user)
                .values_list("id", flat=True)
            )
            through = Message.read_by.through
            through.objects.bulk_create(
                [through(message_id=message_id, user_id=user.id) for message_id in unread_ids],
                ignore_conflicts=True,
            )

            cls._publish_to_chat(
                conversation.id,
                ConversationRead(
                    conversation_id=str(conversation.id),
                    user_id=str(user.id),
                    read_at=now.isoformat(),
                ),
                origin_user_id=user.id,
            )

        participant.unread_count = 0
        participant.last_read_at = now
        cls.get_logger().debug(f"User {user.id} marked conversation {conversation.id} as read")
        return participant


# =============================================================================
# Presence Service
# =============================================================================


class PresenceStatus:
    """User presence status values."""

    ONLINE = "online"
    AWAY = "away"
    OFFLINE = "offline"

    @classmethod
    def is_valid(cls, status: str) -> bool:
        return status in (cls.ONLINE, cls.AWAY, cls.OFFLINE)


class PresenceService(BaseService):
    """
    Redis-based presence tracking service.

    Keys:
        presence:user:{user_id}  hash {status, last_seen}, TTL = dead-peer timeout
        presence:conv:{conv_id}  sorted set of users with the chat open,
                                 scored by the time their entry expires

    Writes go through MULTI/EXEC pipelines so each update is atomic.
    Redis errors are logged and reported as ``presence_error`` failures;
    callers treat missing presence as offline.
    """

    @staticmethod
    def _get_redis_client():
        """Raw Redis client from django-redis."""
        return get_redis_connection("default")

    @staticmethod
    def _user_presence_key(user_id) -> str:
        return f"{PRESENCE_CONFIG.KEY_PREFIX_USER_PRESENCE}:{user_id}"

    @staticmethod
    def _conversation_presence_key(conversation_id) -> str:
        return f"{PRESENCE_CONFIG.KEY_PREFIX_CONVERSATION_PRESENCE}:{conversation_id}"

    @staticmethod
    def _decode(value: bytes | str | None) -> str | None:
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value or None

    @classmethod
    def _presence_from_hash(cls, user_id, presence_data: dict) -> dict:
        if not presence_data:
            return {"user_id": str(user_id), "status": PresenceStatus.OFFLINE, "last_seen": None}
        status = cls._decode(
            presence_data.get(b"status") or presence_data.get("status")
        ) or PresenceStatus.OFFLINE
        last_seen = cls._decode(presence_data.get(b"last_seen") or presence_data.get("last_seen"))
        return {"user_id": str(user_id), "status": status, "last_seen": last_seen}

    @classmethod
    def set_presence(cls, user_id, status: str) -> ServiceResult:
        """
        Set user presence status.

        OFFLINE deletes the entry; other statuses are stored with a TTL so a
        user whose sessions all vanish without notice drops to offline.
        """
        if not PresenceStatus.is_valid(status):
            return ServiceResult.failure(
                error=f"Invalid status: {status}",
                error_code="invalid_status",
            )

        try:
            redis_client = cls._get_redis_client()
            now = timezone.now().isoformat()
            user_key = cls._user_presence_key(user_id)

            if status == PresenceStatus.OFFLINE:
                redis_client.delete(user_key)
            else:
                pipeline = redis_client.pipeline(transaction=True)
                pipeline.hset(user_key, mapping={"status": status, "last_seen": now})
                pipeline.expire(user_key, PRESENCE_CONFIG.PRESENCE_TTL_SECONDS)
                pipeline.execute()

            return ServiceResult.success(
                {"user_id": str(user_id), "status": status, "last_seen": now}
            )

        except Exception as e:
            return cls.handle_exception(
                e, f"set presence for user {user_id}", "presence_error", error="Failed to set presence"
            )

    @classmethod
    def get_presence(cls, user_id) -> ServiceResult:
        """Get user presence status; a missing entry means offline."""
        try:
            redis_client = cls._get_redis_client()
            presence_data = redis_client.hgetall(cls._user_presence_key(user_id))
            return ServiceResult.success(cls._presence_from_hash(user_id, presence_data))

        except Exception as e:
            return cls.handle_exception(
                e, f"get presence for user {user_id}", "presence_error", error="Failed to get presence"
            )

    @classmethod
    def get_bulk_presence(cls, user_ids: list) -> ServiceResult:
        """Get presence for multiple users with one pipeline round trip."""
        if not user_ids:
            return ServiceResult.success([])

        try:
            redis_client = cls._get_redis_client()
            pipeline = redis_client.pipeline()
            for user_id in user_ids:
                pipeline.hgetall(cls._user_presence_key(user_id))
            results = pipeline.execute()

            return ServiceResult.success(
                [
                    cls._presence_from_hash(user_id, presence_data)
                    for user_id, presence_data in zip(user_ids, results)
                ]
            )

        except Exception as e:
            return cls.handle_exception(
                e, "get bulk presence", "presence_error", error="Failed to get bulk presence"
            )

    @classmethod
    def heartbeat(cls, user_id) -> ServiceResult:
        """
        Refresh the presence TTL and last_seen.

        Keeps the current status (away stays away); offline becomes online.
        """
        current = cls.get_presence(user_id)
        if not current.success:
            return current

        status = current.data["status"]
        if status == PresenceStatus.OFFLINE:
            status = PresenceStatus.ONLINE
        return cls.set_presence(user_id, status)

    @classmethod
    def clear_presence(cls, user_id) -> ServiceResult:
        """Remove the user's presence entry."""
        return cls.set_presence(user_id, PresenceStatus.OFFLINE)

    @classmethod
    def open_conversation(cls, user_id, conversation_id) -> ServiceResult:
        """
        Record that the user has the conversation open.

        Messages arriving while the chat is open do not increment the
        user's unread counter. The entry expires unless refreshed.

        Error codes:
            not_participant: User is not in the conversation
            presence_error: Redis failure
        """
        if not Participant.objects.filter(
            conversation_id=conversation_id, user_id=user_id
        ).exists():
            return ServiceResult.failure(
                error="You are not a participant in this conversation",
                error_code="not_participant",
            )

        try:
            redis_client = cls._get_redis_client()
            conv_key = cls._conversation_presence_key(conversation_id)
            now = time.time()
            pipeline = redis_client.pipeline(transaction=True)
            pipeline.zadd(
                conv_key,
                {str(user_id): now + PRESENCE_CONFIG.CONVERSATION_PRESENCE_TTL_SECONDS},
            )
            pipeline.zremrangebyscore(conv_key, "-inf", now)
            pipeline.expire(conv_key, PRESENCE_CONFIG.CONVERSATION_PRESENCE_TTL_SECONDS)
            pipeline.execute()
            return ServiceResult.success(
                {"user_id": str(user_id), "conversation_id": str(conversation_id)}
            )

        except Exception as e:
            return cls.handle_exception(
                e,
                f"open conversation {conversation_id}",
                "presence_error",
                error="Failed to record open conversation",
            )

    @classmethod
    def close_conversation(cls, user_id, conversation_id) -> ServiceResult:
        """Forget that the user has the conversation open."""
        try:
            redis_client = cls._get_redis_client()
            redis_client.zrem(cls._conversation_presence_key(conversation_id), str(user_id))
            return ServiceResult.success({"conversation_id": str(conversation_id)})

        except Exception as e:
            return cls.handle_exception(
                e,
                f"close conversation {conversation_id}",
                "presence_error",
                error="Failed to close conversation",
            )

    @classmethod
    def get_viewer_ids(cls, conversation_id) -> set[str]:
        """
        Users that currently have the conversation open.

        A Redis failure yields an empty set, so unread counters are
        incremented for everyone rather than skipped.
        """
        try:
            redis_client = cls._get_redis_client()
            members = redis_client.zrangebyscore(
                cls._conversation_presence_key(conversation_id), time.time(), "+inf"
            )
        except Exception as e:
            logger.exception(f"Error reading viewers of conversation {conversation_id}: {e}")
            return set()
        return {cls._decode(member) for member in members}
