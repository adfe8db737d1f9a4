"""
Tests for chat API endpoints.

Endpoints:
    /api/v1/chat/conversations/                          list, create
    /api/v1/chat/conversations/{id}/                     retrieve
    /api/v1/chat/conversations/{id}/read/                mark read
    /api/v1/chat/conversations/{id}/messages/            list, send
    /api/v1/chat/conversations/{id}/messages/{mid}/      edit, delete
    /api/v1/chat/presence/{user_id}/, presence/bulk/     presence
"""

from datetime import timedelta

import pytest
from django.utils import timezone
from rest_framework import status

from chat.constants import MESSAGE_CONFIG
from chat.models import Conversation, Message
from chat.services import MessageService, PresenceService, PresenceStatus
from chat.tests.factories import MessageFactory

CONVERSATIONS_URL = "/api/v1/chat/conversations/"


def conversation_url(conversation_id) -> str:
    return f"{CONVERSATIONS_URL}{conversation_id}/"


def messages_url(conversation_id) -> str:
    return f"{CONVERSATIONS_URL}{conversation_id}/messages/"


def message_url(conversation_id, message_id) -> str:
    return f"{messages_url(conversation_id)}{message_id}/"


# =============================================================================
# Conversations
# =============================================================================


@pytest.mark.django_db
class TestConversationEndpoints:
    def test_requires_authentication(self, api_client):
        response = api_client.get(CONVERSATIONS_URL)

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_list_returns_summary_and_unread(self, alice, bob, bob_client, direct_conversation):
        MessageService.send_message(direct_conversation.id, alice, content="Hello world")

        response = bob_client.get(CONVERSATIONS_URL)

        assert response.status_code == status.HTTP_200_OK
        [row] = response.data["results"]
        assert row["id"] == str(direct_conversation.id)
        assert row["unread_count"] == 1
        assert row["last_message"]["content"] == "Hello world"
        assert row["last_message"]["sender_id"] == str(alice.id)
        assert {p["id"] for p in row["participants"]} == {str(alice.id), str(bob.id)}

    def test_create_direct(self, alice_client, bob):
        response = alice_client.post(
            CONVERSATIONS_URL,
            {"conversation_type": "direct", "participant_ids": [str(bob.id)]},
            format="json",
        )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.data["conversation_type"] == "direct"
        assert Conversation.objects.count() == 1

    def test_create_direct_twice_returns_same_chat(self, alice_client, bob):
        payload = {"conversation_type": "direct", "participant_ids": [str(bob.id)]}

        first = alice_client.post(CONVERSATIONS_URL, payload, format="json")
        second = alice_client.post(CONVERSATIONS_URL, payload, format="json")

        assert first.data["id"] == second.data["id"]

    def test_create_direct_requires_exactly_one_other(self, alice_client, bob, carol):
        response = alice_client.post(
            CONVERSATIONS_URL,
            {"conversation_type": "direct", "participant_ids": [str(bob.id), str(carol.id)]},
            format="json",
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_create_group_keeps_requested_order(self, alice, alice_client, bob, carol):
        response = alice_client.post(
            CONVERSATIONS_URL,
            {
                "conversation_type": "group",
                "participant_ids": [str(carol.id), str(bob.id)],
                "title": "Team",
            },
            format="json",
        )

        assert response.status_code == status.HTTP_201_CREATED
        assert [p["id"] for p in response.data["participants"]] == [
            str(alice.id),
            str(carol.id),
            str(bob.id),
        ]

    def test_create_rejects_unknown_user(self, alice_client):
        response = alice_client.post(
            CONVERSATIONS_URL,
            {
                "conversation_type": "direct",
                "participant_ids": ["00000000-0000-0000-0000-000000000000"],
            },
            format="json",
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_retrieve_includes_unread_counts(self, alice, bob, alice_client, direct_conversation):
        MessageService.send_message(direct_conversation.id, alice, content="hi")

        response = alice_client.get(conversation_url(direct_conversation.id))

        assert response.status_code == status.HTTP_200_OK
        assert response.data["unread_counts"] == {str(alice.id): 0, str(bob.id): 1}

    def test_retrieve_forbidden_for_outsider(self, outsider_client, direct_conversation):
        response = outsider_client.get(conversation_url(direct_conversation.id))

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.data["error_code"] == "NOT_PARTICIPANT"

    def test_retrieve_missing(self, alice_client):
        response = alice_client.get(conversation_url("00000000-0000-0000-0000-000000000000"))

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_mark_read(self, alice, bob_client, direct_conversation):
        MessageService.send_message(direct_conversation.id, alice, content="hi")

        response = bob_client.post(f"{conversation_url(direct_conversation.id)}read/")

        assert response.status_code == status.HTTP_200_OK
        assert response.data["status"] == "read"
        assert response.data["unread_count"] == 0
        assert response.data["last_read_at"] is not None


# =============================================================================
# Messages
# =============================================================================


@pytest.mark.django_db
class TestMessageEndpoints:
    def test_send_returns_created_message(self, alice, alice_client, direct_conversation):
        response = alice_client.post(
            messages_url(direct_conversation.id), {"content": "Hello world"}, format="json"
        )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.data["content"] == "Hello world"
        assert response.data["status"] == "sent"
        assert response.data["delivered_at"] is not None
        assert response.data["edited_at"] is None
        assert response.data["sender"] == str(alice.id)
        assert response.data["conversation"] == str(direct_conversation.id)

    def test_send_media(self, alice_client, direct_conversation):
        response = alice_client.post(
            messages_url(direct_conversation.id),
            {"media": {"kind": "video", "url": "https://cdn.example.com/clip.mp4"}},
            format="json",
        )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.data["media"] == {"kind": "video", "url": "https://cdn.example.com/clip.mp4"}

    def test_send_empty_is_validation_error(self, alice_client, direct_conversation):
        response = alice_client.post(
            messages_url(direct_conversation.id), {"content": "   "}, format="json"
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.data["error_code"] == "EMPTY_MESSAGE"

    def test_send_as_outsider_forbidden(self, outsider_client, direct_conversation):
        response = outsider_client.post(
            messages_url(direct_conversation.id), {"content": "hi"}, format="json"
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_list_paginates_newest_first(self, alice, alice_client, direct_conversation):
        MessageFactory.create_batch(60, conversation=direct_conversation, sender=alice)

        first = alice_client.get(messages_url(direct_conversation.id), {"limit": 50, "offset": 0})
        second = alice_client.get(messages_url(direct_conversation.id), {"limit": 50, "offset": 50})

        assert first.status_code == status.HTTP_200_OK
        assert first.data["count"] == 60
        assert len(first.data["results"]) == 50
        assert len(second.data["results"]) == 10
        created = [row["created_at"] for row in first.data["results"]]
        assert created == sorted(created, reverse=True)

    def test_list_caps_limit(self, alice, alice_client, direct_conversation):
        MessageFactory.create_batch(110, conversation=direct_conversation, sender=alice)

        response = alice_client.get(messages_url(direct_conversation.id), {"limit": 1000})

        assert len(response.data["results"]) == 100

    def test_edit(self, alice, alice_client, direct_conversation):
        message = MessageFactory(conversation=direct_conversation, sender=alice, content="Old")

        response = alice_client.patch(
            message_url(direct_conversation.id, message.id), {"content": "New"}, format="json"
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.data["content"] == "New"
        assert response.data["edited_at"] is not None

    def test_edit_timeout_error_code(self, alice, alice_client, direct_conversation):
        message = MessageFactory(conversation=direct_conversation, sender=alice, content="Old")
        Message.objects.filter(pk=message.pk).update(
            created_at=timezone.now() - timedelta(minutes=20)
        )

        response = alice_client.patch(
            message_url(direct_conversation.id, message.id), {"content": "New"}, format="json"
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.data["error_code"] == "EDIT_TIME_EXPIRED"
        message.refresh_from_db()
        assert message.content == "Old"

    def test_edit_by_other_user(self, alice, bob_client, direct_conversation):
        message = MessageFactory(conversation=direct_conversation, sender=alice)

        response = bob_client.patch(
            message_url(direct_conversation.id, message.id), {"content": "x"}, format="json"
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.data["error_code"] == "NOT_SENDER"

    def test_edit_through_another_chat_url(
        self, alice, alice_client, direct_conversation, group_conversation
    ):
        """
        Why it matters: message URLs are nested under their chat; a message
        id paired with a different chat must not resolve.
        """
        message = MessageFactory(conversation=direct_conversation, sender=alice, content="Old")

        response = alice_client.patch(
            message_url(group_conversation.id, message.id), {"content": "New"}, format="json"
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.data["error_code"] == "MESSAGE_NOT_FOUND"
        message.refresh_from_db()
        assert message.content == "Old"

    def test_delete_for_all_then_again(self, alice, alice_client, direct_conversation):
        message = MessageFactory(conversation=direct_conversation, sender=alice)
        url = f"{message_url(direct_conversation.id, message.id)}?for_all=true"

        first = alice_client.delete(url)
        second = alice_client.delete(url)

        assert first.status_code == status.HTTP_204_NO_CONTENT
        assert second.status_code == status.HTTP_409_CONFLICT
        assert second.data["error_code"] == "ALREADY_DELETED"

    def test_delete_defaults_to_self(self, alice, bob, bob_client, direct_conversation):
        message = MessageFactory(conversation=direct_conversation, sender=alice)

        response = bob_client.delete(message_url(direct_conversation.id, message.id))

        assert response.status_code == status.HTTP_204_NO_CONTENT
        message.refresh_from_db()
        assert message.is_deleted is False
        assert message.deleted_for.filter(pk=bob.pk).exists()

    def test_delete_through_another_chat_url(
        self, alice, alice_client, direct_conversation, group_conversation
    ):
        message = MessageFactory(conversation=direct_conversation, sender=alice)

        response = alice_client.delete(
            f"{message_url(group_conversation.id, message.id)}?for_all=true"
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND
        message.refresh_from_db()
        assert message.is_deleted is False

    def test_delete_timeout(self, alice, alice_client, direct_conversation):
        message = MessageFactory(conversation=direct_conversation, sender=alice)
        Message.objects.filter(pk=message.pk).update(
            created_at=timezone.now()
            - timedelta(seconds=MESSAGE_CONFIG.DELETE_TIME_LIMIT_SECONDS + 1)
        )

        response = alice_client.delete(
            f"{message_url(direct_conversation.id, message.id)}?for_all=true"
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.data["error_code"] == "DELETE_TIME_EXPIRED"

    def test_moderator_delete(self, alice, moderator_client, direct_conversation):
        message = MessageFactory(conversation=direct_conversation, sender=alice)
        Message.objects.filter(pk=message.pk).update(
            created_at=timezone.now() - timedelta(days=3)
        )

        response = moderator_client.delete(
            f"{message_url(direct_conversation.id, message.id)}?for_all=true"
        )

        assert response.status_code == status.HTTP_204_NO_CONTENT


# =============================================================================
# Presence
# =============================================================================


@pytest.mark.django_db
class TestPresenceEndpoints:
    def test_unknown_user_is_offline(self, alice_client, bob):
        response = alice_client.get(f"/api/v1/chat/presence/{bob.id}/")

        assert response.status_code == status.HTTP_200_OK
        assert response.data["status"] == PresenceStatus.OFFLINE
        assert response.data["last_seen"] is None

    def test_online_user(self, alice_client, bob):
        PresenceService.set_presence(bob.id, PresenceStatus.ONLINE)

        response = alice_client.get(f"/api/v1/chat/presence/{bob.id}/")

        assert response.data["status"] == PresenceStatus.ONLINE
        assert response.data["last_seen"] is not None

    def test_bulk(self, alice_client, bob, carol):
        PresenceService.set_presence(bob.id, PresenceStatus.AWAY)

        response = alice_client.post(
            "/api/v1/chat/presence/bulk/",
            {"user_ids": [str(bob.id), str(carol.id)]},
            format="json",
        )

        assert response.status_code == status.HTTP_200_OK
        assert [row["status"] for row in response.data] == [
            PresenceStatus.AWAY,
            PresenceStatus.OFFLINE,
        ]

    def test_bulk_limit(self, alice_client):
        response = alice_client.post(
            "/api/v1/chat/presence/bulk/",
            {"user_ids": [f"00000000-0000-0000-0000-{i:012d}" for i in range(101)]},
            format="json",
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_redis_failure_is_503(self, alice_client, bob, fake_redis_server):
        fake_redis_server.connected = False

        response = alice_client.get(f"/api/v1/chat/presence/{bob.id}/")

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.data["error_code"] == "presence_error"
