"""
Test configuration and fixtures for chat tests.

This module provides:
- fake_redis: fakeredis client wired into PresenceService (autouse)
- User fixtures (alice, bob, carol, moderator, outsider)
- Conversation fixtures (direct and group)
- API client helpers for authenticated requests

Usage:
    def test_example(direct_conversation, alice_client):
        response = alice_client.get(f'/api/v1/chat/conversations/{direct_conversation.id}/')
        assert response.status_code == 200
"""

from unittest.mock import patch

import fakeredis
import pytest
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import AccessToken

from authentication.tests.factories import UserFactory
from chat.services import PresenceService
from chat.tests.factories import DirectConversationFactory, GroupConversationFactory


# =============================================================================
# Redis
# =============================================================================


@pytest.fixture
def fake_redis_server():
    """Backing server; set ``connected = False`` to simulate an outage."""
    return fakeredis.FakeServer()


@pytest.fixture(autouse=True)
def fake_redis(fake_redis_server):
    """
    In-process Redis for presence, viewers and sessions.

    Autouse so no test reaches for a real Redis through django-redis.
    """
    client = fakeredis.FakeRedis(server=fake_redis_server)
    with patch.object(PresenceService, "_get_redis_client", return_value=client):
        yield client
    # Outage tests leave the server disconnected
    fake_redis_server.connected = True
    client.flushall()


# =============================================================================
# User Fixtures
# =============================================================================


@pytest.fixture
def alice(db):
    return UserFactory(email="alice@example.com", first_name="Alice", last_name="A")


@pytest.fixture
def bob(db):
    return UserFactory(email="bob@example.com", first_name="Bob", last_name="B")


@pytest.fixture
def carol(db):
    return UserFactory(email="carol@example.com", first_name="Carol", last_name="C")


@pytest.fixture
def outsider(db):
    """A user who is not a participant in any test conversation."""
    return UserFactory(email="outsider@example.com")


@pytest.fixture
def moderator(db):
    """Staff user allowed to delete any message at any time."""
    return UserFactory(email="mod@example.com", is_staff=True)


# =============================================================================
# Conversation Fixtures
# =============================================================================


@pytest.fixture
def direct_conversation(alice, bob):
    return DirectConversationFactory(participants=[alice, bob])


@pytest.fixture
def group_conversation(alice, bob, carol):
    return GroupConversationFactory(participants=[alice, bob, carol], title="Team")


# =============================================================================
# API Client Fixtures
# =============================================================================


def client_for(user) -> APIClient:
    client = APIClient()
    client.credentials(HTTP_AUTHORIZATION=f"Bearer {AccessToken.for_user(user)}")
    return client


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def alice_client(alice):
    return client_for(alice)


@pytest.fixture
def bob_client(bob):
    return client_for(bob)


@pytest.fixture
def outsider_client(outsider):
    return client_for(outsider)


@pytest.fixture
def moderator_client(moderator):
    return client_for(moderator)


# =============================================================================
# Broadcast
# =============================================================================


@pytest.fixture
def publisher():
    """
    Mock ChatEventPublisher used by the service layer.

    Events are published on commit, so wrap the call under test in
    django_capture_on_commit_callbacks(execute=True).
    """
    with patch("chat.services.get_publisher") as get_publisher:
        yield get_publisher.return_value


def published_events(publisher) -> list:
    """Events passed to publish_to_chat_sync / publish_to_user_sync, in order."""
    calls = publisher.method_calls
    return [
        call.args[1]
        for call in calls
        if call[0] in ("publish_to_chat_sync", "publish_to_user_sync")
    ]
