"""
Tests for the server-side TypingCoordinator.

Windows are shortened to keep the expiry tests fast; the publisher is an
AsyncMock recording every published event.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from chat.events import TypingStarted, TypingStopped
from chat.typing import TypingCoordinator


@pytest.fixture
def publisher():
    publisher = MagicMock()
    publisher.publish_to_chat = AsyncMock()
    return publisher


@pytest.fixture
def coordinator(publisher):
    coordinator = TypingCoordinator(publisher, window=0.05)
    yield coordinator
    coordinator.cancel_all()


def published(publisher) -> list:
    return [call.args[1] for call in publisher.publish_to_chat.await_args_list]


class TestTypingCoordinator:
    async def test_start_publishes_and_tracks(self, coordinator, publisher):
        await coordinator.start("c1", "u1")

        assert coordinator.is_typing("c1", "u1")
        assert coordinator.active("c1") == ["u1"]
        assert published(publisher) == [TypingStarted(conversation_id="c1", user_id="u1")]
        assert publisher.publish_to_chat.await_args.kwargs["origin_user_id"] == "u1"

    async def test_stop_clears_immediately(self, coordinator, publisher):
        await coordinator.start("c1", "u1")

        assert await coordinator.stop("c1", "u1") is True

        assert not coordinator.is_typing("c1", "u1")
        assert published(publisher)[-1] == TypingStopped(conversation_id="c1", user_id="u1")

    async def test_stop_when_not_typing_publishes_nothing(self, coordinator, publisher):
        assert await coordinator.stop("c1", "u1") is False

        publisher.publish_to_chat.assert_not_awaited()

    async def test_expires_after_window(self, coordinator, publisher):
        """
        Why it matters: a lost stop signal must not leave a user "typing"
        forever.
        """
        await coordinator.start("c1", "u1")

        await asyncio.sleep(0.1)
        await coordinator.drain()

        assert not coordinator.is_typing("c1", "u1")
        assert published(publisher) == [
            TypingStarted(conversation_id="c1", user_id="u1"),
            TypingStopped(conversation_id="c1", user_id="u1"),
        ]

    async def test_refresh_pushes_deadline_back(self, coordinator, publisher):
        await coordinator.start("c1", "u1")
        await asyncio.sleep(0.03)
        await coordinator.start("c1", "u1")
        await asyncio.sleep(0.03)

        # 0.06s after the first start but only 0.03s after the refresh
        assert coordinator.is_typing("c1", "u1")

        await asyncio.sleep(0.05)
        await coordinator.drain()
        assert not coordinator.is_typing("c1", "u1")
        stopped = [e for e in published(publisher) if isinstance(e, TypingStopped)]
        assert len(stopped) == 1

    async def test_superseded_timer_does_not_fire(self, coordinator, publisher):
        await coordinator.start("c1", "u1")
        await coordinator.stop("c1", "u1")

        await asyncio.sleep(0.1)
        await coordinator.drain()

        stopped = [e for e in published(publisher) if isinstance(e, TypingStopped)]
        assert len(stopped) == 1

    async def test_clear_user_stops_every_chat(self, coordinator, publisher):
        await coordinator.start("c1", "u1")
        await coordinator.start("c2", "u1")
        await coordinator.start("c1", "u2")

        cleared = await coordinator.clear_user("u1")

        assert sorted(cleared) == ["c1", "c2"]
        assert coordinator.active("c1") == ["u2"]
        assert coordinator.active("c2") == []

    async def test_publish_failure_on_expiry_is_logged(self, coordinator, publisher, caplog):
        await coordinator.start("c1", "u1")
        publisher.publish_to_chat.side_effect = RuntimeError("layer down")

        await asyncio.sleep(0.1)
        await coordinator.drain()

        assert not coordinator.is_typing("c1", "u1")
        assert "Failed to publish typing.stopped" in caplog.text
