"""
Server-side typing indicators.

A typing signal is keyed by (conversation_id, user_id) and lives for
TYPING_CONFIG.TYPING_TIMEOUT_SECONDS after its last refresh. Each key owns
at most one asyncio timer:

    start  -> cancel the old timer, schedule a new one, publish typing.started
    stop   -> cancel the timer, publish typing.stopped
    expiry -> publish typing.stopped
    clear_user -> stop every signal of a disconnecting user

Timers live in the process holding the typist's socket, so a lost stop
signal is always cleaned up by the same event loop that started it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from chat.constants import TYPING_CONFIG
from chat.events import TypingStarted, TypingStopped

if TYPE_CHECKING:
    from chat.broadcast import ChatEventPublisher

logger = logging.getLogger(__name__)


class TypingCoordinator:
    """Per-(chat, user) typing deadlines backed by ``loop.call_later``."""

    def __init__(
        self,
        publisher: ChatEventPublisher,
        window: float = TYPING_CONFIG.TYPING_TIMEOUT_SECONDS,
    ):
        self.publisher = publisher
        self.window = window
        self._timers: dict[tuple[str, str], asyncio.TimerHandle] = {}
        self._pending: set[asyncio.Task] = set()

    @staticmethod
    def _key(conversation_id, user_id) -> tuple[str, str]:
        return str(conversation_id), str(user_id)

    def is_typing(self, conversation_id, user_id) -> bool:
        return self._key(conversation_id, user_id) in self._timers

    def active(self, conversation_id) -> list[str]:
        """User ids currently typing in a chat."""
        conversation_id = str(conversation_id)
        return [user_id for conv_id, user_id in self._timers if conv_id == conversation_id]

    async def start(self, conversation_id, user_id) -> None:
        """Start or refresh a typing signal."""
        key = self._key(conversation_id, user_id)
        previous = self._timers.pop(key, None)
        if previous is not None:
            previous.cancel()

        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self.window, self._expire, key)

        await self.publisher.publish_to_chat(
            key[0],
            TypingStarted(conversation_id=key[0], user_id=key[1]),
            origin_user_id=key[1],
        )

    async def stop(self, conversation_id, user_id) -> bool:
        """
        Clear a typing signal now.

        Returns False when the user was not typing; nothing is published then.
        """
        key = self._key(conversation_id, user_id)
        handle = self._timers.pop(key, None)
        if handle is None:
            return False

        handle.cancel()
        await self._publish_stopped(key)
        return True

    async def clear_user(self, user_id) -> list[str]:
        """Stop every typing signal of a user; returns the affected chat ids."""
        user_id = str(user_id)
        conversation_ids = [conv_id for conv_id, uid in list(self._timers) if uid == user_id]
        for conversation_id in conversation_ids:
            await self.stop(conversation_id, user_id)
        return conversation_ids

    def _expire(self, key: tuple[str, str]) -> None:
        # Superseded and stopped timers are cancelled, so a firing timer owns its key
        if self._timers.pop(key, None) is None:
            return

        logger.debug(f"Typing signal expired for user {key[1]} in chat {key[0]}")
        task = asyncio.ensure_future(self._publish_stopped(key))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish_stopped(self, key: tuple[str, str]) -> None:
        try:
            await self.publisher.publish_to_chat(
                key[0],
                TypingStopped(conversation_id=key[0], user_id=key[1]),
                origin_user_id=key[1],
            )
        except Exception:
            logger.exception(f"Failed to publish typing.stopped for chat {key[0]}")

    async def drain(self) -> None:
        """Wait for expiry publications still in flight."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    def cancel_all(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()


_typing_coordinator: TypingCoordinator | None = None


def get_typing_coordinator() -> TypingCoordinator:
    """Process-wide coordinator bound to the default channel layer."""
    global _typing_coordinator
    if _typing_coordinator is None:
        from chat.broadcast import get_publisher

        _typing_coordinator = TypingCoordinator(get_publisher())
    return _typing_coordinator
