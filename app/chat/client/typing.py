"""Client-side typing indicators."""

from __future__ import annotations

import time
from collections.abc import Callable

TYPING_EXPIRY_SECONDS = 5.0


class TypingTracker:
    """
    Who is typing in which chat, as seen by one client.

    A typing.started event sets a deadline that a later typing.started
    pushes back; typing.stopped clears it. Entries past their deadline are
    dropped on read, so a lost typing.stopped never leaves a stale indicator.
    """

    def __init__(
        self,
        expiry: float = TYPING_EXPIRY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.expiry = expiry
        self.clock = clock
        self._deadlines: dict[tuple[str, str], float] = {}

    def started(self, chat_id, user_id) -> None:
        self._deadlines[(str(chat_id), str(user_id))] = self.clock() + self.expiry

    def stopped(self, chat_id, user_id) -> None:
        self._deadlines.pop((str(chat_id), str(user_id)), None)

    def clear_chat(self, chat_id) -> None:
        chat_id = str(chat_id)
        for key in [key for key in self._deadlines if key[0] == chat_id]:
            del self._deadlines[key]

    def typing_users(self, chat_id) -> list[str]:
        """User ids typing in a chat, in the order they started."""
        self._prune()
        chat_id = str(chat_id)
        return [user_id for conv_id, user_id in self._deadlines if conv_id == chat_id]

    def is_typing(self, chat_id, user_id) -> bool:
        self._prune()
        return (str(chat_id), str(user_id)) in self._deadlines

    def _prune(self) -> None:
        now = self.clock()
        for key in [key for key, deadline in self._deadlines.items() if deadline <= now]:
            del self._deadlines[key]
