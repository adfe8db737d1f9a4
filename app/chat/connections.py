"""
WebSocket session registry and online/offline transitions.

Every open socket is a session, stored in the Redis sorted set
``sessions:user:{user_id}`` as its channel name scored by the time of its
last heartbeat. A user is online while at least one session is live:

    - the first session to register marks the user online
    - the last session to unregister marks the user offline
    - sessions silent for longer than the dead-peer timeout are swept,
      which covers sockets that vanished without a close frame

Each transition is announced as presence.changed to the user group of
every peer (users sharing a chat with the user).

Usage:
    manager = ConnectionManager(get_redis_connection("default"), get_publisher())
    await manager.connect(user_id, channel_name, peer_ids)
    await manager.disconnect(user_id, channel_name, peer_ids)
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from asgiref.sync import async_to_sync, sync_to_async
from django.utils import timezone
from django_redis import get_redis_connection

from chat.broadcast import get_publisher
from chat.constants import PRESENCE_CONFIG
from chat.events import PresenceChanged
from chat.services import ConversationService, PresenceService, PresenceStatus

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from chat.broadcast import ChatEventPublisher

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Tracks live sessions per user and announces presence transitions.

    register/unregister are synchronous Redis operations and safe to call
    twice for the same session. connect/disconnect wrap them for consumers
    and add the presence update and the peer announcement.
    """

    def __init__(
        self,
        redis_client,
        publisher: ChatEventPublisher,
        dead_peer_timeout: float = PRESENCE_CONFIG.DEAD_PEER_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
        session_ttl: int | None = None,
    ):
        self.redis = redis_client
        self.publisher = publisher
        self.dead_peer_timeout = dead_peer_timeout
        # The key must outlive its stalest member or sweep_stale never sees it
        self.session_ttl = session_ttl or int(
            dead_peer_timeout + 2 * PRESENCE_CONFIG.HEARTBEAT_INTERVAL_SECONDS
        )
        self.clock = clock

    @staticmethod
    def _sessions_key(user_id) -> str:
        return f"{PRESENCE_CONFIG.KEY_PREFIX_SESSIONS}:{user_id}"

    # -------------------------------------------------------------------------
    # Session registry
    # -------------------------------------------------------------------------

    def register(self, user_id, channel_name: str) -> bool:
        """
        Add a session. Returns True when it is the user's only live session.
        """
        key = self._sessions_key(user_id)
        now = self.clock()

        pipeline = self.redis.pipeline(transaction=True)
        pipeline.zremrangebyscore(key, "-inf", now - self.dead_peer_timeout)
        pipeline.zcard(key)
        pipeline.zadd(key, {channel_name: now})
        pipeline.expire(key, self.session_ttl)
        pipeline.zcard(key)
        _, before, _, _, after = pipeline.execute()

        return before == 0 and after == 1

    def unregister(self, user_id, channel_name: str) -> bool:
        """
        Remove a session. Returns True when it was the user's last session.
        """
        key = self._sessions_key(user_id)

        pipeline = self.redis.pipeline(transaction=True)
        pipeline.zrem(key, channel_name)
        pipeline.zcard(key)
        removed, remaining = pipeline.execute()

        return removed == 1 and remaining == 0

    def heartbeat(self, user_id, channel_name: str) -> None:
        """Refresh a session's score and the user's presence TTL."""
        key = self._sessions_key(user_id)

        pipeline = self.redis.pipeline(transaction=True)
        pipeline.zadd(key, {channel_name: self.clock()})
        pipeline.expire(key, self.session_ttl)
        pipeline.execute()

        PresenceService.heartbeat(user_id)

    def session_count(self, user_id) -> int:
        key = self._sessions_key(user_id)
        cutoff = self.clock() - self.dead_peer_timeout
        return self.redis.zcount(key, f"({cutoff}", "+inf")

    def sweep_stale(self, now: float | None = None) -> list[str]:
        """
        Drop sessions whose last heartbeat is older than the dead-peer timeout.

        Returns ids of users left with no live session; their presence is
        cleared. Announcing the change is left to the caller.
        """
        now = self.clock() if now is None else now
        cutoff = now - self.dead_peer_timeout
        prefix = f"{PRESENCE_CONFIG.KEY_PREFIX_SESSIONS}:"
        offline = []

        for raw_key in self.redis.scan_iter(match=f"{prefix}*"):
            key = raw_key.decode("utf-8") if isinstance(raw_key, bytes) else raw_key

            pipeline = self.redis.pipeline(transaction=True)
            pipeline.zremrangebyscore(key, "-inf", cutoff)
            pipeline.zcard(key)
            removed, remaining = pipeline.execute()

            if removed and remaining == 0:
                user_id = key[len(prefix) :]
                self.redis.delete(key)
                PresenceService.clear_presence(user_id)
                offline.append(user_id)

        if offline:
            logger.info(f"Swept stale sessions, {len(offline)} users went offline")
        return offline

    # -------------------------------------------------------------------------
    # Announcements
    # -------------------------------------------------------------------------

    @staticmethod
    def _presence_event(user_id, status: str) -> PresenceChanged:
        return PresenceChanged(
            user_id=str(user_id),
            status=status,
            last_seen=timezone.now().isoformat(),
        )

    async def announce(self, user_id, status: str, peer_ids: Iterable) -> None:
        """Send presence.changed to every peer's sessions."""
        await self.publisher.publish_to_users(peer_ids, self._presence_event(user_id, status))

    def announce_offline_sync(self, user_ids: Iterable) -> None:
        """Announce users found offline by a sweep (sync, for Celery)."""
        for user_id in user_ids:
            peer_ids = ConversationService.get_peer_ids(user_id)
            async_to_sync(self.announce)(user_id, PresenceStatus.OFFLINE, peer_ids)

    # -------------------------------------------------------------------------
    # Consumer entry points
    # -------------------------------------------------------------------------

    async def connect(self, user_id, channel_name: str, peer_ids: Iterable) -> bool:
        """
        Register a new socket; the first one marks the user online.

        Returns True when the user came online. Redis failures are logged
        and leave the user's presence untouched.
        """
        try:
            came_online = await sync_to_async(self.register)(user_id, channel_name)
        except Exception:
            logger.exception(f"Failed to register session for user {user_id}")
            return False

        if came_online:
            await sync_to_async(PresenceService.set_presence)(user_id, PresenceStatus.ONLINE)
            await self.announce(user_id, PresenceStatus.ONLINE, peer_ids)
            logger.info(f"User {user_id} came online")
        return came_online

    async def disconnect(self, user_id, channel_name: str, peer_ids: Iterable) -> bool:
        """
        Unregister a closed socket; the last one marks the user offline.

        Safe to call more than once for the same socket.
        """
        try:
            went_offline = await sync_to_async(self.unregister)(user_id, channel_name)
        except Exception:
            logger.exception(f"Failed to unregister session for user {user_id}")
            return False

        if went_offline:
            await sync_to_async(PresenceService.clear_presence)(user_id)
            await self.announce(user_id, PresenceStatus.OFFLINE, peer_ids)
            logger.info(f"User {user_id} went offline")
        return went_offline

    async def refresh(self, user_id, channel_name: str) -> None:
        """Async heartbeat for consumers."""
        try:
            await sync_to_async(self.heartbeat)(user_id, channel_name)
        except Exception:
            logger.exception(f"Failed to refresh session for user {user_id}")

    async def live_sessions(self, user_id) -> int:
        """Live session count for consumers; a Redis failure counts as none."""
        try:
            return await sync_to_async(self.session_count)(user_id)
        except Exception:
            logger.exception(f"Failed to count sessions for user {user_id}")
            return 0


_connection_manager: ConnectionManager | None = None


def get_connection_manager() -> ConnectionManager:
    """Process-wide manager bound to the default Redis and channel layer."""
    global _connection_manager
    if _connection_manager is None:
        _connection_manager = ConnectionManager(
            get_redis_connection("default"),
            get_publisher(),
        )
    return _connection_manager
