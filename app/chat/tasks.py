"""
Celery tasks for chat app.

This module defines periodic tasks for:
- Sweeping WebSocket sessions that stopped sending heartbeats

Related files:
    - connections.py: ConnectionManager
    - config/celery.py: beat schedule

Usage:
    from chat.tasks import sweep_stale_sessions

    sweep_stale_sessions.delay()
"""

import logging

from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task
def sweep_stale_sessions() -> int:
    """
    Mark users offline whose sessions all missed the dead-peer timeout.

    Sockets that drop without a close frame never run the consumer's
    disconnect, so their sessions are only removed here. Peers of every
    user that went offline receive presence.changed.

    Returns:
        Number of users marked offline
    """
    from chat.connections import get_connection_manager

    manager = get_connection_manager()
    offline_user_ids = manager.sweep_stale()
    if offline_user_ids:
        manager.announce_offline_sync(offline_user_ids)
        logger.info(f"Marked {len(offline_user_ids)} users offline after missed heartbeats")
    return len(offline_user_ids)
