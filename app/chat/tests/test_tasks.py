"""Tests for chat Celery tasks."""

from unittest.mock import MagicMock, patch

import pytest

from chat.tasks import sweep_stale_sessions


@pytest.fixture
def manager():
    manager = MagicMock()
    with patch("chat.connections.get_connection_manager", return_value=manager):
        yield manager


class TestSweepStaleSessions:
    def test_announces_users_that_went_offline(self, manager):
        manager.sweep_stale.return_value = ["u1", "u2"]

        assert sweep_stale_sessions() == 2

        manager.announce_offline_sync.assert_called_once_with(["u1", "u2"])

    def test_nothing_to_sweep(self, manager):
        manager.sweep_stale.return_value = []

        assert sweep_stale_sessions.delay().get() == 0

        manager.announce_offline_sync.assert_not_called()
