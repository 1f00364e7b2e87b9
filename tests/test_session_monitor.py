"""Tests for server/session_monitor.py - background pruning of closed sessions."""

import asyncio
from unittest.mock import MagicMock

import pytest

from server.session_monitor import SessionMonitor


@pytest.fixture
def mock_registry():
    registry = MagicMock()
    registry.prune.return_value = []
    return registry


class TestSessionMonitorInit:
    """Tests for SessionMonitor initialization."""

    def test_init_default_values(self, mock_registry):
        monitor = SessionMonitor(mock_registry)

        assert monitor.registry is mock_registry
        assert monitor.check_interval == 30.0
        assert monitor._task is None
        assert monitor._running is False


class TestSessionMonitorStartStop:
    """Tests for start/stop."""

    @pytest.mark.asyncio
    async def test_start_creates_task(self, mock_registry):
        monitor = SessionMonitor(mock_registry, check_interval=60)

        await monitor.start()

        assert monitor._running is True
        assert monitor._task is not None
        await monitor.stop()

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, mock_registry):
        monitor = SessionMonitor(mock_registry, check_interval=60)

        await monitor.start()
        first_task = monitor._task
        await monitor.start()

        assert monitor._task is first_task
        await monitor.stop()

    @pytest.mark.asyncio
    async def test_stop(self, mock_registry):
        monitor = SessionMonitor(mock_registry, check_interval=60)
        await monitor.start()

        await monitor.stop()

        assert monitor._running is False
        assert monitor._task is None

    @pytest.mark.asyncio
    async def test_stop_without_start(self, mock_registry):
        await SessionMonitor(mock_registry).stop()


class TestSessionMonitorLoop:
    """Tests for the monitoring loop."""

    @pytest.mark.asyncio
    async def test_prunes_periodically(self, mock_registry):
        mock_registry.prune.return_value = ["dead"]
        monitor = SessionMonitor(mock_registry, check_interval=0.01)

        await monitor.start()
        await asyncio.sleep(0.1)
        await monitor.stop()

        assert mock_registry.prune.call_count >= 2

    @pytest.mark.asyncio
    async def test_survives_prune_errors(self, mock_registry):
        calls = []

        def prune():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return []

        mock_registry.prune.side_effect = prune
        monitor = SessionMonitor(mock_registry, check_interval=0.01)

        await monitor.start()
        await asyncio.sleep(0.1)
        await monitor.stop()

        assert mock_registry.prune.call_count >= 2
