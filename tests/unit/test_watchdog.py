"""
Tests for systemd watchdog integration.
"""

import asyncio
from unittest.mock import AsyncMock

from castle_bot.watchdog import SystemdWatchdog


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class TestSystemdWatchdog:
    """Tests for SystemdWatchdog."""

    def test_disabled_without_systemd(self):
        watchdog = SystemdWatchdog(environ={})

        assert watchdog.enabled is False
        assert watchdog.interval_ms is None

    def test_interval_is_half_timeout(self):
        watchdog = SystemdWatchdog(environ={"WATCHDOG_USEC": "60000000"}, pid=42)

        assert watchdog.enabled is True
        assert watchdog.interval_ms == 30_000

    def test_other_process_pid(self):
        watchdog = SystemdWatchdog(environ={"WATCHDOG_USEC": "60000000", "WATCHDOG_PID": "7"}, pid=42)

        assert watchdog.enabled is False

    def test_matching_pid(self):
        watchdog = SystemdWatchdog(environ={"WATCHDOG_USEC": "60000000", "WATCHDOG_PID": "42"}, pid=42)

        assert watchdog.enabled is True

    def test_invalid_usec(self):
        watchdog = SystemdWatchdog(environ={"WATCHDOG_USEC": "soon"}, pid=1)

        assert watchdog.enabled is False

    def test_notifications(self, monkeypatch):
        """Test ready, ping and stopping notifications."""
        watchdog = SystemdWatchdog(environ={"WATCHDOG_USEC": "20000000"}, pid=1)
        notify = AsyncMock(return_value=True)
        monkeypatch.setattr(watchdog, "_notify", notify)

        async def scenario():
            await watchdog.start()
            await watchdog.ping()
            await watchdog.stop()

        run_async(scenario())

        assert [c.args for c in notify.await_args_list] == [("--ready",), ("WATCHDOG=1",), ("--stopping",)]

    def test_disabled_is_noop(self, monkeypatch):
        watchdog = SystemdWatchdog(environ={})
        notify = AsyncMock(return_value=True)
        monkeypatch.setattr(watchdog, "_notify", notify)

        run_async(watchdog.ping())

        notify.assert_not_awaited()

    def test_missing_notify_command(self, monkeypatch):
        """Test a missing systemd-notify binary is not an error."""
        monkeypatch.setattr("castle_bot.watchdog.NOTIFY_COMMAND", "castle-bot-no-such-command")
        watchdog = SystemdWatchdog(environ={"WATCHDOG_USEC": "20000000"}, pid=1)

        assert run_async(watchdog._notify("WATCHDOG=1")) is False
