"""
systemd watchdog integration.

Enabled only when systemd sets WATCHDOG_USEC (and WATCHDOG_PID, if present,
names this process). Everywhere else every method is a no-op.
"""

import asyncio
import os
from typing import Optional, Mapping

from castle_bot.logging import get_logger

logger = get_logger(__name__)

NOTIFY_COMMAND = "systemd-notify"


class SystemdWatchdog:
    """Pings systemd at half the configured watchdog timeout."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None, pid: Optional[int] = None):
        env = os.environ if environ is None else environ
        pid = os.getpid() if pid is None else pid

        usec = env.get("WATCHDOG_USEC")
        watchdog_pid = env.get("WATCHDOG_PID")

        self.enabled = bool(usec) and (not watchdog_pid or watchdog_pid == str(pid))
        self.interval_ms: Optional[int] = None
        if self.enabled:
            try:
                self.interval_ms = int(usec) // 2000
            except ValueError:
                logger.warning("Invalid WATCHDOG_USEC, watchdog disabled", value=usec)
                self.enabled = False

        self._has_notify_socket = bool(env.get("NOTIFY_SOCKET"))

    async def _notify(self, *args: str) -> bool:
        try:
            proc = await asyncio.create_subprocess_exec(
                NOTIFY_COMMAND, *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            return await proc.wait() == 0
        except OSError as e:
            if self._has_notify_socket:
                logger.warning("Watchdog notification failed", args=args, error=str(e))
            return False

    async def ping(self) -> None:
        """Tell systemd the loop is alive."""
        if self.enabled:
            await self._notify("WATCHDOG=1")

    async def start(self) -> None:
        """Send READY. The driver pings between and during sleeps."""
        if not self.enabled or not self.interval_ms:
            return

        logger.info(
            "Watchdog enabled",
            ping_interval_s=self.interval_ms // 1000,
            timeout_s=self.interval_ms * 2 // 1000,
        )
        await self._notify("--ready")

    async def stop(self) -> None:
        """Tell systemd the stop is intentional."""
        if self.enabled:
            await self._notify("--stopping")
