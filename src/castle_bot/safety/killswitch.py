"""
Kill switch driven by process signals.

SIGINT / SIGTERM (or a manual trigger) stop the loop at the next safe point:
the current cycle finishes, the sleep between cycles is cut short.
"""

import asyncio
import signal
import threading
import time
from typing import Callable, Optional, List

from castle_bot.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class KillSwitchTriggered(Exception):
    """Raised by ``check()`` once the kill switch has fired."""


class KillSwitch:
    """
    Process-wide stop flag.

    - check() for preemptive checks in loops
    - wait() as an interruptible replacement for asyncio.sleep()
    - callbacks run once when the switch fires
    """

    def __init__(self, on_trigger: Optional[Callable[[], None]] = None):
        self.on_trigger = on_trigger

        self._fired = threading.Event()
        self._lock = threading.RLock()
        self._callbacks: List[Callable[[], None]] = []
        self._waiter: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._installed: List[int] = []

        self._fired_at: Optional[float] = None
        self._source: Optional[str] = None

    @property
    def triggered(self) -> bool:
        return self._fired.is_set()

    @property
    def trigger_time(self) -> Optional[float]:
        """Wall-clock time of the first trigger."""
        return self._fired_at

    @property
    def trigger_source(self) -> Optional[str]:
        """Signal name or caller label of the first trigger."""
        return self._source

    def check(self) -> None:
        """Raise ``KillSwitchTriggered`` once the switch has fired."""
        if self.triggered:
            raise KillSwitchTriggered(f"Stop requested by {self._source or 'unknown'}")

    def register_interrupt(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` when the switch fires, before ``on_trigger``."""
        with self._lock:
            self._callbacks.append(callback)

    def install_signal_handlers(self, signals=DEFAULT_SIGNALS) -> None:
        """Route the given signals to the switch on the running event loop."""
        loop = asyncio.get_running_loop()
        self._loop = loop
        for sig in signals:
            name = signal.Signals(sig).name
            try:
                loop.add_signal_handler(sig, self.trigger, name)
            except (NotImplementedError, RuntimeError, ValueError):
                # Windows loops and non-main threads
                logger.debug("Signal handler not installed", signal=name)
                continue
            self._installed.append(sig)

    def remove_signal_handlers(self) -> None:
        if self._loop is None:
            return
        while self._installed:
            sig = self._installed.pop()
            try:
                self._loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                logger.debug("Signal handler not removed", signal=signal.Signals(sig).name)

    def trigger(self, source: str = "manual") -> None:
        """Fire the switch. Only the first call has any effect."""
        with self._lock:
            if self._fired.is_set():
                return
            self._fired_at = time.time()
            self._source = source
            self._fired.set()
            if self._waiter is not None:
                self._waiter.set()
            listeners = list(self._callbacks)

        logger.warning("Kill switch triggered", source=source)
        if self.on_trigger is not None:
            listeners.append(self.on_trigger)
        for listener in listeners:
            try:
                listener()
            except Exception as e:
                logger.error("Kill switch callback failed", callback=getattr(listener, "__name__", repr(listener)), error=str(e))

    async def wait(self, duration: float) -> bool:
        """
        Sleep for ``duration`` seconds or until the switch fires.

        Returns:
            True if the switch fired
        """
        if self.triggered:
            return True
        with self._lock:
            if self._waiter is None:
                self._waiter = asyncio.Event()
            if self.triggered:
                return True
        try:
            await asyncio.wait_for(self._waiter.wait(), timeout=max(0.0, duration))
        except asyncio.TimeoutError:
            pass
        return self.triggered

    def reset(self) -> None:
        """Clear the flag and all callbacks."""
        with self._lock:
            self._fired.clear()
            self._waiter = None
            self._fired_at = None
            self._source = None
            self._callbacks.clear()
