"""
System memory pressure checks (Linux).

A long-lived browser slowly leaks; when the host runs low the driver resets
the session instead of letting the OOM killer pick a victim.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from castle_bot.config import MemoryConfig
from castle_bot.logging import get_logger

logger = get_logger(__name__)

MEMINFO_PATH = Path("/proc/meminfo")


@dataclass(frozen=True)
class SystemMemory:
    total_mb: float
    available_mb: float
    swap_total_mb: float
    swap_free_mb: float

    @property
    def used_percent(self) -> float:
        if self.total_mb <= 0:
            return 0.0
        return (self.total_mb - self.available_mb) / self.total_mb * 100


@dataclass(frozen=True)
class MemoryCheck:
    should_restart: bool
    reason: Optional[str] = None
    memory: Optional[SystemMemory] = None


def get_system_memory(meminfo_path: Path = MEMINFO_PATH) -> Optional[SystemMemory]:
    """Read /proc/meminfo; None where it is unavailable."""
    try:
        text = meminfo_path.read_text()
    except OSError:
        return None

    def value_mb(key: str) -> float:
        match = re.search(rf"^{key}:\s+(\d+)", text, re.MULTILINE)
        return int(match.group(1)) / 1024 if match else 0.0

    return SystemMemory(
        total_mb=value_mb("MemTotal"),
        available_mb=value_mb("MemAvailable"),
        swap_total_mb=value_mb("SwapTotal"),
        swap_free_mb=value_mb("SwapFree"),
    )


def should_restart_for_memory(
    thresholds: Optional[MemoryConfig] = None,
    memory: Optional[SystemMemory] = None,
) -> MemoryCheck:
    """
    Decide whether memory pressure warrants a session reset.

    Checks available RAM, then free swap (only when swap is in use), then
    overall usage.
    """
    thresholds = thresholds or MemoryConfig()
    memory = memory if memory is not None else get_system_memory()

    if memory is None:
        return MemoryCheck(should_restart=False)

    if memory.available_mb < thresholds.min_available_mb:
        return MemoryCheck(
            should_restart=True,
            reason=(
                f"Low RAM: {memory.available_mb:.0f}MB available "
                f"(threshold: {thresholds.min_available_mb}MB)"
            ),
            memory=memory,
        )

    if memory.swap_total_mb > 0:
        swap_used = memory.swap_total_mb - memory.swap_free_mb
        if swap_used > 0 and memory.swap_free_mb < thresholds.min_swap_free_mb:
            return MemoryCheck(
                should_restart=True,
                reason=(
                    f"Low swap: {memory.swap_free_mb:.0f}MB free "
                    f"(threshold: {thresholds.min_swap_free_mb}MB)"
                ),
                memory=memory,
            )

    if memory.used_percent > thresholds.max_used_percent:
        return MemoryCheck(
            should_restart=True,
            reason=(
                f"High memory usage: {memory.used_percent:.1f}% "
                f"(threshold: {thresholds.max_used_percent}%)"
            ),
            memory=memory,
        )

    return MemoryCheck(should_restart=False, memory=memory)
