"""
Stop handling for the bot loop.
"""
from castle_bot.safety.killswitch import (
    DEFAULT_SIGNALS,
    KillSwitch,
    KillSwitchTriggered,
)

__all__ = [
    "DEFAULT_SIGNALS",
    "KillSwitch",
    "KillSwitchTriggered",
]
