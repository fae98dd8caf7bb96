"""
Typed errors raised below the cycle boundary.

None of these escape ``BotOrchestrator.run_cycle``; they exist so that logs
and recovery hooks can tell the failure categories apart.
"""

from typing import Optional


class BotError(Exception):
    """Base class for bot errors."""


class DecisionServiceError(BotError):
    """The decision service could not produce a recommendation for an entity."""

    def __init__(self, message: str, entity_name: Optional[str] = None):
        self.entity_name = entity_name
        prefix = f"[{entity_name}] " if entity_name else ""
        super().__init__(f"{prefix}{message}")


class NavigationError(BotError):
    """Navigation to a view failed."""

    def __init__(self, view: str, message: Optional[str] = None):
        self.view = view
        super().__init__(message or f"Failed to navigate to {view}")


class LoginError(BotError):
    """The session could not be authenticated."""

    def __init__(self, message: str = "Login failed"):
        super().__init__(message)


class ActionError(BotError):
    """A UI action did not take effect."""

    def __init__(self, action: str, details: Optional[str] = None):
        self.action = action
        self.details = details
        message = f"Action '{action}' failed"
        if details:
            message = f"{message}: {details}"
        super().__init__(message)
