"""
Collaborator protocols consumed by the orchestrator.

Site-specific scraping and clicking live behind these. Every method is
expected to bound its own waits; the orchestrator still treats each call as
fallible and wraps it.
"""

from typing import Protocol, List, Mapping, Optional, Any, runtime_checkable

from castle_bot.health import View
from castle_bot.models import (
    BuildingType,
    Entity,
    EntityCounts,
    Recommendation,
    Technology,
    UnitType,
)


@runtime_checkable
class SessionNavigator(Protocol):
    """Keeps the browser session on the game and logged in."""

    async def ensure_location(self) -> bool: ...

    async def dismiss_overlays(self) -> int: ...

    async def ensure_logged_in(self) -> bool: ...

    async def navigate_to(self, view: View) -> bool: ...


@runtime_checkable
class UIReader(Protocol):
    """Reads castle state from the rendered overview pages."""

    async def read_entities(self) -> List[Entity]: ...

    async def read_counts(self) -> List[EntityCounts]: ...


@runtime_checkable
class UIActions(Protocol):
    """Mutating UI actions. Each returns whether it took effect."""

    async def upgrade(self, index: int, building: BuildingType) -> bool: ...

    async def research(self, technology: Technology) -> bool: ...

    async def recruit(self, index: int, unit: UnitType, amount: int) -> bool: ...

    async def trade(self, index: int) -> bool: ...

    async def start_missions(self, index: int) -> int: ...

    async def finish_free(self) -> int: ...


@runtime_checkable
class GameInterface(SessionNavigator, UIReader, UIActions, Protocol):
    """Everything an adapter factory must provide."""

    @property
    def page(self) -> Any: ...


@runtime_checkable
class DecisionService(Protocol):
    """Stateless advisor: what should this castle do next?"""

    async def solve(
        self,
        entity: Entity,
        targets: Optional[Mapping[BuildingType, int]] = None,
    ) -> Recommendation: ...

    async def close(self) -> None: ...
