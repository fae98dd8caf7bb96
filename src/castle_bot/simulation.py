"""
In-memory simulation of the game and the decision service.

Deterministic for a given seed. Used by ``castle-bot simulate`` and by the
tests; time is virtual and only moves when ``advance()`` is called.
"""

import random
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Set, Mapping, Any, Callable

from castle_bot.config import HealthConfig, RecoveryConfig, SleepConfig, HOME_URL
from castle_bot.errors import ActionError, DecisionServiceError, LoginError, NavigationError
from castle_bot.health import View
from castle_bot.logging import get_logger
from castle_bot.models import (
    BuildingType, UnitType, Technology, Entity, EntityCounts, Recommendation,
    normalize_entity, normalize_counts,
)
from castle_bot.recovery import dismiss_overlays
from castle_bot.solver import DEFAULT_TARGETS

logger = get_logger(__name__)

BUILD_TIME_PER_LEVEL_MS = 60_000
MISSION_DURATION_MS = 30 * 60_000
MAX_LEVEL = 40

DEFAULT_COMPOSITION: Dict[UnitType, int] = {
    UnitType.SPEARMAN: 40,
    UnitType.ARCHER: 40,
    UnitType.HANDCART: 10,
}

DEFAULT_RESEARCH_PLAN: List[Technology] = [
    Technology.LONGBOW,
    Technology.CROP_ROTATION,
    Technology.YOKE,
    Technology.CELLAR_STOREROOM,
]


class _Locator:
    def __init__(self, page: "SimulatedPage", selector: str):
        self._page = page
        self._selector = selector

    @property
    def first(self) -> "_Locator":
        return self

    async def is_visible(self) -> bool:
        return self._selector in self._page.visible

    async def text_content(self) -> Optional[str]:
        return self._page.texts.get(self._selector)

    async def click(self) -> None:
        if self._selector not in self._page.visible:
            raise ActionError("click", f"{self._selector} not visible")
        self._page.clicks.append(self._selector)
        if self._selector in self._page.dismissable:
            self._page.visible.discard(self._selector)
            self._page.dismissable.discard(self._selector)


class _Context:
    def __init__(self) -> None:
        self.cookies_cleared = 0

    async def clear_cookies(self) -> None:
        self.cookies_cleared += 1


class SimulatedPage:
    """
    The subset of a Playwright page the health checker and recovery use.

    ``visible`` is the set of selectors currently on screen.
    """

    def __init__(self, url: str = "about:blank"):
        self.url = url
        self.visible: Set[str] = set()
        self.dismissable: Set[str] = set()
        self.texts: Dict[str, str] = {}
        self.clicks: List[str] = []
        self.reloads = 0
        self.navigations: List[str] = []
        self.context = _Context()
        self._reload_hooks: List[Callable[[], None]] = []

    def locator(self, selector: str) -> _Locator:
        return _Locator(self, selector)

    def show(self, selector: str, text: Optional[str] = None, dismissable: bool = False) -> None:
        self.visible.add(selector)
        if text is not None:
            self.texts[selector] = text
        if dismissable:
            self.dismissable.add(selector)

    def hide(self, selector: str) -> None:
        self.visible.discard(selector)
        self.dismissable.discard(selector)

    def on_reload(self, hook: Callable[[], None]) -> None:
        self._reload_hooks.append(hook)

    async def reload(self, **kwargs: Any) -> None:
        self.reloads += 1
        for hook in self._reload_hooks:
            hook()

    async def goto(self, url: str, **kwargs: Any) -> None:
        self.url = url
        self.navigations.append(url)
        for hook in self._reload_hooks:
            hook()

    async def evaluate(self, script: str) -> Dict[str, Any]:
        return {"js_heap_used": None, "js_heap_total": None, "dom_nodes": 100 + 10 * len(self.visible)}

    async def screenshot(self, path: str, full_page: bool = False) -> bytes:
        return b""

    async def content(self) -> str:
        return "<html><body>" + "".join(f"<div>{s}</div>" for s in sorted(self.visible)) + "</body></html>"


@dataclass
class SimulatedCastle:
    name: str
    levels: Dict[BuildingType, int]
    units: Dict[UnitType, int] = field(default_factory=dict)
    constructions: Dict[BuildingType, int] = field(default_factory=dict)  # building -> done at (ms)
    missions_until_ms: int = 0
    trades: int = 0


class SimulatedGame:
    """
    ``GameInterface`` over a handful of simulated castles.

    Constructions take ``(level + 1)`` minutes and complete when the virtual
    clock passes them. ``failure_rate`` makes actions raise at random to
    exercise recovery. ``freeze()`` makes reads return the last snapshot
    until the page is reloaded, like a desynchronized DOM.
    """

    def __init__(
        self,
        castles: List[SimulatedCastle],
        page: Optional[SimulatedPage] = None,
        health: Optional[HealthConfig] = None,
        recovery: Optional[RecoveryConfig] = None,
        max_building_queue: int = 2,
        free_finish_threshold_ms: int = SleepConfig().free_finish_threshold_ms,
        failure_rate: float = 0.0,
        seed: Optional[int] = None,
    ):
        self.castles = castles
        self._page = page or SimulatedPage()
        self.health = health or HealthConfig()
        self.recovery = recovery or RecoveryConfig()
        self.max_building_queue = max_building_queue
        self.free_finish_threshold_ms = free_finish_threshold_ms
        self.failure_rate = failure_rate
        self.researched: Set[Technology] = set()
        self.logged_in = False
        self.now_ms = 0
        self.calls: List[str] = []

        self._rng = random.Random(seed)
        self._frozen = False
        self._frozen_entities: Optional[List[Entity]] = None
        self._page.on_reload(self._unfreeze)

    @classmethod
    def create(
        cls,
        entities: int = 3,
        targets: Optional[Mapping[BuildingType, int]] = None,
        seed: Optional[int] = None,
        **kwargs: Any,
    ) -> "SimulatedGame":
        """
        A world where odd-numbered castles have finished building and
        even-numbered ones start below their targets.
        """
        targets = dict(targets or DEFAULT_TARGETS)
        rng = random.Random(seed)
        castles = []
        for i in range(entities):
            if i % 2:
                levels = dict(targets)
            else:
                levels = {b: rng.randint(1, max(1, t - 1)) for b, t in targets.items()}
            castles.append(SimulatedCastle(name=f"Castle {i + 1}", levels=levels))
        return cls(castles, seed=seed, **kwargs)

    @property
    def page(self) -> SimulatedPage:
        return self._page

    def advance(self, ms: int) -> None:
        """Move the virtual clock forward and complete due constructions."""
        self.now_ms += ms
        self._complete_due()

    def freeze(self) -> None:
        self._frozen = True

    def _unfreeze(self) -> None:
        self._frozen = False
        self._frozen_entities = None

    def _complete_due(self, threshold_ms: int = 0) -> int:
        completed = 0
        for castle in self.castles:
            for building, done_at in list(castle.constructions.items()):
                if done_at - self.now_ms <= threshold_ms:
                    castle.levels[building] = castle.levels.get(building, 0) + 1
                    del castle.constructions[building]
                    completed += 1
        return completed

    def _should_fail(self, action: str) -> bool:
        self.calls.append(action)
        return bool(self.failure_rate) and self._rng.random() < self.failure_rate

    def _maybe_fail(self, action: str) -> None:
        if self._should_fail(action):
            raise ActionError(action, "simulated failure")

    def _castle(self, index: int) -> SimulatedCastle:
        try:
            return self.castles[index]
        except IndexError:
            raise ActionError("select_castle", f"no castle at index {index}")

    # SessionNavigator

    async def ensure_location(self) -> bool:
        self._maybe_fail("ensure_location")
        if not any(p in self._page.url for p in ("lordsandknights", "lnk.")):
            await self._page.goto(self.recovery.home_url or HOME_URL)
        return True

    async def dismiss_overlays(self) -> int:
        return await dismiss_overlays(self._page, self.recovery.popup_selectors, settle_ms=0)

    async def ensure_logged_in(self) -> bool:
        if self._should_fail("ensure_logged_in"):
            raise LoginError("Simulated session expiry")
        self.logged_in = True
        return True

    async def navigate_to(self, view: View) -> bool:
        if self._should_fail(f"navigate_{view.value}"):
            raise NavigationError(view.value)
        for selector in self.health.view_selectors.values():
            self._page.hide(selector)
        selector = self.health.view_selectors.get(view.value)
        if selector:
            self._page.show(selector)
        return True

    # UIReader

    async def read_entities(self) -> List[Entity]:
        self._maybe_fail("read_entities")
        if self._frozen and self._frozen_entities is not None:
            return self._frozen_entities

        entities = [normalize_entity(self._raw_castle(c), i) for i, c in enumerate(self.castles)]
        if self._frozen:
            self._frozen_entities = entities
        return entities

    async def read_counts(self) -> List[EntityCounts]:
        self._maybe_fail("read_counts")
        return [
            normalize_counts({"name": c.name, "counts": {u.value: n for u, n in c.units.items()}}, i)
            for i, c in enumerate(self.castles)
        ]

    def _raw_castle(self, castle: SimulatedCastle) -> Dict[str, Any]:
        queue_full = len(castle.constructions) >= self.max_building_queue
        buildings: Dict[str, Any] = {}
        for building, level in castle.levels.items():
            info: Dict[str, Any] = {
                "level": level,
                "can_upgrade": not queue_full and building not in castle.constructions and level < MAX_LEVEL,
            }
            if building in castle.constructions:
                info["construction"] = {
                    "target_level": level + 1,
                    "time_remaining_ms": max(0, castle.constructions[building] - self.now_ms),
                }
            buildings[building.value] = info
        return {
            "name": castle.name,
            "resources": {"WOOD": 1000, "STONE": 1000, "ORE": 1000, "FOOD": 500},
            "buildings": buildings,
        }

    # UIActions

    async def upgrade(self, index: int, building: BuildingType) -> bool:
        self._maybe_fail("upgrade")
        castle = self._castle(index)
        if len(castle.constructions) >= self.max_building_queue or building in castle.constructions:
            return False
        level = castle.levels.get(building, 0)
        if level >= MAX_LEVEL:
            return False
        castle.constructions[building] = self.now_ms + (level + 1) * BUILD_TIME_PER_LEVEL_MS
        return True

    async def research(self, technology: Technology) -> bool:
        self._maybe_fail("research")
        if technology in self.researched:
            return False
        self.researched.add(technology)
        return True

    async def recruit(self, index: int, unit: UnitType, amount: int) -> bool:
        self._maybe_fail("recruit")
        castle = self._castle(index)
        castle.units[unit] = castle.units.get(unit, 0) + amount
        return True

    async def trade(self, index: int) -> bool:
        self._maybe_fail("trade")
        self._castle(index).trades += 1
        return True

    async def start_missions(self, index: int) -> int:
        self._maybe_fail("start_missions")
        castle = self._castle(index)
        if castle.levels.get(BuildingType.TAVERN, 0) < 1 or castle.missions_until_ms > self.now_ms:
            return 0
        castle.missions_until_ms = self.now_ms + MISSION_DURATION_MS
        return 1

    async def finish_free(self) -> int:
        self._maybe_fail("finish_free")
        return self._complete_due(self.free_finish_threshold_ms)


class SimulatedDecisionService:
    """
    Rule-based stand-in for the decision service.

    Builds the lowest building below its target, researches the next
    technology of ``research_plan`` not yet in ``researched`` and asks for
    ``composition`` once every target is reached. Responses go through the
    same JSON normalization as the HTTP client's.
    """

    def __init__(
        self,
        composition: Optional[Mapping[UnitType, int]] = None,
        research_plan: Optional[List[Technology]] = None,
        researched: Optional[Set[Technology]] = None,
        fail_for: Optional[Set[str]] = None,
    ):
        self.composition = dict(composition or DEFAULT_COMPOSITION)
        self.research_plan = list(research_plan if research_plan is not None else DEFAULT_RESEARCH_PLAN)
        self.researched = researched if researched is not None else set()
        self.fail_for = set(fail_for or ())
        self.calls = 0
        self.closed = False

    async def solve(self, entity: Entity, targets: Mapping[BuildingType, int]) -> Recommendation:
        self.calls += 1
        if entity.name in self.fail_for:
            raise DecisionServiceError("simulated solver failure", entity.name)
        return Recommendation.from_response(self.build_response(entity, targets))

    def build_response(self, entity: Entity, targets: Mapping[BuildingType, int]) -> Dict[str, Any]:
        missing = [
            (entity.levels.get(b, 0), b)
            for b in BuildingType
            if b in targets and entity.levels.get(b, 0) < targets[b]
        ]

        response: Dict[str, Any] = {}
        if missing:
            level, building = min(missing, key=lambda item: item[0])
            response["next_action"] = {
                "building": building.value,
                "from_level": level,
                "to_level": level + 1,
                "start_time_s": 0,
            }

        pending = [t for t in self.research_plan if t not in self.researched]
        if pending and entity.levels.get(BuildingType.LIBRARY, 0) >= 1:
            response["next_research_action"] = {"technology": pending[0].value, "start_time_s": 0}

        response["units_recommendation"] = {
            "build_order_complete": not missing,
            "unit_counts": [{"type": u.value, "count": n} for u, n in self.composition.items()],
        }
        return response

    async def close(self) -> None:
        self.closed = True
