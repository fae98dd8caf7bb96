"""
Domain model for castles, units and decision-service recommendations.

Raw payloads (from a UI adapter or the decision service) are normalized
exactly once, here. Everything downstream can rely on complete mappings and
non-negative numbers.
"""

import re
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, Any, Dict, List, Mapping, Type, TypeVar

from castle_bot.logging import get_logger

logger = get_logger(__name__)

E = TypeVar("E", bound=Enum)


class BuildingType(str, Enum):
    """Buildings, in the column order of the global overview."""

    KEEP = "KEEP"
    ARSENAL = "ARSENAL"
    TAVERN = "TAVERN"
    LIBRARY = "LIBRARY"
    FORTIFICATIONS = "FORTIFICATIONS"
    MARKET = "MARKET"
    FARM = "FARM"
    LUMBERJACK = "LUMBERJACK"
    WOOD_STORE = "WOOD_STORE"
    QUARRY = "QUARRY"
    STONE_STORE = "STONE_STORE"
    ORE_MINE = "ORE_MINE"
    ORE_STORE = "ORE_STORE"


class UnitType(str, Enum):
    """Recruitable units, in the column order of the recruitment overview."""

    SPEARMAN = "SPEARMAN"
    SWORDSMAN = "SWORDSMAN"
    ARCHER = "ARCHER"
    CROSSBOWMAN = "CROSSBOWMAN"
    HORSEMAN = "HORSEMAN"
    LANCER = "LANCER"
    HANDCART = "HANDCART"


class Technology(str, Enum):
    """Library technologies."""

    LONGBOW = "LONGBOW"
    CROP_ROTATION = "CROP_ROTATION"
    YOKE = "YOKE"
    CELLAR_STOREROOM = "CELLAR_STOREROOM"
    STIRRUP = "STIRRUP"
    CROSSBOW = "CROSSBOW"
    SWORDSMITH = "SWORDSMITH"
    HORSE_ARMOUR = "HORSE_ARMOUR"


class ResourceType(str, Enum):
    """Castle resources."""

    WOOD = "WOOD"
    STONE = "STONE"
    ORE = "ORE"
    FOOD = "FOOD"


# Display names as rendered by the game
BUILDING_DISPLAY_NAMES: Dict[BuildingType, str] = {
    BuildingType.KEEP: "Keep",
    BuildingType.ARSENAL: "Arsenal",
    BuildingType.TAVERN: "Tavern",
    BuildingType.LIBRARY: "Library",
    BuildingType.FORTIFICATIONS: "Fortifications",
    BuildingType.MARKET: "Market",
    BuildingType.FARM: "Farm",
    BuildingType.LUMBERJACK: "Lumberjack",
    BuildingType.WOOD_STORE: "Wood store",
    BuildingType.QUARRY: "Quarry",
    BuildingType.STONE_STORE: "Stone store",
    BuildingType.ORE_MINE: "Ore mine",
    BuildingType.ORE_STORE: "Ore store",
}

UNIT_DISPLAY_NAMES: Dict[UnitType, str] = {
    UnitType.SPEARMAN: "Spearman",
    UnitType.SWORDSMAN: "Swordsman",
    UnitType.ARCHER: "Archer",
    UnitType.CROSSBOWMAN: "Crossbowman",
    UnitType.HORSEMAN: "Armoured horseman",
    UnitType.LANCER: "Lancer horseman",
    UnitType.HANDCART: "Handcart",
}

_DURATION_UNITS_MS = {
    "second": 1_000,
    "minute": 60_000,
    "hour": 3_600_000,
    "day": 86_400_000,
}

_DURATION_RE = re.compile(r"(\d+)\s*(second|minute|hour|day)s?", re.IGNORECASE)


def parse_duration_ms(text: Optional[str]) -> Optional[int]:
    """Parse strings such as "2 minutes" or "1 hour" into milliseconds."""
    if not text:
        return None
    match = _DURATION_RE.search(text)
    if not match:
        return None
    return int(match.group(1)) * _DURATION_UNITS_MS[match.group(2).lower()]


def _to_enum(enum_cls: Type[E], value: Any) -> Optional[E]:
    """Map a raw key onto an enum member, or None if unknown."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).upper())
    except ValueError:
        logger.debug("Unknown enum value dropped", enum=enum_cls.__name__, value=value)
        return None


def _non_negative_int(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class ConstructionStatus:
    """In-progress construction of one building."""

    is_active: bool = False
    target_level: Optional[int] = None
    time_remaining_ms: Optional[int] = None


@dataclass
class Entity:
    """Snapshot of one castle as read from the overview."""

    name: str
    resources: Dict[ResourceType, int] = field(default_factory=dict)
    levels: Dict[BuildingType, int] = field(default_factory=dict)
    can_upgrade: Dict[BuildingType, bool] = field(default_factory=dict)
    construction: Dict[BuildingType, ConstructionStatus] = field(default_factory=dict)
    active_actions: int = 0

    def min_time_remaining_ms(self) -> Optional[int]:
        """Shortest remaining construction time, if any timer is visible."""
        times = [
            status.time_remaining_ms
            for status in self.construction.values()
            if status.is_active and status.time_remaining_ms is not None
        ]
        return min(times) if times else None

    def upgradable(self) -> List[BuildingType]:
        """Buildings whose upgrade button is enabled, in overview order."""
        return [b for b in BuildingType if self.can_upgrade.get(b, False)]

    def to_request(self) -> Dict[str, Any]:
        """Serialize for the decision service."""
        return {
            "name": self.name,
            "resources": {r.value: amount for r, amount in self.resources.items()},
            "buildings": [
                {"type": b.value, "level": level} for b, level in self.levels.items()
            ],
        }


@dataclass
class EntityCounts:
    """Unit counts of one castle."""

    name: str
    counts: Dict[UnitType, int] = field(default_factory=dict)


@dataclass(frozen=True)
class BuildAction:
    """Next building upgrade recommended for a castle."""

    building: BuildingType
    from_level: int
    to_level: int
    start_time_s: int = 0


@dataclass(frozen=True)
class ResearchAction:
    """Next technology recommended for research."""

    technology: Optional[Technology]
    start_time_s: int = 0


@dataclass(frozen=True)
class Recommendation:
    """Advisory output of the decision service for one castle; never cached."""

    build_action: Optional[BuildAction] = None
    research_action: Optional[ResearchAction] = None
    objective_satisfied: bool = False
    target_composition: Mapping[UnitType, int] = field(default_factory=dict)

    @classmethod
    def from_response(cls, data: Optional[Mapping[str, Any]]) -> "Recommendation":
        """Normalize a decision-service JSON payload."""
        data = data or {}

        build_action = None
        raw_build = data.get("next_action")
        if raw_build:
            building = _to_enum(BuildingType, raw_build.get("building"))
            if building is not None:
                build_action = BuildAction(
                    building=building,
                    from_level=_non_negative_int(raw_build.get("from_level")),
                    to_level=_non_negative_int(raw_build.get("to_level")),
                    start_time_s=_non_negative_int(raw_build.get("start_time_s")),
                )

        research_action = None
        raw_research = data.get("next_research_action")
        if raw_research:
            research_action = ResearchAction(
                technology=_to_enum(Technology, raw_research.get("technology")),
                start_time_s=_non_negative_int(raw_research.get("start_time_s")),
            )

        units = data.get("units_recommendation") or {}
        composition: Dict[UnitType, int] = {}
        for entry in units.get("unit_counts") or []:
            unit = _to_enum(UnitType, entry.get("type"))
            if unit is not None:
                composition[unit] = _non_negative_int(entry.get("count"))

        return cls(
            build_action=build_action,
            research_action=research_action,
            objective_satisfied=bool(units.get("build_order_complete", False)),
            target_composition=composition,
        )


def normalize_entity(raw: Mapping[str, Any], index: int = 0) -> Entity:
    """
    Build an Entity from an adapter payload.

    Expected shape::

        {"name": "Castle A",
         "resources": {"WOOD": 120, ...},
         "buildings": {"LUMBERJACK": {"level": 5, "can_upgrade": true,
                                      "construction": {"target_level": 6,
                                                       "time_remaining_ms": 90000}}},
         "active_actions": 1}

    A construction may carry the scraped ``time_remaining`` text ("2 minutes")
    instead of ``time_remaining_ms``.
    Missing fields get defaults; ``active_actions`` defaults to the number
    of active constructions.
    """
    name = str(raw.get("name") or f"Castle {index + 1}")

    resources: Dict[ResourceType, int] = {r: 0 for r in ResourceType}
    for key, amount in (raw.get("resources") or {}).items():
        resource = _to_enum(ResourceType, key)
        if resource is not None:
            resources[resource] = _non_negative_int(amount)

    levels: Dict[BuildingType, int] = {}
    can_upgrade: Dict[BuildingType, bool] = {}
    construction: Dict[BuildingType, ConstructionStatus] = {}

    for key, info in (raw.get("buildings") or {}).items():
        building = _to_enum(BuildingType, key)
        if building is None:
            continue
        info = info or {}
        levels[building] = _non_negative_int(info.get("level"))
        can_upgrade[building] = bool(info.get("can_upgrade", False))

        raw_construction = info.get("construction")
        if raw_construction:
            remaining_ms = _optional_int(raw_construction.get("time_remaining_ms"))
            if remaining_ms is None:
                remaining_ms = parse_duration_ms(raw_construction.get("time_remaining"))
            construction[building] = ConstructionStatus(
                is_active=True,
                target_level=_optional_int(raw_construction.get("target_level")),
                time_remaining_ms=remaining_ms,
            )

    active = raw.get("active_actions")
    active_actions = _non_negative_int(active) if active is not None else len(construction)

    return Entity(
        name=name,
        resources=resources,
        levels=levels,
        can_upgrade=can_upgrade,
        construction=construction,
        active_actions=active_actions,
    )


def normalize_counts(raw: Mapping[str, Any], index: int = 0) -> EntityCounts:
    """Build EntityCounts from ``{"name": ..., "counts": {"ARCHER": 10}}``."""
    counts: Dict[UnitType, int] = {u: 0 for u in UnitType}
    for key, amount in (raw.get("counts") or {}).items():
        unit = _to_enum(UnitType, key)
        if unit is not None:
            counts[unit] = _non_negative_int(amount)
    return EntityCounts(name=str(raw.get("name") or f"Castle {index + 1}"), counts=counts)


@dataclass
class CycleStats:
    """Successful actions per category within one cycle."""

    entities: int = 0
    entities_skipped: int = 0
    free_finishes: int = 0
    upgrades: int = 0
    research: int = 0
    recruits: int = 0
    trades: int = 0
    missions: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class CycleResult:
    """
    Outcome of one orchestration cycle.

    The sole contract between one cycle and the next. ``sleep_ms`` of None
    means "use the configured loop interval". ``hard_failure`` marks failures
    that count towards session-reset escalation.
    """

    success: bool
    sleep_ms: Optional[int] = None
    error: Optional[str] = None
    hard_failure: bool = False
    min_time_remaining_ms: Optional[int] = None
    stats: CycleStats = field(default_factory=CycleStats)
