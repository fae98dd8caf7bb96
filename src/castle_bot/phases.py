"""
Phase determination for a single castle.

Pure functions: the phase is recomputed from scratch every cycle and inputs
are never mutated. There is no terminal phase; a castle in TRADING drops
back to RECRUITING as soon as the target composition grows.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Mapping, Dict

from castle_bot.models import Recommendation, UnitType


class Phase(str, Enum):
    """What the loop should do for a castle this cycle."""

    BUILDING = "building"
    RECRUITING = "recruiting"
    TRADING = "trading"
    MISSIONS = "missions"


@dataclass(frozen=True)
class PhaseResult:
    """Phase plus the per-unit shortfall (empty unless RECRUITING)."""

    phase: Phase
    deficits: Mapping[UnitType, int] = field(default_factory=dict)


@dataclass(frozen=True)
class CompositionRow:
    current: int
    target: int
    deficit: int


def determine_phase(
    recommendation: Optional[Recommendation],
    current_counts: Optional[Mapping[UnitType, int]],
) -> PhaseResult:
    """
    Decide the phase of a castle.

    BUILDING while the build objective is not satisfied (or no
    recommendation is available), RECRUITING while any unit type is below
    its target, TRADING otherwise. Counts above target are not deficits.
    """
    if recommendation is None or not recommendation.objective_satisfied:
        return PhaseResult(Phase.BUILDING)

    current_counts = current_counts or {}
    deficits: Dict[UnitType, int] = {}
    for unit, target in recommendation.target_composition.items():
        missing = max(0, target - current_counts.get(unit, 0))
        if missing > 0:
            deficits[unit] = missing

    if deficits:
        return PhaseResult(Phase.RECRUITING, deficits)

    return PhaseResult(Phase.TRADING)


def compare_composition(
    current: Optional[Mapping[UnitType, int]],
    target: Mapping[UnitType, int],
) -> Dict[UnitType, CompositionRow]:
    """Current vs. target count for every unit type in the target."""
    current = current or {}
    return {
        unit: CompositionRow(
            current=current.get(unit, 0),
            target=wanted,
            deficit=max(0, wanted - current.get(unit, 0)),
        )
        for unit, wanted in target.items()
    }


def is_mission_eligible(result: PhaseResult) -> bool:
    """Missions run for castles that have nothing left to build or recruit."""
    return result.phase in (Phase.TRADING, Phase.MISSIONS)
