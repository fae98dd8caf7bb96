"""
Tests for phase determination.
"""

import itertools
import random

from castle_bot.models import Recommendation, UnitType
from castle_bot.phases import (
    Phase,
    PhaseResult,
    determine_phase,
    compare_composition,
    is_mission_eligible,
)


def recommendation(satisfied=True, composition=None):
    return Recommendation(
        objective_satisfied=satisfied,
        target_composition=dict(composition or {}),
    )


class TestDeterminePhase:
    """Tests for determine_phase."""

    def test_no_recommendation_is_building(self):
        """Test a castle without recommendation is still building."""
        result = determine_phase(None, {UnitType.ARCHER: 5})

        assert result.phase == Phase.BUILDING
        assert dict(result.deficits) == {}

    def test_objective_not_satisfied_is_building(self):
        """Test unsatisfied build objective wins over unit counts."""
        rec = recommendation(satisfied=False, composition={UnitType.ARCHER: 100})

        assert determine_phase(rec, {}).phase == Phase.BUILDING

    def test_recruiting_with_deficits(self):
        """Test missing units produce exactly the shortfall."""
        rec = recommendation(composition={UnitType.ARCHER: 100, UnitType.SPEARMAN: 50})

        result = determine_phase(rec, {UnitType.ARCHER: 60, UnitType.SPEARMAN: 50})

        assert result.phase == Phase.RECRUITING
        assert dict(result.deficits) == {UnitType.ARCHER: 40}

    def test_missing_counts_default_to_zero(self):
        """Test unknown current counts count as zero."""
        rec = recommendation(composition={UnitType.HANDCART: 10})

        result = determine_phase(rec, None)

        assert dict(result.deficits) == {UnitType.HANDCART: 10}

    def test_trading_when_composition_met(self):
        """Test a complete composition means trading."""
        rec = recommendation(composition={UnitType.ARCHER: 100})

        result = determine_phase(rec, {UnitType.ARCHER: 100})

        assert result.phase == Phase.TRADING
        assert dict(result.deficits) == {}

    def test_over_recruited_is_trading(self):
        """Test counts above target are not deficits."""
        rec = recommendation(composition={UnitType.ARCHER: 100})

        assert determine_phase(rec, {UnitType.ARCHER: 150}).phase == Phase.TRADING

    def test_empty_composition_is_trading(self):
        """Test a satisfied objective with nothing to recruit is trading."""
        assert determine_phase(recommendation(), {}).phase == Phase.TRADING

    def test_no_terminal_state(self):
        """Test a trading castle drops back to recruiting when targets grow."""
        current = {UnitType.ARCHER: 100}

        assert determine_phase(recommendation(composition={UnitType.ARCHER: 100}), current).phase == Phase.TRADING
        assert determine_phase(recommendation(composition={UnitType.ARCHER: 120}), current).phase == Phase.RECRUITING

    def test_inputs_not_mutated(self):
        """Test determine_phase is pure."""
        composition = {UnitType.ARCHER: 100}
        current = {UnitType.ARCHER: 10}
        rec = recommendation(composition=composition)

        determine_phase(rec, current)

        assert current == {UnitType.ARCHER: 10}
        assert dict(rec.target_composition) == {UnitType.ARCHER: 100}

    def test_deterministic(self):
        """Test identical inputs always give identical results."""
        rng = random.Random(7)
        for _ in range(50):
            target = {u: rng.randint(0, 50) for u in UnitType}
            current = {u: rng.randint(0, 50) for u in UnitType}
            rec = recommendation(satisfied=rng.random() > 0.3, composition=target)

            assert determine_phase(rec, current) == determine_phase(rec, dict(current))

    def test_deficit_correctness(self):
        """Test deficits are exactly the positive shortfalls."""
        for cur, tgt in itertools.product(range(0, 4), repeat=2):
            rec = recommendation(composition={UnitType.LANCER: tgt})
            result = determine_phase(rec, {UnitType.LANCER: cur})

            if tgt > cur:
                assert result.phase == Phase.RECRUITING
                assert dict(result.deficits) == {UnitType.LANCER: tgt - cur}
            else:
                assert result.phase == Phase.TRADING


class TestCompareComposition:
    """Tests for compare_composition."""

    def test_rows(self):
        """Test rows hold current, target and deficit."""
        rows = compare_composition({UnitType.ARCHER: 30}, {UnitType.ARCHER: 50, UnitType.LANCER: 5})

        assert rows[UnitType.ARCHER].current == 30
        assert rows[UnitType.ARCHER].deficit == 20
        assert rows[UnitType.LANCER].current == 0
        assert rows[UnitType.LANCER].deficit == 5

    def test_no_negative_deficit(self):
        """Test surplus shows zero deficit."""
        rows = compare_composition({UnitType.ARCHER: 80}, {UnitType.ARCHER: 50})

        assert rows[UnitType.ARCHER].deficit == 0


class TestMissionEligibility:
    """Tests for is_mission_eligible."""

    def test_trading_is_eligible(self):
        """Test missions follow trading eligibility."""
        assert is_mission_eligible(PhaseResult(Phase.TRADING)) is True
        assert is_mission_eligible(PhaseResult(Phase.MISSIONS)) is True

    def test_other_phases_not_eligible(self):
        """Test building and recruiting castles do not run missions."""
        assert is_mission_eligible(PhaseResult(Phase.BUILDING)) is False
        assert is_mission_eligible(PhaseResult(Phase.RECRUITING, {UnitType.ARCHER: 1})) is False


class TestPhaseExamples:
    """Worked examples of phase determination."""

    def test_building_ignores_large_counts(self):
        """Test unsatisfied objective with 999 spearmen is BUILDING."""
        rec = recommendation(satisfied=False, composition={UnitType.SPEARMAN: 100})

        result = determine_phase(rec, {UnitType.SPEARMAN: 999})

        assert result.phase == Phase.BUILDING
        assert dict(result.deficits) == {}

    def test_recruiting_two_unit_types(self):
        """Test both short unit types appear in the deficits."""
        rec = recommendation(composition={UnitType.SPEARMAN: 100, UnitType.ARCHER: 50})

        result = determine_phase(rec, {UnitType.SPEARMAN: 80})

        assert result.phase == Phase.RECRUITING
        assert dict(result.deficits) == {UnitType.SPEARMAN: 20, UnitType.ARCHER: 50}

    def test_surplus_spearmen_trade(self):
        """Test 150 of 100 spearmen means TRADING with no deficits."""
        rec = recommendation(composition={UnitType.SPEARMAN: 100})

        result = determine_phase(rec, {UnitType.SPEARMAN: 150})

        assert result.phase == Phase.TRADING
        assert dict(result.deficits) == {}
