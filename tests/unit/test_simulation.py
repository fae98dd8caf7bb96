"""
Tests for the in-memory game simulation.
"""

import asyncio

import pytest

from castle_bot.errors import ActionError, DecisionServiceError, LoginError, NavigationError
from castle_bot.health import View
from castle_bot.models import BuildingType, Technology, UnitType
from castle_bot.simulation import (
    BUILD_TIME_PER_LEVEL_MS,
    MISSION_DURATION_MS,
    SimulatedCastle,
    SimulatedDecisionService,
    SimulatedGame,
)
from castle_bot.solver import DEFAULT_TARGETS


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def single_castle(**levels):
    levels = {BuildingType[k]: v for k, v in levels.items()} or {BuildingType.FARM: 1}
    return SimulatedGame([SimulatedCastle(name="Castle 1", levels=levels)])


class TestSimulatedGame:
    """Tests for SimulatedGame."""

    def test_create(self):
        game = SimulatedGame.create(entities=3, seed=1)

        assert [c.name for c in game.castles] == ["Castle 1", "Castle 2", "Castle 3"]
        assert game.castles[1].levels == DEFAULT_TARGETS
        assert all(game.castles[0].levels[b] < t for b, t in DEFAULT_TARGETS.items())

    def test_create_is_deterministic(self):
        first = SimulatedGame.create(entities=2, seed=9)
        second = SimulatedGame.create(entities=2, seed=9)

        assert first.castles[0].levels == second.castles[0].levels

    def test_ensure_location_navigates_home(self):
        game = single_castle()

        assert run_async(game.ensure_location()) is True
        assert game.page.navigations == ["https://lordsandknights.com/"]

    def test_navigate_shows_view_marker(self):
        game = single_castle()
        marker = game.health.view_selectors["recruitment"]

        run_async(game.navigate_to(View.RECRUITMENT))

        assert marker in game.page.visible

    def test_upgrade_and_completion(self):
        game = single_castle(FARM=2)

        assert run_async(game.upgrade(0, BuildingType.FARM)) is True
        entity = run_async(game.read_entities())[0]
        assert entity.construction[BuildingType.FARM].time_remaining_ms == 3 * BUILD_TIME_PER_LEVEL_MS
        assert entity.active_actions == 1

        game.advance(3 * BUILD_TIME_PER_LEVEL_MS)

        assert game.castles[0].levels[BuildingType.FARM] == 3
        assert run_async(game.read_entities())[0].construction == {}

    def test_queue_limit(self):
        game = single_castle(FARM=1, KEEP=1, MARKET=1)

        assert run_async(game.upgrade(0, BuildingType.FARM)) is True
        assert run_async(game.upgrade(0, BuildingType.FARM)) is False
        assert run_async(game.upgrade(0, BuildingType.KEEP)) is True
        assert run_async(game.upgrade(0, BuildingType.MARKET)) is False

        entity = run_async(game.read_entities())[0]
        assert entity.upgradable() == []

    def test_finish_free(self):
        game = single_castle(FARM=1)
        run_async(game.upgrade(0, BuildingType.FARM))

        assert run_async(game.finish_free()) == 1
        assert game.castles[0].levels[BuildingType.FARM] == 2

    def test_missions_need_tavern_and_idle(self):
        game = single_castle(TAVERN=1)

        assert run_async(game.start_missions(0)) == 1
        assert run_async(game.start_missions(0)) == 0

        game.advance(MISSION_DURATION_MS)

        assert run_async(game.start_missions(0)) == 1

    def test_no_missions_without_tavern(self):
        assert run_async(single_castle(FARM=1).start_missions(0)) == 0

    def test_recruit_and_counts(self):
        game = single_castle()

        run_async(game.recruit(0, UnitType.ARCHER, 25))
        counts = run_async(game.read_counts())

        assert counts[0].counts[UnitType.ARCHER] == 25
        assert counts[0].counts[UnitType.LANCER] == 0

    def test_research_once(self):
        game = single_castle()

        assert run_async(game.research(Technology.LONGBOW)) is True
        assert run_async(game.research(Technology.LONGBOW)) is False

    def test_unknown_castle(self):
        with pytest.raises(ActionError):
            run_async(single_castle().trade(3))

    def test_freeze_until_reload(self):
        """Test a frozen page keeps serving the old snapshot."""
        game = single_castle(FARM=1)
        run_async(game.upgrade(0, BuildingType.FARM))
        game.freeze()
        before = run_async(game.read_entities())

        game.advance(30_000)

        assert run_async(game.read_entities()) == before
        run_async(game.page.reload())
        after = run_async(game.read_entities())
        assert after[0].min_time_remaining_ms() == before[0].min_time_remaining_ms() - 30_000

    def test_failure_types(self):
        """Test simulated failures raise the matching error types."""
        game = SimulatedGame([SimulatedCastle(name="Castle 1", levels={})], failure_rate=1.0)

        with pytest.raises(LoginError):
            run_async(game.ensure_logged_in())
        with pytest.raises(NavigationError):
            run_async(game.navigate_to(View.BUILDINGS))
        with pytest.raises(ActionError):
            run_async(game.read_entities())
        assert game.calls == ["ensure_logged_in", "navigate_buildings", "read_entities"]


class TestSimulatedDecisionService:
    """Tests for SimulatedDecisionService."""

    def test_lowest_building_first(self, make_entity):
        service = SimulatedDecisionService()
        entity = make_entity(levels={BuildingType.LUMBERJACK: 5, BuildingType.FARM: 3})

        rec = run_async(service.solve(entity, {BuildingType.LUMBERJACK: 10, BuildingType.FARM: 10}))

        assert rec.build_action.building == BuildingType.FARM
        assert rec.build_action.to_level == 4
        assert rec.objective_satisfied is False

    def test_complete_build_order(self, make_entity):
        service = SimulatedDecisionService(composition={UnitType.SPEARMAN: 100})
        entity = make_entity(levels={BuildingType.FARM: 10})

        rec = run_async(service.solve(entity, {BuildingType.FARM: 10}))

        assert rec.build_action is None
        assert rec.objective_satisfied is True
        assert dict(rec.target_composition) == {UnitType.SPEARMAN: 100}

    def test_research_requires_library(self, make_entity):
        researched = {Technology.LONGBOW}
        service = SimulatedDecisionService(researched=researched)

        without = run_async(service.solve(make_entity(levels={BuildingType.FARM: 1}), {}))
        with_library = run_async(service.solve(make_entity(levels={BuildingType.LIBRARY: 1}), {}))

        assert without.research_action is None
        assert with_library.research_action.technology == Technology.CROP_ROTATION

    def test_fail_for(self, make_entity):
        service = SimulatedDecisionService(fail_for={"Castle 2"})

        with pytest.raises(DecisionServiceError):
            run_async(service.solve(make_entity(name="Castle 2"), {}))
        assert service.calls == 1

    def test_close(self):
        service = SimulatedDecisionService()

        run_async(service.close())

        assert service.closed is True
