"""
Pytest configuration and fixtures.
"""

import pytest
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock

from castle_bot.config import BotConfig
from castle_bot.health import HealthCheckResult
from castle_bot.models import BuildingType, Entity, ConstructionStatus
from castle_bot.simulation import SimulatedPage


@pytest.fixture(scope="session")
def temp_dir():
    """Session-scoped temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_file(temp_dir):
    """Create a temporary file."""
    def _create(name: str, content: str = "") -> Path:
        path = temp_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return path
    return _create


@pytest.fixture
def fast_config(tmp_path):
    """Config with all recovery and health waits set to zero."""
    config = BotConfig()
    config.recovery.settle_ms = 0
    config.recovery.wait_ms = 0
    config.health.delay_ms = 0
    config.storage.base_path = str(tmp_path)
    return config


@pytest.fixture
def game_page():
    """Simulated page already on the game site."""
    return SimulatedPage(url="https://lordsandknights.com/game")


@pytest.fixture
def healthy_checks():
    """Health checker factory whose checks always pass."""
    def _factory(view):
        return AsyncMock(return_value=HealthCheckResult(healthy=True))
    return _factory


@pytest.fixture
def make_entity():
    """Build an Entity with sensible defaults."""
    def _make(
        name: str = "Castle 1",
        levels=None,
        can_upgrade=None,
        construction=None,
        active_actions: int = 0,
    ) -> Entity:
        construction = {
            b: ConstructionStatus(is_active=True, target_level=None, time_remaining_ms=ms)
            for b, ms in (construction or {}).items()
        }
        return Entity(
            name=name,
            levels=dict(levels or {BuildingType.LUMBERJACK: 5, BuildingType.FARM: 3}),
            can_upgrade=dict(can_upgrade or {}),
            construction=construction,
            active_actions=active_actions,
        )
    return _make
