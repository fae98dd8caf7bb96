"""
Unit tests for configuration module.
"""

import pytest
import yaml

from castle_bot.config import (
    BotConfig,
    ConfigurationError,
    Credentials,
    ENV_MAPPINGS,
    GameConfig,
    SleepConfig,
    TimingConfig,
    load_config,
    save_config,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Isolate tests from the caller's environment and home directory."""
    for key in ENV_MAPPINGS:
        monkeypatch.delenv(key, raising=False)
    for key in ("EMAIL", "PASSWORD", "SERVER"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))


class TestSleepConfig:
    """Tests for SleepConfig."""

    def test_defaults(self):
        config = SleepConfig()
        assert config.min_ms == 30_000
        assert config.max_ms == 600_000
        assert config.free_finish_threshold_ms == 300_000

    def test_min_above_max_rejected(self):
        with pytest.raises(ValueError, match="min_ms"):
            SleepConfig(min_ms=120_000, max_ms=60_000)

    def test_bounds_enforced(self):
        with pytest.raises(ValueError):
            SleepConfig(min_ms=10)


class TestTimingConfig:
    """Tests for TimingConfig."""

    def test_defaults(self):
        config = TimingConfig()
        assert config.loop_interval_ms == 30_000
        assert config.retry_delay_ms == 5_000
        assert config.long_retry_delay_ms == 60_000
        assert config.max_consecutive_failures == 3
        assert config.stale_tolerance == 0.5

    def test_retry_delays_must_be_ordered(self):
        with pytest.raises(ValueError, match="retry_delay_ms"):
            BotConfig(timing=TimingConfig(retry_delay_ms=90_000, long_retry_delay_ms=60_000))


class TestGameConfig:
    """Tests for GameConfig."""

    def test_defaults(self):
        config = GameConfig()
        assert config.max_building_queue == 2
        assert config.fallback_upgrades is True
        assert config.missions_enabled is True
        assert config.targets == {}


class TestBotConfig:
    """Tests for BotConfig."""

    def test_paths(self, tmp_path):
        config = BotConfig()
        config.storage.base_path = str(tmp_path)

        assert config.storage_path == tmp_path
        assert config.metrics_path == tmp_path / "metrics"
        assert config.debug_path == tmp_path / "debug"
        assert config.log_path is None

    def test_log_path(self, tmp_path):
        config = BotConfig()
        config.storage.base_path = str(tmp_path)
        config.storage.log_file = "bot.log"

        assert config.log_path == tmp_path / "bot.log"


class TestCredentials:
    """Tests for Credentials."""

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("EMAIL", "player@example.com")
        monkeypatch.setenv("PASSWORD", "hunter2")

        creds = Credentials(_env_file=None)

        assert creds.configured
        assert creds.require() is creds

    def test_missing_raises(self):
        with pytest.raises(ConfigurationError) as exc_info:
            Credentials(_env_file=None).require()

        assert exc_info.value.field == "EMAIL"
        assert "PASSWORD" in exc_info.value.message

    def test_masked(self):
        creds = Credentials(_env_file=None, email="player@example.com", password="secret")

        masked = creds.masked()

        assert masked["EMAIL"] == "pla....com"
        assert masked["PASSWORD"] == "****"
        assert masked["SERVER"] == "not set"


class TestLoadConfig:
    """Tests for config loading."""

    def test_load_defaults(self):
        config = load_config()
        assert config.sleep.min_ms == 30_000
        assert config.dry_run is False

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({
            "sleep": {"min_ms": 60_000},
            "game": {"max_building_queue": 3, "targets": {"LUMBERJACK": 20}},
        }))

        config = load_config(str(path))

        assert config.sleep.min_ms == 60_000
        assert config.game.max_building_queue == 3
        assert config.game.targets == {"LUMBERJACK": 20}
        assert config.timing.loop_interval_ms == 30_000

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(str(tmp_path / "missing.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("sleep: [unclosed")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_config(str(path))

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"game": {"max_building_queue": 0}}))

        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            load_config(str(path))

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"solver": {"address": "http://file:1"}}))
        monkeypatch.setenv("CASTLE_BOT_SOLVER_ADDRESS", "http://env:2")
        monkeypatch.setenv("CASTLE_BOT_HEADLESS", "false")
        monkeypatch.setenv("CASTLE_BOT_LOOP_INTERVAL_MS", "45000")
        monkeypatch.setenv("CASTLE_BOT_DRY_RUN", "yes")

        config = load_config(str(path))

        assert config.solver.address == "http://env:2"
        assert config.browser.headless is False
        assert config.timing.loop_interval_ms == 45_000
        assert config.dry_run is True


class TestSaveConfig:
    """Tests for save_config."""

    def test_round_trip(self, tmp_path):
        config = BotConfig()
        config.game.missions_enabled = False
        path = tmp_path / "nested" / "config.yaml"

        written = save_config(config, str(path))
        loaded = load_config(str(written))

        assert written == path
        assert loaded.game.missions_enabled is False


class TestConfigurationError:
    """Tests for ConfigurationError formatting."""

    def test_message_includes_suggestions(self):
        error = ConfigurationError("Bad value", field="sleep.min_ms", suggestions=["Use a larger value"])

        text = str(error)

        assert "Bad value" in text
        assert "Field: sleep.min_ms" in text
        assert "- Use a larger value" in text
