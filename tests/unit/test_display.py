"""
Tests for console rendering.
"""

from rich.console import Console

from castle_bot.display import ConsoleReporter, format_duration, render_stats
from castle_bot.models import BuildingType, CycleResult, CycleStats, UnitType


def recording_console():
    return Console(record=True, width=200, color_system=None)


class TestFormatDuration:
    """Tests for format_duration."""

    def test_values(self):
        assert format_duration(None) == "-"
        assert format_duration(45_000) == "45s"
        assert format_duration(125_000) == "2m 5s"
        assert format_duration(3_900_000) == "1h 5m"
        assert format_duration(-5) == "0s"


class TestConsoleReporter:
    """Tests for ConsoleReporter."""

    def test_entities_table(self, make_entity):
        console = recording_console()
        entity = make_entity(
            name="Castle A",
            can_upgrade={BuildingType.FARM: True},
            construction={BuildingType.LUMBERJACK: 90_000},
            active_actions=1,
        )

        ConsoleReporter(console).entities([entity])

        text = console.export_text()
        assert "Castle A" in text
        assert "Lumberjack" in text
        assert "1m 30s" in text

    def test_units_hidden_when_disabled(self):
        console = recording_console()

        ConsoleReporter(console, show_units=False).units("Castle A", {}, {UnitType.ARCHER: 10})

        assert console.export_text() == ""

    def test_units_table(self):
        console = recording_console()

        ConsoleReporter(console).units("Castle A", {UnitType.ARCHER: 4}, {UnitType.ARCHER: 10})

        text = console.export_text()
        assert "Units - Castle A" in text
        assert "6" in text

    def test_cycle_summary(self):
        console = recording_console()
        result = CycleResult(success=False, error="No castles found", hard_failure=True, stats=CycleStats())

        ConsoleReporter(console).cycle_summary(3, result)

        text = console.export_text()
        assert "Cycle 3" in text
        assert "FAILED" in text
        assert "No castles found" in text

    def test_sleep(self):
        console = recording_console()

        ConsoleReporter(console).sleep(90_000)

        assert "Sleeping 1m 30s" in console.export_text()


class TestRenderStats:
    """Tests for render_stats."""

    def test_sections(self):
        console = recording_console()

        render_stats({
            "run_id": "run-1",
            "total_metrics": 5,
            "counts": {"ui_action": 3},
            "durations": {"cycle_end": {"count": 1, "avg_ms": 1500, "total_ms": 1500}},
            "actions": {"upgrade": 2},
            "failures": 1,
            "recoveries": 1,
        }, console)

        text = console.export_text()
        assert "Run: run-1" in text
        assert "Ui Action" in text
        assert "Timing Statistics" in text
        assert "upgrade" in text
        assert "Failed events: 1" in text
