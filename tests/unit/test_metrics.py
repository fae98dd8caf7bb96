"""
Unit tests for metrics module.
"""

import asyncio
import json
from unittest.mock import AsyncMock

from castle_bot.metrics import (
    MetricType,
    Metric,
    MetricsCollector,
    CycleMetrics,
    PeriodSnapshot,
    ResourceSampler,
    generate_summary,
    load_metrics,
    aggregate_stats,
)


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class TestMetric:
    """Tests for Metric dataclass."""

    def test_to_dict(self):
        metric = Metric(
            ts="2026-01-01T00:00:00Z",
            run_id="run-1",
            metric_type=MetricType.UI_ACTION,
            operation="upgrade",
            data={"castle": "Castle 1"},
        )

        d = metric.to_dict()

        assert d["metric_type"] == "ui_action"
        assert d["operation"] == "upgrade"
        assert d["data"] == {"castle": "Castle 1"}

    def test_to_json(self):
        metric = Metric(ts="t", run_id=None, metric_type=MetricType.STALE, success=False)

        parsed = json.loads(metric.to_json())

        assert parsed["metric_type"] == "stale"
        assert parsed["success"] is False


class TestMetricsCollector:
    """Tests for MetricsCollector."""

    def test_record_in_memory(self):
        collector = MetricsCollector(run_id="run-1")

        collector.record(MetricType.CYCLE_START, cycle=1)

        assert len(collector.metrics) == 1
        assert collector.metrics[0].run_id == "run-1"
        assert collector.metrics[0].data == {"cycle": 1}

    def test_retained_metrics_stay_bounded(self):
        collector = MetricsCollector(keep_recent=50)

        for cycle in range(500):
            collector.record(MetricType.CYCLE_END, duration_ms=cycle)

        summary = collector.get_summary()
        assert len(collector.metrics) == 50
        assert collector.metrics[-1].duration_ms == 499
        assert summary["total_metrics"] == 500
        assert summary["counts"] == {"cycle_end": 500}
        assert summary["durations"]["cycle_end"]["min_ms"] == 0
        assert summary["durations"]["cycle_end"]["max_ms"] == 499

    def test_persist_to_file(self, tmp_path):
        path = tmp_path / "run" / "metrics.jsonl"
        collector = MetricsCollector(run_id="run-1", output_path=path)

        collector.record(MetricType.CYCLE_START, cycle=1)
        collector.record(MetricType.CYCLE_END, cycle=1, success=False)

        lines = path.read_text().strip().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[1])["success"] is False

    def test_in_directory(self, tmp_path):
        collector = MetricsCollector.in_directory(tmp_path, run_id="abc")

        assert collector.output_path == tmp_path / "abc" / "metrics.jsonl"

    def test_timers(self):
        collector = MetricsCollector()
        collector.start_timer("k")

        metric = collector.record_timed("k", MetricType.DECISION_CALL)

        assert metric.duration_ms is not None
        assert collector.stop_timer("k") is None

    def test_summary_aggregates(self):
        collector = MetricsCollector(run_id="run-1")
        collector.record(MetricType.UI_ACTION, success=True, duration_ms=10)
        collector.record(MetricType.UI_ACTION, success=False, duration_ms=30)
        collector.record_error("cycle_error", "boom")

        summary = collector.get_summary()

        assert summary["counts"] == {"ui_action": 2, "error": 1}
        assert summary["errors"] == {"ui_action": 1, "error": 1}
        assert summary["durations"]["ui_action"]["avg_ms"] == 20

    def test_duration_bounds(self):
        collector = MetricsCollector()
        for ms in (40, 10, 25):
            collector.record(MetricType.DECISION_CALL, duration_ms=ms)
        collector.record(MetricType.STALE, success=False)

        durations = collector.get_summary()["durations"]

        assert durations["decision_call"]["min_ms"] == 10
        assert durations["decision_call"]["max_ms"] == 40
        assert durations["decision_call"]["total_ms"] == 75
        assert "stale" not in durations

    def test_unwritable_path_keeps_metric(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        collector = MetricsCollector(output_path=blocker / "metrics.jsonl")

        collector.record(MetricType.CYCLE_START, cycle=1)

        assert len(collector.metrics) == 1


class TestCycleMetrics:
    """Tests for CycleMetrics."""

    def test_phase_and_cycle_attached(self):
        collector = MetricsCollector()
        metrics = CycleMetrics(collector)

        metrics.cycle_start(4)
        metrics.set_phase("RECRUITING")
        metrics.ui_action("recruit", True, castle="Castle 1", unit="ARCHER", amount=5)

        metric = collector.metrics[-1]
        assert metric.metric_type == MetricType.UI_ACTION
        assert metric.phase == "RECRUITING"
        assert metric.operation == "recruit"
        assert metric.data["cycle"] == 4
        assert metric.data["amount"] == 5

    def test_cycle_end_timed(self):
        collector = MetricsCollector()
        metrics = CycleMetrics(collector)

        metrics.cycle_start(1)
        metrics.cycle_end(1, success=True, sleep_ms=30_000, upgrades=2)

        metric = collector.metrics[-1]
        assert metric.duration_ms is not None
        assert metric.data["upgrades"] == 2

    def test_cycle_start_clears_phase(self):
        collector = MetricsCollector()
        metrics = CycleMetrics(collector)
        metrics.set_phase("TRADING")

        metrics.cycle_start(2)
        metrics.error("cycle_error", "boom")

        assert collector.metrics[-1].phase is None

    def test_fault_events(self):
        collector = MetricsCollector()
        metrics = CycleMetrics(collector)

        metrics.health("buildings", False, ["Blocking overlay detected"])
        metrics.recovery("reload_page", success=True)
        metrics.stale("State unchanged")
        metrics.escalation("3 consecutive failures", success=True)

        types = [m.metric_type for m in collector.metrics]
        assert types == [MetricType.HEALTH, MetricType.RECOVERY, MetricType.STALE, MetricType.ESCALATION]


class TestResourceSampler:
    """Tests for ResourceSampler."""

    def test_disabled_records_nothing(self):
        sampler = ResourceSampler(enabled=False)

        sampler.start_period("login")

        assert run_async(sampler.end_period()) is None
        assert len(sampler.snapshots) == 0
        assert sampler.summary()["periods"] == 0

    def test_period_with_page_probe(self):
        probe = AsyncMock(return_value={"js_heap_used": 50 * 1024 * 1024, "dom_nodes": 1200})
        collector = MetricsCollector()
        sampler = ResourceSampler(metrics=CycleMetrics(collector), page_probe=probe)

        sampler.start_period("buildings_phase")
        snapshot = run_async(sampler.end_period(ctx=object()))

        assert snapshot.label == "buildings_phase"
        assert snapshot.memory_used_mb == 50
        assert snapshot.page["dom_nodes"] == 1200
        assert collector.metrics[-1].metric_type == MetricType.RESOURCE_SAMPLE

    def test_probe_failure_is_tolerated(self):
        probe = AsyncMock(side_effect=RuntimeError("target closed"))
        sampler = ResourceSampler(page_probe=probe)

        sampler.start_period("trading_phase")
        snapshot = run_async(sampler.end_period(ctx=object()))

        assert snapshot.page == {}

    def test_end_without_start(self):
        sampler = ResourceSampler()

        assert run_async(sampler.end_period()) is None

    def test_periodic_stops(self):
        sampler = ResourceSampler()

        async def scenario():
            stop = asyncio.Event()
            task = asyncio.create_task(sampler.run_periodic(None, 0.01, stop))
            await asyncio.sleep(0.05)
            stop.set()
            await task

        run_async(scenario())

        assert len(sampler.snapshots) >= 1
        assert all(s.label == "periodic" for s in sampler.snapshots)

    def test_snapshots_bounded_with_running_totals(self):
        sampler = ResourceSampler(max_snapshots=3)

        async def scenario():
            for i in range(10):
                sampler.start_period(f"phase-{i % 2}")
                await sampler.end_period()

        run_async(scenario())

        assert len(sampler.snapshots) == 3
        assert sampler.snapshots[-1].label == "phase-1"
        summary = sampler.summary()
        assert summary["periods"] == 10
        assert set(summary["by_label"]) == {"phase-0", "phase-1"}


class TestGenerateSummary:
    """Tests for generate_summary."""

    def test_empty(self):
        assert generate_summary([])["periods"] == 0

    def test_totals(self):
        snapshots = [
            PeriodSnapshot("login", 0, 100, memory_used_mb=200.0),
            PeriodSnapshot("buildings_phase", 1, 300, memory_used_mb=400.0),
            PeriodSnapshot("login", 2, 50),
        ]

        summary = generate_summary(snapshots)

        assert summary["total_duration_ms"] == 450
        assert summary["avg_memory_used_mb"] == 300.0
        assert summary["peak_memory_used_mb"] == 400.0
        assert summary["by_label"] == {"login": 150, "buildings_phase": 300}


class TestLoadAndAggregate:
    """Tests for loading and aggregating metrics files."""

    def test_load_skips_bad_lines(self, tmp_path):
        path = tmp_path / "metrics.jsonl"
        collector = MetricsCollector(run_id="r", output_path=path)
        collector.record(MetricType.CYCLE_START, cycle=1)
        with open(path, "a") as f:
            f.write("not json\n\n")
            f.write(json.dumps({"metric_type": "unknown"}) + "\n")

        metrics = load_metrics(path)

        assert len(metrics) == 1
        assert metrics[0].metric_type == MetricType.CYCLE_START

    def test_missing_file(self, tmp_path):
        assert load_metrics(tmp_path / "none.jsonl") == []
        assert aggregate_stats(tmp_path / "none.jsonl") == {}

    def test_aggregate(self, tmp_path):
        path = tmp_path / "metrics.jsonl"
        metrics = CycleMetrics(MetricsCollector(run_id="r", output_path=path))
        metrics.cycle_start(1)
        metrics.ui_action("upgrade", True, castle="Castle 1")
        metrics.ui_action("upgrade", True, castle="Castle 2")
        metrics.ui_action("trade", False, castle="Castle 1")
        metrics.recovery("reload_page", success=True)
        metrics.cycle_end(1, success=True, sleep_ms=1000)

        stats = aggregate_stats(path)

        assert stats["run_id"] == "r"
        assert stats["actions"] == {"upgrade": 2}
        assert stats["failures"] == 1
        assert stats["recoveries"] == 1
        assert stats["durations"]["cycle_end"]["count"] == 1
