"""
Cycle metrics.

Every notable event of a run becomes one JSON line in
``<metrics_dir>/<run_id>/metrics.jsonl``. The ``stats`` command reads those
files back; ``ResourceSampler`` adds optional memory and page figures.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Any, List, Dict, Deque, Callable, Awaitable, Iterable
from collections import Counter, defaultdict, deque

from castle_bot.logging import get_logger
from castle_bot.memory import get_system_memory

logger = get_logger(__name__)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class MetricType(str, Enum):
    SESSION_START = "session_start"
    SESSION_END = "session_end"

    CYCLE_START = "cycle_start"
    CYCLE_END = "cycle_end"
    PHASE = "phase"

    UI_ACTION = "ui_action"
    DECISION_CALL = "decision_call"

    HEALTH = "health"
    RECOVERY = "recovery"
    STALE = "stale"
    ESCALATION = "escalation"
    ERROR = "error"

    RESOURCE_SAMPLE = "resource_sample"


@dataclass
class Metric:
    """One line of a metrics file."""

    ts: str
    run_id: Optional[str]
    metric_type: MetricType
    phase: Optional[str] = None
    operation: Optional[str] = None
    success: bool = True
    duration_ms: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self), "metric_type": self.metric_type.value}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


@dataclass
class DurationStats:
    """Running count/total/min/max of durations in milliseconds."""

    count: int = 0
    total_ms: int = 0
    min_ms: int = 0
    max_ms: int = 0

    def add(self, duration_ms: int) -> None:
        if self.count == 0:
            self.min_ms = self.max_ms = duration_ms
        else:
            self.min_ms = min(self.min_ms, duration_ms)
            self.max_ms = max(self.max_ms, duration_ms)
        self.count += 1
        self.total_ms += duration_ms

    def to_dict(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "total_ms": self.total_ms,
            "avg_ms": self.total_ms / self.count if self.count else 0,
            "min_ms": self.min_ms,
            "max_ms": self.max_ms,
        }


class MetricsCollector:
    """
    Appends metrics to a JSONL file and keeps running tallies.

    Only the most recent ``keep_recent`` metrics stay in memory; the file
    holds the full history. Without an output path nothing is written and
    the tallies still work, which is what tests and the simulator rely on.
    """

    METRICS_FILE = "metrics.jsonl"
    KEEP_RECENT = 500

    def __init__(
        self,
        run_id: Optional[str] = None,
        output_path: Optional[Path] = None,
        keep_recent: int = KEEP_RECENT,
    ):
        self.run_id = run_id or datetime.now().strftime("%Y%m%d-%H%M%S")
        self.output_path = output_path
        self._recent: Deque[Metric] = deque(maxlen=keep_recent)
        self._total = 0
        self._timers: Dict[str, float] = {}

        self._by_type: Counter = Counter()
        self._failed_by_type: Counter = Counter()
        self._durations: Dict[str, DurationStats] = defaultdict(DurationStats)

    @classmethod
    def in_directory(cls, directory: Path, run_id: Optional[str] = None) -> "MetricsCollector":
        """Collector writing ``<directory>/<run_id>/metrics.jsonl``."""
        collector = cls(run_id=run_id)
        collector.output_path = directory / collector.run_id / cls.METRICS_FILE
        return collector

    @property
    def metrics(self) -> List[Metric]:
        """The most recent metrics, oldest first."""
        return list(self._recent)

    def record(
        self,
        metric_type: MetricType,
        phase: Optional[str] = None,
        operation: Optional[str] = None,
        success: bool = True,
        duration_ms: Optional[int] = None,
        **data: Any,
    ) -> Metric:
        """
        Record one event.

        Keyword arguments beyond the named ones land in ``Metric.data``.
        A failed write to disk is logged and the metric is still counted.
        """
        metric = Metric(
            ts=utc_now_iso(),
            run_id=self.run_id,
            metric_type=metric_type,
            phase=phase,
            operation=operation,
            success=success,
            duration_ms=duration_ms,
            data=data,
        )

        self._recent.append(metric)
        self._tally(metric)
        self._append(metric)
        return metric

    def start_timer(self, key: str) -> None:
        self._timers[key] = time.monotonic()

    def stop_timer(self, key: str) -> Optional[int]:
        """Elapsed milliseconds for ``key``, or None if it was never started."""
        started = self._timers.pop(key, None)
        if started is None:
            return None
        return int((time.monotonic() - started) * 1000)

    def record_timed(self, key: str, metric_type: MetricType, success: bool = True, **kwargs: Any) -> Metric:
        """Record ``metric_type`` with the elapsed time of timer ``key``."""
        return self.record(metric_type, success=success, duration_ms=self.stop_timer(key), **kwargs)

    def record_error(
        self,
        error_type: str,
        message: str,
        phase: Optional[str] = None,
        recoverable: bool = True,
        **data: Any,
    ) -> Metric:
        return self.record(
            MetricType.ERROR,
            phase=phase,
            success=False,
            error_type=error_type,
            message=message,
            recoverable=recoverable,
            **data,
        )

    def get_summary(self) -> Dict[str, Any]:
        """Counts, failures and duration statistics per metric type."""
        return {
            "run_id": self.run_id,
            "total_metrics": self._total,
            "counts": dict(self._by_type),
            "errors": dict(self._failed_by_type),
            "durations": {kind: stats.to_dict() for kind, stats in self._durations.items()},
        }

    def _tally(self, metric: Metric) -> None:
        kind = metric.metric_type.value
        self._total += 1
        self._by_type[kind] += 1
        if not metric.success:
            self._failed_by_type[kind] += 1
        if metric.duration_ms is not None:
            self._durations[kind].add(metric.duration_ms)

    def _append(self, metric: Metric) -> None:
        if self.output_path is None:
            return
        try:
            self.output_path.parent.mkdir(parents=True, exist_ok=True)
            with self.output_path.open("a", encoding="utf-8") as f:
                f.write(metric.to_json() + "\n")
        except OSError as e:
            logger.warning("Failed to persist metric", path=str(self.output_path), error=str(e))


class CycleMetrics:
    """
    High-level metrics for the orchestration loop.

    Keeps the current cycle number and phase so call sites stay short.
    """

    def __init__(self, collector: Optional[MetricsCollector] = None):
        self.collector = collector or MetricsCollector()
        self._phase: Optional[str] = None
        self._cycle: int = 0

    def set_phase(self, phase: str) -> None:
        """Set current phase."""
        self._phase = phase
        self.collector.record(MetricType.PHASE, phase=phase, cycle=self._cycle)

    def session_start(self, dry_run: bool = False) -> None:
        self.collector.record(MetricType.SESSION_START, dry_run=dry_run)

    def session_end(self, reason: str, cycles: int) -> None:
        self.collector.record(MetricType.SESSION_END, reason=reason, cycles=cycles)

    def cycle_start(self, cycle: int) -> None:
        self._cycle = cycle
        self._phase = None
        self.collector.start_timer(f"cycle_{cycle}")
        self.collector.record(MetricType.CYCLE_START, cycle=cycle)

    def cycle_end(self, cycle: int, success: bool, sleep_ms: Optional[int], error: Optional[str] = None, **stats: Any) -> None:
        self.collector.record_timed(
            f"cycle_{cycle}",
            MetricType.CYCLE_END,
            success=success,
            phase=self._phase,
            cycle=cycle,
            sleep_ms=sleep_ms,
            error=error,
            **stats,
        )

    def ui_action(self, action: str, success: bool, castle: Optional[str] = None, **data: Any) -> None:
        self.collector.record(
            MetricType.UI_ACTION,
            phase=self._phase,
            operation=action,
            success=success,
            castle=castle,
            cycle=self._cycle,
            **data,
        )

    def decision_call(self, castle: str, success: bool, duration_ms: Optional[int] = None) -> None:
        self.collector.record(
            MetricType.DECISION_CALL,
            phase=self._phase,
            operation="solve",
            success=success,
            duration_ms=duration_ms,
            castle=castle,
            cycle=self._cycle,
        )

    def health(self, view: Optional[str], healthy: bool, issues: List[str]) -> None:
        self.collector.record(
            MetricType.HEALTH,
            phase=self._phase,
            success=healthy,
            view=view,
            issues=issues,
            cycle=self._cycle,
        )

    def recovery(self, strategy: str, success: bool, error: Optional[str] = None) -> None:
        self.collector.record(
            MetricType.RECOVERY,
            phase=self._phase,
            operation=strategy,
            success=success,
            error=error,
            cycle=self._cycle,
        )

    def stale(self, reason: Optional[str]) -> None:
        self.collector.record(MetricType.STALE, success=False, reason=reason, cycle=self._cycle)

    def escalation(self, reason: str, success: bool) -> None:
        self.collector.record(MetricType.ESCALATION, success=success, reason=reason, cycle=self._cycle)

    def error(self, error_type: str, message: str, recoverable: bool = True) -> None:
        self.collector.record_error(error_type, message, phase=self._phase, recoverable=recoverable, cycle=self._cycle)


# Resource sampling

PageProbe = Callable[[Any], Awaitable[Dict[str, Any]]]

_PAGE_PROBE_SCRIPT = """() => ({
    js_heap_used: performance.memory ? performance.memory.usedJSHeapSize : null,
    js_heap_total: performance.memory ? performance.memory.totalJSHeapSize : null,
    dom_nodes: document.getElementsByTagName('*').length,
})"""


async def playwright_page_probe(page: Any) -> Dict[str, Any]:
    """Read-only page figures via ``page.evaluate``."""
    return await page.evaluate(_PAGE_PROBE_SCRIPT)


@dataclass
class PeriodSnapshot:
    """Resource figures for one labelled period of a cycle."""

    label: str
    timestamp_ms: int
    duration_ms: int
    memory_used_mb: Optional[float] = None
    page: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ResourceTotals:
    """Running totals over every snapshot taken, retained or not."""

    periods: int = 0
    total_duration_ms: int = 0
    memory_samples: int = 0
    memory_sum_mb: float = 0.0
    peak_memory_used_mb: float = 0.0
    by_label: Dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def add(self, snapshot: PeriodSnapshot) -> None:
        self.periods += 1
        self.total_duration_ms += snapshot.duration_ms
        self.by_label[snapshot.label] += snapshot.duration_ms
        if snapshot.memory_used_mb is not None:
            self.memory_samples += 1
            self.memory_sum_mb += snapshot.memory_used_mb
            self.peak_memory_used_mb = max(self.peak_memory_used_mb, snapshot.memory_used_mb)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "periods": self.periods,
            "total_duration_ms": self.total_duration_ms,
            "avg_memory_used_mb": self.memory_sum_mb / self.memory_samples if self.memory_samples else 0.0,
            "peak_memory_used_mb": self.peak_memory_used_mb,
            "by_label": dict(self.by_label),
        }


class ResourceSampler:
    """
    Samples memory and page figures per cycle phase.

    Never issues mutating actions: the page callback may only read from the page.
    Sampling failures are logged and produce snapshots without figures.
    Only the latest ``max_snapshots`` snapshots are retained; ``summary()``
    covers all of them.
    """

    def __init__(
        self,
        metrics: Optional[CycleMetrics] = None,
        page_probe: Optional[PageProbe] = None,
        enabled: bool = True,
        max_snapshots: int = 200,
    ):
        self.metrics = metrics
        self.page_probe = page_probe
        self.enabled = enabled
        self.snapshots: Deque[PeriodSnapshot] = deque(maxlen=max_snapshots)
        self.totals = ResourceTotals()

        self._label: Optional[str] = None
        self._started: float = 0.0

    def start_period(self, label: str) -> None:
        if not self.enabled:
            return
        self._label = label
        self._started = time.monotonic()

    async def end_period(self, ctx: Any = None) -> Optional[PeriodSnapshot]:
        if not self.enabled or self._label is None:
            return None

        label = self._label
        duration_ms = int((time.monotonic() - self._started) * 1000)
        self._label = None

        snapshot = await self._sample(label, duration_ms, ctx)
        self._keep(snapshot)
        return snapshot

    async def run_periodic(self, ctx: Any, interval_s: float, stop: asyncio.Event) -> None:
        """Sample on a fixed interval until ``stop`` is set."""
        while not stop.is_set():
            snapshot = await self._sample("periodic", 0, ctx)
            self._keep(snapshot)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                pass

    def summary(self) -> Dict[str, Any]:
        """Totals across every snapshot since the sampler was created."""
        return self.totals.to_dict()

    def _keep(self, snapshot: PeriodSnapshot) -> None:
        self.snapshots.append(snapshot)
        self.totals.add(snapshot)

    async def _sample(self, label: str, duration_ms: int, ctx: Any) -> PeriodSnapshot:
        page_figures: Dict[str, Any] = {}
        if self.page_probe is not None and ctx is not None:
            try:
                page_figures = dict(await self.page_probe(ctx) or {})
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug("Page probe failed", label=label, error=str(e))

        memory_used_mb: Optional[float] = None
        heap = page_figures.get("js_heap_used")
        if heap:
            memory_used_mb = heap / (1024 * 1024)
        else:
            system = get_system_memory()
            if system is not None:
                memory_used_mb = system.total_mb - system.available_mb

        snapshot = PeriodSnapshot(
            label=label,
            timestamp_ms=int(time.time() * 1000),
            duration_ms=duration_ms,
            memory_used_mb=memory_used_mb,
            page=page_figures,
        )

        if self.metrics is not None:
            self.metrics.collector.record(
                MetricType.RESOURCE_SAMPLE,
                operation=label,
                duration_ms=duration_ms,
                memory_used_mb=memory_used_mb,
                **page_figures,
            )

        return snapshot


def generate_summary(snapshots: Iterable[PeriodSnapshot]) -> Dict[str, Any]:
    """Total duration and average/peak memory across snapshots."""
    totals = ResourceTotals()
    for snapshot in snapshots:
        totals.add(snapshot)
    return totals.to_dict()


def _parse_metric(line: str) -> Optional[Metric]:
    try:
        data = json.loads(line)
        data["metric_type"] = MetricType(data["metric_type"])
        return Metric(**data)
    except (ValueError, KeyError, TypeError):
        return None


def load_metrics(metrics_file: Path) -> List[Metric]:
    """Load metrics from a JSONL file, skipping blank and unparseable lines."""
    if not metrics_file.exists():
        return []

    with metrics_file.open(encoding="utf-8") as f:
        parsed = (_parse_metric(line) for line in f if line.strip())
        return [m for m in parsed if m is not None]


def aggregate_stats(metrics_file: Path) -> Dict[str, Any]:
    """
    Aggregate a metrics file for ``castle-bot stats``.

    ``actions`` counts successful UI actions by operation name.
    Returns an empty dict when the file is missing or holds no metrics.
    """
    metrics = load_metrics(metrics_file)
    if not metrics:
        return {}

    durations: Dict[str, DurationStats] = defaultdict(DurationStats)
    for m in metrics:
        if m.duration_ms is not None:
            durations[m.metric_type.value].add(m.duration_ms)

    return {
        "total_metrics": len(metrics),
        "run_id": metrics[0].run_id,
        "counts": dict(Counter(m.metric_type.value for m in metrics)),
        "durations": {kind: stats.to_dict() for kind, stats in durations.items()},
        "actions": dict(Counter(
            m.operation for m in metrics
            if m.metric_type == MetricType.UI_ACTION and m.success and m.operation
        )),
        "failures": sum(1 for m in metrics if not m.success),
        "recoveries": sum(1 for m in metrics if m.metric_type == MetricType.RECOVERY),
    }
