"""
Orchestrator - the read -> solve -> execute cycle and its process driver.

One cycle:
1. Session assurance (location, overlays, login)
2. Read castles from the buildings overview
3. Ask the decision service for a recommendation per castle
4. Execute phases in order: BUILDING, RECRUITING, TRADING, MISSIONS
5. Derive the sleep until the next cycle from the shortest construction timer

``run_cycle()`` never raises. ``run()`` strings cycles together with
staleness detection, failure escalation, memory checks and watchdog pings.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Optional, Callable, List, Dict, Any, Awaitable, Sequence, Deque

from castle_bot.config import BotConfig, SleepConfig
from castle_bot.desync import (
    StalenessDetector, ConsecutiveFailureTracker, create_time_snapshot, now_ms,
)
from castle_bot.health import View, HealthChecker, HealthCheckResult, PageHealthChecker, wait_for_healthy
from castle_bot.interfaces import GameInterface, DecisionService
from castle_bot.logging import get_logger, bind_cycle
from castle_bot.memory import MemoryCheck, should_restart_for_memory
from castle_bot.metrics import CycleMetrics, ResourceSampler
from castle_bot.models import (
    BuildingType, Entity, EntityCounts, Recommendation, CycleResult, CycleStats,
)
from castle_bot.phases import Phase, PhaseResult, determine_phase, is_mission_eligible
from castle_bot.recovery import (
    RecoveryAction, RecoveryRecorder, create_recovery_actions,
    escalating_recovery, with_recovery, force_refresh,
)
from castle_bot.safety.killswitch import KillSwitch
from castle_bot.solver import resolve_targets
from castle_bot.watchdog import SystemdWatchdog

logger = get_logger(__name__)


def calculate_sleep_time(min_remaining_ms: int, sleep: SleepConfig) -> int:
    """
    Time to sleep before the next cycle.

    Constructions that finish within the free-finish threshold can be
    completed for free, so the loop comes back as soon as allowed. Otherwise
    it wakes up when the shortest timer enters the threshold.

    Returns:
        Sleep in milliseconds, always within [min_ms, max_ms]
    """
    if min_remaining_ms <= sleep.free_finish_threshold_ms:
        return sleep.min_ms
    wanted = min_remaining_ms - sleep.free_finish_threshold_ms
    return max(sleep.min_ms, min(wanted, sleep.max_ms))


def _min_optional(current: Optional[int], candidate: Optional[int]) -> Optional[int]:
    if candidate is None:
        return current
    if current is None:
        return candidate
    return min(current, candidate)


@dataclass
class EntityPlan:
    """A castle together with this cycle's recommendation."""

    index: int
    entity: Entity
    recommendation: Recommendation
    phase: Optional[PhaseResult] = None


SessionReset = Callable[[str], Awaitable[bool]]
HealthCheckerFactory = Callable[[Optional[View]], HealthChecker]


class BotOrchestrator:
    """
    Drives the game through one collaborator implementing ``GameInterface``.

    All UI steps run inside ``with_recovery`` so a failing click degrades to
    a default value instead of aborting the cycle. Decision-service failures
    skip the affected castle only.
    """

    def __init__(
        self,
        config: BotConfig,
        game: GameInterface,
        decision_service: DecisionService,
        metrics: Optional[CycleMetrics] = None,
        sampler: Optional[ResourceSampler] = None,
        recovery_actions: Optional[Sequence[RecoveryAction]] = None,
        health_checks: Optional[HealthCheckerFactory] = None,
        kill_switch: Optional[KillSwitch] = None,
        watchdog: Optional[SystemdWatchdog] = None,
        reporter: Any = None,
        session_reset: Optional[SessionReset] = None,
        memory_check: Callable[..., MemoryCheck] = should_restart_for_memory,
        sleeper: Optional[Callable[[int], Awaitable[bool]]] = None,
        history_size: int = 100,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Bot configuration
            game: UI adapter (navigation, reads, actions)
            decision_service: Recommendation provider
            metrics: Event metrics (in-memory only if not provided)
            sampler: Optional per-phase resource sampler
            recovery_actions: Recovery ladder (Playwright ladder if not provided)
            health_checks: Factory returning a health checker for a view
            kill_switch: Stop flag shared with signal handlers
            watchdog: systemd watchdog (disabled outside systemd)
            reporter: Optional console reporter (see castle_bot.display)
            session_reset: Hook run on repeated hard failures or memory
                pressure; defaults to the most invasive recovery tier
            memory_check: Memory pressure probe
            sleeper: Replacement for the interruptible sleep between cycles;
                returns True to stop the loop
            history_size: Number of recent cycle results kept in ``history``
            clock: Millisecond clock used to timestamp staleness snapshots
        """
        self.config = config
        self.game = game
        self.decision_service = decision_service
        self.metrics = metrics or CycleMetrics()
        self.sampler = sampler or ResourceSampler(enabled=False)
        self.recovery_actions: List[RecoveryAction] = list(
            recovery_actions if recovery_actions is not None
            else create_recovery_actions(config.recovery)
        )
        self.kill_switch = kill_switch or KillSwitch()
        self.watchdog = watchdog or SystemdWatchdog(environ={})
        self.reporter = reporter
        self.targets: Dict[BuildingType, int] = resolve_targets(config.game.targets)

        checker = PageHealthChecker(config.health)
        self._health_checks: HealthCheckerFactory = health_checks or checker.for_view
        self._session_reset = session_reset
        self._memory_check = memory_check
        self._sleeper = sleeper or self._sleep
        self._clock = clock

        self._recorder = RecoveryRecorder(
            page=self.ctx,
            metrics=self.metrics,
            debug_dir=config.debug_path if config.storage.save_debug else None,
        )
        self._staleness = StalenessDetector(tolerance=config.timing.stale_tolerance)
        self._failures = ConsecutiveFailureTracker(threshold=config.timing.max_consecutive_failures)

        self._cycle = 0
        self._last_result: Optional[CycleResult] = None
        self.history: Deque[CycleResult] = deque(maxlen=history_size)
        self._last_sleep_ms: Optional[int] = None
        self._session_resets = 0

        logger.info(
            "Orchestrator initialized",
            dry_run=config.dry_run,
            recovery_tiers=[a.name for a in self.recovery_actions],
            missions=config.game.missions_enabled,
        )

    @property
    def ctx(self) -> Any:
        """Session context handed to health checks and recovery actions."""
        return getattr(self.game, "page", None)

    @property
    def cycles(self) -> int:
        return self._cycle

    # Driver

    async def run(self, max_cycles: Optional[int] = None) -> int:
        """
        Run cycles until stopped.

        Args:
            max_cycles: Stop after this many cycles (unbounded if None)

        Returns:
            Number of cycles run
        """
        timing = self.config.timing
        reason = "stopped"

        await self.watchdog.start()
        self.metrics.session_start(dry_run=self.config.dry_run)

        sampler_stop = asyncio.Event()
        sampler_task: Optional[asyncio.Task] = None
        if self.sampler.enabled and self.config.metrics.enabled:
            sampler_task = asyncio.create_task(
                self.sampler.run_periodic(self.ctx, self.config.metrics.sample_interval_seconds, sampler_stop)
            )

        logger.info("Starting loop", max_cycles=max_cycles, dry_run=self.config.dry_run)

        try:
            while not self.kill_switch.triggered:
                result = await self.run_cycle()
                await self._after_cycle(result)

                if self.config.dry_run:
                    reason = "dry_run"
                    logger.info("Dry run complete, exiting after one cycle")
                    break

                if max_cycles is not None and self._cycle >= max_cycles:
                    reason = "max_cycles"
                    break

                sleep_ms = result.sleep_ms if result.sleep_ms is not None else timing.loop_interval_ms
                self._last_sleep_ms = sleep_ms
                if self.reporter is not None:
                    self.reporter.sleep(sleep_ms)

                if await self._sleeper(sleep_ms):
                    break
        finally:
            sampler_stop.set()
            if sampler_task is not None:
                await sampler_task
            if self.kill_switch.triggered:
                reason = f"kill_switch:{self.kill_switch.trigger_source}"
            self.metrics.session_end(reason=reason, cycles=self._cycle)
            await self.watchdog.stop()
            logger.info("Loop ended", reason=reason, cycles=self._cycle)

        return self._cycle

    def stop(self) -> None:
        """Stop after the current cycle; interrupts the sleep."""
        self.kill_switch.trigger("stop")

    async def _sleep(self, sleep_ms: int) -> bool:
        """Interruptible sleep that keeps the watchdog fed. True if stopped."""
        logger.info("Sleeping", sleep_s=round(sleep_ms / 1000, 1))
        remaining = sleep_ms
        slice_ms = self.watchdog.interval_ms if self.watchdog.enabled and self.watchdog.interval_ms else sleep_ms

        while remaining > 0:
            step = min(slice_ms, remaining)
            if await self.kill_switch.wait(step / 1000):
                return True
            remaining -= step
            await self.watchdog.ping()
        return self.kill_switch.triggered

    async def _after_cycle(self, result: CycleResult) -> None:
        """Failure escalation, staleness and memory checks between cycles."""
        if result.hard_failure:
            if self._failures.record_failure(result.error or "hard failure"):
                await self._reset_session(f"{self._failures.consecutive_failures} consecutive failures")
                self._failures.reset()
        elif result.success:
            self._failures.record_success()
            await self._check_staleness(result)

        check = self._memory_check(self.config.memory)
        if check.should_restart:
            logger.warning("Memory pressure", reason=check.reason)
            await self._reset_session(check.reason or "memory pressure")

        await self.watchdog.ping()

    async def _check_staleness(self, result: CycleResult) -> None:
        expected = self._last_sleep_ms if self._last_sleep_ms is not None else self.config.timing.loop_interval_ms
        snapshot = create_time_snapshot(result.min_time_remaining_ms, self._clock())
        check = self._staleness.observe(snapshot, expected_change_ms=expected)
        if not check.is_stale:
            return

        self.metrics.stale(check.reason)
        try:
            await force_refresh(self.ctx, self.config.recovery)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Forced refresh failed", error=str(e))
            self.metrics.error("refresh_failed", str(e))
        self._staleness.reset()

    async def _reset_session(self, reason: str) -> bool:
        """Run the session-reset hook (or the last recovery tier)."""
        logger.warning("Resetting session", reason=reason)
        self._session_resets += 1
        try:
            if self._session_reset is not None:
                ok = bool(await self._session_reset(reason))
            elif self.recovery_actions:
                ok = bool(await self.recovery_actions[-1].execute(self.ctx))
            else:
                ok = False
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Session reset failed", reason=reason, error=str(e))
            ok = False

        self.metrics.escalation(reason, success=ok)
        self._staleness.reset()
        return ok

    def get_status(self) -> Dict[str, Any]:
        """Counters for display."""
        last = self._last_result
        return {
            "cycles": self._cycle,
            "consecutive_failures": self._failures.consecutive_failures,
            "total_failures": self._failures.total_failures,
            "stale_detections": self._staleness.detections,
            "session_resets": self._session_resets,
            "last_success": last.success if last else None,
            "last_error": last.error if last else None,
            "last_sleep_ms": self._last_sleep_ms,
            "stopped": self.kill_switch.triggered,
        }

    # Cycle

    async def run_cycle(self) -> CycleResult:
        """
        Run one cycle. Never raises.

        Anything escaping the cycle is logged, one recovery pass is run and
        the cycle reports failure with the short retry delay.
        """
        self._cycle += 1
        bind_cycle(self._cycle)
        self.metrics.cycle_start(self._cycle)
        logger.info("Cycle start", cycle=self._cycle)

        try:
            result = await self._run_cycle_internal()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Cycle failed", error=str(e), error_type=type(e).__name__, exc_info=True)
            self.metrics.error("cycle_error", str(e))
            recovery = await escalating_recovery(self.ctx, self.recovery_actions, self._recorder)
            if recovery.success:
                self.metrics.recovery(recovery.strategy_used, success=True)
            result = CycleResult(
                success=False,
                sleep_ms=self.config.timing.retry_delay_ms,
                error=str(e) or type(e).__name__,
            )

        self._last_result = result
        self.history.append(result)
        self.metrics.cycle_end(
            self._cycle,
            success=result.success,
            sleep_ms=result.sleep_ms,
            error=result.error,
            **result.stats.to_dict(),
        )
        if self.reporter is not None:
            self.reporter.cycle_summary(self._cycle, result)
        return result

    async def _guarded(self, name: str, action: Callable[[], Awaitable[Any]], default: Any) -> Any:
        return await with_recovery(
            self.ctx, action, self.recovery_actions, default, name=name, on_failure=self._recorder,
        )

    async def _run_cycle_internal(self) -> CycleResult:
        timing = self.config.timing
        stats = CycleStats()

        # 1. Session
        self.sampler.start_period("login")
        located = await self._guarded("ensure_location", self.game.ensure_location, False)
        if located:
            await self._guarded("dismiss_overlays", self.game.dismiss_overlays, 0)
            logged_in = await self._guarded("login", self.game.ensure_logged_in, False)
        else:
            logged_in = False
        await self.sampler.end_period(self.ctx)

        if not located:
            logger.warning("Not on the game site")
            return CycleResult(success=False, sleep_ms=timing.retry_delay_ms, error="Location check failed", stats=stats)
        if not logged_in:
            logger.warning("Login failed")
            return CycleResult(success=False, sleep_ms=timing.retry_delay_ms, error="Login failed", stats=stats)

        initial = await self._check_health(None)
        if not initial.healthy:
            await self._guarded("dismiss_overlays", self.game.dismiss_overlays, 0)

        # 2. Read
        on_buildings = await self._guarded("navigate_buildings", lambda: self.game.navigate_to(View.BUILDINGS), False)
        if not on_buildings:
            return CycleResult(
                success=False, sleep_ms=timing.long_retry_delay_ms,
                error="Navigation failed", hard_failure=True, stats=stats,
            )
        await self._wait_healthy(View.BUILDINGS)

        entities: List[Entity] = await self._guarded("read_entities", self.game.read_entities, []) or []
        if not entities:
            logger.error("No castles found")
            return CycleResult(
                success=False, sleep_ms=timing.long_retry_delay_ms,
                error="No castles found", hard_failure=True, stats=stats,
            )
        stats.entities = len(entities)
        logger.info("Castles read", count=len(entities), names=[e.name for e in entities])
        if self.reporter is not None:
            self.reporter.entities(entities)

        stats.free_finishes = await self._guarded("finish_free", self.game.finish_free, 0) or 0

        # 3. Solve
        plans: List[EntityPlan] = []
        for index, entity in enumerate(entities):
            recommendation = await self._solve(entity)
            if recommendation is None:
                stats.entities_skipped += 1
                continue
            plans.append(EntityPlan(index, entity, recommendation))

        # 4. Execute
        recruit_queue, min_remaining = await self._building_phase(plans, stats)
        trade_queue = await self._recruiting_phase(recruit_queue, stats)
        await self._trading_phase(trade_queue, stats)
        await self._missions_phase(trade_queue, stats)

        # 5. Sleep
        sleep_ms = calculate_sleep_time(min_remaining, self.config.sleep) if min_remaining is not None else None

        logger.info("Cycle complete", sleep_ms=sleep_ms, min_remaining_ms=min_remaining, **stats.to_dict())
        return CycleResult(success=True, sleep_ms=sleep_ms, min_time_remaining_ms=min_remaining, stats=stats)

    async def _solve(self, entity: Entity) -> Optional[Recommendation]:
        """Recommendation for one castle, or None to skip it this cycle."""
        started = time.monotonic()
        try:
            recommendation = await self.decision_service.solve(entity, self.targets)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.warning(
                "Decision service failed, skipping castle",
                castle=entity.name,
                error=str(e),
                error_type=type(e).__name__,
            )
            self.metrics.decision_call(entity.name, success=False, duration_ms=duration_ms)
            return None

        self.metrics.decision_call(entity.name, success=True, duration_ms=int((time.monotonic() - started) * 1000))
        return recommendation

    async def _check_health(self, view: Optional[View]) -> HealthCheckResult:
        """Single, non-blocking health check."""
        try:
            result = await self._health_checks(view)(self.ctx)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            result = HealthCheckResult(healthy=False, issues=[f"Health check raised: {e}"])
        self.metrics.health(view.value if view else None, result.healthy, list(result.issues))
        if not result.healthy:
            logger.warning("Health check failed", view=view.value if view else None, issues=result.issues)
        return result

    async def _wait_healthy(self, view: View) -> HealthCheckResult:
        health = self.config.health
        result = await wait_for_healthy(self.ctx, self._health_checks(view), health.max_attempts, health.delay_ms)
        self.metrics.health(view.value, result.healthy, list(result.issues))
        if not result.healthy:
            logger.warning("View not healthy, continuing", view=view.value, issues=result.issues)
        return result

    # Phases

    async def _building_phase(self, plans: List[EntityPlan], stats: CycleStats):
        """
        Research and upgrades.

        Returns:
            (castles ready for recruitment, shortest remaining construction time)
        """
        self.metrics.set_phase(Phase.BUILDING.value)
        self.sampler.start_period("buildings_phase")

        first = next((p for p in plans if p.index == 0), None)
        if first is not None and self._should_research(first.recommendation):
            technology = first.recommendation.research_action.technology
            ok = await self._guarded("research", lambda: self.game.research(technology), False)
            self.metrics.ui_action("research", bool(ok), castle=first.entity.name, technology=technology.value)
            if ok:
                stats.research += 1

        recruit_queue: List[EntityPlan] = []
        min_remaining: Optional[int] = None

        for plan in plans:
            if plan.recommendation.objective_satisfied:
                logger.info("Build order complete", castle=plan.entity.name)
                recruit_queue.append(plan)
                continue
            remaining = await self._build(plan, stats)
            min_remaining = _min_optional(min_remaining, remaining)

        await self.sampler.end_period(self.ctx)
        return recruit_queue, min_remaining

    @staticmethod
    def _should_research(recommendation: Recommendation) -> bool:
        research = recommendation.research_action
        if research is None or research.technology is None:
            return False
        build = recommendation.build_action
        return build is None or research.start_time_s <= build.start_time_s

    async def _build(self, plan: EntityPlan, stats: CycleStats) -> Optional[int]:
        """
        Upgrade one castle.

        Returns:
            The castle's shortest remaining construction time when nothing
            was started, otherwise None
        """
        entity = plan.entity
        action = plan.recommendation.build_action

        if entity.active_actions >= self.config.game.max_building_queue:
            logger.info(
                "Building queue full",
                castle=entity.name,
                active=entity.active_actions,
                limit=self.config.game.max_building_queue,
            )
            return entity.min_time_remaining_ms()

        tried: Optional[BuildingType] = None
        if action is not None and entity.can_upgrade.get(action.building, False):
            tried = action.building
            if await self._upgrade(plan, action.building, stats):
                return None

        if self.config.game.fallback_upgrades:
            for building in entity.upgradable():
                if building == tried:
                    continue
                if await self._upgrade(plan, building, stats):
                    logger.info(
                        "Fallback upgrade",
                        castle=entity.name,
                        building=building.value,
                        recommended=action.building.value if action else None,
                    )
                    return None

        logger.debug("Nothing to upgrade", castle=entity.name)
        return entity.min_time_remaining_ms()

    async def _upgrade(self, plan: EntityPlan, building: BuildingType, stats: CycleStats) -> bool:
        ok = bool(await self._guarded("upgrade", lambda: self.game.upgrade(plan.index, building), False))
        self.metrics.ui_action("upgrade", ok, castle=plan.entity.name, building=building.value)
        if ok:
            stats.upgrades += 1
            logger.info("Upgrade started", castle=plan.entity.name, building=building.value)
        return ok

    async def _recruiting_phase(self, queue: List[EntityPlan], stats: CycleStats) -> List[EntityPlan]:
        """Recruit deficits. Returns the castles with nothing to recruit."""
        if not queue:
            return []

        self.metrics.set_phase(Phase.RECRUITING.value)
        self.sampler.start_period("recruitment_phase")
        trade_queue: List[EntityPlan] = []

        try:
            opened = await self._guarded(
                "navigate_recruitment", lambda: self.game.navigate_to(View.RECRUITMENT), False,
            )
            if not opened:
                logger.warning("Recruitment view unavailable, skipping recruitment and trading")
                return []
            await self._wait_healthy(View.RECRUITMENT)

            counts: List[EntityCounts] = await self._guarded("read_counts", self.game.read_counts, []) or []
            by_name = {c.name: c.counts for c in counts}

            for plan in queue:
                current = by_name.get(plan.entity.name)
                result = determine_phase(plan.recommendation, current)
                plan.phase = result
                if self.reporter is not None:
                    self.reporter.units(plan.entity.name, current, plan.recommendation.target_composition)

                if result.phase != Phase.RECRUITING:
                    trade_queue.append(plan)
                    continue

                for unit, amount in result.deficits.items():
                    ok = bool(await self._guarded(
                        "recruit", lambda: self.game.recruit(plan.index, unit, amount), False,
                    ))
                    self.metrics.ui_action("recruit", ok, castle=plan.entity.name, unit=unit.value, amount=amount)
                    if ok:
                        stats.recruits += 1
        finally:
            await self.sampler.end_period(self.ctx)

        return trade_queue

    async def _trading_phase(self, queue: List[EntityPlan], stats: CycleStats) -> None:
        if not queue:
            return

        self.metrics.set_phase(Phase.TRADING.value)
        self.sampler.start_period("trading_phase")
        try:
            opened = await self._guarded("navigate_trading", lambda: self.game.navigate_to(View.TRADING), False)
            if not opened:
                logger.warning("Trading view unavailable, skipping trading")
                return
            await self._wait_healthy(View.TRADING)

            for plan in queue:
                ok = bool(await self._guarded("trade", lambda: self.game.trade(plan.index), False))
                self.metrics.ui_action("trade", ok, castle=plan.entity.name)
                if ok:
                    stats.trades += 1
        finally:
            await self.sampler.end_period(self.ctx)

    async def _missions_phase(self, queue: List[EntityPlan], stats: CycleStats) -> None:
        if not queue or not self.config.game.missions_enabled:
            return

        self.metrics.set_phase(Phase.MISSIONS.value)
        self.sampler.start_period("missions_phase")
        try:
            for plan in queue:
                if plan.phase is not None and not is_mission_eligible(plan.phase):
                    continue
                started = await self._guarded("start_missions", lambda: self.game.start_missions(plan.index), 0) or 0
                self.metrics.ui_action("start_missions", started > 0, castle=plan.entity.name, started=started)
                stats.missions += started
        finally:
            await self.sampler.end_period(self.ctx)
