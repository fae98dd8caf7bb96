"""
CLI interface using Click.
"""

import asyncio
import importlib
import inspect
import sys
from pathlib import Path
from typing import Optional, Callable, Any, List

import click
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from castle_bot import __version__
from castle_bot.config import (
    BotConfig, Credentials, ConfigurationError,
    load_config, save_config, get_default_config_path,
)
from castle_bot.display import ConsoleReporter, render_stats
from castle_bot.logging import setup_logging, get_logger
from castle_bot.memory import MemoryCheck
from castle_bot.metrics import (
    MetricsCollector, CycleMetrics, ResourceSampler,
    aggregate_stats, playwright_page_probe,
)
from castle_bot.models import CycleResult
from castle_bot.orchestrator import BotOrchestrator
from castle_bot.safety import KillSwitch
from castle_bot.simulation import SimulatedGame, SimulatedDecisionService
from castle_bot.solver import resolve_targets
from castle_bot.watchdog import SystemdWatchdog

console = Console()
logger = get_logger(__name__)


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--json-logs", is_flag=True, envvar="CASTLE_BOT_JSON_LOGS", help="Emit JSON log lines on stderr")
@click.pass_context
def main(ctx: click.Context, version: bool, verbose: bool, json_logs: bool) -> None:
    """Castle Bot - fault-tolerant automation loop for a browser strategy game."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["json_logs"] = json_logs

    setup_logging(level="DEBUG" if verbose else "INFO", json_console=json_logs)

    if version:
        console.print(f"castle-bot v{__version__}")
        sys.exit(0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


def _load_config_or_exit(config: Optional[str]) -> BotConfig:
    try:
        return load_config(config)
    except ConfigurationError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)


def load_adapter_factory(reference: str) -> Callable[..., Any]:
    """
    Resolve ``module:factory`` to a callable.

    Raises:
        ConfigurationError: If the module or attribute cannot be loaded
    """
    module_name, _, attr = reference.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(
            f"Invalid adapter reference: {reference}",
            field="adapter",
            suggestions=["Use the form 'package.module:factory'"],
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import adapter module '{module_name}': {e}", field="adapter")

    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigurationError(f"Adapter factory '{attr}' not found in '{module_name}'", field="adapter")
    return factory


@main.command()
@click.option("--config", "-c", type=click.Path(), help="Path to config file")
@click.option("--adapter", "-a", required=True, help="Game adapter factory as 'module:factory'")
@click.option("--dry-run", is_flag=True, help="Run a single cycle and exit")
@click.option("--headless/--headed", default=None, help="Override browser headless mode")
@click.pass_context
def run(
    ctx: click.Context,
    config: Optional[str],
    adapter: str,
    dry_run: bool,
    headless: Optional[bool],
) -> None:
    """Run the bot against the live game."""
    bot_config = _load_config_or_exit(config)

    if dry_run:
        bot_config.dry_run = True
    if headless is not None:
        bot_config.browser.headless = headless

    if bot_config.log_path:
        setup_logging(
            level="DEBUG" if ctx.obj.get("verbose") else "INFO",
            log_file=bot_config.log_path,
            json_console=ctx.obj.get("json_logs", False),
        )

    try:
        Credentials().require()
        factory = load_adapter_factory(adapter)
    except ConfigurationError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)

    logger.info("Starting bot", adapter=adapter, dry_run=bot_config.dry_run, headless=bot_config.browser.headless)

    try:
        cycles = asyncio.run(_run_bot(bot_config, factory))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return

    console.print(f"[green]Stopped after {cycles} cycle(s).[/green]")


async def _run_bot(bot_config: BotConfig, factory: Callable[..., Any]) -> int:
    # Imported here so that the other commands work without browsers installed
    from castle_bot.browser import BrowserSession
    from castle_bot.solver import HttpDecisionClient

    kill_switch = KillSwitch()
    kill_switch.install_signal_handlers()

    if bot_config.metrics.enabled:
        collector = MetricsCollector.in_directory(bot_config.metrics_path)
        logger.info("Metrics enabled", path=str(collector.output_path))
    else:
        collector = MetricsCollector()
    metrics = CycleMetrics(collector)

    try:
        async with BrowserSession(bot_config.browser) as browser, HttpDecisionClient(bot_config.solver) as solver:
            game = factory(browser.page, bot_config)
            if inspect.isawaitable(game):
                game = await game

            sampler = ResourceSampler(metrics, playwright_page_probe, enabled=bot_config.metrics.enabled)
            orchestrator = BotOrchestrator(
                bot_config,
                game,
                solver,
                metrics=metrics,
                sampler=sampler,
                kill_switch=kill_switch,
                watchdog=SystemdWatchdog(),
                reporter=ConsoleReporter(console),
            )
            cycles = await orchestrator.run()
            if sampler.totals.periods:
                logger.info("Resource summary", **sampler.summary())
            return cycles
    finally:
        kill_switch.remove_signal_handlers()


@main.command()
@click.option("--cycles", "-n", default=10, show_default=True, help="Number of cycles to simulate")
@click.option("--entities", "-e", default=3, show_default=True, help="Number of simulated castles")
@click.option("--seed", "-s", default=None, type=int, help="Random seed")
@click.option("--failure-rate", default=0.0, show_default=True, help="Probability that a UI action fails")
@click.option("--quiet", "-q", is_flag=True, help="Only print the final summary")
@click.option("--config", "-c", type=click.Path(), help="Path to config file")
def simulate(
    cycles: int,
    entities: int,
    seed: Optional[int],
    failure_rate: float,
    quiet: bool,
    config: Optional[str],
) -> None:
    """Run the loop against the built-in in-memory simulation."""
    bot_config = _load_config_or_exit(config)
    bot_config.dry_run = False
    bot_config.recovery.settle_ms = 0
    bot_config.recovery.wait_ms = 0
    bot_config.health.delay_ms = 0

    reporter = None if quiet else ConsoleReporter(console, show_units=False)
    orchestrator, results = asyncio.run(
        run_simulation(bot_config, cycles, entities, seed, failure_rate, reporter)
    )

    _print_simulation_summary(orchestrator, results)


async def run_simulation(
    bot_config: BotConfig,
    cycles: int,
    entities: int,
    seed: Optional[int] = None,
    failure_rate: float = 0.0,
    reporter: Any = None,
):
    """
    Run ``cycles`` cycles on virtual time.

    Returns:
        (orchestrator, list of CycleResult)
    """
    game = SimulatedGame.create(
        entities,
        targets=resolve_targets(bot_config.game.targets),
        seed=seed,
        health=bot_config.health,
        recovery=bot_config.recovery,
        max_building_queue=bot_config.game.max_building_queue,
        free_finish_threshold_ms=bot_config.sleep.free_finish_threshold_ms,
        failure_rate=failure_rate,
    )
    service = SimulatedDecisionService(researched=game.researched)

    async def advance(sleep_ms: int) -> bool:
        game.advance(sleep_ms)
        return False

    orchestrator = BotOrchestrator(
        bot_config,
        game,
        service,
        reporter=reporter,
        memory_check=lambda thresholds: MemoryCheck(should_restart=False),
        sleeper=advance,
        history_size=max(1, cycles),
        clock=lambda: game.now_ms,
    )

    await orchestrator.run(max_cycles=cycles)
    await service.close()
    return orchestrator, list(orchestrator.history)


def _print_simulation_summary(orchestrator: BotOrchestrator, results: List[CycleResult]) -> None:
    table = Table(title="Simulation Summary", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    totals = {}
    for result in results:
        for key, value in result.stats.to_dict().items():
            totals[key] = totals.get(key, 0) + value

    table.add_row("Cycles", str(len(results)))
    table.add_row("Successful", str(sum(1 for r in results if r.success)))
    for key in ("upgrades", "research", "free_finishes", "recruits", "trades", "missions", "entities_skipped"):
        table.add_row(key.replace("_", " ").title(), str(totals.get(key, 0)))

    status = orchestrator.get_status()
    table.add_row("Stale Detections", str(status["stale_detections"]))
    table.add_row("Session Resets", str(status["session_resets"]))
    console.print(table)


@main.command("config")
@click.option("--show", "show", is_flag=True, help="Print the effective configuration")
@click.option("--init", "init", is_flag=True, help="Write the default configuration file")
@click.option("--path", "-p", type=click.Path(), help="Config file path")
@click.option("--force", is_flag=True, help="Overwrite an existing file with --init")
def config_cmd(show: bool, init: bool, path: Optional[str], force: bool) -> None:
    """Show or initialize the configuration."""
    if init:
        target = Path(path) if path else get_default_config_path()
        if target.exists() and not force:
            console.print(f"[yellow]Config already exists: {target}[/yellow]")
            console.print("Use --force to overwrite.")
            return
        written = save_config(BotConfig(), str(target))
        console.print(f"[green]Wrote default config to {written}[/green]")
        return

    bot_config = _load_config_or_exit(path)
    console.print(yaml.dump(bot_config.model_dump(), default_flow_style=False, sort_keys=False), markup=False)

    if show:
        credentials = Credentials()
        console.print("[bold]Credentials[/bold]")
        for key, value in credentials.masked().items():
            console.print(f"  {key}: {value}")
        if not credentials.configured:
            console.print("[yellow]EMAIL and PASSWORD must be set before 'castle-bot run'[/yellow]")


@main.command()
@click.argument("path", required=False, type=click.Path())
@click.option("--config", "-c", type=click.Path(), help="Path to config file")
def stats(path: Optional[str], config: Optional[str]) -> None:
    """Summarize a metrics.jsonl file (default: the latest run)."""
    if path:
        metrics_file = Path(path)
        if metrics_file.is_dir():
            metrics_file = metrics_file / MetricsCollector.METRICS_FILE
    else:
        bot_config = _load_config_or_exit(config)
        runs = sorted(bot_config.metrics_path.glob(f"*/{MetricsCollector.METRICS_FILE}")) if bot_config.metrics_path.exists() else []
        if not runs:
            console.print("[yellow]No metrics found.[/yellow]")
            return
        metrics_file = runs[-1]

    stats_data = aggregate_stats(metrics_file)
    if not stats_data:
        console.print(f"[yellow]No metrics found in {metrics_file}[/yellow]")
        return

    render_stats(stats_data, console)


if __name__ == "__main__":
    main()
