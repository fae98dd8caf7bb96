"""
Console output using Rich.

``ConsoleReporter`` is the orchestrator's optional reporter: castle status
tables, unit comparisons, cycle summaries and sleep information.
"""

from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any, Mapping

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from castle_bot.models import (
    BuildingType, UnitType, Entity, CycleResult,
    BUILDING_DISPLAY_NAMES, UNIT_DISPLAY_NAMES,
)
from castle_bot.phases import compare_composition


def format_duration(ms: Optional[int]) -> str:
    """Compact h/m/s rendering of a duration."""
    if ms is None:
        return "-"
    seconds = max(0, int(ms // 1000))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class ConsoleReporter:
    """Renders cycle progress to the terminal."""

    def __init__(self, console: Optional[Console] = None, show_units: bool = True):
        self.console = console or Console()
        self.show_units = show_units

    def entities(self, entities: List[Entity]) -> None:
        """Building levels per castle; active constructions show their target."""
        table = Table(title="Castles", show_lines=False)
        table.add_column("Building", style="cyan")
        for entity in entities:
            table.add_column(entity.name, justify="right")

        for building in BuildingType:
            row = [BUILDING_DISPLAY_NAMES[building]]
            for entity in entities:
                level = entity.levels.get(building)
                cell = "-" if level is None else str(level)
                status = entity.construction.get(building)
                if status is not None and status.is_active:
                    cell = f"[yellow]{cell}->{status.target_level or '?'}[/yellow] {format_duration(status.time_remaining_ms)}"
                elif entity.can_upgrade.get(building):
                    cell = f"[green]{cell}[/green]"
                row.append(cell)
            table.add_row(*row)

        table.add_row(
            "[bold]Queue[/bold]",
            *[str(e.active_actions) for e in entities],
        )
        self.console.print(table)

    def units(
        self,
        name: str,
        current: Optional[Mapping[UnitType, int]],
        target: Mapping[UnitType, int],
    ) -> None:
        if not self.show_units or not target:
            return

        table = Table(title=f"Units - {name}")
        table.add_column("Unit", style="cyan")
        table.add_column("Current", justify="right")
        table.add_column("Target", justify="right")
        table.add_column("Missing", justify="right")

        for unit, row in compare_composition(current, target).items():
            missing = f"[red]{row.deficit}[/red]" if row.deficit else "[green]0[/green]"
            table.add_row(UNIT_DISPLAY_NAMES.get(unit, unit.value), str(row.current), str(row.target), missing)

        self.console.print(table)

    def cycle_summary(self, cycle: int, result: CycleResult) -> None:
        stats = result.stats
        if result.success:
            status = "[green]OK[/green]"
        elif result.hard_failure:
            status = "[red]FAILED[/red]"
        else:
            status = "[yellow]RETRY[/yellow]"

        lines = [
            f"Status: {status}",
            f"Castles: {stats.entities} (skipped {stats.entities_skipped})",
            f"Upgrades: {stats.upgrades}  Research: {stats.research}  Free finishes: {stats.free_finishes}",
            f"Recruits: {stats.recruits}  Trades: {stats.trades}  Missions: {stats.missions}",
        ]
        if result.min_time_remaining_ms is not None:
            lines.append(f"Next construction: {format_duration(result.min_time_remaining_ms)}")
        if result.error:
            lines.append(f"[red]Error: {result.error}[/red]")

        self.console.print(Panel("\n".join(lines), title=f"Cycle {cycle}", expand=False))

    def sleep(self, sleep_ms: int) -> None:
        wake = datetime.now() + timedelta(milliseconds=sleep_ms)
        self.console.print(f"[dim]Sleeping {format_duration(sleep_ms)} (until {wake:%H:%M:%S})[/dim]")


def render_stats(stats_data: Dict[str, Any], console: Optional[Console] = None) -> None:
    """Print the summary produced by ``metrics.aggregate_stats``."""
    console = console or Console()

    console.print(f"\n[bold]Run Statistics[/bold]")
    if stats_data.get("run_id"):
        console.print(f"  Run: {stats_data['run_id']}")
    console.print(f"  Events: {stats_data.get('total_metrics', 0)}")
    console.print()

    counts = stats_data.get("counts", {})
    if counts:
        count_table = Table(show_header=False)
        count_table.add_column("Metric", style="cyan")
        count_table.add_column("Count", justify="right")
        for key, value in sorted(counts.items()):
            count_table.add_row(key.replace("_", " ").title(), str(value))
        console.print(count_table)

    durations = stats_data.get("durations", {})
    if durations:
        console.print("\n[bold]Timing Statistics[/bold]")
        dur_table = Table()
        dur_table.add_column("Operation", style="cyan")
        dur_table.add_column("Calls", justify="right")
        dur_table.add_column("Avg (ms)", justify="right")
        dur_table.add_column("Total (s)", justify="right")
        for key, d in durations.items():
            dur_table.add_row(
                key.replace("_", " ").title(),
                str(d["count"]),
                f"{d['avg_ms']:.0f}",
                f"{d['total_ms'] / 1000:.1f}",
            )
        console.print(dur_table)

    actions = stats_data.get("actions", {})
    if actions:
        console.print("\n[bold]UI Actions[/bold]")
        action_table = Table()
        action_table.add_column("Action", style="cyan")
        action_table.add_column("Succeeded", justify="right")
        for name, count in sorted(actions.items()):
            action_table.add_row(name, str(count))
        console.print(action_table)

    failures = stats_data.get("failures", 0)
    recoveries = stats_data.get("recoveries", 0)
    if failures or recoveries:
        console.print(f"\n[bold]Failures & Recoveries[/bold]")
        console.print(f"  Failed events: {failures}")
        console.print(f"  Recovery events: {recoveries}")

    console.print()
