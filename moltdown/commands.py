"""
CLI command implementations.

Contains the handlers behind the moltdown Click commands.
"""

import logging
import subprocess
import sys
import time
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from moltdown import __version__
from moltdown.config import BootstrapConfig, build_config, load_config
from moltdown.errors import ConfigError, LimitValidationError, PhaseError
from moltdown.health import (
    MetricsStore,
    collect_vitals,
    format_report,
    format_trend_report,
    predict_trend,
    record_metric,
)
from moltdown.launcher import USAGE, launch_with_limit
from moltdown.library import build_phases, moltdown_executable
from moltdown.logs import bootstrap_log_path, configure_logging
from moltdown.markers import MarkerStore
from moltdown.phases import PhaseOutcome, StepRunner, run_phases
from moltdown.session import CrashLog, CrashMonitor, ensure_session
from moltdown.targets import resolve_target
from moltdown.watchdog import build_watchdog, render_service_unit

console = Console()
logger = logging.getLogger(__name__)


def get_config(config_path: Path | None = None) -> BootstrapConfig:
    """Load and validate configuration, exiting with a message on error."""
    try:
        return build_config(load_config(config_path))
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/] {e.message}")
        sys.exit(1)


def run_bootstrap(config: BootstrapConfig) -> None:
    """Run every bootstrap phase in order, skipping completed ones."""
    log_file = bootstrap_log_path(config.paths.log_dir)
    configure_logging(log_file=log_file, console=console)

    console.print(Panel.fit(
        f"[bold cyan]moltdown - Agent VM Bootstrap v{__version__}[/]",
        border_style="cyan"
    ))
    logger.info("Log file: %s", log_file)
    logger.info("Marker directory: %s", config.paths.marker_dir)

    store = MarkerStore(config.paths.marker_dir)
    phases = build_phases(config, StepRunner())

    def announce(phase):
        console.rule(f"[bold][PHASE] {phase.title or phase.name}[/]")

    try:
        results = run_phases(phases, store, on_phase_start=announce)
    except PhaseError as e:
        console.print(f"\n[red]✗ Bootstrap aborted:[/] {e.message}")
        console.print("[dim]Fix the problem and re-run; completed phases will be skipped.[/]")
        console.print(f"[dim]Full log: {log_file}[/]")
        sys.exit(1)

    ran = sum(1 for _, outcome in results if outcome == PhaseOutcome.COMPLETED)
    skipped = len(results) - ran
    console.print(Panel.fit(
        f"[bold green]Bootstrap Complete![/] ({ran} ran, {skipped} skipped)",
        border_style="green"
    ))
    logger.info("Log saved to: %s", log_file)
    logger.info("Manifests saved to: %s", config.paths.artifacts_dir)

    console.print("\n[bold]NEXT STEPS:[/]")
    console.print("  1) Authenticate GitHub:")
    console.print("     [cyan]gh auth login[/]")
    console.print("  2) If Docker was installed, log out and back in (or run: newgrp docker)")
    console.print("  3) Shut down the VM and create a 'dev-ready' snapshot:")
    console.print("     [cyan]sudo shutdown -h now[/]")
    console.print("     [dim]# On host: sudo virsh snapshot-create-as <vm-name> dev-ready --atomic[/]")
    console.print()


def list_markers(config: BootstrapConfig) -> None:
    """Show which phases are recorded as complete."""
    store = MarkerStore(config.paths.marker_dir)
    done = set(store.completed())
    phases = build_phases(config, StepRunner())

    table = Table(title="Bootstrap Phases")
    table.add_column("Phase", style="cyan")
    table.add_column("Title", style="green")
    table.add_column("Done", justify="center")
    for phase in phases:
        status = "[green]✓[/]" if phase.name in done else "[red]✗[/]"
        table.add_row(phase.name, phase.title, status)

    known = {phase.name for phase in phases}
    for name in sorted(done - known):
        table.add_row(name, "[dim]unknown[/]", "[green]✓[/]")

    console.print(table)
    console.print(f"[dim]Marker directory: {config.paths.marker_dir}[/]")


def reset_markers(config: BootstrapConfig, phase_name: str | None, reset_all: bool) -> None:
    """Delete markers so phases run again on the next bootstrap."""
    store = MarkerStore(config.paths.marker_dir)
    if reset_all:
        removed = store.reset_all()
        console.print(f"[green]✓[/] Removed {removed} marker(s)")
        return

    if not phase_name:
        console.print("[red]Give a phase name or --all[/]")
        sys.exit(1)

    try:
        removed = store.clear(phase_name)
    except ValueError as e:
        console.print(f"[red]{e}[/]")
        sys.exit(1)

    if removed:
        console.print(f"[green]✓[/] Phase {phase_name} will run again on next bootstrap")
    else:
        console.print(f"[yellow]No marker for phase: {phase_name}[/]")


def run_watchdog(config: BootstrapConfig) -> None:
    configure_logging()
    build_watchdog(config).run()


def run_limited(config: BootstrapConfig, args: tuple[str, ...]) -> None:
    """Run the agent CLI under a memory-limited scope and exit with its code."""
    configure_logging()
    if args:
        limit, passthrough = args[0], list(args[1:])
    else:
        limit, passthrough = config.cgroups_memory_limit, []

    try:
        code = launch_with_limit(limit, passthrough, config.paths.launched_dir)
    except LimitValidationError as e:
        console.print(f"[red]{e.message}[/]")
        console.print(USAGE, highlight=False)
        sys.exit(1)
    except FileNotFoundError as e:
        console.print(f"[red]Cannot start systemd-run:[/] {e}")
        sys.exit(127)
    # Killed by a signal: report it the way a shell would.
    if code < 0:
        code = 128 - code
    sys.exit(code)


def open_session(config: BootstrapConfig, name: str, work_dir: Path | None) -> None:
    configure_logging()
    work_dir = work_dir or config.paths.work_dir
    try:
        result = ensure_session(name, work_dir, config.paths.session_dir)
    except FileNotFoundError as e:
        console.print(f"[red]Cannot run tmux:[/] {e}")
        console.print("[dim]Install it with: sudo apt install tmux[/]")
        sys.exit(1)
    except subprocess.CalledProcessError as e:
        console.print(f"[red]tmux failed:[/] {' '.join(e.cmd)}", highlight=False)
        if e.stderr:
            console.print(e.stderr.strip(), style="red", markup=False, highlight=False)
        sys.exit(1)
    if result.created:
        logger.info("Session state recorded in %s", result.state_file)


def run_crash_monitor(config: BootstrapConfig) -> None:
    configure_logging()
    monitor = CrashMonitor(CrashLog(config.paths.crash_log), config.watchdog.target_pattern)
    logger.info("Monitoring kernel log for OOM kills, writing to %s", config.paths.crash_log)
    monitor.run()


def _health_once(config: BootstrapConfig, store: MetricsStore) -> None:
    target = resolve_target(config.paths.launched_dir, config.watchdog.target_pattern)
    agent_mb = record_metric(store, target)
    trend = predict_trend(store.load(), config.health.alert_threshold_mb, config.health)
    for line in format_report(collect_vitals(), agent_mb, trend, config.health):
        console.print(line, highlight=False)


def show_health(config_path: Path | None, watch: bool, trend_only: bool) -> None:
    """
    Print the health report. Always exits 0.

    Args:
        config_path: Optional explicit config file
        watch: Refresh every watch_interval_seconds until interrupted
        trend_only: Show the trend analysis instead of the report
    """
    configure_logging()
    try:
        config = build_config(load_config(config_path))
    except ConfigError as e:
        console.print(f"[yellow]Ignoring invalid configuration:[/] {e.message}")
        config = build_config({})

    store = MetricsStore(config.paths.metrics_file, config.health.max_samples)

    if trend_only:
        samples = store.load()
        trend = predict_trend(samples, config.health.alert_threshold_mb, config.health)
        for line in format_trend_report(samples, trend):
            console.print(line, highlight=False)
        return

    if not watch:
        _health_once(config, store)
        return

    interval = config.health.watch_interval_seconds
    try:
        while True:
            console.clear()
            _health_once(config, store)
            console.print(f"\n[dim][Ctrl+C to exit, refreshing in {int(interval)}s...][/]")
            time.sleep(interval)
    except KeyboardInterrupt:
        console.print()


def print_service_unit(config: BootstrapConfig, user: str | None) -> None:
    console.print(
        render_service_unit(config.watchdog, moltdown_executable(), user=user),
        highlight=False,
        markup=False,
        end="",
    )
