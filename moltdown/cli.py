"""
CLI setup and entry point.

Defines the Click command group and registers all commands.
"""

from pathlib import Path

import click

from moltdown import __version__
from moltdown.commands import (
    get_config,
    list_markers,
    open_session,
    print_service_unit,
    reset_markers,
    run_bootstrap,
    run_crash_monitor,
    run_limited,
    run_watchdog,
    show_health,
)
from moltdown.session import DEFAULT_SESSION_NAME


@click.group()
@click.version_option(version=__version__, prog_name="moltdown")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="MOLTDOWN_CONFIG",
    help="Path to config.yaml (default: ~/.config/moltdown/config.yaml)"
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None):
    """
    moltdown - agent VM bootstrap and resilience toolkit.

    Bootstraps a guest into an agent-ready VM and keeps long-running agent
    sessions alive under memory pressure.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


def _config(ctx: click.Context):
    return get_config(ctx.obj.get("config_path"))


@cli.command()
@click.pass_context
def bootstrap(ctx: click.Context):
    """Run all bootstrap phases, skipping those already completed."""
    run_bootstrap(_config(ctx))


@cli.group()
def markers():
    """Inspect or reset bootstrap phase markers."""
    pass


@markers.command("list")
@click.pass_context
def markers_list(ctx: click.Context):
    """Show completed phases."""
    list_markers(_config(ctx))


@markers.command("reset")
@click.argument("phase", required=False)
@click.option(
    "--all", "reset_all",
    is_flag=True,
    help="Remove every marker"
)
@click.pass_context
def markers_reset(ctx: click.Context, phase: str | None, reset_all: bool):
    """Delete a phase marker so the phase runs again."""
    reset_markers(_config(ctx), phase, reset_all)


@cli.command()
@click.pass_context
def watchdog(ctx: click.Context):
    """Run the memory watchdog loop (normally started by systemd)."""
    run_watchdog(_config(ctx))


@cli.command(
    "run-limited",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.pass_context
def run_limited_cmd(ctx: click.Context, args: tuple[str, ...]):
    """
    Run the agent CLI with enforced memory limits.

    ARGS is [MEMORY_LIMIT] [claude args...], e.g. "12G" or "8192M --help".
    """
    run_limited(_config(ctx), args)


@cli.command()
@click.argument("name", default=DEFAULT_SESSION_NAME, required=False)
@click.argument(
    "work_dir",
    required=False,
    type=click.Path(file_okay=False, path_type=Path)
)
@click.pass_context
def session(ctx: click.Context, name: str, work_dir: Path | None):
    """Attach to (or create) a persistent tmux session."""
    open_session(_config(ctx), name, work_dir)


@cli.command("crash-monitor")
@click.pass_context
def crash_monitor(ctx: click.Context):
    """Watch the kernel log for OOM kills and record crash events."""
    run_crash_monitor(_config(ctx))


@cli.command()
@click.option(
    "--watch", "-w",
    is_flag=True,
    help="Continuous monitoring (updates every 30s)"
)
@click.option(
    "--trend", "-t",
    "trend",
    is_flag=True,
    help="Show memory trend analysis"
)
@click.pass_context
def health(ctx: click.Context, watch: bool, trend: bool):
    """Show VM health with memory trend prediction."""
    show_health(ctx.obj.get("config_path"), watch, trend)


@cli.command("install-unit")
@click.option(
    "--user", "-u",
    help="Account the watchdog service runs as"
)
@click.pass_context
def install_unit(ctx: click.Context, user: str | None):
    """Print the systemd unit for the watchdog service."""
    print_service_unit(_config(ctx), user)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
