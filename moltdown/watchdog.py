"""
Memory watchdog for the agent process group.

Samples the target's resident memory on a fixed interval and escalates:
a warning above the warn threshold, SIGTERM above the kill threshold, and
SIGKILL if usage is still above it after a grace period. Meant to run as
a systemd service with Restart=on-failure.
"""

import logging
import signal
import time
from collections.abc import Callable
from enum import Enum
from typing import Protocol

import psutil

from moltdown.config import BootstrapConfig, WatchdogConfig
from moltdown.targets import resolve_target

logger = logging.getLogger(__name__)

SERVICE_NAME = "claude-watchdog"


class Target(Protocol):
    def processes(self) -> list[psutil.Process]: ...

    def memory_mb(self) -> int: ...


class WatchdogAction(str, Enum):
    NONE = "none"
    WARN = "warn"
    TERMINATED = "terminated"
    KILLED = "killed"


def signal_processes(processes: list[psutil.Process], sig: int) -> int:
    """
    Send a signal to each process, ignoring ones that already exited.

    Returns:
        Number of processes signalled
    """
    sent = 0
    for proc in processes:
        try:
            proc.send_signal(sig)
            sent += 1
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.warning("Permission denied signalling pid %s", proc.pid)
    return sent


class Watchdog:
    """Threshold-based memory enforcement loop."""

    def __init__(
        self,
        config: WatchdogConfig,
        target_factory: Callable[[], Target],
        sleep: Callable[[float], None] = time.sleep,
        send_signal: Callable[[list[psutil.Process], int], int] = signal_processes,
    ):
        self.config = config
        self._target_factory = target_factory
        self._sleep = sleep
        self._send_signal = send_signal

    def check_once(self) -> WatchdogAction:
        """
        Run one sampling cycle.

        Returns:
            The action taken this cycle
        """
        cfg = self.config
        target = self._target_factory()
        mem_mb = target.memory_mb()

        if mem_mb > cfg.kill_threshold_mb:
            logger.critical(
                "CRITICAL: agent using %sMB (>%sMB), sending SIGTERM...",
                mem_mb, cfg.kill_threshold_mb,
            )
            self._send_signal(target.processes(), signal.SIGTERM)
            self._sleep(cfg.grace_seconds)

            mem_mb = target.memory_mb()
            if mem_mb > cfg.kill_threshold_mb:
                logger.critical("CRITICAL: Force killing agent (still at %sMB)...", mem_mb)
                self._send_signal(target.processes(), signal.SIGKILL)
                return WatchdogAction.KILLED
            return WatchdogAction.TERMINATED

        if mem_mb > cfg.warn_threshold_mb:
            logger.warning("WARNING: agent using %sMB (>%sMB)", mem_mb, cfg.warn_threshold_mb)
            return WatchdogAction.WARN

        logger.debug("agent using %sMB", mem_mb)
        return WatchdogAction.NONE

    def run(self, max_cycles: int | None = None) -> None:
        """
        Loop forever (or for max_cycles), sleeping check_interval_seconds between cycles.

        Sampling failures from the OS are logged and the cycle is skipped;
        anything else propagates so the service manager restarts us.
        """
        cfg = self.config
        logger.info(
            "Starting watchdog (warn: %sMB, kill: %sMB)",
            cfg.warn_threshold_mb, cfg.kill_threshold_mb,
        )
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            try:
                self.check_once()
            except (OSError, psutil.Error) as e:
                logger.error("Memory sampling failed: %s", e)
            cycles += 1
            self._sleep(cfg.check_interval_seconds)


def build_watchdog(config: BootstrapConfig) -> Watchdog:
    """Create a watchdog resolving its target from launcher PID files each cycle."""
    launched_dir = config.paths.launched_dir
    pattern = config.watchdog.target_pattern
    return Watchdog(config.watchdog, lambda: resolve_target(launched_dir, pattern))


def render_service_unit(config: WatchdogConfig, executable: str, user: str | None = None) -> str:
    """
    Render the systemd unit that keeps the watchdog running.

    Args:
        config: Thresholds exported to the service environment
        executable: Path to the moltdown entry point
        user: Account the service runs as (root if None)

    Returns:
        Unit file text
    """
    user_line = f"User={user}\n" if user else ""
    return (
        "[Unit]\n"
        "Description=Agent CLI Memory Watchdog\n"
        "After=multi-user.target\n"
        "\n"
        "[Service]\n"
        "Type=simple\n"
        f"{user_line}"
        f"ExecStart={executable} watchdog\n"
        "Restart=on-failure\n"
        "RestartSec=30s\n"
        f'Environment="WATCHDOG_WARN_MB={config.warn_threshold_mb}"\n'
        f'Environment="WATCHDOG_KILL_MB={config.kill_threshold_mb}"\n'
        "StandardOutput=journal\n"
        "StandardError=journal\n"
        f"SyslogIdentifier={SERVICE_NAME}\n"
        "\n"
        "[Install]\n"
        "WantedBy=multi-user.target\n"
    )
