"""
Persistent tmux sessions and the OOM crash monitor.

ensure_session() attaches to a named tmux session or creates it, writing a
small state file only when the session is created. The crash monitor
tails the kernel log for out-of-memory kills and appends one block per
detection to crashes.log.
"""

import fcntl
import logging
import os
import re
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import psutil

from moltdown.config import DEFAULT_TARGET_PATTERN
from moltdown.targets import PatternTarget
from moltdown.utils import format_bytes, run_command

logger = logging.getLogger(__name__)

DEFAULT_SESSION_NAME = "agent-work"
STATE_SUFFIX = ".state"
CRASH_CHECK_INTERVAL = 60
DMESG_TAIL_LINES = 20
OOM_PATTERN = re.compile(r"out of memory|oom-killer|killed process.*claude", re.IGNORECASE)

_kernel_log_warned = False


@dataclass(frozen=True)
class Session:
    """Metadata recorded when a session is created."""

    name: str
    created: datetime
    work_dir: Path
    pid: int

    def to_state(self) -> str:
        return (
            f"session={self.name}\n"
            f"created={self.created.isoformat(timespec='seconds')}\n"
            f"work_dir={self.work_dir}\n"
            f"pid={self.pid}\n"
        )


@dataclass(frozen=True)
class SessionResult:
    name: str
    created: bool
    state_file: Path | None = None


def state_file_for(session_dir: Path, name: str) -> Path:
    return session_dir / f"{name}{STATE_SUFFIX}"


def read_session_state(path: Path) -> Session:
    """
    Parse a session state file.

    Raises:
        ValueError: If a required key is missing or malformed
    """
    values = {}
    for line in path.read_text().splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip()

    try:
        return Session(
            name=values["session"],
            created=datetime.fromisoformat(values["created"]),
            work_dir=Path(values["work_dir"]),
            pid=int(values["pid"]),
        )
    except KeyError as e:
        raise ValueError(f"{path}: missing key {e.args[0]}") from None


def session_exists(name: str, runner=run_command) -> bool:
    """Check for a live tmux session by name."""
    try:
        result = runner(["tmux", "has-session", "-t", name], check=False)
    except FileNotFoundError:
        return False
    return result.returncode == 0


def list_sessions(runner=run_command) -> list[str]:
    """
    Get the names of live tmux sessions.

    Returns:
        Session names, empty when tmux is missing or no server is running
    """
    try:
        result = runner(["tmux", "list-sessions", "-F", "#{session_name}"], check=False)
    except FileNotFoundError:
        return []
    if result.returncode != 0:
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def ensure_session(
    name: str,
    work_dir: Path,
    session_dir: Path,
    attach: bool = True,
    runner=run_command,
) -> SessionResult:
    """
    Attach to a named tmux session, creating it first if needed.

    Session metadata is recorded only when the session is created, never
    on reattachment.

    Args:
        name: tmux session name
        work_dir: Starting directory for a new session
        session_dir: Directory holding <name>.state files
        attach: Attach the terminal after ensuring the session exists
        runner: Command runner (run_command)

    Returns:
        SessionResult telling whether the session was created
    """
    session_dir.mkdir(parents=True, exist_ok=True)

    if session_exists(name, runner):
        logger.info("Attaching to existing session: %s", name)
        result = SessionResult(name=name, created=False)
    else:
        logger.info("Creating new session: %s in %s", name, work_dir)
        runner(["tmux", "new-session", "-d", "-s", name, "-c", str(work_dir)], check=True)

        session = Session(
            name=name,
            created=datetime.now().astimezone(),
            work_dir=work_dir,
            pid=os.getpid(),
        )
        state_file = state_file_for(session_dir, name)
        state_file.write_text(session.to_state())
        result = SessionResult(name=name, created=True, state_file=state_file)

    if attach:
        runner(["tmux", "attach-session", "-t", name], capture=False, check=False)
    return result


@dataclass(frozen=True)
class CrashEvent:
    """One detected crash, written as a fixed-format block."""

    timestamp: datetime
    trigger: str
    memory: str
    target_processes: int
    sessions: int

    def to_block(self) -> str:
        return (
            "---\n"
            f"timestamp: {self.timestamp.isoformat(timespec='seconds')}\n"
            f"trigger: {self.trigger}\n"
            f"memory: {self.memory}\n"
            f"claude_processes: {self.target_processes}\n"
            f"sessions: {self.sessions}\n"
        )


class CrashLog:
    """Append-only crash log guarded by an advisory lock."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def append(self, event: CrashEvent) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                f.write(event.to_block())
                f.flush()
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    def count(self) -> int:
        """Number of recorded events."""
        if not self.path.exists():
            return 0
        return sum(1 for line in self.path.read_text().splitlines() if line == "---")


def scan_for_oom(lines: list[str]) -> list[str]:
    """Return the kernel log lines that indicate an out-of-memory kill."""
    return [line for line in lines if OOM_PATTERN.search(line)]


def memory_summary() -> str:
    """One-line RAM and swap summary, like ``free -h`` rows joined."""
    vm = psutil.virtual_memory()
    swap = psutil.swap_memory()
    return (
        f"Mem: {format_bytes(vm.total - vm.available)}/{format_bytes(vm.total)} "
        f"Swap: {format_bytes(swap.used)}/{format_bytes(swap.total)}"
    )


def read_kernel_log_tail(lines: int = DMESG_TAIL_LINES, runner=run_command) -> list[str]:
    """
    Return the last lines of ``dmesg -T``; empty if dmesg is unavailable.

    The first failure is logged as a warning (typically
    kernel.dmesg_restrict=1), later ones at debug level.
    """
    try:
        result = runner(["dmesg", "-T"], check=False)
    except FileNotFoundError as e:
        _kernel_log_unreadable(str(e))
        return []
    if result.returncode != 0:
        _kernel_log_unreadable((result.stderr or "").strip() or f"exit {result.returncode}")
        return []
    return result.stdout.splitlines()[-lines:]


def _kernel_log_unreadable(reason: str) -> None:
    global _kernel_log_warned
    if _kernel_log_warned:
        logger.debug("dmesg failed: %s", reason)
        return
    _kernel_log_warned = True
    logger.warning("Cannot read kernel log, OOM kills will not be detected: %s", reason)


class CrashMonitor:
    """
    Periodically scans the kernel log tail for OOM kills.

    Detection is best-effort: an event that scrolls out of the tail, or is
    rotated away, between two checks is missed.
    """

    def __init__(
        self,
        crash_log: CrashLog,
        target_pattern: str = DEFAULT_TARGET_PATTERN,
        interval: float = CRASH_CHECK_INTERVAL,
        log_reader: Callable[[], list[str]] = read_kernel_log_tail,
        session_lister: Callable[[], list[str]] = list_sessions,
        memory_reader: Callable[[], str] = memory_summary,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.crash_log = crash_log
        self.target = PatternTarget(target_pattern)
        self.interval = interval
        self._log_reader = log_reader
        self._session_lister = session_lister
        self._memory_reader = memory_reader
        self._sleep = sleep
        self._last_matches: set[str] = set()

    def check_once(self) -> CrashEvent | None:
        """
        Inspect the log tail once.

        An event is recorded when a matching line appears that was not in
        the previous check's tail.
        """
        matches = set(scan_for_oom(self._log_reader()))
        new = matches - self._last_matches
        self._last_matches = matches
        if not new:
            return None

        event = CrashEvent(
            timestamp=datetime.now().astimezone(),
            trigger="oom-killer",
            memory=self._memory_reader(),
            target_processes=len(self.target.processes()),
            sessions=len(self._session_lister()),
        )
        self.crash_log.append(event)
        logger.warning("OOM kill detected, logged to %s", self.crash_log.path)
        return event

    def run(self, max_cycles: int | None = None) -> None:
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            try:
                self.check_once()
            except (OSError, subprocess.SubprocessError, psutil.Error) as e:
                logger.error("Crash check failed: %s", e)
            cycles += 1
            self._sleep(self.interval)
