"""
Identification of the watched agent processes.

Two ways to find "the target": PIDs recorded by run-limited at launch
time (preferred, exact), or a command-line pattern for agents started any
other way. The pattern heuristic lives in matches_target() only.
"""

import logging
import os
import re
from functools import lru_cache
from pathlib import Path

import psutil

from moltdown.config import DEFAULT_TARGET_PATTERN

logger = logging.getLogger(__name__)

PID_FILE_SUFFIX = ".pid"


@lru_cache(maxsize=16)
def _compile(pattern: str) -> re.Pattern:
    return re.compile(pattern)


def matches_target(cmdline: str, pattern: str = DEFAULT_TARGET_PATTERN) -> bool:
    """
    Check whether a command line belongs to the target process group.

    This is a substring heuristic: an unrelated process whose command line
    happens to match (e.g. ``grep claude node.log``) is a false positive.

    Args:
        cmdline: Full command line, arguments joined by spaces
        pattern: Regular expression searched anywhere in the command line

    Returns:
        True if the pattern matches
    """
    if not cmdline:
        return False
    return _compile(pattern).search(cmdline) is not None


def _rss_mb(processes: list[psutil.Process]) -> int:
    total = 0
    for proc in processes:
        try:
            total += proc.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return round(total / (1024 * 1024))


class PatternTarget:
    """All processes whose command line matches a pattern."""

    def __init__(self, pattern: str = DEFAULT_TARGET_PATTERN):
        self.pattern = pattern

    def __repr__(self) -> str:
        return f"PatternTarget({self.pattern!r})"

    def processes(self) -> list[psutil.Process]:
        own_pid = os.getpid()
        found = []
        for proc in psutil.process_iter(["pid", "cmdline"]):
            if proc.info["pid"] == own_pid:
                continue
            cmdline = " ".join(proc.info.get("cmdline") or [])
            if matches_target(cmdline, self.pattern):
                found.append(proc)
        return found

    def memory_mb(self) -> int:
        """Aggregate resident memory of all matching processes, in MB."""
        return _rss_mb(self.processes())


class PidTarget:
    """Processes started by run-limited, tracked by PID, with their descendants."""

    def __init__(self, pids: list[int]):
        self.pids = list(pids)

    def __repr__(self) -> str:
        return f"PidTarget({self.pids!r})"

    def processes(self) -> list[psutil.Process]:
        found: dict[int, psutil.Process] = {}
        for pid in self.pids:
            try:
                root = psutil.Process(pid)
                found[root.pid] = root
                for child in root.children(recursive=True):
                    found[child.pid] = child
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return list(found.values())

    def memory_mb(self) -> int:
        return _rss_mb(self.processes())


def record_launched_pid(launched_dir: Path, pid: int) -> Path:
    """Write a PID file for a process started by run-limited."""
    launched_dir.mkdir(parents=True, exist_ok=True)
    path = launched_dir / f"{pid}{PID_FILE_SUFFIX}"
    path.write_text(f"{pid}\n")
    return path


def launched_pids(launched_dir: Path) -> list[int]:
    """
    Return live PIDs recorded by run-limited.

    PID files whose process is gone are removed.
    """
    if not launched_dir.is_dir():
        return []

    alive = []
    for path in sorted(launched_dir.glob(f"*{PID_FILE_SUFFIX}")):
        try:
            pid = int(path.read_text().strip())
        except (OSError, ValueError):
            logger.warning("Ignoring unreadable PID file %s", path)
            continue
        if psutil.pid_exists(pid):
            alive.append(pid)
        else:
            path.unlink(missing_ok=True)
    return alive


def resolve_target(launched_dir: Path, pattern: str = DEFAULT_TARGET_PATTERN) -> PidTarget | PatternTarget:
    """Prefer launcher-tracked PIDs; fall back to pattern matching."""
    pids = launched_pids(launched_dir)
    if pids:
        return PidTarget(pids)
    return PatternTarget(pattern)
