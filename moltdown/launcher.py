"""
Resource-limited launcher.

Starts the agent CLI inside a transient systemd scope with a hard memory
ceiling and a memory+swap ceiling. Enforcement is left to the kernel;
this module only validates the limit, builds the systemd-run command,
and records the child's PID for the watchdog.
"""

import logging
import os
import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from moltdown.errors import LimitValidationError
from moltdown.targets import record_launched_pid

logger = logging.getLogger(__name__)

LIMIT_PATTERN = re.compile(r"[0-9]+[GMK]")
SWAP_HEADROOM = 4
DEFAULT_PROGRAM = "claude"

USAGE = (
    "Usage: moltdown run-limited [MEMORY_LIMIT] [claude args...]\n"
    "  MEMORY_LIMIT: Memory limit with suffix (e.g., 12G, 8192M)\n"
    "  Default: 12G"
)


@dataclass(frozen=True)
class MemoryLimit:
    """A size with a single-letter unit suffix, as systemd accepts it."""

    value: int
    suffix: str

    def __str__(self) -> str:
        return f"{self.value}{self.suffix}"

    def swap_ceiling(self, headroom: int = SWAP_HEADROOM) -> "MemoryLimit":
        """Memory+swap ceiling: the limit plus headroom in the same unit."""
        return MemoryLimit(self.value + headroom, self.suffix)


def parse_memory_limit(text: str) -> MemoryLimit:
    """
    Parse a memory limit such as ``12G`` or ``8192M``.

    Raises:
        LimitValidationError: If text is not digits followed by K, M or G
    """
    if not isinstance(text, str) or not LIMIT_PATTERN.fullmatch(text):
        raise LimitValidationError(
            f"Invalid memory limit: {text!r}",
            context={"limit": text},
        )
    return MemoryLimit(int(text[:-1]), text[-1])


def build_scope_command(
    limit: MemoryLimit,
    args: Sequence[str],
    unit: str,
    program: str = DEFAULT_PROGRAM,
) -> list[str]:
    """
    Build the systemd-run invocation for a memory-limited scope.

    Args:
        limit: Hard memory ceiling (MemoryMax)
        args: Arguments passed through to the program
        unit: Transient scope unit name
        program: Executable to run inside the scope

    Returns:
        Command list
    """
    swap = limit.swap_ceiling()
    return [
        "systemd-run",
        "--user",
        "--scope",
        f"--unit={unit}",
        "-p", f"MemoryMax={limit}",
        "-p", f"MemorySwapMax={swap}",
        "-p", "MemoryAccounting=yes",
        "--",
        program,
        *args,
    ]


def launch_with_limit(
    limit_text: str,
    args: Sequence[str],
    launched_dir: Path,
    program: str = DEFAULT_PROGRAM,
    popen=subprocess.Popen,
) -> int:
    """
    Run the program under a memory-limited scope and wait for it.

    The limit is validated before anything is spawned. While the child runs
    its PID is recorded under launched_dir so the watchdog can track it
    exactly instead of by pattern.

    Args:
        limit_text: Memory limit such as "12G"
        args: Pass-through arguments
        launched_dir: Directory for the PID file
        program: Executable to run inside the scope
        popen: Process factory (subprocess.Popen)

    Returns:
        The child's exit code

    Raises:
        LimitValidationError: If limit_text is malformed
    """
    limit = parse_memory_limit(limit_text)
    unit = f"{program}-limited-{os.getpid()}"
    cmd = build_scope_command(limit, args, unit, program)

    logger.info(
        "Starting with MemoryMax=%s, MemorySwapMax=%s",
        limit, limit.swap_ceiling(),
    )

    proc = popen(cmd)
    pid_file = record_launched_pid(launched_dir, proc.pid)
    try:
        return proc.wait()
    except KeyboardInterrupt:
        # The child shares our terminal and already received SIGINT.
        return proc.wait()
    finally:
        pid_file.unlink(missing_ok=True)
