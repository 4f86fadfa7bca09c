"""
Utility functions for running commands.

Provides the subprocess wrapper every phase, status check and tmux call goes
through, plus a few formatting helpers shared by the reports.
"""

import logging
import os
import shlex
import shutil
import subprocess

logger = logging.getLogger(__name__)


def run_command(
    cmd: list[str],
    capture: bool = True,
    check: bool = True,
    sudo: bool = False,
    env: dict[str, str] | None = None,
    **kwargs
) -> subprocess.CompletedProcess:
    """
    Run a command and return the result.

    Args:
        cmd: Command and arguments as a list
        capture: Whether to capture stdout/stderr
        check: Whether to raise exception on non-zero exit
        sudo: Whether to run with sudo (if not root)
        env: Extra environment variables, layered over the current environment
        **kwargs: Additional arguments to pass to subprocess.run

    Returns:
        CompletedProcess object with command results

    Raises:
        subprocess.CalledProcessError: If check=True and command fails
        FileNotFoundError: If the executable does not exist
    """
    cmd = list(cmd)
    if sudo and os.geteuid() != 0:
        # sudo resets the environment; pass extra variables as VAR=value
        assignments = [f"{key}={value}" for key, value in (env or {}).items()]
        cmd = ["sudo", *assignments, *cmd]
    elif env:
        kwargs["env"] = {**os.environ, **env}

    logger.debug("$ %s", shlex.join(cmd))
    try:
        return subprocess.run(
            cmd,
            capture_output=capture,
            text=True,
            check=check,
            **kwargs
        )
    except subprocess.CalledProcessError as e:
        logger.debug("Command failed (exit %s): %s", e.returncode, shlex.join(cmd))
        if capture:
            if e.stdout:
                logger.debug("stdout: %s", e.stdout.strip())
            if e.stderr:
                logger.debug("stderr: %s", e.stderr.strip())
        raise


def command_exists(name: str) -> bool:
    """Return True if an executable is on PATH."""
    return shutil.which(name) is not None


def first_line_output(cmd: list[str], default: str = "unknown", timeout: float = 5) -> str:
    """
    Run a read-only command and return the first line of its stdout.

    Used for informational checks where a missing tool is not an error.

    Args:
        cmd: Command and arguments
        default: Value returned when the command is missing or fails
        timeout: Seconds before giving up

    Returns:
        First stdout line, stripped, or default
    """
    try:
        result = run_command(cmd, check=False, timeout=timeout)
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return default
    if result.returncode != 0 or not result.stdout.strip():
        return default
    return result.stdout.strip().splitlines()[0]


def format_bytes(num: float) -> str:
    """Format a byte count the way ``free -h`` does (e.g. 7.6Gi)."""
    for unit in ("B", "Ki", "Mi", "Gi", "Ti"):
        if abs(num) < 1024 or unit == "Ti":
            if unit == "B":
                return f"{int(num)}B"
            return f"{num:.1f}{unit}"
        num /= 1024
    return f"{num:.1f}Ti"
