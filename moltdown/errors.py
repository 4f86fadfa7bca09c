"""
Exception hierarchy for moltdown.

Hierarchy:
    MoltdownError (base)
    ├── ConfigError            ← malformed config.yaml or thresholds
    ├── LimitValidationError   ← memory limit not <int><K|M|G>
    ├── StepError              ← a required command inside a phase failed
    └── PhaseError             ← a bootstrap phase did not succeed
"""

from typing import Any


class MoltdownError(Exception):
    """
    Base exception carrying a message and structured context.

    Attributes:
        message: Human-readable error message
        context: Extra details for logs
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ConfigError(MoltdownError):
    """Configuration could not be loaded or is inconsistent."""


class LimitValidationError(MoltdownError):
    """A memory limit argument does not match <digits><K|M|G>."""


class StepError(MoltdownError):
    """
    A required step failed.

    The command and its raw stderr are kept so the operator sees what the
    underlying tool said.
    """

    def __init__(
        self,
        description: str,
        cmd: list[str],
        returncode: int | None = None,
        stderr: str | None = None,
    ):
        detail = f"{description} failed"
        if returncode is not None:
            detail += f" (exit {returncode})"
        if stderr:
            detail += f": {stderr.strip()}"
        super().__init__(detail, context={"cmd": cmd, "returncode": returncode})
        self.description = description
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr


class PhaseError(MoltdownError):
    """A bootstrap phase failed; no marker was recorded for it."""

    def __init__(self, phase_name: str, cause: BaseException | None = None):
        reason = str(cause) if cause is not None else "action reported failure"
        super().__init__(
            f"Failed phase: {phase_name}: {reason}",
            context={"phase": phase_name},
        )
        self.phase_name = phase_name
        self.cause = cause
