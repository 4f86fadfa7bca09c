"""
Idempotent phase runner.

Runs named units of work at most once across repeated bootstrap runs,
using a MarkerStore to remember which phases already succeeded. Also
defines the step types phases are built from: a RequiredStep failure
aborts the phase, an OptionalStep failure is logged and ignored.
"""

import logging
import subprocess
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

from moltdown.errors import PhaseError, StepError
from moltdown.markers import MarkerStore
from moltdown.utils import run_command

logger = logging.getLogger(__name__)

PhaseAction = Callable[[], bool | None]


class PhaseOutcome(str, Enum):
    SKIPPED = "skipped"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Phase:
    """A named bootstrap phase and the action that applies it."""

    name: str
    action: PhaseAction
    title: str = ""


def run_once(phase_name: str, action: PhaseAction, store: MarkerStore) -> PhaseOutcome:
    """
    Run a phase unless its marker already exists.

    The action fails by raising or by returning False. On failure no
    marker is written and PhaseError is raised, so a later call retries
    the whole action.

    Args:
        phase_name: Stable phase identifier (also the marker name)
        action: Zero-argument callable applying the phase
        store: Marker store consulted before and updated after the action

    Returns:
        PhaseOutcome.SKIPPED if already completed, else PhaseOutcome.COMPLETED

    Raises:
        PhaseError: If the action failed
    """
    if store.is_done(phase_name):
        logger.info("Skipping '%s' (already completed)", phase_name)
        return PhaseOutcome.SKIPPED

    logger.info("Starting phase: %s", phase_name)
    try:
        result = action()
    except Exception as e:
        logger.error("Failed phase: %s: %s", phase_name, e)
        raise PhaseError(phase_name, e) from e

    if result is False:
        logger.error("Failed phase: %s", phase_name)
        raise PhaseError(phase_name)

    store.mark_done(phase_name)
    logger.info("Completed phase: %s", phase_name)
    return PhaseOutcome.COMPLETED


def run_phases(
    phases: Iterable[Phase],
    store: MarkerStore,
    on_phase_start: Callable[[Phase], None] | None = None,
) -> list[tuple[str, PhaseOutcome]]:
    """
    Run phases strictly in order, stopping at the first failure.

    Args:
        phases: Ordered phases
        store: Marker store shared by all phases
        on_phase_start: Called before a phase's action runs (not for skips)

    Returns:
        (phase name, outcome) for every phase that ran or was skipped

    Raises:
        PhaseError: From the first failing phase; later phases never run
    """
    results = []
    for phase in phases:
        action = phase.action
        if on_phase_start is not None:
            def action(phase=phase):
                on_phase_start(phase)
                return phase.action()
        outcome = run_once(phase.name, action, store)
        results.append((phase.name, outcome))
    return results


@dataclass(frozen=True)
class Step:
    """One external command inside a phase."""

    description: str
    cmd: list[str]
    sudo: bool = False
    input: str | None = None
    timeout: float | None = None
    env: dict[str, str] | None = field(default=None, compare=False)


@dataclass(frozen=True)
class RequiredStep(Step):
    """A step whose failure fails the enclosing phase."""


@dataclass(frozen=True)
class OptionalStep(Step):
    """A step whose failure is logged and ignored."""


class StepRunner:
    """Executes steps through run_command, honoring required/optional semantics."""

    def __init__(self, runner: Callable[..., subprocess.CompletedProcess] = run_command):
        self._runner = runner

    def run(self, step: Step) -> subprocess.CompletedProcess | None:
        """
        Execute a step.

        Args:
            step: RequiredStep or OptionalStep

        Returns:
            CompletedProcess on success, None if an optional step failed

        Raises:
            StepError: If a required step failed
        """
        logger.debug("Running: %s", " ".join(step.cmd))
        kwargs = {}
        if step.input is not None:
            kwargs["input"] = step.input
        if step.timeout is not None:
            kwargs["timeout"] = step.timeout
        if step.env is not None:
            kwargs["env"] = step.env

        try:
            return self._runner(step.cmd, check=True, sudo=step.sudo, **kwargs)
        except subprocess.CalledProcessError as e:
            error = StepError(step.description, step.cmd, e.returncode, e.stderr)
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            error = StepError(step.description, step.cmd, stderr=str(e))

        if isinstance(step, OptionalStep):
            logger.warning("Optional step skipped: %s", error.message)
            return None
        raise error

    def run_all(self, steps: Iterable[Step]) -> None:
        for step in steps:
            self.run(step)
