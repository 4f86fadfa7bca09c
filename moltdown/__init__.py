"""
moltdown - Agent VM bootstrap and resilience toolkit

This package bootstraps guest VMs for AI-agent development and keeps
long-running agent sessions alive under memory pressure.
"""

__version__ = "1.0.0"

from moltdown.config import build_config, load_config
from moltdown.markers import MarkerStore
from moltdown.phases import OptionalStep, Phase, PhaseOutcome, RequiredStep, run_once, run_phases
from moltdown.utils import run_command

__all__ = [
    "__version__",
    "build_config",
    "load_config",
    "MarkerStore",
    "OptionalStep",
    "Phase",
    "PhaseOutcome",
    "RequiredStep",
    "run_once",
    "run_phases",
    "run_command",
]
