"""
Shared fixtures for moltdown tests.
"""

import subprocess
from pathlib import Path

import pytest

from moltdown.config import build_config


class FakeRunner:
    """Stand-in for run_command that records calls and replays canned results."""

    def __init__(self, responses=None):
        self.calls = []
        self.responses = responses or {}

    def __call__(self, cmd, capture=True, check=True, sudo=False, **kwargs):
        self.calls.append({"cmd": list(cmd), "sudo": sudo, "check": check, **kwargs})
        key = tuple(cmd[:2])
        response = self.responses.get(key, (0, "", ""))
        if callable(response):
            response = response(cmd)
        returncode, stdout, stderr = response
        if check and returncode != 0:
            raise subprocess.CalledProcessError(returncode, cmd, stdout, stderr)
        return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)

    def commands(self):
        return [call["cmd"] for call in self.calls]


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def home(tmp_path: Path) -> Path:
    home_dir = tmp_path / "home"
    home_dir.mkdir()
    return home_dir


@pytest.fixture
def config(home, monkeypatch):
    for var in ("WATCHDOG_WARN_MB", "WATCHDOG_KILL_MB", "SWAP_SIZE", "CGROUPS_MEMORY_LIMIT"):
        monkeypatch.delenv(var, raising=False)
    return build_config({}, home=home)
