"""
Tests for target process identification.
"""

import os

import pytest

from moltdown import targets
from moltdown.targets import (
    PatternTarget,
    PidTarget,
    launched_pids,
    matches_target,
    record_launched_pid,
    resolve_target,
)


@pytest.mark.parametrize("cmdline", [
    "node /usr/lib/node_modules/@anthropic-ai/claude-code/cli.js",
    "/usr/bin/claude --dangerously-skip-permissions node",
    "bun run /opt/claude/index.ts",
])
def test_matches_agent_processes(cmdline):
    assert matches_target(cmdline)


@pytest.mark.parametrize("cmdline", [
    "",
    "node server.js",
    "python3 -m http.server",
    "vim notes.md",
])
def test_ignores_other_processes(cmdline):
    assert not matches_target(cmdline)


def test_known_false_positive():
    # Substring matching cannot tell a pager over a log apart from the agent.
    assert matches_target("less node-claude-debug.log")


def test_custom_pattern():
    assert matches_target("python agent.py --model x", r"agent\.py")
    assert not matches_target("python other.py", r"agent\.py")


class TestPidFiles:

    def test_record_and_read_live_pid(self, tmp_path):
        record_launched_pid(tmp_path, os.getpid())
        assert launched_pids(tmp_path) == [os.getpid()]

    def test_stale_pid_files_removed(self, tmp_path, monkeypatch):
        path = record_launched_pid(tmp_path, 999999)
        monkeypatch.setattr(targets.psutil, "pid_exists", lambda pid: False)

        assert launched_pids(tmp_path) == []
        assert not path.exists()

    def test_unreadable_pid_file_ignored(self, tmp_path):
        (tmp_path / "garbage.pid").write_text("not-a-pid")
        assert launched_pids(tmp_path) == []

    def test_missing_directory(self, tmp_path):
        assert launched_pids(tmp_path / "nope") == []


def test_resolve_target_prefers_tracked_pids(tmp_path):
    record_launched_pid(tmp_path, os.getpid())
    target = resolve_target(tmp_path)
    assert isinstance(target, PidTarget)
    assert target.pids == [os.getpid()]


def test_resolve_target_falls_back_to_pattern(tmp_path):
    target = resolve_target(tmp_path, r"claude")
    assert isinstance(target, PatternTarget)
    assert target.pattern == r"claude"


def test_pid_target_measures_own_process():
    target = PidTarget([os.getpid()])
    assert target.memory_mb() > 0
    assert os.getpid() in [p.pid for p in target.processes()]


def test_pid_target_skips_dead_pid(monkeypatch):
    class Gone:
        def __init__(self, pid):
            raise targets.psutil.NoSuchProcess(pid)

    monkeypatch.setattr(targets.psutil, "Process", Gone)
    assert PidTarget([424242]).processes() == []
    assert PidTarget([424242]).memory_mb() == 0
