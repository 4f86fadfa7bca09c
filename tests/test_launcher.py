"""
Tests for the memory-limited launcher.
"""

import pytest

from moltdown.errors import LimitValidationError
from moltdown.launcher import MemoryLimit, build_scope_command, launch_with_limit, parse_memory_limit


class TestParseMemoryLimit:

    @pytest.mark.parametrize("text,expected", [
        ("12G", MemoryLimit(12, "G")),
        ("8192M", MemoryLimit(8192, "M")),
        ("1048576K", MemoryLimit(1048576, "K")),
    ])
    def test_valid(self, text, expected):
        assert parse_memory_limit(text) == expected

    @pytest.mark.parametrize("text", ["12x", "12", "G", "12g", "1.5G", "-1G", " 12G", "12G\n", ""])
    def test_invalid(self, text):
        with pytest.raises(LimitValidationError):
            parse_memory_limit(text)


def test_swap_ceiling_adds_headroom_in_same_unit():
    assert str(parse_memory_limit("12G").swap_ceiling()) == "16G"
    assert str(parse_memory_limit("8192M").swap_ceiling()) == "8196M"


def test_build_scope_command():
    cmd = build_scope_command(MemoryLimit(12, "G"), ["--resume", "abc"], unit="claude-limited-42")
    assert cmd == [
        "systemd-run", "--user", "--scope", "--unit=claude-limited-42",
        "-p", "MemoryMax=12G",
        "-p", "MemorySwapMax=16G",
        "-p", "MemoryAccounting=yes",
        "--", "claude", "--resume", "abc",
    ]


class FakeProc:
    def __init__(self, pid=4321, returncode=0):
        self.pid = pid
        self.returncode = returncode

    def wait(self):
        return self.returncode


class FakePopen:
    def __init__(self, returncode=0):
        self.cmds = []
        self.returncode = returncode

    def __call__(self, cmd):
        self.cmds.append(cmd)
        return FakeProc(returncode=self.returncode)


class TestLaunchWithLimit:

    def test_invalid_limit_spawns_nothing(self, tmp_path):
        popen = FakePopen()
        with pytest.raises(LimitValidationError):
            launch_with_limit("12x", [], tmp_path, popen=popen)
        assert popen.cmds == []

    def test_valid_limit_spawns_scope(self, tmp_path):
        popen = FakePopen()
        assert launch_with_limit("12G", [], tmp_path, popen=popen) == 0

        cmd = popen.cmds[0]
        assert cmd[0] == "systemd-run"
        assert "MemoryMax=12G" in cmd
        assert "MemorySwapMax=16G" in cmd
        assert cmd[-1] == "claude"

    def test_exit_code_mirrors_child(self, tmp_path):
        assert launch_with_limit("8G", ["--help"], tmp_path, popen=FakePopen(returncode=3)) == 3

    def test_pid_file_present_while_running(self, tmp_path):
        seen = []

        class WatchingProc(FakeProc):
            def wait(self):
                seen.extend(p.name for p in tmp_path.iterdir())
                return 0

        launch_with_limit("12G", [], tmp_path, popen=lambda cmd: WatchingProc(pid=777))

        assert seen == ["777.pid"]
        assert list(tmp_path.iterdir()) == []
