"""
Tests for the memory watchdog escalation logic.
"""

import signal

import psutil
import pytest

from moltdown.config import WatchdogConfig
from moltdown.watchdog import Watchdog, WatchdogAction, render_service_unit, signal_processes


class FakeTarget:
    """Target whose memory readings come from a script."""

    def __init__(self, readings):
        self.readings = list(readings)
        self.procs = ["proc-1", "proc-2"]

    def memory_mb(self):
        if len(self.readings) > 1:
            return self.readings.pop(0)
        return self.readings[0]

    def processes(self):
        return list(self.procs)


class Recorder:
    def __init__(self):
        self.signals = []
        self.sleeps = []

    def send(self, processes, sig):
        self.signals.append((tuple(processes), sig))
        return len(processes)

    def sleep(self, seconds):
        self.sleeps.append(seconds)


@pytest.fixture
def wd_config():
    return WatchdogConfig(warn_threshold_mb=8000, kill_threshold_mb=13000, check_interval_seconds=30, grace_seconds=5)


def make_watchdog(config, target, recorder):
    return Watchdog(config, lambda: target, sleep=recorder.sleep, send_signal=recorder.send)


class TestCheckOnce:

    def test_below_warn_does_nothing(self, wd_config):
        recorder = Recorder()
        action = make_watchdog(wd_config, FakeTarget([5000]), recorder).check_once()

        assert action == WatchdogAction.NONE
        assert recorder.signals == []

    def test_warn_threshold_logs_only(self, wd_config, caplog):
        recorder = Recorder()
        with caplog.at_level("WARNING", logger="moltdown"):
            action = make_watchdog(wd_config, FakeTarget([9000]), recorder).check_once()

        assert action == WatchdogAction.WARN
        assert recorder.signals == []
        assert recorder.sleeps == []
        assert "9000MB" in caplog.text

    def test_kill_threshold_escalates_to_sigkill(self, wd_config):
        recorder = Recorder()
        action = make_watchdog(wd_config, FakeTarget([14000, 14000]), recorder).check_once()

        assert action == WatchdogAction.KILLED
        assert [sig for _, sig in recorder.signals] == [signal.SIGTERM, signal.SIGKILL]
        assert recorder.sleeps == [5]

    def test_sigterm_sufficient(self, wd_config):
        recorder = Recorder()
        action = make_watchdog(wd_config, FakeTarget([14000, 0]), recorder).check_once()

        assert action == WatchdogAction.TERMINATED
        assert [sig for _, sig in recorder.signals] == [signal.SIGTERM]
        assert recorder.sleeps == [5]

    def test_thresholds_are_strict(self, wd_config):
        recorder = Recorder()
        assert make_watchdog(wd_config, FakeTarget([8000]), recorder).check_once() == WatchdogAction.NONE
        assert make_watchdog(wd_config, FakeTarget([13000]), recorder).check_once() == WatchdogAction.WARN


class TestRun:

    def test_sleeps_interval_between_cycles(self, wd_config):
        recorder = Recorder()
        make_watchdog(wd_config, FakeTarget([100]), recorder).run(max_cycles=3)
        assert recorder.sleeps == [30, 30, 30]

    def test_sampling_errors_do_not_stop_loop(self, wd_config):
        recorder = Recorder()
        calls = []

        def factory():
            calls.append(1)
            if len(calls) == 1:
                raise psutil.AccessDenied(pid=1)
            return FakeTarget([100])

        watchdog = Watchdog(wd_config, factory, sleep=recorder.sleep, send_signal=recorder.send)
        watchdog.run(max_cycles=2)
        assert len(calls) == 2

    def test_unexpected_errors_propagate(self, wd_config):
        def factory():
            raise RuntimeError("bug")

        watchdog = Watchdog(wd_config, factory, sleep=lambda s: None)
        with pytest.raises(RuntimeError):
            watchdog.run(max_cycles=1)


class FakeProcess:
    def __init__(self, pid, error=None):
        self.pid = pid
        self.error = error
        self.received = []

    def send_signal(self, sig):
        if self.error is not None:
            raise self.error
        self.received.append(sig)


def test_signal_processes_skips_vanished():
    alive = FakeProcess(10)
    gone = FakeProcess(11, psutil.NoSuchProcess(11))
    denied = FakeProcess(12, psutil.AccessDenied(12))

    assert signal_processes([alive, gone, denied], signal.SIGTERM) == 1
    assert alive.received == [signal.SIGTERM]


def test_render_service_unit():
    unit = render_service_unit(
        WatchdogConfig(warn_threshold_mb=7000, kill_threshold_mb=11000),
        "/usr/local/bin/moltdown",
        user="agent",
    )
    assert "ExecStart=/usr/local/bin/moltdown watchdog" in unit
    assert "Restart=on-failure" in unit
    assert 'Environment="WATCHDOG_WARN_MB=7000"' in unit
    assert 'Environment="WATCHDOG_KILL_MB=11000"' in unit
    assert "User=agent" in unit
    assert "SyslogIdentifier=claude-watchdog" in unit
