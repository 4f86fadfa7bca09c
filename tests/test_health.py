"""
Tests for the health report and memory trend projection.
"""

from datetime import datetime

import pytest

from moltdown.config import HealthConfig
from moltdown.health import (
    MetricSample,
    MetricsStore,
    Trend,
    Vitals,
    format_report,
    format_trend_report,
    format_uptime,
    predict_trend,
    record_metric,
)


def series(values, start=1_700_000_000, step=30):
    return [MetricSample(start + i * step, value) for i, value in enumerate(values)]


def ramp(first, last, count=60):
    return [first + (last - first) * i // (count - 1) for i in range(count)]


class TestPredictTrend:

    def test_insufficient_data(self):
        assert predict_trend(series([5000] * 9), 12000).kind == "insufficient_data"

    def test_oom_predicted(self):
        trend = predict_trend(series(ramp(5000, 8000)), 13000)
        assert trend == Trend("oom_predicted", 50)
        assert str(trend) == "oom_predicted:50"

    def test_uses_sample_sixty_back(self):
        # Older history is outside the window and must not count.
        values = [100] * 40 + ramp(5000, 8000)
        assert str(predict_trend(series(values), 13000)) == "oom_predicted:50"

    def test_short_history_uses_oldest(self):
        values = ramp(5000, 8000, count=20)
        assert str(predict_trend(series(values), 13000)) == "oom_predicted:50"

    def test_eta_beyond_cap_is_growing(self):
        trend = predict_trend(series(ramp(5000, 7500)), 100000)
        assert trend.kind == "growing"

    def test_already_past_alert_is_growing(self):
        trend = predict_trend(series(ramp(10000, 14000)), 13000)
        assert trend.kind == "growing"

    @pytest.mark.parametrize("first,last,kind", [
        (5000, 5600, "growing"),
        (5000, 4400, "shrinking"),
        (5000, 5400, "stable"),
        (5000, 5500, "stable"),
        (5000, 4500, "stable"),
    ])
    def test_drift(self, first, last, kind):
        assert predict_trend(series(ramp(first, last)), 12000).kind == kind

    def test_custom_window(self):
        config = HealthConfig(min_samples=2, window_samples=3, window_minutes=1)
        values = [0, 0, 5000, 7000, 9000]
        # earlier=5000 recent=9000: rate 4000/min, eta (12000-9000)//4000 = 0
        assert predict_trend(series(values), 12000, config).kind == "growing"


class TestMetricsStore:

    def test_append_and_load(self, tmp_path):
        store = MetricsStore(tmp_path / "m" / "memory-trend.csv")
        store.append(MetricSample(1, 100))
        store.append(MetricSample(2, 200))

        assert store.load() == [MetricSample(1, 100), MetricSample(2, 200)]
        assert store.path.read_text() == "1,100\n2,200\n"

    def test_keeps_most_recent(self, tmp_path):
        store = MetricsStore(tmp_path / "memory-trend.csv", max_samples=3)
        for i in range(5):
            store.append(MetricSample(i, i * 10))

        assert [s.timestamp for s in store.load()] == [2, 3, 4]

    def test_skips_malformed_lines(self, tmp_path):
        path = tmp_path / "memory-trend.csv"
        path.write_text("1,100\ngarbage\n2,abc\n3,300,1\n\n4,400\n")
        assert MetricsStore(path).load() == [MetricSample(1, 100), MetricSample(4, 400)]

    def test_missing_file(self, tmp_path):
        assert MetricsStore(tmp_path / "nope.csv").load() == []


def test_record_metric(tmp_path):
    class Target:
        def memory_mb(self):
            return 4321

    store = MetricsStore(tmp_path / "memory-trend.csv")
    assert record_metric(store, Target(), now=1000.5) == 4321
    assert store.load() == [MetricSample(1000, 4321)]


@pytest.mark.parametrize("seconds,expected", [
    (0, "up 0 minutes"),
    (61, "up 1 minute"),
    (3 * 3600 + 5 * 60, "up 3 hours, 5 minutes"),
    (86400 + 3600, "up 1 day, 1 hour"),
    (2 * 86400 + 2 * 3600 + 2 * 60, "up 2 days, 2 hours, 2 minutes"),
])
def test_format_uptime(seconds, expected):
    assert format_uptime(seconds) == expected


def _vitals(**overrides):
    values = dict(
        uptime="up 1 hour",
        ram="4.0Gi/15.6Gi (25% used)",
        swap="not configured",
        disk="20.0Gi/100.0Gi (20% used)",
        load="0.10 0.20 0.30",
        processes=250,
        journal="48.0M",
        docker=None,
        watchdog_running=True,
    )
    values.update(overrides)
    return Vitals(**values)


class TestFormatReport:

    def render(self, agent_mb, trend=Trend("stable"), **overrides):
        return "\n".join(format_report(
            _vitals(**overrides), agent_mb, trend, HealthConfig(), now=datetime(2026, 1, 1, 12, 0, 0),
        ))

    def test_basic(self):
        text = self.render(1200)
        assert "=== VM Health Check 2026-01-01 12:00:00 ===" in text
        assert "Claude:  1200MB" in text
        assert "Watchdog: running" in text
        assert "Docker" not in text
        assert "WARNING" not in text and "CRITICAL" not in text

    def test_thresholds(self):
        assert "WARNING: Claude using >8000MB" in self.render(9000)
        critical = self.render(12500)
        assert "CRITICAL: Claude using >12000MB" in critical
        assert "WARNING" not in critical

    def test_trend_lines(self):
        assert "Predicted memory exhaustion in ~42 minutes" in self.render(
            9000, Trend("oom_predicted", 42)
        )
        assert "CAUTION: Memory usage increasing" in self.render(5000, Trend("growing"))

    def test_watchdog_and_docker(self):
        text = self.render(0, watchdog_running=False, docker="3 containers running")
        assert "Watchdog: not running" in text
        assert "Docker:  3 containers running" in text


class TestFormatTrendReport:

    def test_no_data(self):
        lines = format_trend_report([], Trend("insufficient_data"))
        assert any("No trend data available" in line for line in lines)

    def test_single_sample(self):
        lines = format_trend_report(series([100]), Trend("insufficient_data"))
        assert "Data points: 1" in lines
        assert "Not enough data for trend analysis." in lines

    def test_summary(self):
        samples = series([300, 100, 500, 200, 400, 250])
        lines = format_trend_report(samples, Trend("stable"))

        assert "Data points: 6" in lines
        assert "Range: 100MB - 500MB" in lines
        assert "Trend: stable" in lines
        readings = [line for line in lines if line.startswith("  ")]
        assert len(readings) == 5
        assert readings[-1].endswith(": 250MB")


def test_record_metric_survives_unwritable_store(tmp_path, caplog):
    class Target:
        def memory_mb(self):
            return 2048

    blocker = tmp_path / "metrics"
    blocker.write_text("")
    store = MetricsStore(blocker / "memory-trend.csv")

    with caplog.at_level("WARNING", logger="moltdown"):
        assert record_metric(store, Target(), now=1) == 2048

    assert "Could not record memory sample" in caplog.text
