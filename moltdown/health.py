"""
VM health reporting and memory trend projection.

Every report samples the agent's memory into a bounded CSV time series
(timestamp,memory_mb). The trend is a crude linear extrapolation over the
last ~30 minutes of samples: good enough for an early warning, not a
forecast.
"""

import fcntl
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import psutil

from moltdown.config import HealthConfig
from moltdown.utils import command_exists, first_line_output, format_bytes, run_command
from moltdown.watchdog import SERVICE_NAME

logger = logging.getLogger(__name__)

INSUFFICIENT_DATA = "insufficient_data"
GROWING = "growing"
SHRINKING = "shrinking"
STABLE = "stable"
OOM_PREDICTED = "oom_predicted"

JOURNAL_USAGE_PATTERN = re.compile(r"\d+(?:\.\d+)?[KMGT]")


@dataclass(frozen=True)
class MetricSample:
    timestamp: int
    memory_mb: int

    def to_line(self) -> str:
        return f"{self.timestamp},{self.memory_mb}\n"

    @classmethod
    def from_line(cls, line: str) -> "MetricSample | None":
        parts = line.strip().split(",")
        if len(parts) != 2:
            return None
        try:
            return cls(int(parts[0]), int(parts[1]))
        except ValueError:
            return None


class MetricsStore:
    """
    Bounded CSV time series of memory samples.

    Writers hold an exclusive flock for the append-and-trim, so a cron
    health check overlapping a --watch loop cannot interleave a truncate.
    """

    def __init__(self, path: Path, max_samples: int = 2880):
        self.path = Path(path)
        self.max_samples = max_samples

    def append(self, sample: MetricSample) -> None:
        """Append a sample, then drop the oldest beyond max_samples."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a+") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                f.write(sample.to_line())
                f.flush()
                f.seek(0)
                lines = f.readlines()
                if len(lines) > self.max_samples:
                    f.seek(0)
                    f.truncate()
                    f.writelines(lines[-self.max_samples:])
                    f.flush()
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    def load(self) -> list[MetricSample]:
        """Read all well-formed samples, oldest first."""
        if not self.path.exists():
            return []
        with open(self.path) as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_SH)
            try:
                lines = f.readlines()
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

        samples = []
        for line in lines:
            sample = MetricSample.from_line(line)
            if sample is not None:
                samples.append(sample)
        return samples


@dataclass(frozen=True)
class Trend:
    kind: str
    minutes: int | None = None

    def __str__(self) -> str:
        if self.kind == OOM_PREDICTED:
            return f"{OOM_PREDICTED}:{self.minutes}"
        return self.kind


def _div_trunc(a: int, b: int) -> int:
    """Integer division truncating toward zero, as shell arithmetic does."""
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b >= 0) else -q


def predict_trend(
    samples: list[MetricSample],
    alert_threshold_mb: int,
    config: HealthConfig | None = None,
) -> Trend:
    """
    Classify the recent memory curve.

    Compares the sample window_samples back (or the oldest, if fewer exist)
    with the newest one. If memory grew by more than growth_threshold_mb,
    projects the time to alert_threshold_mb at the observed rate and reports
    oom_predicted when it lands inside eta_cap_minutes.

    Args:
        samples: Samples, oldest first
        alert_threshold_mb: Memory level treated as exhaustion
        config: Window and threshold settings

    Returns:
        Trend
    """
    cfg = config or HealthConfig()
    if len(samples) < cfg.min_samples:
        return Trend(INSUFFICIENT_DATA)

    window = samples[-cfg.window_samples:]
    earlier = window[0].memory_mb
    recent = window[-1].memory_mb
    delta = recent - earlier

    if delta > cfg.growth_threshold_mb:
        rate_per_min = _div_trunc(delta, cfg.window_minutes)
        remaining = alert_threshold_mb - recent
        if rate_per_min > 0:
            eta = _div_trunc(remaining, rate_per_min)
            if 0 < eta < cfg.eta_cap_minutes:
                return Trend(OOM_PREDICTED, eta)

    if delta > cfg.drift_threshold_mb:
        return Trend(GROWING)
    if delta < -cfg.drift_threshold_mb:
        return Trend(SHRINKING)
    return Trend(STABLE)


def record_metric(store: MetricsStore, target, now: float | None = None) -> int:
    """
    Sample the target's memory and append it to the store.

    A store that cannot be written is logged and skipped; the sample is
    still returned so the report can be printed.

    Returns:
        The sampled memory in MB
    """
    mem_mb = target.memory_mb()
    try:
        store.append(MetricSample(int(now if now is not None else time.time()), mem_mb))
    except OSError as e:
        logger.warning("Could not record memory sample in %s: %s", store.path, e)
    return mem_mb


@dataclass(frozen=True)
class Vitals:
    uptime: str
    ram: str
    swap: str
    disk: str
    load: str
    processes: int
    journal: str
    docker: str | None
    watchdog_running: bool


def format_uptime(seconds: float) -> str:
    """Format seconds like ``uptime -p``."""
    minutes = int(seconds // 60)
    days, minutes = divmod(minutes, 24 * 60)
    hours, minutes = divmod(minutes, 60)
    parts = []
    if days:
        parts.append(f"{days} day{'s' if days != 1 else ''}")
    if hours:
        parts.append(f"{hours} hour{'s' if hours != 1 else ''}")
    if minutes or not parts:
        parts.append(f"{minutes} minute{'s' if minutes != 1 else ''}")
    return "up " + ", ".join(parts)


def journal_disk_usage() -> str:
    output = first_line_output(["journalctl", "--disk-usage"], default="")
    match = JOURNAL_USAGE_PATTERN.search(output)
    return match.group(0) if match else "unknown"


def docker_containers() -> str | None:
    """Running container count, or None if docker is not installed."""
    if not command_exists("docker"):
        return None
    try:
        result = run_command(["docker", "ps", "-q"], check=False, timeout=10)
    except (FileNotFoundError, OSError):
        return None
    if result.returncode != 0:
        return "unavailable"
    return f"{len(result.stdout.split())} containers running"


def watchdog_running() -> bool:
    try:
        result = run_command(
            ["systemctl", "is-active", "--quiet", SERVICE_NAME],
            check=False,
            timeout=5,
        )
    except (FileNotFoundError, OSError):
        return False
    return result.returncode == 0


def collect_vitals() -> Vitals:
    """Snapshot memory, swap, disk, load and service state."""
    vm = psutil.virtual_memory()
    swap = psutil.swap_memory()
    disk = psutil.disk_usage("/")
    load = " ".join(f"{value:.2f}" for value in psutil.getloadavg())

    if swap.total:
        swap_text = (
            f"{format_bytes(swap.used)}/{format_bytes(swap.total)} "
            f"({int(swap.used / swap.total * 100)}%)"
        )
    else:
        swap_text = "not configured"

    return Vitals(
        uptime=format_uptime(time.time() - psutil.boot_time()),
        ram=f"{format_bytes(vm.used)}/{format_bytes(vm.total)} ({int(vm.used / vm.total * 100)}% used)",
        swap=swap_text,
        disk=f"{format_bytes(disk.used)}/{format_bytes(disk.total)} ({int(disk.percent)}% used)",
        load=load,
        processes=len(psutil.pids()),
        journal=journal_disk_usage(),
        docker=docker_containers(),
        watchdog_running=watchdog_running(),
    )


def format_report(
    vitals: Vitals,
    agent_mb: int,
    trend: Trend,
    config: HealthConfig,
    now: datetime | None = None,
) -> list[str]:
    """
    Render the health report as rich-markup lines.

    Returns:
        Lines ready for Console.print
    """
    now = now or datetime.now()
    lines = [
        f"[bold]=== VM Health Check {now.strftime('%Y-%m-%d %H:%M:%S')} ===[/]",
        f"Uptime:  {vitals.uptime}",
        "",
        "[bold]--- Memory ---[/]",
        f"RAM:     {vitals.ram}",
        f"Swap:    {vitals.swap}",
        f"Claude:  {agent_mb}MB",
    ]

    if trend.kind == OOM_PREDICTED:
        lines.append(f"  [red]ALERT: Predicted memory exhaustion in ~{trend.minutes} minutes![/]")
    elif trend.kind == GROWING:
        lines.append("  [yellow]CAUTION: Memory usage increasing[/]")

    if agent_mb > config.alert_threshold_mb:
        lines.append(
            f"  [red]CRITICAL: Claude using >{config.alert_threshold_mb}MB - watchdog may terminate[/]"
        )
    elif agent_mb > config.warn_threshold_mb:
        lines.append(
            f"  [yellow]WARNING: Claude using >{config.warn_threshold_mb}MB - consider restarting[/]"
        )

    lines.append(f"Watchdog: {'running' if vitals.watchdog_running else 'not running'}")
    lines.extend([
        "",
        "[bold]--- System ---[/]",
        f"Disk:    {vitals.disk}",
        f"Load:    {vitals.load}",
        f"Procs:   {vitals.processes}",
        f"Journal: {vitals.journal}",
    ])
    if vitals.docker is not None:
        lines.append(f"Docker:  {vitals.docker}")
    return lines


def format_trend_report(samples: list[MetricSample], trend: Trend) -> list[str]:
    """Render the --trend analysis."""
    lines = ["[bold]=== Memory Trend Analysis ===[/]"]
    if not samples:
        lines.append("No trend data available. Run moltdown health --watch to collect data.")
        return lines

    lines.append(f"Data points: {len(samples)}")
    if len(samples) < 2:
        lines.append("Not enough data for trend analysis.")
        return lines

    lines.extend(["", "Recent readings (last 5):"])
    for sample in samples[-5:]:
        stamp = datetime.fromtimestamp(sample.timestamp).strftime("%H:%M:%S")
        lines.append(f"  {stamp}: {sample.memory_mb}MB")

    values = [s.memory_mb for s in samples]
    lines.extend([
        "",
        f"Range: {min(values)}MB - {max(values)}MB",
        "",
        f"Trend: {trend}",
    ])
    return lines
