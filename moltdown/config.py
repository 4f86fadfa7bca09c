"""
Configuration management for moltdown.

Handles loading config.yaml and turning it into the immutable records the
bootstrap phases, watchdog, launcher and health reporter are built from.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from moltdown.errors import ConfigError

# Default paths
SCRIPT_DIR = Path(__file__).parent.parent.resolve()
CONFIG_FILE = SCRIPT_DIR / "config.yaml"
USER_CONFIG_FILE = Path.home() / ".config" / "moltdown" / "config.yaml"

DEFAULT_TARGET_PATTERN = r"node.*claude|claude.*node|bun.*claude"


def find_config_file() -> Path | None:
    """
    Locate the configuration file.

    Checks the MOLTDOWN_CONFIG environment variable, then the per-user
    config, then config.yaml next to the package.

    Returns:
        Path of the first existing candidate, or None
    """
    env_path = os.environ.get("MOLTDOWN_CONFIG")
    candidates = [Path(env_path).expanduser()] if env_path else []
    candidates.extend([USER_CONFIG_FILE, CONFIG_FILE])

    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def load_config(path: Path | None = None) -> dict[str, Any]:
    """
    Load configuration from config.yaml.

    Args:
        path: Explicit config file; located with find_config_file() if omitted

    Returns:
        Dictionary containing configuration, or empty dict if no file exists

    Raises:
        ConfigError: If the file is not valid YAML or not a mapping
    """
    if path is None:
        path = find_config_file()
    if path is None or not path.exists():
        return {}

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Invalid YAML in {path}: {e}",
            context={"path": str(path)},
        ) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Config file {path} must contain a mapping",
            context={"path": str(path)},
        )
    return data


@dataclass(frozen=True)
class Paths:
    """Filesystem locations owned by the guest user."""

    home: Path
    marker_dir: Path
    log_dir: Path
    session_dir: Path
    metrics_dir: Path
    work_dir: Path

    @property
    def repos_dir(self) -> Path:
        return self.work_dir / "repos"

    @property
    def scratch_dir(self) -> Path:
        return self.work_dir / "scratch"

    @property
    def artifacts_dir(self) -> Path:
        return self.work_dir / "artifacts"

    @property
    def metrics_file(self) -> Path:
        return self.metrics_dir / "memory-trend.csv"

    @property
    def crash_log(self) -> Path:
        return self.session_dir / "crashes.log"

    @property
    def launched_dir(self) -> Path:
        """Directory holding PID files of processes started by run-limited."""
        return self.session_dir / "limited"


@dataclass(frozen=True)
class Features:
    """Feature toggles consulted by the bootstrap phases."""

    install_nodejs: bool = True
    install_docker: bool = True
    install_playwright_deps: bool = True
    install_claude_cli: bool = True
    remove_desktop_fluff: bool = True
    enable_unattended_upgrades: bool = True
    enable_watchdog: bool = True
    enable_cgroups_limits: bool = True
    enable_session_persistence: bool = True


@dataclass(frozen=True)
class WatchdogConfig:
    """Thresholds and timing for the memory watchdog."""

    warn_threshold_mb: int = 8000
    kill_threshold_mb: int = 13000
    check_interval_seconds: float = 30
    grace_seconds: float = 5
    target_pattern: str = DEFAULT_TARGET_PATTERN


@dataclass(frozen=True)
class HealthConfig:
    """Thresholds for the health report and trend projection."""

    warn_threshold_mb: int = 8000
    alert_threshold_mb: int = 12000
    max_samples: int = 2880
    watch_interval_seconds: float = 30
    min_samples: int = 10
    window_samples: int = 60
    window_minutes: int = 30
    growth_threshold_mb: int = 2000
    drift_threshold_mb: int = 500
    eta_cap_minutes: int = 120


@dataclass(frozen=True)
class LocalCustomizations:
    """Extra packages installed by the local customizations phase."""

    apt_packages: tuple[str, ...] = ()
    npm_packages: tuple[str, ...] = ()
    pipx_packages: tuple[str, ...] = ()

    @property
    def enabled(self) -> bool:
        return bool(self.apt_packages or self.npm_packages or self.pipx_packages)


@dataclass(frozen=True)
class BootstrapConfig:
    """Everything the toolkit needs, built once at startup."""

    paths: Paths
    features: Features = field(default_factory=Features)
    watchdog: WatchdogConfig = field(default_factory=WatchdogConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    local: LocalCustomizations = field(default_factory=LocalCustomizations)
    swap_size: str = "8G"
    cgroups_memory_limit: str = "12G"


def default_paths(home: Path | None = None) -> Paths:
    """Build the default path layout under a home directory."""
    home = home or Path.home()
    return Paths(
        home=home,
        marker_dir=home / ".bootstrap_markers",
        log_dir=home / "logs",
        session_dir=home / ".agent-session",
        metrics_dir=home / ".vm-metrics",
        work_dir=home / "work",
    )


def _int_setting(section: dict[str, Any], key: str, env_var: str | None, default: int) -> int:
    raw = os.environ.get(env_var) if env_var else None
    if raw is None:
        raw = section.get(key, default)
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ConfigError(
            f"Invalid integer for {key}: {raw!r}",
            context={"key": key, "value": raw},
        ) from None


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    return value


def _path_setting(section: dict[str, Any], key: str, default: Path) -> Path:
    value = section.get(key)
    return Path(value).expanduser() if value else default


def build_config(data: dict[str, Any] | None = None, home: Path | None = None) -> BootstrapConfig:
    """
    Turn raw configuration into a BootstrapConfig.

    Environment variables WATCHDOG_WARN_MB, WATCHDOG_KILL_MB, SWAP_SIZE and
    CGROUPS_MEMORY_LIMIT take precedence over the file.

    Args:
        data: Parsed config.yaml contents (loaded with load_config() if None)
        home: Home directory the default paths are derived from

    Returns:
        Immutable BootstrapConfig

    Raises:
        ConfigError: On malformed values or kill threshold not above warn
    """
    if data is None:
        data = load_config()

    defaults = default_paths(home)
    paths_cfg = _section(data, "paths")
    paths = Paths(
        home=defaults.home,
        marker_dir=_path_setting(paths_cfg, "marker_dir", defaults.marker_dir),
        log_dir=_path_setting(paths_cfg, "log_dir", defaults.log_dir),
        session_dir=_path_setting(paths_cfg, "session_dir", defaults.session_dir),
        metrics_dir=_path_setting(paths_cfg, "metrics_dir", defaults.metrics_dir),
        work_dir=_path_setting(paths_cfg, "work_dir", defaults.work_dir),
    )

    features_cfg = _section(data, "features")
    unknown = set(features_cfg) - set(Features.__dataclass_fields__)
    if unknown:
        raise ConfigError(f"Unknown feature flags: {', '.join(sorted(unknown))}")
    not_bool = sorted(key for key, value in features_cfg.items() if not isinstance(value, bool))
    if not_bool:
        raise ConfigError(
            f"Feature flags must be true or false: {', '.join(not_bool)}",
            context={key: features_cfg[key] for key in not_bool},
        )
    features = Features(**features_cfg)

    wd_cfg = _section(data, "watchdog")
    watchdog = WatchdogConfig(
        warn_threshold_mb=_int_setting(wd_cfg, "warn_threshold_mb", "WATCHDOG_WARN_MB", 8000),
        kill_threshold_mb=_int_setting(wd_cfg, "kill_threshold_mb", "WATCHDOG_KILL_MB", 13000),
        check_interval_seconds=float(wd_cfg.get("check_interval_seconds", 30)),
        grace_seconds=float(wd_cfg.get("grace_seconds", 5)),
        target_pattern=str(wd_cfg.get("target_pattern", DEFAULT_TARGET_PATTERN)),
    )
    if watchdog.kill_threshold_mb <= watchdog.warn_threshold_mb:
        raise ConfigError(
            "watchdog kill threshold must be greater than the warn threshold "
            f"(warn={watchdog.warn_threshold_mb}MB, kill={watchdog.kill_threshold_mb}MB)",
            context={
                "warn_threshold_mb": watchdog.warn_threshold_mb,
                "kill_threshold_mb": watchdog.kill_threshold_mb,
            },
        )

    health_cfg = _section(data, "health")
    health = HealthConfig(
        warn_threshold_mb=_int_setting(health_cfg, "warn_threshold_mb", None, 8000),
        alert_threshold_mb=_int_setting(health_cfg, "alert_threshold_mb", None, 12000),
        max_samples=_int_setting(health_cfg, "max_samples", None, 2880),
        watch_interval_seconds=float(health_cfg.get("watch_interval_seconds", 30)),
    )
    if health.max_samples < 1:
        raise ConfigError("health.max_samples must be at least 1")

    local_cfg = _section(data, "local")
    local = LocalCustomizations(
        apt_packages=tuple(local_cfg.get("apt_packages") or ()),
        npm_packages=tuple(local_cfg.get("npm_packages") or ()),
        pipx_packages=tuple(local_cfg.get("pipx_packages") or ()),
    )

    bootstrap_cfg = _section(data, "bootstrap")
    return BootstrapConfig(
        paths=paths,
        features=features,
        watchdog=watchdog,
        health=health,
        local=local,
        swap_size=os.environ.get("SWAP_SIZE") or str(bootstrap_cfg.get("swap_size", "8G")),
        cgroups_memory_limit=(
            os.environ.get("CGROUPS_MEMORY_LIMIT")
            or str(bootstrap_cfg.get("cgroups_memory_limit", "12G"))
        ),
    )
