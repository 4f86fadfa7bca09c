"""
Bootstrap phase library.

Each phase turns a fresh Ubuntu 24.04 desktop guest a step closer to an
agent-ready VM. Phases take the immutable BootstrapConfig and a
StepRunner; they must tolerate being re-run against a partially
configured system, because deleting a marker re-runs the phase.
"""

import functools
import getpass
import logging
import platform
import shutil
import sys
from datetime import datetime
from pathlib import Path

from moltdown import __version__
from moltdown.config import BootstrapConfig
from moltdown.errors import MoltdownError
from moltdown.phases import OptionalStep, Phase, RequiredStep, StepRunner
from moltdown.utils import command_exists, first_line_output
from moltdown.watchdog import SERVICE_NAME, render_service_unit

logger = logging.getLogger(__name__)

CORE_PACKAGES = [
    "build-essential",
    "git", "git-lfs",
    "curl", "wget", "unzip",
    "ca-certificates", "gnupg", "lsb-release",
    "jq", "yq",
    "ripgrep", "fd-find", "fzf", "bat",
    "tmux", "htop", "tree", "ncdu",
    "python3", "python3-venv", "python3-pip", "pipx",
    "openssh-client", "openssh-server",
    "ufw",
    "rsync",
    "vim", "neovim",
    "qemu-guest-agent", "spice-vdagent",
]

PLAYWRIGHT_PACKAGES = [
    "libnss3", "libatk1.0-0", "libatk-bridge2.0-0", "libcups2", "libdrm2",
    "libxkbcommon0", "libxcomposite1", "libxdamage1", "libxfixes3",
    "libxrandr2", "libgbm1", "libasound2t64", "libpango-1.0-0", "libcairo2",
]

DESKTOP_FLUFF = [
    "thunderbird", "libreoffice*", "rhythmbox", "totem", "cheese",
    "simple-scan", "shotwell", "aisleriot", "gnome-mahjongg", "gnome-mines",
    "gnome-sudoku", "gnome-calendar", "gnome-contacts", "gnome-weather",
    "gnome-maps", "gnome-clocks",
]

PIPX_TOOLS = ["poetry", "ruff", "httpie"]

GNOME_SETTINGS = [
    ("org.gnome.desktop.interface", "enable-animations", "false"),
    ("org.gnome.desktop.session", "idle-delay", "0"),
    ("org.gnome.desktop.interface", "gtk-enable-primary-paste", "false"),
    ("org.gnome.desktop.screensaver", "lock-enabled", "false"),
    ("org.gnome.settings-daemon.plugins.power", "sleep-inactive-ac-type", "'nothing'"),
    ("org.gnome.desktop.interface", "color-scheme", "'prefer-dark'"),
]

SSHD_HARDENING = """\
# Security hardening for agent VM
PermitRootLogin no
PasswordAuthentication no
PubkeyAuthentication yes
PermitEmptyPasswords no
X11Forwarding no
MaxAuthTries 3
ClientAliveInterval 300
ClientAliveCountMax 2
AllowAgentForwarding yes
"""

FAIL2BAN_JAIL = """\
[DEFAULT]
bantime = 1h
findtime = 10m
maxretry = 3

[sshd]
enabled = true
port = ssh
filter = sshd
logpath = /var/log/auth.log
maxretry = 3
"""

UNATTENDED_UPGRADES = """\
Unattended-Upgrade::Allowed-Origins {
    "${distro_id}:${distro_codename}-security";
    "${distro_id}ESMApps:${distro_codename}-apps-security";
    "${distro_id}ESM:${distro_codename}-infra-security";
};
Unattended-Upgrade::AutoFixInterruptedDpkg "true";
Unattended-Upgrade::Remove-Unused-Dependencies "true";
Unattended-Upgrade::Automatic-Reboot "false";
"""

AUTO_UPGRADES = """\
APT::Periodic::Update-Package-Lists "1";
APT::Periodic::Unattended-Upgrade "1";
APT::Periodic::AutocleanInterval "7";
"""

GITCONFIG_TEMPLATE = """\
[init]
    defaultBranch = main
[pull]
    rebase = true
[push]
    autoSetupRemote = true
[core]
    editor = vim
    autocrlf = input
[alias]
    st = status
    co = checkout
    br = branch
    ci = commit
    lg = log --oneline --graph --decorate
"""

CHROME_REPO = (
    "deb [arch=amd64 signed-by=/usr/share/keyrings/google-chrome.gpg] "
    "http://dl.google.com/linux/chrome/deb/ stable main\n"
)

REQUIRED_COMMANDS = ["git", "gh", "python3", "pip", "curl", "wget", "jq", "tmux", "ufw", "google-chrome"]
CHECKED_SERVICES = ["ssh", "ufw", "fail2ban"]

# Keeps apt and dpkg from prompting during unattended runs
APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}

# Shell shims installed into ~/.local/bin, name -> moltdown subcommand
USER_SHIMS = {
    "run-claude-limited": "run-limited",
    "agent-session": "session",
    "agent-crash-monitor": "crash-monitor",
}


def apt_install(packages: list[str], description: str = "apt install") -> RequiredStep:
    return RequiredStep(description, ["apt", "install", "-y", *packages], sudo=True, env=APT_ENV)


def write_root_file(path: str, content: str, description: str | None = None) -> RequiredStep:
    """Write a root-owned file through ``sudo tee``."""
    return RequiredStep(description or f"write {path}", ["tee", path], sudo=True, input=content)


def moltdown_executable() -> str:
    """Absolute path of the moltdown entry point used by installed units and shims."""
    found = shutil.which("moltdown")
    if found:
        return found
    return str(Path(sys.argv[0]).resolve())


#-------------------------------------------------------------------------------
# Phases
#-------------------------------------------------------------------------------

def phase_system_updates(config: BootstrapConfig, runner: StepRunner) -> None:
    runner.run_all([
        RequiredStep("apt update", ["apt", "update"], sudo=True),
        RequiredStep("apt full-upgrade", ["apt", "full-upgrade", "-y"], sudo=True, env=APT_ENV),
        RequiredStep("apt autoremove", ["apt", "autoremove", "-y"], sudo=True, env=APT_ENV),
    ])
    logger.info("System updated successfully")


def phase_core_utilities(config: BootstrapConfig, runner: StepRunner) -> None:
    runner.run_all([
        apt_install(CORE_PACKAGES, "install core utilities"),
        OptionalStep("pipx ensurepath", ["python3", "-m", "pipx", "ensurepath"]),
        OptionalStep(
            "enable qemu-guest-agent",
            ["systemctl", "enable", "--now", "qemu-guest-agent"],
            sudo=True,
        ),
    ])
    logger.info("Core utilities installed")


def phase_security_hardening(config: BootstrapConfig, runner: StepRunner) -> None:
    logger.info("Hardening SSH configuration...")
    backup = f"/etc/ssh/sshd_config.backup.{datetime.now().strftime('%Y%m%d')}"
    runner.run_all([
        RequiredStep("back up sshd_config", ["cp", "/etc/ssh/sshd_config", backup], sudo=True),
        write_root_file("/etc/ssh/sshd_config.d/99-hardening.conf", SSHD_HARDENING),
        RequiredStep("restart ssh", ["systemctl", "restart", "ssh"], sudo=True),
    ])

    logger.info("Configuring firewall...")
    runner.run_all([
        RequiredStep("ufw reset", ["ufw", "--force", "reset"], sudo=True),
        RequiredStep("ufw deny incoming", ["ufw", "default", "deny", "incoming"], sudo=True),
        RequiredStep("ufw allow outgoing", ["ufw", "default", "allow", "outgoing"], sudo=True),
        RequiredStep("ufw allow ssh", ["ufw", "allow", "ssh"], sudo=True),
        RequiredStep("ufw enable", ["ufw", "--force", "enable"], sudo=True),
    ])

    logger.info("Installing and configuring fail2ban...")
    runner.run_all([
        apt_install(["fail2ban"], "install fail2ban"),
        write_root_file("/etc/fail2ban/jail.local", FAIL2BAN_JAIL),
        RequiredStep("enable fail2ban", ["systemctl", "enable", "--now", "fail2ban"], sudo=True),
    ])

    if config.features.enable_unattended_upgrades:
        logger.info("Enabling unattended security upgrades...")
        runner.run_all([
            apt_install(["unattended-upgrades"], "install unattended-upgrades"),
            write_root_file("/etc/apt/apt.conf.d/50unattended-upgrades", UNATTENDED_UPGRADES),
            write_root_file("/etc/apt/apt.conf.d/20auto-upgrades", AUTO_UPGRADES),
        ])

    logger.info("Configuring journald limits...")
    runner.run_all([
        RequiredStep(
            "limit journald size",
            ["sed", "-i", "s/#SystemMaxUse=.*/SystemMaxUse=100M/", "/etc/systemd/journald.conf"],
            sudo=True,
        ),
        RequiredStep(
            "limit journald retention",
            ["sed", "-i", "s/#MaxRetentionSec=.*/MaxRetentionSec=1week/", "/etc/systemd/journald.conf"],
            sudo=True,
        ),
        RequiredStep("restart journald", ["systemctl", "restart", "systemd-journald"], sudo=True),
    ])
    logger.info("Security hardening complete")


def phase_dev_tools(config: BootstrapConfig, runner: StepRunner) -> None:
    logger.info("Installing GitHub CLI...")
    runner.run(apt_install(["gh"], "install GitHub CLI"))

    if config.features.install_nodejs:
        if command_exists("node"):
            logger.info("Node.js already installed: %s", first_line_output(["node", "--version"]))
        else:
            logger.info("Installing Node.js LTS...")
            runner.run_all([
                RequiredStep(
                    "add NodeSource repository",
                    ["bash", "-c", "curl -fsSL https://deb.nodesource.com/setup_lts.x | sudo -E bash -"],
                ),
                apt_install(["nodejs"], "install Node.js"),
            ])

    if config.features.install_docker:
        if command_exists("docker"):
            logger.info("Docker already installed: %s", first_line_output(["docker", "--version"]))
        else:
            logger.info("Installing Docker...")
            runner.run_all([
                RequiredStep("install Docker", ["bash", "-c", "curl -fsSL https://get.docker.com | sudo sh"]),
                RequiredStep(
                    "add user to docker group",
                    ["usermod", "-aG", "docker", getpass.getuser()],
                    sudo=True,
                ),
                RequiredStep("enable docker", ["systemctl", "enable", "docker"], sudo=True),
            ])

    logger.info("Installing Python tools...")
    runner.run_all(
        OptionalStep(f"pipx install {tool}", ["pipx", "install", tool]) for tool in PIPX_TOOLS
    )
    logger.info("Development tools installed")


def phase_browser_automation(config: BootstrapConfig, runner: StepRunner) -> None:
    if command_exists("google-chrome"):
        logger.info("Chrome already installed")
    else:
        logger.info("Installing Google Chrome...")
        runner.run_all([
            RequiredStep(
                "import Chrome signing key",
                [
                    "bash", "-c",
                    "wget -qO - https://dl.google.com/linux/linux_signing_key.pub"
                    " | sudo gpg --dearmor --yes -o /usr/share/keyrings/google-chrome.gpg",
                ],
            ),
            write_root_file("/etc/apt/sources.list.d/google-chrome.list", CHROME_REPO),
            RequiredStep("apt update", ["apt", "update"], sudo=True),
            apt_install(["google-chrome-stable"], "install Google Chrome"),
        ])

    if config.features.install_playwright_deps:
        logger.info("Installing Playwright/Puppeteer dependencies...")
        runner.run(apt_install(PLAYWRIGHT_PACKAGES, "install Playwright dependencies"))
        if command_exists("npx"):
            runner.run(OptionalStep(
                "install Playwright chromium deps",
                ["npx", "playwright", "install-deps", "chromium"],
                sudo=True,
            ))
    logger.info("Browser and automation tools installed")


def phase_agent_tooling(config: BootstrapConfig, runner: StepRunner) -> None:
    if config.features.install_claude_cli and command_exists("npm"):
        logger.info("Installing Claude CLI...")
        runner.run(OptionalStep(
            "install Claude CLI",
            ["npm", "install", "-g", "@anthropic-ai/claude-code"],
            sudo=True,
        ))

    logger.info("Creating workspace directories...")
    paths = config.paths
    for directory in (paths.repos_dir, paths.scratch_dir, paths.artifacts_dir, paths.home / ".config"):
        directory.mkdir(parents=True, exist_ok=True)

    gitconfig = paths.home / ".gitconfig"
    if not gitconfig.exists():
        logger.info("Creating git config template...")
        gitconfig.write_text(GITCONFIG_TEMPLATE)
    logger.info("Agent tooling configured")


def phase_desktop_optimization(config: BootstrapConfig, runner: StepRunner) -> None:
    if config.features.remove_desktop_fluff:
        logger.info("Removing unnecessary desktop applications...")
        runner.run_all([
            OptionalStep("purge desktop applications", ["apt", "purge", "-y", *DESKTOP_FLUFF], sudo=True),
            RequiredStep("apt autoremove", ["apt", "autoremove", "-y"], sudo=True, env=APT_ENV),
        ])

    logger.info("Applying GNOME VM performance tweaks...")
    runner.run_all(
        OptionalStep(f"gsettings {schema} {key}", ["gsettings", "set", schema, key, value])
        for schema, key, value in GNOME_SETTINGS
    )
    logger.info("Desktop optimization complete")


def _write_user_shims(config: BootstrapConfig, executable: str) -> None:
    bin_dir = config.paths.home / ".local" / "bin"
    bin_dir.mkdir(parents=True, exist_ok=True)
    for name, subcommand in USER_SHIMS.items():
        shim = bin_dir / name
        shim.write_text(f'#!/usr/bin/env bash\nexec "{executable}" {subcommand} "$@"\n')
        shim.chmod(0o755)

    bashrc = config.paths.home / ".bashrc"
    existing = bashrc.read_text() if bashrc.exists() else ""
    if ".local/bin" not in existing:
        with open(bashrc, "a") as f:
            f.write('export PATH="$HOME/.local/bin:$PATH"\n')


def phase_agent_resilience(config: BootstrapConfig, runner: StepRunner) -> None:
    features = config.features
    executable = moltdown_executable()

    if features.enable_watchdog:
        logger.info("Installing agent memory watchdog service...")
        unit = render_service_unit(config.watchdog, executable, user=getpass.getuser())
        runner.run_all([
            write_root_file(f"/etc/systemd/system/{SERVICE_NAME}.service", unit),
            RequiredStep("systemd daemon-reload", ["systemctl", "daemon-reload"], sudo=True),
            RequiredStep(f"enable {SERVICE_NAME}", ["systemctl", "enable", SERVICE_NAME], sudo=True),
        ])
        logger.info(
            "Watchdog service installed (warn: %sMB, kill: %sMB)",
            config.watchdog.warn_threshold_mb, config.watchdog.kill_threshold_mb,
        )

    if features.enable_cgroups_limits or features.enable_session_persistence:
        config.paths.session_dir.mkdir(parents=True, exist_ok=True)
        _write_user_shims(config, executable)
        if features.enable_cgroups_limits:
            logger.info("cgroups wrapper installed (default limit: %s)", config.cgroups_memory_limit)
        if features.enable_session_persistence:
            logger.info("Session persistence tools installed (agent-session, agent-crash-monitor)")

    logger.info("Agent resilience phase complete")


def phase_longrun_hardening(config: BootstrapConfig, runner: StepRunner) -> None:
    logger.info("Disabling cloud-init for future boots...")
    runner.run(RequiredStep("disable cloud-init", ["touch", "/etc/cloud/cloud-init.disabled"], sudo=True))

    if Path("/swapfile").exists():
        logger.info("Swap file already exists")
    else:
        logger.info("Creating %s swap file...", config.swap_size)
        runner.run_all([
            RequiredStep("allocate swap file", ["fallocate", "-l", config.swap_size, "/swapfile"], sudo=True),
            RequiredStep("secure swap file", ["chmod", "600", "/swapfile"], sudo=True),
            RequiredStep("format swap file", ["mkswap", "/swapfile"], sudo=True),
            RequiredStep("enable swap file", ["swapon", "/swapfile"], sudo=True),
            RequiredStep(
                "persist swap in fstab",
                ["tee", "-a", "/etc/fstab"],
                sudo=True,
                input="/swapfile none swap sw 0 0\n",
            ),
        ])
        logger.info("Swap file created and enabled (%s)", config.swap_size)

    logger.info("Configuring journal maintenance...")
    runner.run(OptionalStep("vacuum journal", ["journalctl", "--vacuum-size=100M"], sudo=True))
    logger.info("Long-run hardening complete")


def phase_local_customizations(config: BootstrapConfig, runner: StepRunner) -> None:
    local = config.local
    if local.apt_packages:
        logger.info("Installing additional apt packages...")
        runner.run(apt_install(list(local.apt_packages), "install local apt packages"))

    if local.npm_packages and command_exists("npm"):
        logger.info("Installing additional npm packages...")
        runner.run(RequiredStep(
            "install local npm packages",
            ["npm", "install", "-g", *local.npm_packages],
            sudo=True,
        ))

    if local.pipx_packages and command_exists("pipx"):
        logger.info("Installing additional pipx packages...")
        runner.run_all(
            OptionalStep(f"pipx install {pkg}", ["pipx", "install", pkg]) for pkg in local.pipx_packages
        )
    logger.info("Local customizations complete")


def _write_manifest(runner: StepRunner, step, path: Path) -> None:
    result = runner.run(step)
    if result is not None:
        path.write_text("".join(sorted(result.stdout.splitlines(keepends=True))))


def phase_verification(config: BootstrapConfig, runner: StepRunner) -> None:
    artifacts = config.paths.artifacts_dir
    artifacts.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")

    logger.info("Generating package manifests...")
    _write_manifest(
        runner,
        RequiredStep("list apt packages", ["dpkg-query", "-W", "-f=${Package}=${Version}\n"]),
        artifacts / f"apt_packages_{stamp}.manifest",
    )
    for tool, cmd in (
        ("pip", ["pip", "list", "--format=freeze"]),
        ("npm", ["npm", "list", "-g", "--depth=0"]),
        ("pipx", ["pipx", "list", "--short"]),
    ):
        if command_exists(tool):
            _write_manifest(
                runner,
                OptionalStep(f"list {tool} packages", cmd),
                artifacts / f"{tool}_packages_{stamp}.manifest",
            )

    logger.info("Recording system information...")
    (artifacts / f"system_info_{stamp}.txt").write_text(
        f"Bootstrap Version: {__version__}\n"
        f"Bootstrap Date: {datetime.now().astimezone().isoformat(timespec='seconds')}\n"
        f"Hostname: {platform.node()}\n"
        f"Kernel: {platform.release()}\n"
        f"Ubuntu Version: {first_line_output(['lsb_release', '-ds'])}\n"
    )

    logger.info("Running verification checks...")
    required = list(REQUIRED_COMMANDS)
    if config.features.install_nodejs:
        required += ["node", "npm"]
    if config.features.install_docker:
        required.append("docker")

    missing = []
    for cmd in required:
        if command_exists(cmd):
            logger.info("  ✓ %s", cmd)
        else:
            logger.error("  ✗ %s NOT FOUND", cmd)
            missing.append(cmd)

    logger.info("Checking services...")
    for svc in CHECKED_SERVICES:
        result = runner.run(OptionalStep(f"{svc} status", ["systemctl", "is-active", "--quiet", svc]))
        if result is not None:
            logger.info("  ✓ %s service running", svc)
        else:
            logger.warning("  ⚠ %s service not running", svc)

    if missing:
        raise MoltdownError(
            f"Verification failed, missing commands: {', '.join(missing)}",
            context={"missing": missing},
        )
    logger.info("All verification checks passed!")


PHASES = [
    ("01-system-updates", "System Updates", phase_system_updates),
    ("02-core-utilities", "Core Utilities", phase_core_utilities),
    ("03-security-hardening", "Security Hardening", phase_security_hardening),
    ("04-dev-tools", "Development Tools", phase_dev_tools),
    ("05-browser-automation", "Browser & Automation", phase_browser_automation),
    ("06-agent-tooling", "Agent Tooling", phase_agent_tooling),
    ("07-desktop-optimization", "Desktop Optimization", phase_desktop_optimization),
    ("08-agent-resilience", "Agent Process Resilience & Recovery", phase_agent_resilience),
    ("09-longrun-hardening", "Long-Run Session Hardening", phase_longrun_hardening),
    ("10-local-customizations", "Local Customizations", phase_local_customizations),
    ("11-verification", "Verification & Manifest Generation", phase_verification),
]


def build_phases(config: BootstrapConfig, runner: StepRunner) -> list[Phase]:
    """
    Bind the phase library to a config and runner, in execution order.

    The local customizations phase is only included when extra packages
    are configured.
    """
    phases = []
    for name, title, func in PHASES:
        if func is phase_local_customizations and not config.local.enabled:
            continue
        phases.append(Phase(name=name, title=title, action=functools.partial(func, config, runner)))
    return phases
