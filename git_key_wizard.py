#!/usr/bin/env python3
"""
Git Key Wizard — SSH & GPG setup for GitHub

A terminal wizard with two flows:

  ssh   Generate an SSH key, load it into ssh-agent, add a managed
        `Host github.com` block to ~/.ssh/config, test the connection
        and write global git identity, aliases and URL rewriting.
  gpg   Generate (or reuse) a GPG key, export it for GitHub and
        configure git to sign commits.

Usage:
    git-key-wizard ssh
    git-key-wizard ssh -n -e you@example.com -u octocat -f "Mona Lisa"
    git-key-wizard gpg -t ECC
"""

import argparse
import os
import platform
import re
import shutil
import subprocess
import sys
import tempfile
import time
from collections import namedtuple
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Optional

from rich import box
from rich.console import Console
from rich.padding import Padding
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from gpg_keylist import (
    GPG_KEY_TYPES,
    batch_parameters,
    keys_for_email,
    new_keys,
    parse_secret_keys,
)
from ssh_config_merge import (
    ConfigDecodeError,
    HostBlock,
    find_host_block,
    read_config,
    update_config_file,
)

console = Console()

VERSION = "2.0.0"


# ─── Paths & Constants ───────────────────────────────────────────────────────
SSH_DIR = Path.home() / ".ssh"

DEFAULT_KEY_NAME = "github_key"
DEFAULT_SSH_KEY_TYPE = "ed25519"
DEFAULT_GPG_KEY_TYPE = "RSA"
DEFAULT_EXPIRE = "0"

GITHUB_HOST = "github.com"
GITHUB_KEYS_URL = "https://github.com/settings/keys"
SSH_TEST_TARGET = "git@github.com"
SSH_TEST_TIMEOUT = 10
CLONE_TEST_REPO = "git@github.com:octocat/Hello-World.git"
CLONE_TEST_TIMEOUT = 60

# key type -> default length (None: ssh-keygen picks, -b is not passed)
SSH_KEY_TYPES = {
    "ed25519": None,
    "rsa": 4096,
    "ecdsa": 256,
}
SSH_KEY_BLURBS = {
    "ed25519": "recommended - fast, secure, small",
    "rsa": "widely compatible",
    "ecdsa": "NIST curve - good balance",
}
GPG_KEY_LENGTHS = {
    "RSA": 4096,
    "ECC": None,
}
KEY_LENGTHS = {
    "rsa": range(2048, 16385),
    "ecdsa": (256, 384, 521),
    "RSA": range(2048, 4097),
}

SSH_COMMANDS = ["git", "ssh-keygen", "ssh", "ssh-add"]
GPG_COMMANDS = ["gpg", "git"]

INSTALL_COMMANDS = {
    "apt-get": "sudo apt-get install",
    "dnf": "sudo dnf install",
    "yum": "sudo yum install",
    "pacman": "sudo pacman -S",
    "brew": "brew install",
}
SSH_PACKAGES = {
    "apt-get": "git openssh-client",
    "dnf": "git openssh-clients",
    "yum": "git openssh-clients",
    "pacman": "git openssh",
    "brew": "git openssh",
}
GPG_PACKAGES = {
    "apt-get": "git gnupg",
    "dnf": "git gnupg2",
    "yum": "git gnupg2",
    "pacman": "git gnupg",
    "brew": "git gnupg",
}

GIT_ALIASES = {
    "co": "checkout",
    "br": "branch",
    "ci": "commit",
    "st": "status",
    "sw": "switch",
    "lg": "log --oneline --decorate --all --graph",
    "ps": "push origin HEAD",
    "pl": "pull origin HEAD",
    "ad": "add .",
    "cm": "commit -m",
    "unstage": "reset HEAD --",
    "last": "log -1 HEAD",
}

GPG_TTY_BLOCK = "# GPG commit signing\nexport GPG_TTY=$(tty)\n"


# ─── Errors ──────────────────────────────────────────────────────────────────
class ExitCode(IntEnum):
    OK = 0
    GENERAL = 1
    DEPENDENCY = 2
    USER_INPUT = 3
    KEY_OPERATION = 4
    CONNECTIVITY = 5
    INTERRUPTED = 130


class SetupError(Exception):
    """A step failed; main() prints the message and exits with exit_code."""

    exit_code = ExitCode.GENERAL

    def __init__(self, message, exit_code=None):
        super().__init__(message)
        self.message = message
        if exit_code is not None:
            self.exit_code = exit_code


class MissingDependencyError(SetupError):
    exit_code = ExitCode.DEPENDENCY


class InvalidInputError(SetupError):
    exit_code = ExitCode.USER_INPUT


class KeyOperationError(SetupError):
    exit_code = ExitCode.KEY_OPERATION


class ConnectivityError(SetupError):
    exit_code = ExitCode.CONNECTIVITY


# ─── Shell Helpers ───────────────────────────────────────────────────────────
def run(cmd, **kwargs):
    """Run a command (argv list, no shell) capturing text output."""
    kwargs.setdefault("capture_output", True)
    kwargs.setdefault("text", True)
    return subprocess.run(cmd, **kwargs)


def sh(cmd):
    """Run a command, return stdout (empty string on failure)."""
    try:
        r = run(cmd)
    except OSError:
        return ""
    return r.stdout.strip() if r.returncode == 0 else ""


def cmd_exists(name):
    """Check if a command exists on PATH."""
    return shutil.which(name) is not None


def detect_shell_rc(system=None):
    """Return the path to the user's shell rc file."""
    system = system or platform.system()
    shell = os.environ.get("SHELL", "")
    if "bash" in shell:
        return Path.home() / (".bash_profile" if system == "Darwin" else ".bashrc")
    if "zsh" in shell or system == "Darwin":
        return Path.home() / ".zshrc"
    return Path.home() / ".bashrc"


def reattach_tty():
    # When piped (curl | python3), stdin is exhausted before any prompt runs.
    if sys.stdin.isatty():
        return
    try:
        sys.stdin = open("/dev/tty", "r")
    except OSError:
        pass  # no terminal at all (CI); prompts fall back to whatever stdin is


# ─── Output Helpers ──────────────────────────────────────────────────────────
def phase(num, title, subtitle=""):
    text = f"[bold cyan]STEP {num}[/]  [bold white]{title}[/]"
    if subtitle:
        text += f"\n[dim]{subtitle}[/]"
    console.print()
    console.print(Panel(text, box=box.ROUNDED, border_style="cyan", padding=(0, 2)))


def ok(msg):
    console.print(f"  [green]✓[/] {msg}")


def info(msg):
    console.print(f"  [cyan]›[/] {msg}")


def warn(msg):
    console.print(f"  [yellow]![/] {msg}")


def fail(msg):
    console.print(f"  [red]✗[/] {msg}")


def dim(msg):
    console.print(f"  [dim]{msg}[/]")


def pause(msg="Press Enter to continue..."):
    console.print()
    Prompt.ask(f"  [dim]{msg}[/]", default="")


def github_action(title, url, body, steps_text):
    """Show a panel telling the user what to paste on GitHub."""
    console.print()
    console.print(Panel(
        f"{body}\n\n"
        f"[bold]Open:[/]  {url}\n\n"
        + steps_text,
        title=f"[bold yellow] {title} [/]",
        border_style="yellow",
        box=box.HEAVY,
        padding=(1, 2),
    ))


def show_table(rows):
    table = Table(box=box.SIMPLE, padding=(0, 2), show_header=False)
    table.add_column(style="dim")
    table.add_column(style="white")
    for label, value in rows:
        table.add_row(label, value)
    console.print(Padding(table, (0, 4)))


# ═════════════════════════════════════════════════════════════════════════════
#  Configuration & Validation
# ═════════════════════════════════════════════════════════════════════════════
@dataclass
class SetupConfig:
    """Everything one run needs. Unset fields are prompted for or defaulted."""

    key_type: Optional[str] = None
    key_length: Optional[int] = None
    key_name: Optional[str] = None
    email: str = ""
    username: str = ""
    full_name: str = ""
    comment: Optional[str] = None
    expire: Optional[str] = None
    passphrase: Optional[str] = None
    force: bool = False
    interactive: bool = True
    ssh_dir: Path = SSH_DIR

    @property
    def private_key(self):
        return self.ssh_dir / (self.key_name or DEFAULT_KEY_NAME)

    @property
    def public_key(self):
        return self.ssh_dir / f"{self.key_name or DEFAULT_KEY_NAME}.pub"

    @property
    def ssh_config(self):
        return self.ssh_dir / "config"


Validation = namedtuple("Validation", "ok value error")


def valid(value):
    return Validation(True, value, "")


def invalid(error):
    return Validation(False, None, error)


EMAIL_RE = re.compile(r"^[^@\s<>]+@[^@\s<>]+\.[^@\s<>]+$")
# GitHub: alphanumerics and single hyphens, no leading/trailing hyphen, <= 39
USERNAME_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9]|-(?=[A-Za-z0-9])){0,38}$")
EXPIRE_RE = re.compile(r"^(0|[1-9]\d*[dwmy]?|\d{4}-\d{2}-\d{2})$")


def validate_email(value):
    value = (value or "").strip()
    if not value:
        return invalid("Email address cannot be empty")
    if not EMAIL_RE.match(value):
        return invalid(f"'{value}' is not a valid email address")
    return valid(value)


def validate_username(value):
    value = (value or "").strip()
    if not value:
        return invalid("GitHub username cannot be empty")
    if not USERNAME_RE.match(value):
        return invalid(
            f"'{value}' is not a valid GitHub username "
            "(letters, digits and single hyphens, at most 39 characters)"
        )
    return valid(value)


def validate_full_name(value):
    value = (value or "").strip()
    if not value:
        return invalid("Full name cannot be empty")
    if any(c in value for c in "<>\n\r"):
        return invalid("Full name cannot contain '<', '>' or line breaks")
    return valid(value)


def validate_comment(value):
    value = (value or "").strip()
    if any(c in value for c in "()\n\r"):
        return invalid("Comment cannot contain parentheses or line breaks")
    return valid(value)


def validate_key_name(value):
    value = (value or "").strip()
    if not value:
        return invalid("Key name cannot be empty")
    if "/" in value or "\\" in value or value.startswith("."):
        return invalid(f"'{value}' is not a plain file name")
    if value == "config" or value.endswith(".pub"):
        return invalid(f"'{value}' would clash with an SSH config or public key file")
    return valid(value)


def validate_ssh_key_type(value):
    value = (value or "").strip().lower()
    if value not in SSH_KEY_TYPES:
        return invalid(
            f"Invalid key type: {value or '(empty)'} "
            f"(supported: {', '.join(SSH_KEY_TYPES)})"
        )
    return valid(value)


def validate_gpg_key_type(value):
    value = (value or "").strip().upper()
    if value not in GPG_KEY_TYPES:
        return invalid(
            f"Invalid GPG key type: {value or '(empty)'} "
            f"(supported: {', '.join(GPG_KEY_TYPES)})"
        )
    return valid(value)


def validate_key_length(key_type, value):
    """Check a key length for ``key_type``; types without a length ignore it."""
    allowed = KEY_LENGTHS.get(key_type)
    if allowed is None:
        return valid(None)
    if value in (None, ""):
        default = SSH_KEY_TYPES.get(key_type) or GPG_KEY_LENGTHS.get(key_type)
        return valid(default)
    try:
        length = int(value)
    except (TypeError, ValueError):
        return invalid(f"Key length must be a number, got '{value}'")
    if length not in allowed:
        if isinstance(allowed, range):
            bounds = f"between {allowed.start} and {allowed.stop - 1}"
        else:
            bounds = "one of " + ", ".join(str(n) for n in allowed)
        return invalid(f"{key_type} key length must be {bounds}")
    return valid(length)


def validate_expire(value):
    value = (value or "").strip() or DEFAULT_EXPIRE
    if not EXPIRE_RE.match(value):
        return invalid(
            f"Invalid expiration '{value}' "
            "(use 0, a number of days, 2w, 6m, 3y or YYYY-MM-DD)"
        )
    return valid(value)


def validate_ssh_passphrase(value):
    value = value or ""
    # ssh-keygen refuses passphrases shorter than five characters
    if value and len(value) < 5:
        return invalid("Passphrase must be empty or at least 5 characters")
    return valid(value)


def validate_gpg_passphrase(value):
    value = value or ""
    if "\n" in value or "\r" in value:
        return invalid("Passphrase cannot contain line breaks")
    return valid(value)


def ask(prompt, validator, default=None, password=False):
    """Prompt until ``validator`` accepts the answer; return the cleaned value."""
    while True:
        answer = Prompt.ask(f"  [bold]{prompt}[/]", default=default, password=password)
        result = validator(answer or "")
        if result.ok:
            return result.value
        fail(result.error)


def require(config, fields):
    """Fail when non-interactive runs are missing required values."""
    missing = [flag for attr, flag in fields if not getattr(config, attr)]
    if missing:
        raise InvalidInputError(
            "Missing required parameters for non-interactive mode: "
            + ", ".join(missing)
        )


# ═════════════════════════════════════════════════════════════════════════════
#  SSH Agent
# ═════════════════════════════════════════════════════════════════════════════
class SSHAgent:
    """Agent backend. One subclass per platform, picked by select_agent()."""

    name = "ssh-agent"

    def is_running(self):
        raise NotImplementedError

    def start(self):
        raise NotImplementedError

    def add(self, key_path):
        result = run(["ssh-add", str(key_path)])
        if result.returncode != 0:
            detail = result.stderr.strip()
            raise KeyOperationError(
                "Failed to add key to SSH agent" + (f": {detail}" if detail else "")
            )


class UnixSSHAgent(SSHAgent):
    """A per-session ``ssh-agent`` found through SSH_AUTH_SOCK."""

    ENV_RE = re.compile(r"(SSH_AUTH_SOCK|SSH_AGENT_PID)=([^;\s]+);")

    def is_running(self):
        if not os.environ.get("SSH_AUTH_SOCK"):
            return False
        # ssh-add -l: 0 keys listed, 1 agent has no keys, 2 cannot connect
        return run(["ssh-add", "-l"]).returncode in (0, 1)

    def start(self):
        result = run(["ssh-agent", "-s"])
        found = dict(self.ENV_RE.findall(result.stdout))
        if result.returncode != 0 or "SSH_AUTH_SOCK" not in found:
            raise KeyOperationError("Failed to start SSH agent")
        os.environ.update(found)
        dim("The agent only lives for this session; add "
            "`eval \"$(ssh-agent -s)\"` to your shell profile to keep one around.")


class WindowsSSHAgent(SSHAgent):
    """The OpenSSH ``ssh-agent`` Windows service."""

    name = "ssh-agent service"

    def _powershell(self, script):
        return run(["powershell", "-NoProfile", "-NonInteractive", "-Command", script])

    def is_running(self):
        result = self._powershell("(Get-Service ssh-agent).Status")
        return result.returncode == 0 and result.stdout.strip() == "Running"

    def start(self):
        result = self._powershell(
            "Set-Service ssh-agent -StartupType Manual; Start-Service ssh-agent"
        )
        if result.returncode != 0:
            raise KeyOperationError(
                "Could not start the ssh-agent service. "
                "Run once from an elevated PowerShell: "
                "Set-Service ssh-agent -StartupType Manual"
            )


def select_agent(system=None):
    system = system or platform.system()
    if system == "Windows":
        return WindowsSSHAgent()
    return UnixSSHAgent()


# ═════════════════════════════════════════════════════════════════════════════
#  Welcome & Preflight
# ═════════════════════════════════════════════════════════════════════════════
FLOW_STEPS = {
    "ssh": [
        "Generate an SSH key and load it into the agent",
        "Add a github.com entry to ~/.ssh/config",
        "Show the public key for GitHub and test the connection",
        "Configure git identity, aliases and SSH URLs",
    ],
    "gpg": [
        "Create (or reuse) a GPG signing key",
        "Configure git to sign commits automatically",
        "Show the public key for GitHub",
        "Verify that signing works",
    ],
}


def welcome(command):
    console.print(Panel(
        f"[bold bright_cyan]Git Key Wizard[/] [dim]v{VERSION}[/]\n"
        f"  [white]{command.upper()} setup for GitHub[/]",
        box=box.DOUBLE, border_style="bright_blue", padding=(0, 2),
    ))
    for num, step in enumerate(FLOW_STEPS[command], 1):
        console.print(f"  [white]{num}.[/] {step}")
    console.print()
    dim("You can re-run safely; existing config is updated, not duplicated.")
    console.print()

    if not Confirm.ask("  [bold]Ready?[/]", default=True):
        console.print("\n  No worries. Run again whenever.\n")
        sys.exit(ExitCode.OK)


def install_hint(packages):
    for manager, names in packages.items():
        if cmd_exists(manager):
            return f"Try: {INSTALL_COMMANDS[manager]} {names}"
    return None


def check_dependencies(commands, packages):
    info("Checking system dependencies...")
    missing = [c for c in commands if not cmd_exists(c)]
    if missing:
        hint = install_hint(packages)
        if hint:
            info(hint)
        raise MissingDependencyError(
            f"Missing required dependencies: {' '.join(missing)}"
        )
    ok("All dependencies found")


def preflight(commands, packages):
    phase(1, "Preflight Checks", "Making sure your system has what we need")

    system = platform.system()
    if system not in ("Linux", "Darwin", "Windows"):
        warn(f"Untested platform: {system}")
    else:
        ok(f"{system} detected")

    check_dependencies(commands, packages)

    if "ssh" in commands:
        # ssh -V prints to stderr
        version = run(["ssh", "-V"]).stderr.strip()
        if version:
            dim(f"SSH client: {version}")
    if "gpg" in commands:
        version = sh(["gpg", "--version"]).splitlines()
        if version:
            dim(f"GnuPG: {version[0]}")


# ═════════════════════════════════════════════════════════════════════════════
#  SSH — Identity & Settings
# ═════════════════════════════════════════════════════════════════════════════
def collect_ssh_identity(config):
    phase(2, "Your Identity", "Used for the key comment and your git commits")

    if not config.interactive:
        require(config, [("email", "email (-e)"), ("username", "username (-u)"),
                         ("full_name", "full-name (-f)")])
        return

    if not config.full_name:
        config.full_name = ask(
            "Full name [dim](for Git commits, e.g. 'John Doe')[/]",
            validate_full_name,
            default=sh(["git", "config", "--global", "user.name"]) or None,
        )

    if not config.username:
        dim("Your GitHub username is the identifier in your profile URL,")
        dim("e.g. github.com/octocat -> octocat. It is not your display name.")
        while not config.username:
            username = ask("GitHub username", validate_username)
            info(f"Repositories will be accessed as: "
                 f"git@github.com:{username}/repository.git")
            if Confirm.ask("  Is this correct?", default=True):
                config.username = username

    if not config.email:
        config.email = ask(
            "Email [dim](associated with GitHub)[/]",
            validate_email,
            default=sh(["git", "config", "--global", "user.email"]) or None,
        )


def collect_ssh_settings(config):
    if config.interactive:
        if config.key_name is None:
            config.key_name = ask("Name for your SSH key", validate_key_name,
                                  default=DEFAULT_KEY_NAME)
        if config.key_type is None:
            console.print()
            info("Available SSH key types:")
            for name, blurb in SSH_KEY_BLURBS.items():
                dim(f"  {name:<8} {blurb}")
            config.key_type = Prompt.ask(
                "  [bold]Key type[/]",
                choices=list(SSH_KEY_TYPES),
                default=DEFAULT_SSH_KEY_TYPE,
            )
        if config.passphrase is None:
            config.passphrase = ask(
                "Passphrase for the SSH key [dim](Enter for none)[/]",
                validate_ssh_passphrase, default="", password=True,
            )

    config.key_name = config.key_name or DEFAULT_KEY_NAME
    config.key_type = config.key_type or DEFAULT_SSH_KEY_TYPE
    config.passphrase = config.passphrase or ""

    result = validate_key_length(config.key_type, config.key_length)
    if not result.ok:
        raise InvalidInputError(result.error)
    config.key_length = result.value


# ═════════════════════════════════════════════════════════════════════════════
#  SSH — Key
# ═════════════════════════════════════════════════════════════════════════════
def prepare_ssh_dir(config):
    if not config.ssh_dir.exists():
        info(f"Creating SSH directory: {config.ssh_dir}")
    config.ssh_dir.mkdir(mode=0o700, parents=True, exist_ok=True)


def backup_key(config):
    ts = int(time.time())
    backup = config.private_key.with_name(f"{config.private_key.name}.bak.{ts}")
    config.private_key.rename(backup)
    if config.public_key.exists():
        config.public_key.rename(
            config.public_key.with_name(f"{config.public_key.name}.bak.{ts}")
        )
    ok(f"Old key backed up as {backup.name}")


def handle_existing_key(config):
    if not config.private_key.exists():
        return

    warn(f"SSH key '{config.key_name}' already exists at {config.private_key}")
    if config.force:
        info("Force overwrite enabled, proceeding...")
    elif not config.interactive:
        raise KeyOperationError(
            "Key exists and force overwrite not enabled. "
            "Use --force to overwrite existing keys"
        )
    elif not Confirm.ask("  Do you want to overwrite it?", default=False):
        info("Exiting without changes")
        sys.exit(ExitCode.OK)

    backup_key(config)


def ssh_keygen_command(config):
    cmd = ["ssh-keygen", "-t", config.key_type]
    if config.key_length:
        cmd += ["-b", str(config.key_length)]
    cmd += ["-C", config.email, "-f", str(config.private_key),
            "-N", config.passphrase or "", "-q"]
    return cmd


def generate_ssh_key(config):
    info(f"Generating {config.key_type} SSH key...")
    with console.status("Generating SSH key..."):
        result = run(ssh_keygen_command(config))

    if result.returncode != 0 or not config.private_key.exists():
        detail = result.stderr.strip()
        raise KeyOperationError(
            "Failed to generate SSH key" + (f": {detail}" if detail else "")
        )

    config.private_key.chmod(0o600)
    config.public_key.chmod(0o644)
    ok("SSH key generated successfully")


def register_with_agent(config, agent):
    info("Setting up SSH agent...")
    if agent.is_running():
        ok(f"{agent.name} is running")
    else:
        warn(f"{agent.name} not detected")
        info("Starting SSH agent...")
        agent.start()
        ok("SSH agent started")

    info("Adding key to SSH agent...")
    agent.add(config.private_key)
    ok("Key added to SSH agent")


# ═════════════════════════════════════════════════════════════════════════════
#  SSH — Client Config
# ═════════════════════════════════════════════════════════════════════════════
def managed_block(config):
    identity = str(config.private_key)
    if " " in identity:
        identity = f'"{identity}"'
    return HostBlock(GITHUB_HOST, [
        ("HostName", GITHUB_HOST),
        ("User", "git"),
        ("IdentityFile", identity),
        ("IdentitiesOnly", "yes"),
        ("AddKeysToAgent", "yes"),
    ])


def load_ssh_config(path):
    try:
        return read_config(path)
    except ConfigDecodeError as e:
        raise SetupError(str(e)) from e


def configure_ssh_config(config):
    path = config.ssh_config
    info("Configuring SSH client...")

    existing = find_host_block(load_ssh_config(path), GITHUB_HOST)
    if existing and config.interactive and not config.force:
        warn(f"GitHub SSH configuration already exists in {path}")
        if not Confirm.ask("  Do you want to update it?", default=True):
            info("Skipping SSH config update")
            return False

    try:
        changed = update_config_file(path, managed_block(config))
    except ConfigDecodeError as e:
        raise SetupError(str(e)) from e

    if changed:
        ok(f"SSH configuration updated ({path})")
    else:
        ok("SSH configuration already up to date")
    return changed


# ═════════════════════════════════════════════════════════════════════════════
#  SSH — GitHub
# ═════════════════════════════════════════════════════════════════════════════
def show_public_key(config):
    if not config.public_key.exists():
        raise KeyOperationError("Public key file missing. Something went wrong.")

    github_action(
        "Add your SSH key to GitHub",
        GITHUB_KEYS_URL,
        "[bold green]Your SSH public key:[/]\n\n"
        + config.public_key.read_text().strip(),
        "  1. Click [bold]New SSH key[/]\n"
        f"  2. [bold]Title[/]:    e.g. \"{platform.node() or 'My machine'}\"\n"
        "  3. [bold]Key type[/]: Authentication Key\n"
        "  4. [bold]Key[/]:      paste the public key above\n"
        "  5. Click [bold]Add SSH key[/]",
    )


def wait_for_github(config):
    if config.interactive:
        pause("Press Enter after you've added the key to GitHub...")
    else:
        info("Waiting 5 seconds for key to be added to GitHub...")
        time.sleep(5)


def parse_github_greeting(output):
    """Return (authenticated, username) from `ssh -T git@github.com` output."""
    if "successfully authenticated" not in output:
        return False, None
    m = re.search(r"Hi ([^!\s]+)!", output)
    return True, (m.group(1) if m else None)


def reconcile_username(config, authenticated):
    if authenticated.lower() == (config.username or "").lower():
        return

    warn(f"Authenticated username ({authenticated}) differs from "
         f"provided username ({config.username})")
    dim("You may have entered the wrong username, be using a different")
    dim("SSH key, or your GitHub username may have changed.")

    if not config.interactive:
        dim(f"Keeping the supplied username ({config.username})")
        return
    if Confirm.ask(f"  Continue with the authenticated username ({authenticated})?",
                   default=True):
        info(f"Updating username to: {authenticated}")
        config.username = authenticated


def check_github_connection(config):
    info("Testing SSH connection to GitHub...")
    cmd = ["ssh", "-T", "-o", "StrictHostKeyChecking=accept-new", SSH_TEST_TARGET]
    try:
        with console.status("Contacting GitHub..."):
            result = run(cmd, timeout=SSH_TEST_TIMEOUT)
        output = result.stdout + result.stderr
    except subprocess.TimeoutExpired:
        output = f"(no answer within {SSH_TEST_TIMEOUT}s)"

    authenticated, user = parse_github_greeting(output)
    if authenticated:
        ok("SSH connection to GitHub successful!")
        if user:
            ok(f"Authenticated as: {user}")
            reconcile_username(config, user)
        return True

    fail("SSH connection test failed")
    if output.strip():
        dim(f"Output: {output.strip()}")
    warn("Please check:")
    dim("- The public key was correctly added to GitHub")
    dim("- Your internet connection is working and GitHub is reachable")
    dim(f"- Try running: ssh -T {SSH_TEST_TARGET} -v")

    if config.interactive and Confirm.ask(
            "  Continue with Git configuration anyway?", default=False):
        return False
    raise ConnectivityError("Could not authenticate to GitHub over SSH")


# ═════════════════════════════════════════════════════════════════════════════
#  Git Configuration
# ═════════════════════════════════════════════════════════════════════════════
def git_config(key, value):
    """Set a global git option. Returns True on success."""
    return run(["git", "config", "--global", key, value]).returncode == 0


def configure_git(config):
    info("Configuring Git...")

    # Commits are attributed to the full name, not the GitHub username
    if not git_config("user.name", config.full_name):
        raise SetupError("Failed to set Git user name")
    if not git_config("user.email", config.email):
        raise SetupError("Failed to set Git email")
    if not git_config("init.defaultBranch", "main"):
        warn("Failed to set default branch (older Git version?)")

    info("Setting up Git aliases...")
    for alias, command in GIT_ALIASES.items():
        if not git_config(f"alias.{alias}", command):
            warn(f"Failed to set alias '{alias}'")

    if not git_config("url.git@github.com:.insteadOf", "https://github.com/"):
        warn("Failed to configure Git SSH URL rewriting")

    ok("Git configuration completed")
    info(f"Git commits will be attributed to: {config.full_name} <{config.email}>")


def check_git_clone():
    info("Testing Git operations with SSH...")
    with tempfile.TemporaryDirectory() as tmp:
        dest = Path(tmp) / "Hello-World"
        try:
            with console.status("Testing Git clone operation..."):
                result = run(["git", "clone", "--depth", "1", CLONE_TEST_REPO, str(dest)],
                             timeout=CLONE_TEST_TIMEOUT)
            cloned = result.returncode == 0
        except subprocess.TimeoutExpired:
            cloned = False

    if cloned:
        ok("Git operations working correctly with SSH")
    else:
        warn("Git SSH test failed - this might be normal if the test "
             "repository is unavailable")
    return cloned


def show_ssh_summary(config):
    console.print()
    console.print(Panel(
        "[bold green]Your SSH key has been set up and Git is configured.[/]",
        title="[bold green] Setup Complete [/]",
        border_style="green", box=box.DOUBLE, padding=(0, 2),
    ))

    block = find_host_block(load_ssh_config(config.ssh_config), GITHUB_HOST)
    show_table([
        ("SSH key type", config.key_type
            + (f" ({config.key_length} bits)" if config.key_length else "")),
        ("Private key", str(config.private_key)),
        ("Public key", str(config.public_key)),
        ("SSH config", f"{config.ssh_config} "
            + ("(github.com entry present)" if block else "(no github.com entry)")),
        ("Passphrase", "yes" if config.passphrase else "no"),
        ("GitHub username", config.username),
        ("Commit author", f"{config.full_name} <{config.email}>"),
        ("Default branch", "main"),
        ("SSH URL rewriting", "enabled"),
    ])

    info("Next steps:")
    dim(f"git clone git@github.com:{config.username}/repository.git")
    dim(f"ssh -T {SSH_TEST_TARGET}        test the connection")
    dim(f"ssh-add {config.private_key}    re-add the key after a reboot")
    dim("git config --global --list       review git settings")


def run_ssh_setup(config, agent):
    preflight(SSH_COMMANDS, SSH_PACKAGES)
    collect_ssh_identity(config)
    collect_ssh_settings(config)

    phase(3, "SSH Key", "So GitHub knows your machine")
    prepare_ssh_dir(config)
    handle_existing_key(config)
    generate_ssh_key(config)
    register_with_agent(config, agent)
    configure_ssh_config(config)

    phase(4, "GitHub", "Register the key and test the connection")
    show_public_key(config)
    wait_for_github(config)
    check_github_connection(config)

    phase(5, "Git Configuration", "Identity, aliases and SSH URLs")
    configure_git(config)
    check_git_clone()
    show_ssh_summary(config)


# ═════════════════════════════════════════════════════════════════════════════
#  GPG
# ═════════════════════════════════════════════════════════════════════════════
def collect_gpg_identity(config):
    phase(2, "Your Identity", "Stored in the key's user id and your git config")

    if not config.interactive:
        require(config, [("full_name", "full-name (-f)"), ("email", "email (-e)")])
        return

    if not config.full_name:
        config.full_name = ask(
            "Full name", validate_full_name,
            default=sh(["git", "config", "--global", "user.name"]) or None,
        )
    if not config.email:
        config.email = ask(
            "Email [dim](must match a verified GitHub email)[/]", validate_email,
            default=sh(["git", "config", "--global", "user.email"]) or None,
        )
    if config.comment is None:
        config.comment = ask("Comment [dim](optional)[/]", validate_comment, default="")


def collect_gpg_settings(config):
    if config.interactive:
        if config.key_type is None:
            config.key_type = Prompt.ask(
                "  [bold]Key type[/]", choices=list(GPG_KEY_TYPES),
                default=DEFAULT_GPG_KEY_TYPE,
            )
        if config.expire is None:
            config.expire = ask(
                "Expiration [dim](0 = never, e.g. 1y, 6m, 90)[/]",
                validate_expire, default=DEFAULT_EXPIRE,
            )
        if config.passphrase is None:
            dim("Leave empty for an unprotected key (not recommended).")
            config.passphrase = ask("Passphrase", validate_gpg_passphrase,
                                    default="", password=True)

    config.key_type = config.key_type or DEFAULT_GPG_KEY_TYPE
    config.expire = config.expire or DEFAULT_EXPIRE
    config.comment = config.comment or ""
    config.passphrase = config.passphrase or ""

    result = validate_key_length(config.key_type, config.key_length)
    if not result.ok:
        raise InvalidInputError(result.error)
    config.key_length = result.value


def list_secret_keys():
    result = run(["gpg", "--list-secret-keys", "--with-colons"])
    if result.returncode != 0:
        return []
    return parse_secret_keys(result.stdout)


def choose_existing_gpg_key(config):
    """An existing key for the email to reuse, or None to generate one."""
    existing = keys_for_email(list_secret_keys(), config.email)
    if not existing or config.force:
        return None

    key = existing[0]
    warn(f"Existing GPG key found for {config.email}")
    dim(f"Key ID: {key.key_id}  ({key.description})")

    if not config.interactive:
        ok(f"Reusing key {key.key_id} (pass --force to generate a new one)")
        return key

    console.print()
    if Confirm.ask("  Use this existing key?", default=True):
        ok(f"Using key {key.key_id}")
        return key
    return None


def generate_gpg_key(config):
    info("Generating GPG key pair...")
    before = list_secret_keys()

    params = batch_parameters(
        config.full_name, config.email,
        key_type=config.key_type, key_length=config.key_length,
        expire=config.expire, comment=config.comment,
        passphrase=config.passphrase,
    )
    cmd = ["gpg", "--batch"]
    if config.passphrase:
        cmd += ["--pinentry-mode", "loopback"]
    cmd += ["--generate-key"]

    with console.status("Generating GPG key (this can take a while)..."):
        result = run(cmd, input=params)
    if result.returncode != 0:
        detail = result.stderr.strip().splitlines()
        raise KeyOperationError(
            "GPG key generation failed" + (f": {detail[-1]}" if detail else "")
        )

    after = list_secret_keys()
    created = new_keys(before, after) or keys_for_email(after, config.email)
    if not created:
        raise KeyOperationError("Failed to find generated GPG key")

    key = created[0]
    ok(f"GPG key created: {key.key_id}")
    return key


def configure_git_signing(config, key):
    info("Configuring Git to sign commits automatically...")
    if not git_config("user.signingkey", key.key_id):
        raise SetupError("Failed to set Git signing key")
    for name, value in [
        ("user.name", config.full_name),
        ("user.email", config.email),
        ("gpg.program", "gpg"),
        ("commit.gpgsign", "true"),
    ]:
        if not git_config(name, value):
            raise SetupError(f"Failed to set Git {name}")
    ok("Git config updated")

    console.print()
    show_table([
        (name, sh(["git", "config", "--global", name]))
        for name in ["user.name", "user.email", "user.signingkey",
                     "commit.gpgsign", "gpg.program"]
    ])


def ensure_gpg_tty(rc):
    """Export GPG_TTY in the shell rc so pinentry finds the terminal."""
    if rc.exists():
        content = rc.read_text()
        if "GPG_TTY" in content:
            ok(f"GPG_TTY already in {rc.name}")
            return False
        with open(rc, "a") as f:
            f.write("\n" + GPG_TTY_BLOCK)
        ok(f"Added GPG_TTY to {rc.name}")
    else:
        rc.write_text(GPG_TTY_BLOCK)
        ok(f"Created {rc.name} with GPG_TTY")
    return True


def export_public_key(key):
    armor = sh(["gpg", "--armor", "--export", key.ident])
    if not armor:
        raise KeyOperationError("Could not export GPG public key")
    return armor


def show_gpg_key(armor):
    github_action(
        "Add your GPG key to GitHub",
        GITHUB_KEYS_URL,
        "[bold green]Your GPG public key:[/]\n\n" + armor,
        "  1. Click [bold]New GPG key[/]\n"
        "  2. [bold]Title[/]: something like \"Laptop Signing Key\"\n"
        "  3. [bold]Key[/]:   paste the whole block above, starting with\n"
        "     [dim]-----BEGIN PGP PUBLIC KEY BLOCK-----[/]\n"
        "  4. Click [bold]Add GPG key[/]",
    )


def verify_signing(key):
    if hasattr(os, "ttyname") and sys.stdin.isatty():
        os.environ["GPG_TTY"] = os.ttyname(sys.stdin.fileno())

    info("Testing GPG signing...")
    result = run(["gpg", "--clearsign", "--local-user", key.ident], input="test\n")
    if result.returncode == 0 and "BEGIN PGP SIGNED MESSAGE" in result.stdout:
        ok("GPG signing works")
        return True

    warn("GPG signing test did not pass cleanly")
    dim("This often resolves after a terminal restart.")
    if result.stderr:
        dim(result.stderr.strip()[:120])
    return False


def run_gpg_setup(config):
    preflight(GPG_COMMANDS, GPG_PACKAGES)
    collect_gpg_identity(config)
    collect_gpg_settings(config)

    phase(3, "GPG Key", "So GitHub can prove your commits are really yours")
    key = choose_existing_gpg_key(config) or generate_gpg_key(config)

    phase(4, "Commit Signing", "Wire git up to the key")
    configure_git_signing(config, key)
    if platform.system() != "Windows":
        ensure_gpg_tty(detect_shell_rc())
    show_gpg_key(export_public_key(key))
    if config.interactive:
        pause("Press Enter after you've added the GPG key on GitHub...")

    phase(5, "Verification", "Making sure signing works end to end")
    signed = verify_signing(key)

    console.print()
    console.print(Panel(
        "[bold green]GPG key created and Git configured to sign commits.[/]\n\n"
        f"Key ID: [bold]{key.key_id}[/]\n"
        "Look for the [green]Verified[/] badge on your next pushed commit."
        + ("" if signed else
           "\n\n[dim]If signing fails: gpgconf --kill gpg-agent[/]"),
        title="[bold green] Setup Complete [/]",
        border_style="green", box=box.DOUBLE, padding=(1, 2),
    ))


# ═════════════════════════════════════════════════════════════════════════════
#  CLI
# ═════════════════════════════════════════════════════════════════════════════
class WizardArgumentParser(argparse.ArgumentParser):
    """Usage errors exit with the invalid-input code instead of argparse's 2."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(ExitCode.USER_INPUT, f"{self.prog}: error: {message}\n")


SSH_EXAMPLES = """\
examples:
  git-key-wizard ssh
  git-key-wizard ssh -n -e user@example.com -u octocat -f "Mona Lisa" -t ed25519
  git-key-wizard ssh -t rsa -k my_github_key

note:
  The GitHub username is the identifier in your profile URL
  (github.com/<username>); the full name is used for commit attribution.
"""

GPG_EXAMPLES = """\
examples:
  git-key-wizard gpg
  git-key-wizard gpg -n -e user@example.com -f "Mona Lisa" -t ECC -x 2y
"""


def build_parser():
    parser = WizardArgumentParser(
        prog="git-key-wizard",
        description="Set up SSH and GPG keys for GitHub.",
    )
    parser.add_argument("-v", "--version", action="version",
                        version=f"%(prog)s {VERSION}")
    sub = parser.add_subparsers(dest="command", metavar="{ssh,gpg}")
    sub.required = True

    ssh = sub.add_parser(
        "ssh", help="SSH key, agent, ~/.ssh/config and git identity",
        epilog=SSH_EXAMPLES, formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    gpg = sub.add_parser(
        "gpg", help="GPG signing key and git commit signing",
        epilog=GPG_EXAMPLES, formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    for p in (ssh, gpg):
        p.add_argument("-n", "--non-interactive", action="store_true",
                       help="never prompt; required values must be given as flags")
        p.add_argument("-e", "--email", help="email address for the key")
        p.add_argument("-f", "--full-name",
                       help="your full name, used for git commits")
        p.add_argument("-b", "--key-length", help="key length in bits")
        p.add_argument("-p", "--passphrase",
                       help="key passphrase (empty for no passphrase)")
        p.add_argument("--force", action="store_true",
                       help="overwrite or regenerate existing keys without asking")

    ssh.add_argument("-t", "--key-type",
                     help=f"SSH key type: {', '.join(SSH_KEY_TYPES)} "
                          f"[default: {DEFAULT_SSH_KEY_TYPE}]")
    ssh.add_argument("-k", "--key-name",
                     help=f"SSH key file name [default: {DEFAULT_KEY_NAME}]")
    ssh.add_argument("-u", "--username",
                     help="GitHub username (the one in your profile URL)")
    ssh.add_argument("--ssh-dir", type=Path, default=SSH_DIR,
                     help="SSH directory [default: ~/.ssh]")

    gpg.add_argument("-t", "--key-type",
                     help=f"GPG key type: {', '.join(GPG_KEY_TYPES)} "
                          f"[default: {DEFAULT_GPG_KEY_TYPE}]")
    gpg.add_argument("-c", "--comment", help="comment for the key's user id")
    gpg.add_argument("-x", "--expire",
                     help="expiration: 0 (never), days, 2w, 6m, 3y or YYYY-MM-DD")

    return parser


def config_from_args(args):
    """Build a SetupConfig from parsed flags, rejecting invalid values."""
    config = SetupConfig(
        interactive=not args.non_interactive,
        force=args.force,
        ssh_dir=getattr(args, "ssh_dir", None) or SSH_DIR,
        passphrase=args.passphrase,
        key_length=args.key_length,
    )

    type_validator = validate_ssh_key_type if args.command == "ssh" else validate_gpg_key_type
    passphrase_validator = (validate_ssh_passphrase if args.command == "ssh"
                            else validate_gpg_passphrase)
    checks = [
        ("email", validate_email),
        ("full_name", validate_full_name),
        ("username", validate_username),
        ("key_name", validate_key_name),
        ("key_type", type_validator),
        ("comment", validate_comment),
        ("expire", validate_expire),
        ("passphrase", passphrase_validator),
    ]
    for attr, validator in checks:
        value = getattr(args, attr, None)
        if value is None:
            continue
        result = validator(value)
        if not result.ok:
            raise InvalidInputError(result.error)
        setattr(config, attr, result.value)

    return config


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        config = config_from_args(args)
        if config.interactive:
            reattach_tty()
            welcome(args.command)

        if args.command == "ssh":
            run_ssh_setup(config, select_agent())
        else:
            run_gpg_setup(config)

    except SetupError as e:
        fail(e.message)
        return int(e.exit_code)
    except KeyboardInterrupt:
        console.print("\n\n  [dim]Cancelled. Run again whenever you're ready.[/]\n")
        return int(ExitCode.INTERRUPTED)
    except Exception as e:
        console.print(f"\n  [red]Something broke: {e}[/]")
        console.print("  [dim]Re-run the wizard. It's safe to retry.[/]\n")
        raise

    return int(ExitCode.OK)


if __name__ == "__main__":
    sys.exit(main())
