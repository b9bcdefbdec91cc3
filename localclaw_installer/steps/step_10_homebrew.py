from __future__ import annotations

import logging
import os
import platform
import shlex
import tempfile
from pathlib import Path

from ..lib.command import Command
from ..pipeline import StepContext, StepResult
from .common import failure_message

logger = logging.getLogger(__name__)

INSTALL_SCRIPT_URL = "https://raw.githubusercontent.com/Homebrew/install/HEAD/install.sh"
BREW_PREFIXES = ("/opt/homebrew", "/usr/local")


def _applescript_string(s: str) -> str:
    return '"' + s.replace("\\", "\\\\").replace('"', '\\"') + '"'


def configure_brew_path(profile: Path) -> bool:
    """Make brew available to future login shells. Returns True if profile changed."""

    for prefix in BREW_PREFIXES:
        brew = Path(prefix) / "bin/brew"
        if not brew.exists():
            continue
        line = f'eval "$({brew} shellenv)"'
        existing = profile.read_text(encoding="utf-8") if profile.exists() else ""
        if line in existing.splitlines():
            return False
        with profile.open("a", encoding="utf-8") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write(line + "\n")
        logger.info("Added brew shellenv to %s", profile)
        return True
    return False


class HomebrewStep:
    step_id = "homebrew"
    critical = True
    skip_message = "Homebrew already installed"

    def __init__(self, *, profile: str = "~/.zprofile") -> None:
        self.profile = Path(os.path.expanduser(profile))

    def is_satisfied(self, ctx: StepContext) -> bool:
        return ctx.runner.has_command("brew")

    def run(self, ctx: StepContext) -> StepResult:
        fd, script = tempfile.mkstemp(prefix="brew-install-", suffix=".sh")
        os.close(fd)
        try:
            fetched = ctx.runner.run(Command.of("curl", "-fsSL", "-o", script, INSTALL_SCRIPT_URL))
            if not fetched.ok:
                return StepResult.failed(failure_message(fetched, "Could not download the Homebrew installer"))

            # Unattended install works for admin users; otherwise escalate once.
            r = ctx.runner.stream(Command.of("env", "NONINTERACTIVE=1", "/bin/bash", script), ctx.emit_line)
            if r.ok:
                configure_brew_path(self.profile)
                return StepResult.done("Homebrew installed")

            if ctx.cancelled or platform.system() != "Darwin":
                return StepResult.failed(failure_message(r, "Homebrew install failed"))

            logger.info("Unprivileged Homebrew install failed; retrying with administrator privileges")
            apple = f"do shell script {_applescript_string('NONINTERACTIVE=1 /bin/bash ' + shlex.quote(script))} with administrator privileges"
            admin = ctx.runner.run(Command.of("osascript", "-e", apple))
            if admin.ok:
                configure_brew_path(self.profile)
                return StepResult.done("Homebrew installed (admin)")
            return StepResult.failed("Homebrew install failed (admin required).\n" + admin.output)
        finally:
            Path(script).unlink(missing_ok=True)
