from __future__ import annotations

import logging
from pathlib import Path

from ..lib.command import Command
from ..pipeline import StepContext, StepResult
from .common import failure_message

logger = logging.getLogger(__name__)

LMSTUDIO_APP = "/Applications/LM Studio.app"


def has_lmstudio_app(app_path: str = LMSTUDIO_APP) -> bool:
    return Path(app_path).exists()


class LMStudioStep:
    step_id = "lmstudio"
    critical = False
    skip_message = "LM Studio already installed"

    def __init__(self, *, app_path: str = LMSTUDIO_APP) -> None:
        self.app_path = app_path

    def is_satisfied(self, ctx: StepContext) -> bool:
        return has_lmstudio_app(self.app_path)

    def run(self, ctx: StepContext) -> StepResult:
        r = ctx.runner.stream(Command.of("brew", "install", "--cask", "lm-studio"), ctx.emit_line)
        if r.ok:
            return StepResult.done("LM Studio installed")
        return StepResult.failed(failure_message(r, "LM Studio install failed"))


def installed_lmstudio_version(runner, app_path: str = LMSTUDIO_APP) -> str:
    """CFBundleShortVersionString of the app, "Installed" if unreadable."""

    if not has_lmstudio_app(app_path):
        return "Not installed"
    plist = str(Path(app_path) / "Contents/Info.plist")
    r = runner.run(
        Command.of("/usr/libexec/PlistBuddy", "-c", "Print :CFBundleShortVersionString", plist, login_shell=False)
    )
    return r.first_line if r.ok and r.first_line else "Installed"
