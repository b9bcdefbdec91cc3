from __future__ import annotations

import logging

from ..lib.command import Command
from ..pipeline import StepContext, StepResult
from .common import CommandStep, failure_message
from .step_20_lmstudio import has_lmstudio_app
from .step_40_runtime import OPENCLAW_PACKAGE

logger = logging.getLogger(__name__)


def brew_update_step() -> CommandStep:
    return CommandStep(
        step_id="update_homebrew",
        actions=(Command.of("brew", "update"),),
        only_if_command="brew",
        skip_message="Homebrew not installed",
        done_message="Homebrew updated",
        critical=False,
    )


def node_upgrade_step() -> CommandStep:
    return CommandStep(
        step_id="update_node",
        actions=(Command.of("brew", "upgrade", "node"),),
        only_if_command="node",
        skip_message="Node not installed",
        done_message="Node upgraded or already up to date",
        critical=False,
    )


def openclaw_update_step() -> CommandStep:
    return CommandStep(
        step_id="update_openclaw",
        actions=(Command.of("npm", "i", "-g", OPENCLAW_PACKAGE),),
        only_if_command="openclaw",
        skip_message="OpenClaw not installed",
        done_message="OpenClaw updated",
        critical=False,
    )


class LMStudioUpgradeStep:
    """Upgrade through Homebrew, but only when the cask manages the app."""

    step_id = "update_lmstudio"
    critical = False

    def is_satisfied(self, ctx: StepContext) -> bool:
        return False

    def run(self, ctx: StepContext) -> StepResult:
        if not has_lmstudio_app():
            return StepResult.skipped("LM Studio not installed")

        listed = ctx.runner.run(Command.of("brew", "list", "--cask", "lm-studio"))
        if not listed.ok or not listed.output:
            return StepResult.skipped("LM Studio installed manually (not managed by Homebrew cask)")

        r = ctx.runner.run(Command.of("brew", "upgrade", "--cask", "lm-studio"))
        if r.ok:
            return StepResult.done("LM Studio upgraded or already up to date")
        return StepResult.failed(failure_message(r, "LM Studio upgrade failed"))
