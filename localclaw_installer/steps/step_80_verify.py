from __future__ import annotations

import logging

from ..lib.command import Command
from ..pipeline import StepContext, StepResult

logger = logging.getLogger(__name__)


class VerifyStep:
    step_id = "verify"
    critical = False

    def is_satisfied(self, ctx: StepContext) -> bool:
        return False

    def run(self, ctx: StepContext) -> StepResult:
        version = ctx.runner.run(Command.of("openclaw", "--version"))
        if not version.ok:
            return StepResult.failed("OpenClaw CLI check failed")

        status = ctx.runner.run(Command.of("openclaw", "status", "--no-color"))
        if not status.ok:
            return StepResult.failed("Gateway status check failed")

        return StepResult.done(f"OpenClaw ready ({version.first_line})")
