from __future__ import annotations

import logging
from pathlib import Path

from ..lib.command import Command
from ..pipeline import StepContext, StepResult
from .common import failure_message
from .step_20_lmstudio import LMSTUDIO_APP

logger = logging.getLogger(__name__)

BUNDLED_LMS = LMSTUDIO_APP + "/Contents/Resources/app/.webpack/lms"


def lms_command(ctx: StepContext) -> str:
    """The lms CLI, falling back to the copy bundled inside the app."""
    if ctx.runner.has_command("lms"):
        return "lms"
    if Path(BUNDLED_LMS).exists():
        return BUNDLED_LMS
    return "lms"


def model_installed(ctx: StepContext, query: str) -> bool:
    base = query.split("@", 1)[0].lower()
    r = ctx.runner.run(Command.of(lms_command(ctx), "ls"))
    return r.ok and base in r.output.lower()


class ModelDownloadStep:
    """Downloads the configured model, streaming progress lines."""

    step_id = "model"
    critical = False
    skip_message = "Model already installed"

    def is_satisfied(self, ctx: StepContext) -> bool:
        query = ctx.cfg.model_query
        return bool(query) and model_installed(ctx, query)

    def run(self, ctx: StepContext) -> StepResult:
        query = ctx.cfg.model_query
        if not query:
            return StepResult.skipped("Model query missing")

        ctx.emit_line(f"Downloading {query}")
        r = ctx.runner.stream(Command.of(lms_command(ctx), "get", query, "--gguf", "-y"), ctx.emit_line)
        if r.ok:
            return StepResult.done("Model installed in LM Studio")
        return StepResult.failed(failure_message(r, "Model download failed"))
