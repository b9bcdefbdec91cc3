from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from ..lib.command import CmdResult, Command
from ..pipeline import StepContext, StepResult
from ..state_store import get_path, load_document, upsert

logger = logging.getLogger(__name__)


def failure_message(r: Optional[CmdResult], fallback: str) -> str:
    if r is None:
        return fallback
    return r.output or f"{fallback} (exit {r.returncode})"


@dataclass(frozen=True)
class CommandStep:
    """A step that is one external invocation, or a fallback chain of them.

    Satisfied when satisfied_by_command is on PATH, or when check exits 0.
    only_if_command turns the step into a no-op when that tool is absent.
    Actions are tried in order until one succeeds.
    """

    step_id: str
    actions: Tuple[Command, ...]
    critical: bool = True
    satisfied_by_command: Optional[str] = None
    only_if_command: Optional[str] = None
    check: Optional[Command] = None
    skip_message: str = ""
    done_message: str = ""
    stream: bool = False

    def is_satisfied(self, ctx: StepContext) -> bool:
        if self.only_if_command and not ctx.runner.has_command(self.only_if_command):
            return True
        if self.satisfied_by_command and ctx.runner.has_command(self.satisfied_by_command):
            return True
        if self.check is not None:
            return ctx.runner.run(self.check).ok
        return False

    def run(self, ctx: StepContext) -> StepResult:
        last: Optional[CmdResult] = None
        for cmd in self.actions:
            if ctx.cancelled:
                break
            last = ctx.runner.stream(cmd, ctx.emit_line) if self.stream else ctx.runner.run(cmd)
            if last.ok:
                return StepResult.done(self.done_message or f"Ran: {cmd}")
            logger.info("%s: %s failed with exit %s", self.step_id, cmd, last.returncode)
        return StepResult.failed(failure_message(last, f"{self.step_id} failed"))


class ConfigUpsertStep:
    """Base for steps that upsert keys into a JSON document.

    Subclasses provide target() and updates(); the step is satisfied when
    every key already holds the desired value.
    """

    step_id = ""
    critical = True
    skip_message = "Configuration already up to date"
    done_message = "Configuration written"
    file_mode: Optional[int] = None

    def target(self, ctx: StepContext) -> Path:
        raise NotImplementedError

    def updates(self, ctx: StepContext, doc: Mapping[str, Any]) -> Dict[Any, Any]:
        raise NotImplementedError

    def is_satisfied(self, ctx: StepContext) -> bool:
        doc = load_document(self.target(ctx))
        wanted = self.updates(ctx, doc)
        return bool(wanted) and all(get_path(doc, k) == v for k, v in wanted.items())

    def run(self, ctx: StepContext) -> StepResult:
        path = self.target(ctx)
        wanted = self.updates(ctx, load_document(path))
        if not wanted:
            return StepResult.skipped("Nothing to configure")
        if ctx.runner.dry_run:
            logger.info("Would update %s", path)
            return StepResult.done(f"{self.done_message} (dry run)")
        try:
            upsert(path, wanted, mode=self.file_mode)
        except OSError as e:
            return StepResult.failed(f"Failed to write {path}: {e}")
        return StepResult.done(self.done_message)
