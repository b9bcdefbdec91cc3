from __future__ import annotations

import logging
import re
import time
from typing import Any, Mapping

from ..lib.command import Command
from ..install_config import InstallConfig
from ..pipeline import StepContext, StepResult
from ..state_store import get_path, load_document
from .common import CommandStep, failure_message

logger = logging.getLogger(__name__)

_RUNNING_RE = re.compile(r"\b(running|online)\b", re.IGNORECASE)


def gateway_status(ctx: StepContext) -> tuple[bool, str]:
    r = ctx.runner.run(Command.of("openclaw", "gateway", "status", "--no-color"))
    return r.ok and bool(_RUNNING_RE.search(r.output)), r.output


def gateway_service_step() -> CommandStep:
    return CommandStep(
        step_id="service",
        actions=(Command.of("openclaw", "gateway", "install"),),
        done_message="Gateway service installed",
    )


def default_agent_step() -> CommandStep:
    return CommandStep(
        step_id="agent",
        actions=(Command.of("openclaw", "agent", "init", "main", "--default"),),
        critical=False,
        done_message="Agent 'main' created",
    )


def repair_step() -> CommandStep:
    return CommandStep(
        step_id="repair",
        actions=(Command.of("openclaw", "doctor", "--non-interactive", "--repair", "--yes", "--no-color"),),
        critical=False,
        done_message="Configuration repair completed",
    )


class StartGatewayStep:
    step_id = "gateway_start"
    critical = False
    skip_message = "Gateway already running"

    def is_satisfied(self, ctx: StepContext) -> bool:
        running, _ = gateway_status(ctx)
        return running

    def run(self, ctx: StepContext) -> StepResult:
        r = ctx.runner.run(Command.of("openclaw", "gateway", "start"))
        if r.ok:
            return StepResult.done(f"Gateway started on port {ctx.cfg.gateway_port}")
        return StepResult.failed(failure_message(r, "Gateway start failed"))


def restart_gateway_step(*, preserve_token: bool = False, critical: bool = True) -> CommandStep:
    actions = (Command.of("openclaw", "gateway", "restart"),)
    if preserve_token:
        # Older CLIs reject --preserve-token; the plain restart is the fallback.
        actions = (Command.of("openclaw", "gateway", "restart", "--preserve-token"),) + actions
    return CommandStep(
        step_id="gateway_restart",
        actions=actions,
        critical=critical,
        done_message="Gateway restarted",
    )


def dashboard_url(cfg: InstallConfig, doc: Mapping[str, Any]) -> str:
    port = get_path(doc, "gateway.port") or cfg.gateway_port
    token = get_path(doc, "gateway.auth.token") or ""
    url = f"http://localhost:{port}"
    return f"{url}?token={token}" if token else url


class OpenDashboardStep:
    """Starts the gateway if needed and opens the dashboard in the browser."""

    step_id = "dashboard"
    critical = True
    start_grace_s = 2.0

    def is_satisfied(self, ctx: StepContext) -> bool:
        return False

    def run(self, ctx: StepContext) -> StepResult:
        running, _ = gateway_status(ctx)
        if not running:
            started = ctx.runner.run(Command.of("openclaw", "gateway", "start"))
            if not started.ok:
                logger.warning("Gateway start failed: %s", started.output)
            elif not ctx.runner.dry_run:
                time.sleep(self.start_grace_s)

        doc = load_document(ctx.cfg.paths.config_file)
        token = get_path(doc, "gateway.auth.token") or ""
        r = ctx.runner.run(Command.of("open", dashboard_url(ctx.cfg, doc), login_shell=False, redact=(token,)))
        if not r.ok:
            return StepResult.failed(failure_message(r, "Could not open dashboard"))
        return StepResult.done("Dashboard opened with token" if token else "Dashboard opened")
