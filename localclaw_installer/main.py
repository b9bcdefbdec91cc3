from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, TextIO

import yaml

from .bridge import TIMED_OUT, StatusBridge
from .detached import launch_detached
from .errors import InstallerError
from .install_config import InstallConfig, load_install_config
from .lib.command import CommandRunner
from .lib.env import PATHS
from .lib.hwdetect import detect_hardware, recommend
from .lib.output_parser import COMPLETE, LINE, TIMEOUT, ProgressEvent
from .logging_utils import DEFAULT_LOG_PATH, configure_logging
from .pipeline import Observer, Outcome, PipelineResult, SequenceReport, Sequencer, Step, run_pipeline
from .state_store import ensure_defaults, load_state, save_document, save_state, upsert
from .steps import (
    ApiKeyStep,
    ChangeModelStep,
    GatewayConfigStep,
    HomebrewStep,
    LMStudioStep,
    LMStudioUpgradeStep,
    ModelConfigStep,
    ModelDownloadStep,
    OpenDashboardStep,
    StartGatewayStep,
    VerifyStep,
    brew_update_step,
    default_agent_step,
    gateway_service_step,
    installed_lmstudio_version,
    node_step,
    node_upgrade_step,
    openclaw_cli_step,
    openclaw_update_step,
    openclaw_version_info,
    repair_step,
    restart_gateway_step,
)

logger = logging.getLogger(__name__)


DEFAULT_CONFIG_PATH = "~/Library/Application Support/LocalClaw/install.yaml"
DEFAULT_STATE_PATH = PATHS.state_default

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_TIMEOUT = 2

TRACKED_TOOLS = ("brew", "node", "npm", "openclaw")


def build_config_steps() -> List[Step]:
    return [GatewayConfigStep(), ModelConfigStep(), ApiKeyStep()]


def build_install_steps(cfg: InstallConfig) -> List[Step]:
    steps: List[Step] = [HomebrewStep()]
    if cfg.install_lmstudio:
        steps.append(LMStudioStep())
        if cfg.is_local:
            steps.append(ModelDownloadStep())
    steps.append(node_step())
    if cfg.install_openclaw:
        steps.append(openclaw_cli_step())
        steps += build_config_steps()
        steps += [
            gateway_service_step(),
            default_agent_step(),
            StartGatewayStep(),
            repair_step(),
            VerifyStep(),
        ]
    return steps


def build_update_steps(cfg: Optional[InstallConfig] = None) -> List[Step]:
    return [brew_update_step(), LMStudioUpgradeStep(), node_upgrade_step(), openclaw_update_step()]


class ConsoleObserver(Observer):
    """Echoes tool output and the final summary to a terminal."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream or sys.stdout

    def on_event(self, event: ProgressEvent) -> None:
        if event.kind == LINE:
            print(f"  {event.value}", file=self.stream, flush=True)
        elif event.kind in (COMPLETE, TIMEOUT):
            print(f"** {event.value}", file=self.stream, flush=True)

    def on_step_started(self, name: str) -> None:
        print(f"==> {name}", file=self.stream, flush=True)

    def on_report(self, report: SequenceReport) -> None:
        print("", file=self.stream)
        for name, result in report.items():
            print(f"  {result.outcome.value:<7} {name:<14} {result.message}", file=self.stream)
        status = "succeeded" if report.success and not report.cancelled else "did not complete"
        print(f"Install {status}.", file=self.stream, flush=True)


def exit_code_for(report: SequenceReport) -> int:
    if any(r.outcome is Outcome.TIMED_OUT for _, r in report.items()):
        return EXIT_TIMEOUT
    if report.cancelled or not report.success:
        return EXIT_FAILED
    return EXIT_OK


def resolve_model(cfg: InstallConfig, runner: CommandRunner) -> InstallConfig:
    """Fill in the recommended model for local installs that did not pick one."""

    if not cfg.is_local or cfg.model:
        return cfg
    rec = recommend(detect_hardware(runner))
    logger.info("Recommended %s tier: %s (%s)", rec.tier, rec.display_name, rec.rationale)
    return cfg.with_updates({"model": rec.display_name})


def tool_versions(runner: CommandRunner, names: Iterable[str] = TRACKED_TOOLS) -> Dict[str, str]:
    versions = {name: runner.installed_version(name) for name in names}
    versions["lmstudio"] = installed_lmstudio_version(runner)
    return versions


def version_report(runner: CommandRunner) -> Dict[str, Any]:
    """Installed tool versions plus whether a newer OpenClaw is published."""

    return {"tools": tool_versions(runner), "openclaw": openclaw_version_info(runner).to_dict()}


def write_report(path: str, report: SequenceReport) -> None:
    save_document(os.path.expanduser(path), report.to_dict())
    logger.info("Report written to %s", path)


def _load(config_path: str, *, dry_run: bool) -> InstallConfig:
    cfg = load_install_config(config_path)
    if dry_run:
        cfg = cfg.with_updates({"dry_run": True})
    return cfg


def _run_interruptibly(sequencer: Sequencer, fn: Callable[[], Any]) -> Any:
    """Run fn off the main thread so Ctrl-C can cancel the in-flight command."""

    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="pipeline") as pool:
        fut = pool.submit(fn)
        try:
            return fut.result()
        except KeyboardInterrupt:
            sequencer.cancel()
            return fut.result()


def run(
    *,
    config_path: str = DEFAULT_CONFIG_PATH,
    state_path: str = DEFAULT_STATE_PATH,
    log_path: str = DEFAULT_LOG_PATH,
    start_at: Optional[str] = None,
    stop_after: Optional[str] = None,
    force: bool = False,
    dry_run: bool = False,
    build_steps: Callable[[InstallConfig], List[Step]] = build_install_steps,
    runner: Optional[CommandRunner] = None,
    observers: Iterable[Observer] = (),
    resume: bool = True,
    recommend_model: bool = True,
) -> PipelineResult:
    """Run an install (or update) plan, persisting state for resume.

    The update plan passes resume=False and recommend_model=False: its steps
    run every time and it has no use for a model.
    """

    actual_log_path = configure_logging(log_path=log_path)

    cfg = _load(config_path, dry_run=dry_run)
    runner = runner or CommandRunner(dry_run=cfg.dry_run)
    if recommend_model:
        cfg = resolve_model(cfg, runner)

    state = ensure_defaults(load_state(state_path))
    exe = state.setdefault("execution", {})
    exe.setdefault("paths", {})["log_path_requested"] = log_path
    exe.setdefault("paths", {})["log_path_actual"] = actual_log_path
    state["config"] = {"inference_mode": cfg.inference_mode, "model": cfg.model, "provider": cfg.provider}

    steps = build_steps(cfg)
    sequencer = Sequencer(runner=runner, cfg=cfg, observers=observers)

    try:
        result = _run_interruptibly(
            sequencer,
            lambda: run_pipeline(
                state=state,
                steps=steps,
                sequencer=sequencer,
                start_at=start_at,
                stop_after=stop_after,
                force=force,
                resume=resume,
            ),
        )
        state = result.state
        state.setdefault("execution", {}).setdefault("summary", {})["ran_steps"] = result.ran_steps
        state.setdefault("execution", {}).setdefault("summary", {})["skipped_steps"] = result.skipped_steps
        state["versions"] = tool_versions(runner)
        return result
    except Exception as e:
        logger.exception("Installer failed")
        state.setdefault("execution", {}).setdefault("errors", []).append(
            {
                "step": (state.get("execution") or {}).get("current_step"),
                "error": str(e),
            }
        )
        raise
    finally:
        save_state(state_path, state)


def apply_config(
    *,
    config_path: str = DEFAULT_CONFIG_PATH,
    runner: Optional[CommandRunner] = None,
    observers: Iterable[Observer] = (),
) -> SequenceReport:
    """Write gateway, model and API key configuration in-process."""

    cfg = load_install_config(config_path)
    runner = runner or CommandRunner(dry_run=cfg.dry_run)
    cfg = resolve_model(cfg, runner)
    return Sequencer(runner=runner, cfg=cfg, observers=observers).run(build_config_steps())


def run_steps(
    steps: List[Step],
    *,
    config_path: str = DEFAULT_CONFIG_PATH,
    runner: Optional[CommandRunner] = None,
    observers: Iterable[Observer] = (),
) -> SequenceReport:
    """Run a one-off control plan (model switch, restart, dashboard) without state."""

    cfg = load_install_config(config_path)
    runner = runner or CommandRunner(dry_run=cfg.dry_run)
    sequencer = Sequencer(runner=runner, cfg=cfg, observers=observers)
    return _run_interruptibly(sequencer, lambda: sequencer.run(steps))


def change_model_steps(model_id: str) -> List[Step]:
    return [ChangeModelStep(model_id), restart_gateway_step(preserve_token=True, critical=False)]


def watch(cfg: InstallConfig, *, observers: Iterable[Observer] = (), bridge: Optional[StatusBridge] = None) -> StatusBridge:
    """Follow a detached run until its marker appears, it times out or Ctrl-C."""

    if bridge is None:
        paths = cfg.paths
        bridge = StatusBridge(
            paths.status_path,
            paths.marker_path,
            poll_interval_s=cfg.poll_interval_s,
            timeout_s=cfg.bridge_timeout_s,
            observers=observers,
        )
    try:
        bridge.watch()
    except KeyboardInterrupt:
        bridge.cancel()
    return bridge


def _bridge_exit_code(bridge: StatusBridge) -> int:
    if bridge.result == TIMED_OUT:
        return EXIT_TIMEOUT
    return exit_code_for(bridge.report)


def parse_assignments(pairs: Iterable[str]) -> Dict[str, Any]:
    """KEY=VALUE pairs; values are parsed as YAML scalars (8080 -> int, true -> bool)."""

    out: Dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Expected KEY=VALUE, got {pair!r}")
        try:
            out[key.strip()] = yaml.safe_load(value) if value else ""
        except yaml.YAMLError:
            out[key.strip()] = value
    return out


CONTROL_PLANS: Dict[str, Callable[[argparse.Namespace], List[Step]]] = {
    "change-model": lambda args: change_model_steps(args.model_id),
    "restart-gateway": lambda args: [restart_gateway_step()],
    "dashboard": lambda args: [OpenDashboardStep()],
}


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to install config (yaml)")
    p.add_argument("--log", default=DEFAULT_LOG_PATH, help="Path to installer log")
    p.add_argument("--report", default=None, help="Write the final report here (json|yaml)")


def _add_pipeline(p: argparse.ArgumentParser) -> None:
    p.add_argument("--state", default=DEFAULT_STATE_PATH, help="Path to installer state (json|yaml)")
    p.add_argument("--start-at", default=None, help="Start at step_id (e.g. node)")
    p.add_argument("--stop-after", default=None, help="Stop after step_id")
    p.add_argument("--force", action="store_true", help="Re-run steps even if marked completed")
    p.add_argument("--dry-run", action="store_true", help="Log commands without running them")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="localclaw-installer")
    sub = p.add_subparsers(dest="command", required=True)

    for name, help_text in (("run", "Install and configure everything"), ("update", "Update installed tools")):
        sp = sub.add_parser(name, help=help_text)
        _add_common(sp)
        _add_pipeline(sp)

    sp = sub.add_parser("detached", help="Run the install in a separate terminal and follow it")
    _add_common(sp)

    sp = sub.add_parser("watch", help="Follow a detached install already running")
    _add_common(sp)

    sp = sub.add_parser("apply-config", help="Write OpenClaw configuration only")
    _add_common(sp)

    sp = sub.add_parser("change-model", help="Switch the default agent model and restart the gateway")
    _add_common(sp)
    sp.add_argument("model_id", help="Provider model identifier (e.g. lmstudio/qwen3-14b)")

    sp = sub.add_parser("restart-gateway", help="Restart the OpenClaw gateway")
    _add_common(sp)

    sp = sub.add_parser("dashboard", help="Open the OpenClaw dashboard with the gateway token")
    _add_common(sp)

    sp = sub.add_parser("versions", help="Print installed tool versions and OpenClaw update status")
    sp.add_argument("--log", default=DEFAULT_LOG_PATH, help="Path to installer log")

    sp = sub.add_parser("recommend", help="Print the hardware profile and recommended model")
    sp.add_argument("--log", default=DEFAULT_LOG_PATH, help="Path to installer log")

    sp = sub.add_parser("config-set", help="Upsert KEY=VALUE pairs into a JSON/YAML document")
    sp.add_argument("--log", default=DEFAULT_LOG_PATH, help="Path to installer log")
    sp.add_argument("--file", default=str(PATHS.config_file), help="Document to update (default: openclaw.json)")
    sp.add_argument("assignments", nargs="+", metavar="KEY=VALUE", help="Dotted key path and value")

    return p


def main(argv: Optional[list[str]] = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)

    if args.command == "config-set":
        try:
            updates = parse_assignments(args.assignments)
        except ValueError as e:
            p.error(str(e))
        configure_logging(log_path=args.log)
        upsert(os.path.expanduser(args.file), updates)
        return EXIT_OK

    configure_logging(log_path=args.log, also_console=args.command not in ("recommend", "versions"))

    if args.command == "recommend":
        hw = detect_hardware()
        print(json.dumps({"hardware": hw.to_dict(), "recommendation": recommend(hw).to_dict()}, indent=2, sort_keys=True))
        return EXIT_OK

    if args.command == "versions":
        print(json.dumps(version_report(CommandRunner()), indent=2, sort_keys=True))
        return EXIT_OK

    console = ConsoleObserver()

    try:
        if args.command in ("run", "update"):
            result = run(
                config_path=args.config,
                state_path=args.state,
                log_path=args.log,
                start_at=args.start_at,
                stop_after=args.stop_after,
                force=args.force,
                dry_run=args.dry_run,
                build_steps=build_install_steps if args.command == "run" else build_update_steps,
                observers=[console],
                resume=args.command == "run",
                recommend_model=args.command == "run",
            )
            report, code = result.report, exit_code_for(result.report)

        elif args.command == "apply-config":
            report = apply_config(config_path=args.config, observers=[console])
            code = exit_code_for(report)

        elif args.command in CONTROL_PLANS:
            steps = CONTROL_PLANS[args.command](args)
            report = run_steps(steps, config_path=args.config, observers=[console])
            code = exit_code_for(report)

        else:
            cfg = load_install_config(args.config)
            bridge = None
            if args.command == "detached":
                runner = CommandRunner(dry_run=cfg.dry_run)
                cfg = resolve_model(cfg, runner)
                config_path = os.path.expanduser(args.config)
                bridge = launch_detached(
                    cfg,
                    runner=runner,
                    config_path=config_path if os.path.exists(config_path) else None,
                    observers=[console],
                )
            bridge = watch(cfg, observers=[console], bridge=bridge)
            report, code = bridge.report, _bridge_exit_code(bridge)

    except InstallerError as e:
        logger.error("%s", e)
        return EXIT_FAILED

    if args.report:
        write_report(args.report, report)
    return code


if __name__ == "__main__":
    raise SystemExit(main())
