from __future__ import annotations

import logging
import shlex
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from .bridge import StatusBridge, prepare_channel
from .errors import InstallerError
from .install_config import InstallConfig
from .lib.command import Command, CommandRunner
from .pipeline import Observer, SequenceReport
from .state_store import atomic_write_text
from .steps.step_10_homebrew import INSTALL_SCRIPT_URL
from .steps.step_20_lmstudio import LMSTUDIO_APP
from .steps.step_30_model import BUNDLED_LMS
from .steps.step_40_runtime import OPENCLAW_PACKAGE

logger = logging.getLogger(__name__)

BREW_SHELLENV = 'eval "$(/opt/homebrew/bin/brew shellenv 2>/dev/null || /usr/local/bin/brew shellenv 2>/dev/null)"'

# Prefer lms on PATH, else the copy bundled in the app ($0).
_LMS_FALLBACK = 'if command -v lms >/dev/null 2>&1; then exec lms "$@"; else exec "$0" "$@"; fi'


def _has(name: str) -> Command:
    return Command.of("/bin/sh", "-c", 'command -v "$1" >/dev/null', "sh", name)


@dataclass(frozen=True)
class DetachedPhase:
    """One phase of a detached run.

    check exiting 0 reports SKIP; otherwise every action must succeed for
    OK. after_shell is a fixed snippet run once the phase is over.
    """

    component: str
    actions: Tuple[Command, ...]
    check: Optional[Command] = None
    critical: bool = True
    title: str = ""
    after_shell: str = ""


def build_detached_phases(
    cfg: InstallConfig,
    *,
    config_path: Optional[str] = None,
    python: str = sys.executable,
) -> List[DetachedPhase]:
    installer_script = "/tmp/localclaw-brew-install.sh"
    phases: List[DetachedPhase] = [
        DetachedPhase(
            component="homebrew",
            title="Installing Homebrew",
            check=_has("brew"),
            actions=(
                Command.of("curl", "-fsSL", "-o", installer_script, INSTALL_SCRIPT_URL),
                Command.of("/bin/bash", installer_script),
            ),
            after_shell=BREW_SHELLENV,
        )
    ]

    if cfg.install_lmstudio:
        phases.append(
            DetachedPhase(
                component="lmstudio",
                title="Installing LM Studio",
                check=Command.of("test", "-d", LMSTUDIO_APP),
                actions=(Command.of("brew", "install", "--cask", "lm-studio"),),
                critical=False,
            )
        )
        if cfg.model_query:
            phases.append(
                DetachedPhase(
                    component="model",
                    title=f"Downloading {cfg.model_query}",
                    actions=(Command.of("/bin/sh", "-c", _LMS_FALLBACK, BUNDLED_LMS, "get", cfg.model_query, "--gguf", "-y"),),
                    critical=False,
                )
            )

    phases.append(
        DetachedPhase(
            component="node",
            title="Installing Node.js",
            check=_has("node"),
            actions=(Command.of("brew", "install", "node"),),
        )
    )

    if cfg.install_openclaw:
        apply_config = [python, "-m", "localclaw_installer", "apply-config"]
        if config_path:
            apply_config += ["--config", config_path]
        phases += [
            DetachedPhase(
                component="openclaw",
                title="Installing OpenClaw",
                check=_has("openclaw"),
                actions=(Command.of("npm", "i", "-g", OPENCLAW_PACKAGE),),
            ),
            DetachedPhase(
                component="config",
                title="Configuring OpenClaw",
                actions=(Command.of(*apply_config),),
            ),
            DetachedPhase(
                component="service",
                title="Installing and starting the gateway service",
                actions=(
                    Command.of("openclaw", "gateway", "install"),
                    Command.of("openclaw", "gateway", "start"),
                ),
            ),
        ]

    return phases


def render_script(phases: Sequence[DetachedPhase], *, status_path: Path, marker_path: Path) -> str:
    """Bash script reporting each phase to the status channel.

    A failed critical phase stops the phases after it; the marker is
    touched last in every case.
    """

    q = shlex.quote
    lines: List[str] = [
        "#!/bin/bash",
        "# Generated by localclaw-installer; progress is reported through STATUS.",
        f"STATUS={q(str(status_path))}",
        f"MARKER={q(str(marker_path))}",
        'HALTED=""',
        ': >> "$STATUS"',
        "",
    ]

    total = len(phases)
    for i, ph in enumerate(phases, start=1):
        c = ph.component
        title = ph.title or c
        actions = " && ".join(shlex.join(a.argv) for a in ph.actions)
        lines.append(f"echo {q(f'[{i}/{total}] {title}...')}")
        lines.append('if [ -z "$HALTED" ]; then')
        if ph.check is not None:
            lines.append(f"  if {shlex.join(ph.check.argv)}; then")
            lines.append(f"    echo {q(f'{c}:SKIP')} >> \"$STATUS\"")
            lines.append(f"  elif {actions}; then")
        else:
            lines.append(f"  if {actions}; then")
        lines.append(f"    echo {q(f'{c}:OK')} >> \"$STATUS\"")
        lines.append("  else")
        lines.append(f"    echo {q(f'{c}:FAIL')} >> \"$STATUS\"")
        if ph.critical:
            lines.append(f"    HALTED={q(c)}")
        lines.append("  fi")
        if ph.after_shell:
            lines.append(f"  {ph.after_shell}")
        lines.append("fi")
        lines.append("")

    lines += [
        'if [ -n "$HALTED" ]; then echo "Stopped: $HALTED failed"; else echo "Installation complete!"; fi',
        'touch "$MARKER"',
        'read -r -p "Press Enter to close..." _ || true',
        "",
    ]
    return "\n".join(lines)


def report_for_phases(phases: Iterable[DetachedPhase]) -> SequenceReport:
    report = SequenceReport()
    for ph in phases:
        report.add(ph.component, critical=ph.critical)
    return report


def launch_detached(
    cfg: InstallConfig,
    *,
    runner: CommandRunner,
    config_path: Optional[str] = None,
    observers: Iterable[Observer] = (),
) -> StatusBridge:
    """Write the script, open it in a terminal and return a bridge watching it."""

    paths = cfg.paths
    phases = build_detached_phases(cfg, config_path=config_path)
    script = render_script(phases, status_path=paths.status_path, marker_path=paths.marker_path)

    atomic_write_text(paths.script_path, script, mode=0o700)
    prepare_channel(paths.status_path, paths.marker_path)

    r = runner.run(Command.of(*cfg.terminal_command, str(paths.script_path), login_shell=False))
    if not r.ok:
        raise InstallerError(f"Could not open a terminal for the detached install: {r.output}")
    logger.info("Detached install running from %s", paths.script_path)

    return StatusBridge(
        paths.status_path,
        paths.marker_path,
        report=report_for_phases(phases),
        poll_interval_s=cfg.poll_interval_s,
        timeout_s=cfg.bridge_timeout_s,
        observers=observers,
    )
