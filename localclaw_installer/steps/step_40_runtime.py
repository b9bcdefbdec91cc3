from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from ..lib.command import Command
from .common import CommandStep

OPENCLAW_PACKAGE = "openclaw@latest"
NOT_INSTALLED = "Not installed"
UNKNOWN = "Unknown"


def node_step() -> CommandStep:
    return CommandStep(
        step_id="node",
        actions=(Command.of("brew", "install", "node"),),
        satisfied_by_command="node",
        skip_message="Node already installed",
        done_message="Node installed",
        stream=True,
    )


def openclaw_cli_step() -> CommandStep:
    return CommandStep(
        step_id="openclaw",
        actions=(Command.of("npm", "i", "-g", OPENCLAW_PACKAGE),),
        satisfied_by_command="openclaw",
        skip_message="openclaw command already present",
        done_message=f"Installed with: npm i -g {OPENCLAW_PACKAGE}",
        stream=True,
    )


@dataclass(frozen=True)
class VersionInfo:
    installed: str
    latest: str

    @property
    def update_available(self) -> bool:
        if self.installed == NOT_INSTALLED or self.latest == UNKNOWN:
            return False
        return self.installed != self.latest

    def to_dict(self) -> Dict[str, Any]:
        return {"installed": self.installed, "latest": self.latest, "update_available": self.update_available}


def latest_openclaw_version(runner) -> str:
    r = runner.run(Command.of("npm", "view", "openclaw", "version"))
    return r.first_line if r.ok and r.first_line else UNKNOWN


def openclaw_version_info(runner) -> VersionInfo:
    # `openclaw --version` prints "OpenClaw 1.2.3"; npm reports the bare number.
    installed = runner.installed_version("openclaw").replace("OpenClaw ", "")
    return VersionInfo(installed=installed, latest=latest_openclaw_version(runner))
