from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _expand(p: str) -> Path:
    return Path(os.path.expanduser(p))


@dataclass(frozen=True)
class Paths:
    openclaw_home: str = "~/.openclaw"
    status_file: str = "/tmp/localclaw_status"
    done_marker: str = "/tmp/localclaw_install_done"
    detached_script: str = "/tmp/localclaw_install.sh"
    state_default: str = "~/Library/Application Support/LocalClaw/state.json"

    @property
    def home(self) -> Path:
        return _expand(self.openclaw_home)

    @property
    def config_file(self) -> Path:
        return self.home / "openclaw.json"

    @property
    def auth_store(self) -> Path:
        return self.home / "agents/main/agent/auth-profiles.json"

    @property
    def model_file(self) -> Path:
        return self.home / "agents/main/.model"

    @property
    def env_file(self) -> Path:
        return self.home / ".env"

    @property
    def status_path(self) -> Path:
        return _expand(self.status_file)

    @property
    def marker_path(self) -> Path:
        return _expand(self.done_marker)

    @property
    def script_path(self) -> Path:
        return _expand(self.detached_script)


PATHS = Paths()
