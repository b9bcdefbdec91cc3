# tests/conftest.py

from typing import Dict, Iterable, List, Optional, Tuple

import pytest

from localclaw_installer.install_config import InstallConfig
from localclaw_installer.lib.command import CmdResult, Command
from localclaw_installer.pipeline import StepResult


class FakeRunner:
    """Stands in for CommandRunner; answers by longest matching argv prefix.

    Commands without a scripted response succeed with no output.
    """

    def __init__(
        self,
        *,
        commands: Iterable[str] = (),
        responses: Optional[Dict[Tuple[str, ...], Tuple[int, str]]] = None,
        dry_run: bool = False,
    ) -> None:
        self.available = set(commands)
        self.responses = dict(responses or {})
        self.dry_run = dry_run
        self.calls: List[Tuple[str, ...]] = []
        self.cancelled = False

    def _respond(self, cmd: Command) -> CmdResult:
        argv = tuple(cmd.argv)
        self.calls.append(argv)
        for n in range(len(argv), 0, -1):
            if argv[:n] in self.responses:
                code, out = self.responses[argv[:n]]
                return CmdResult(argv=list(argv), returncode=code, output=out)
        return CmdResult(argv=list(argv), returncode=0, output="")

    def run(self, cmd: Command, **kwargs) -> CmdResult:
        return self._respond(cmd)

    def stream(self, cmd: Command, on_line) -> CmdResult:
        r = self._respond(cmd)
        for line in r.output.splitlines():
            on_line(line)
        return r

    def has_command(self, name: str) -> bool:
        return name in self.available

    def installed_version(self, name: str) -> str:
        r = self._respond(Command.of(name, "--version"))
        return r.first_line if r.ok and r.first_line else "Not installed"

    def cancel(self) -> None:
        self.cancelled = True


class SpyStep:
    def __init__(self, step_id, *, satisfied=False, result=None, critical=True, raises=None, on_run=None):
        self.step_id = step_id
        self.critical = critical
        self._satisfied = satisfied
        self._result = result if result is not None else StepResult.done(f"{step_id} done")
        self._raises = raises
        self._on_run = on_run
        self.runs = 0

    def is_satisfied(self, ctx):
        if isinstance(self._satisfied, Exception):
            raise self._satisfied
        return self._satisfied

    def run(self, ctx):
        self.runs += 1
        if self._on_run is not None:
            self._on_run(ctx)
        if self._raises is not None:
            raise self._raises
        return self._result


class Recorder:
    """Observer that keeps everything it is told."""

    def __init__(self):
        self.events = []
        self.started = []
        self.results = []
        self.reports = []

    def on_event(self, event):
        self.events.append(event)

    def on_step_started(self, name):
        self.started.append(name)

    def on_result(self, name, result):
        self.results.append((name, result))

    def on_report(self, report):
        self.reports.append(report)

    def kinds(self):
        return [e.kind for e in self.events]


@pytest.fixture
def fake_runner():
    return FakeRunner


@pytest.fixture
def spy_step():
    return SpyStep


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def openclaw_home(tmp_path):
    return tmp_path / ".openclaw"


@pytest.fixture
def make_cfg(tmp_path, openclaw_home):
    def _make(**raw):
        paths = {
            "openclaw_home": str(openclaw_home),
            "status_file": str(tmp_path / "status"),
            "done_marker": str(tmp_path / "done"),
            "detached_script": str(tmp_path / "install.sh"),
        }
        paths.update(raw.pop("paths", {}))
        return InstallConfig(raw={"paths": paths, **raw})

    return _make
