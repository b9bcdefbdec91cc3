# tests/test_main.py

import io
import json

import pytest

from localclaw_installer import main as cli
from localclaw_installer.install_config import InstallConfig
from localclaw_installer.lib.output_parser import ProgressEvent
from localclaw_installer.pipeline import Outcome, PipelineResult, SequenceReport, StepResult


def _ids(steps):
    return [s.step_id for s in steps]


def test_local_install_plan():
    steps = cli.build_install_steps(InstallConfig(raw={"model": "Qwen 3 8B Q4_K_M"}))
    assert _ids(steps) == [
        "homebrew",
        "lmstudio",
        "model",
        "node",
        "openclaw",
        "config",
        "model_config",
        "api_key",
        "service",
        "agent",
        "gateway_start",
        "repair",
        "verify",
    ]


def test_cloud_install_plan_without_openclaw():
    cfg = InstallConfig(raw={"inference_mode": "cloud", "install": {"openclaw": False}})
    assert _ids(cli.build_install_steps(cfg)) == ["homebrew", "node"]


def test_update_plan():
    assert _ids(cli.build_update_steps()) == [
        "update_homebrew",
        "update_lmstudio",
        "update_node",
        "update_openclaw",
    ]


def test_exit_codes():
    report = SequenceReport()
    report.add("a")
    report.add("b", critical=False)
    report.record("b", StepResult.failed("x"))
    assert cli.exit_code_for(report) == cli.EXIT_OK

    report.record("a", StepResult.failed("y"))
    assert cli.exit_code_for(report) == cli.EXIT_FAILED

    timed = SequenceReport()
    timed.record("a", StepResult(Outcome.TIMED_OUT, "late"))
    assert cli.exit_code_for(timed) == cli.EXIT_TIMEOUT


def test_parse_assignments():
    assert cli.parse_assignments(["gateway.port=9000", "gateway.mode=local", "flag=true", "empty="]) == {
        "gateway.port": 9000,
        "gateway.mode": "local",
        "flag": True,
        "empty": "",
    }
    with pytest.raises(ValueError):
        cli.parse_assignments(["novalue"])


def test_resolve_model_only_fills_missing_local_model(fake_runner):
    runner = fake_runner(responses={("sysctl", "-n", "hw.memsize"): (0, str(16 * 1024 ** 3))})
    assert cli.resolve_model(InstallConfig(raw={}), runner).model == "Qwen 3 14B Q4_K_M"
    assert cli.resolve_model(InstallConfig(raw={"model": "x"}), runner).model == "x"
    assert cli.resolve_model(InstallConfig(raw={"inference_mode": "cloud"}), runner).model == ""


def test_config_set_upserts_document(tmp_path):
    doc = tmp_path / "openclaw.json"
    doc.write_text(json.dumps({"keep": 1}))

    code = cli.main(["config-set", "--log", str(tmp_path / "log"), "--file", str(doc), "gateway.port=9000"])

    assert code == 0
    assert json.loads(doc.read_text()) == {"gateway": {"port": 9000}, "keep": 1}


def test_run_persists_state_and_resumes(tmp_path, fake_runner, spy_step):
    config = tmp_path / "install.yaml"
    config.write_text("model: Qwen 3 8B Q4_K_M\n")
    state_path = tmp_path / "state.json"
    a = spy_step("a")
    b = spy_step("b", result=StepResult.failed("exit 1"))

    kwargs = dict(
        config_path=str(config),
        state_path=str(state_path),
        log_path=str(tmp_path / "log"),
        runner=fake_runner(),
    )
    result = cli.run(build_steps=lambda cfg: [a, b], **kwargs)

    assert not result.report.success
    state = json.loads(state_path.read_text())
    assert state["execution"]["completed_steps"] == ["a"]
    assert state["config"]["model"] == "Qwen 3 8B Q4_K_M"
    assert state["versions"]["openclaw"] == "Not installed"

    b_fixed = spy_step("b")
    result = cli.run(build_steps=lambda cfg: [a, b_fixed], **kwargs)
    assert result.report.success
    assert a.runs == 1
    assert json.loads(state_path.read_text())["execution"]["completed_steps"] == ["a", "b"]


def test_watch_follows_status_file(tmp_path, make_cfg):
    (tmp_path / "status").write_text("node:OK\n")
    (tmp_path / "done").touch()

    bridge = cli.watch(make_cfg())

    assert bridge.report.outcome("node") is Outcome.DONE
    assert cli._bridge_exit_code(bridge) == cli.EXIT_OK


def test_write_report(tmp_path):
    report = SequenceReport()
    report.record("node", StepResult.done("ok"))
    cli.write_report(str(tmp_path / "report.json"), report)
    data = json.loads((tmp_path / "report.json").read_text())
    assert data["steps"] == [{"name": "node", "state": "OK", "message": "ok", "critical": True}]


def test_console_observer_prints_lines_and_summary():
    out = io.StringIO()
    obs = cli.ConsoleObserver(out)
    obs.on_step_started("node")
    obs.on_event(ProgressEvent.line("==> Pouring node"))
    report = SequenceReport()
    report.record("node", StepResult.done("Node installed"))
    obs.on_report(report)

    text = out.getvalue()
    assert "==> node" in text
    assert "  ==> Pouring node" in text
    assert "Node installed" in text
    assert "Install succeeded." in text


def test_update_after_install_runs_every_time(tmp_path, fake_runner, spy_step):
    config = tmp_path / "install.yaml"
    config.write_text("model: Qwen 3 8B Q4_K_M\n")
    runner = fake_runner(commands=["brew", "openclaw"])
    kwargs = dict(
        config_path=str(config),
        state_path=str(tmp_path / "state.json"),
        log_path=str(tmp_path / "log"),
        runner=runner,
    )
    install = [spy_step(name) for name in ("homebrew", "lmstudio", "node", "openclaw")]
    assert cli.run(build_steps=lambda cfg: install, **kwargs).report.success

    for _ in range(2):
        result = cli.run(build_steps=cli.build_update_steps, resume=False, recommend_model=False, **kwargs)
        assert result.report.outcome("update_homebrew") is Outcome.DONE
        assert result.report.outcome("update_openclaw") is Outcome.DONE

    assert runner.calls.count(("brew", "update")) == 2
    assert runner.calls.count(("npm", "i", "-g", "openclaw@latest")) == 2
    assert not any(call[0] == "sysctl" for call in runner.calls)
    state = json.loads((tmp_path / "state.json").read_text())
    assert state["execution"]["completed_steps"] == ["homebrew", "lmstudio", "node", "openclaw"]


def test_update_command_does_not_resume_or_recommend(tmp_path, monkeypatch):
    seen = {}

    def _fake_run(**kwargs):
        seen.update(kwargs)
        return PipelineResult(state={}, report=SequenceReport(), ran_steps=[], skipped_steps=[])

    monkeypatch.setattr(cli, "run", _fake_run)
    assert cli.main(["update", "--log", str(tmp_path / "log")]) == cli.EXIT_OK
    assert seen["resume"] is False
    assert seen["recommend_model"] is False
    assert seen["build_steps"] is cli.build_update_steps


def test_change_model_plan(tmp_path, fake_runner, openclaw_home):
    config = tmp_path / "install.yaml"
    config.write_text(f"paths:\n  openclaw_home: {openclaw_home}\n")
    runner = fake_runner(responses={("openclaw", "gateway", "restart"): (1, "gateway not installed")})

    report = cli.run_steps(cli.change_model_steps("lmstudio/qwen3-8b"), config_path=str(config), runner=runner)

    assert cli.exit_code_for(report) == cli.EXIT_OK
    assert report.outcome("change_model") is Outcome.DONE
    assert report.outcome("gateway_restart") is Outcome.FAILED
    doc = json.loads((openclaw_home / "openclaw.json").read_text())
    assert doc["agents"]["defaults"]["model"]["primary"] == "lmstudio/qwen3-8b"


def test_version_report(fake_runner):
    runner = fake_runner(
        responses={
            ("node", "--version"): (0, "v22.1.0"),
            ("openclaw", "--version"): (0, "OpenClaw 2026.4.0"),
            ("npm", "view", "openclaw", "version"): (0, "2026.4.0"),
        }
    )
    report = cli.version_report(runner)
    assert report["tools"]["node"] == "v22.1.0"
    assert report["tools"]["brew"] == "Not installed"
    assert report["openclaw"] == {"installed": "2026.4.0", "latest": "2026.4.0", "update_available": False}
