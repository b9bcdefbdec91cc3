# tests/test_pipeline.py

import time

import pytest

from localclaw_installer.errors import OutcomeTransitionError
from localclaw_installer.lib.command import Command, CommandRunner
from localclaw_installer.lib.output_parser import FILENAME, LINE, PERCENT
from localclaw_installer.pipeline import (
    Outcome,
    SequenceReport,
    Sequencer,
    StepResult,
    run_pipeline,
    select_steps,
)
from localclaw_installer.state_store import ensure_defaults, is_step_completed
from localclaw_installer.steps import CommandStep


@pytest.fixture
def sequencer(fake_runner, recorder):
    return Sequencer(runner=fake_runner(), observers=[recorder])


def test_satisfied_step_is_skipped_without_running(sequencer, spy_step):
    step = spy_step("node", satisfied=True)
    report = sequencer.run([step])
    assert report.outcome("node") is Outcome.SKIPPED
    assert step.runs == 0


def test_critical_failure_leaves_later_steps_pending(sequencer, spy_step, recorder):
    a = spy_step("a")
    b = spy_step("b", result=StepResult.failed("exit 1"))
    c = spy_step("c")
    report = sequencer.run([a, b, c])

    assert report.outcome("a") is Outcome.DONE
    assert report.outcome("b") is Outcome.FAILED
    assert report.outcome("c") is Outcome.PENDING
    assert c.runs == 0
    assert report.halted_by == "b"
    assert not report.success
    assert recorder.started == ["a", "b"]
    assert recorder.reports == [report]


def test_noncritical_failures_do_not_halt(sequencer, spy_step):
    a = spy_step("a", critical=False, result=StepResult.failed("nope"))
    b = spy_step("b")
    report = sequencer.run([a, b])

    assert report.outcome("b") is Outcome.DONE
    assert report.success
    assert report.noncritical_failures == ["a"]
    assert report.critical_failures == []


def test_exceptions_become_failed_results(sequencer, spy_step):
    a = spy_step("a", critical=False, raises=RuntimeError("boom"))
    b = spy_step("b", critical=False, satisfied=OSError("no access"))
    report = sequencer.run([a, b])

    assert report["a"].outcome is Outcome.FAILED
    assert report["a"].message == "RuntimeError: boom"
    assert report["b"].message.startswith("Precondition check failed")


def test_step_without_outcome_is_failed(sequencer, spy_step):
    step = spy_step("a", result=StepResult(Outcome.PENDING, ""))
    report = sequencer.run([step])
    assert report.outcome("a") is Outcome.FAILED


def test_outcomes_are_monotonic():
    report = SequenceReport()
    report.add("node")
    report.record("node", StepResult.done("ok"))
    with pytest.raises(OutcomeTransitionError):
        report.record("node", StepResult.failed("late"))
    with pytest.raises(ValueError):
        report.record("node", StepResult.done("again"))


def test_emitted_lines_fan_out_progress_events(sequencer, spy_step, recorder):
    def _emit(ctx):
        ctx.emit_line("Downloading model.gguf")
        ctx.emit_line("45%")

    sequencer.run([spy_step("model", on_run=_emit)])
    kinds = recorder.kinds()
    assert kinds == [LINE, FILENAME, LINE, PERCENT]
    assert recorder.events[-1].value == 0.45


def test_observer_errors_do_not_break_the_run(fake_runner, spy_step):
    class Broken:
        def on_step_started(self, name):
            raise RuntimeError("ui gone")

        def on_event(self, event):
            pass

        def on_result(self, name, result):
            pass

        def on_report(self, report):
            pass

    report = Sequencer(runner=fake_runner(), observers=[Broken()]).run([spy_step("a")])
    assert report.success


def test_cancel_marks_inflight_step_and_stops(fake_runner, spy_step):
    runner = fake_runner()
    seq = Sequencer(runner=runner)

    a = spy_step("a", result=StepResult.failed("exit -15"), on_run=lambda ctx: seq.cancel())
    b = spy_step("b")
    report = seq.run([a, b])

    assert runner.cancelled
    assert report.cancelled
    assert report["a"].message == "Cancelled: exit -15"
    assert report.outcome("b") is Outcome.PENDING
    assert b.runs == 0


def test_cancel_does_not_leak_into_the_next_run(fake_runner, spy_step):
    seq = Sequencer(runner=fake_runner())
    a = spy_step("a", on_run=lambda ctx: seq.cancel())
    first = seq.run([a])
    assert first.cancelled

    b = spy_step("b")
    second = seq.run([b])
    assert b.runs == 1
    assert not second.cancelled
    assert second.outcome("b") is Outcome.DONE


def test_cancel_after_a_successful_step_still_flags_the_report(fake_runner, spy_step):
    seq = Sequencer(runner=fake_runner())
    a = spy_step("a", on_run=lambda ctx: seq.cancel())
    b = spy_step("b")
    report = seq.run([a, b])
    assert report.outcome("a") is Outcome.DONE
    assert report.cancelled
    assert b.runs == 0


def test_cancel_kills_a_blocking_command_step():
    runner = CommandRunner(terminate_grace_s=2.0)
    seq = Sequencer(runner=runner)
    step = CommandStep(step_id="slow", actions=(Command.of("sleep", "30", login_shell=False),))

    future = seq.start([step])
    deadline = time.monotonic() + 5
    while runner._current is None and time.monotonic() < deadline:
        time.sleep(0.01)
    started = time.monotonic()
    seq.cancel()
    report = future.result(timeout=10)
    seq.shutdown()

    assert time.monotonic() - started < 5
    assert report.cancelled
    assert report.outcome("slow") is Outcome.FAILED
    assert report["slow"].message.startswith("Cancelled")
    assert report.to_dict()["success"] is False


def test_start_runs_off_the_calling_thread(sequencer, spy_step):
    future = sequencer.start([spy_step("a")])
    report = future.result(timeout=10)
    sequencer.shutdown()
    assert report.outcome("a") is Outcome.DONE


def test_report_to_dict_lists_every_step(sequencer, spy_step):
    report = sequencer.run([spy_step("a", critical=False), spy_step("b", satisfied=True)])
    d = report.to_dict()
    assert d["success"] is True
    assert [(s["name"], s["state"]) for s in d["steps"]] == [("a", "OK"), ("b", "SKIP")]
    assert d["steps"][0]["critical"] is False


def test_select_steps_window(spy_step):
    steps = [spy_step(n) for n in ("a", "b", "c", "d")]
    picked = select_steps(steps, start_at="b", stop_after="c")
    assert [s.step_id for s in picked] == ["b", "c"]


def test_run_pipeline_resumes_after_critical_failure(sequencer, spy_step):
    state = ensure_defaults({})
    a = spy_step("a")
    broken = spy_step("b", result=StepResult.failed("exit 1"))

    first = run_pipeline(state=state, steps=[a, broken], sequencer=sequencer)
    assert first.ran_steps == ["a"]
    assert is_step_completed(state, "a")
    assert not is_step_completed(state, "b")
    assert state["execution"]["current_step"] == "b"
    assert state["execution"]["errors"] == [{"step": "b", "error": "exit 1"}]

    fixed = spy_step("b")
    second = run_pipeline(state=state, steps=[a, fixed], sequencer=sequencer)
    assert a.runs == 1
    assert second.skipped_steps == ["a"]
    assert second.report["a"].message == "Completed in a previous run"
    assert second.ran_steps == ["b"]
    assert state["execution"]["last_report"]["success"] is True


def test_run_pipeline_force_reruns_completed_steps(sequencer, spy_step):
    state = ensure_defaults({"execution": {"completed_steps": ["a"]}})
    a = spy_step("a")
    run_pipeline(state=state, steps=[a], sequencer=sequencer, force=True)
    assert a.runs == 1


def test_run_pipeline_without_resume_always_runs_and_records_nothing(sequencer, spy_step):
    state = ensure_defaults({"execution": {"completed_steps": ["a"]}})
    a = spy_step("a")

    for _ in range(2):
        result = run_pipeline(state=state, steps=[a], sequencer=sequencer, resume=False)
        assert result.ran_steps == ["a"]

    assert a.runs == 2
    assert state["execution"]["completed_steps"] == ["a"]


def test_completed_earlier_step_is_skipped_without_running(sequencer, spy_step):
    state = ensure_defaults({"execution": {"completed_steps": ["a"]}})
    a = spy_step("a")
    result = run_pipeline(state=state, steps=[a], sequencer=sequencer)
    assert a.runs == 0
    assert result.report.outcome("a") is Outcome.SKIPPED
