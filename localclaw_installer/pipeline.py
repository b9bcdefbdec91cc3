from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence, Tuple

from .errors import OutcomeTransitionError
from .install_config import InstallConfig
from .lib.command import CommandRunner
from .lib.output_parser import LINE, OutputParser, ProgressEvent
from .state_store import is_step_completed, mark_step_completed

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    PENDING = "PENDING"
    DONE = "OK"
    SKIPPED = "SKIP"
    FAILED = "FAIL"
    TIMED_OUT = "TIMEOUT"

    @property
    def terminal(self) -> bool:
        return self is not Outcome.PENDING

    @classmethod
    def from_state(cls, state: str) -> Optional["Outcome"]:
        """Map a status-channel state string to an Outcome (None if unknown)."""
        try:
            return cls(state.strip().upper())
        except ValueError:
            return None


@dataclass(frozen=True)
class StepResult:
    outcome: Outcome
    message: str = ""

    @classmethod
    def done(cls, message: str) -> "StepResult":
        return cls(Outcome.DONE, message)

    @classmethod
    def skipped(cls, message: str) -> "StepResult":
        return cls(Outcome.SKIPPED, message)

    @classmethod
    def failed(cls, message: str) -> "StepResult":
        return cls(Outcome.FAILED, message)


PENDING = StepResult(Outcome.PENDING, "")


class SequenceReport:
    """Ordered step name -> StepResult, plus overall status."""

    def __init__(self) -> None:
        self._results: Dict[str, StepResult] = {}
        self._critical: Dict[str, bool] = {}
        self.halted_by: Optional[str] = None
        self.cancelled = False

    @classmethod
    def for_steps(cls, steps: Iterable["Step"]) -> "SequenceReport":
        report = cls()
        for step in steps:
            report.add(step.step_id, critical=step.critical)
        return report

    def add(self, name: str, *, critical: bool = True) -> None:
        self._results.setdefault(name, PENDING)
        self._critical[name] = critical

    def record(self, name: str, result: StepResult) -> None:
        if name not in self._results:
            self.add(name)
        current = self._results[name].outcome
        if current.terminal:
            raise OutcomeTransitionError(name, current.value, result.outcome.value)
        self._results[name] = result

    def is_critical(self, name: str) -> bool:
        return self._critical.get(name, True)

    def outcome(self, name: str) -> Outcome:
        return self._results[name].outcome

    def __getitem__(self, name: str) -> StepResult:
        return self._results[name]

    def __contains__(self, name: object) -> bool:
        return name in self._results

    def __iter__(self) -> Iterator[str]:
        return iter(self._results)

    def __len__(self) -> int:
        return len(self._results)

    def items(self) -> List[Tuple[str, StepResult]]:
        return list(self._results.items())

    def pending(self) -> List[str]:
        return [n for n, r in self._results.items() if r.outcome is Outcome.PENDING]

    def _failed(self) -> List[str]:
        return [n for n, r in self._results.items() if r.outcome in (Outcome.FAILED, Outcome.TIMED_OUT)]

    @property
    def critical_failures(self) -> List[str]:
        return [n for n in self._failed() if self.is_critical(n)]

    @property
    def noncritical_failures(self) -> List[str]:
        return [n for n in self._failed() if not self.is_critical(n)]

    @property
    def success(self) -> bool:
        return not self.critical_failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "halted_by": self.halted_by,
            "cancelled": self.cancelled,
            "steps": [
                {
                    "name": name,
                    "state": r.outcome.value,
                    "message": r.message,
                    "critical": self.is_critical(name),
                }
                for name, r in self._results.items()
            ],
        }


class Observer:
    """Receives live progress. Override what you need; defaults do nothing."""

    def on_event(self, event: ProgressEvent) -> None:
        pass

    def on_step_started(self, name: str) -> None:
        pass

    def on_result(self, name: str, result: StepResult) -> None:
        pass

    def on_report(self, report: SequenceReport) -> None:
        pass


class ObserverSet:
    def __init__(self, observers: Iterable[Observer] = ()) -> None:
        self._observers: List[Observer] = list(observers)
        self._lock = threading.Lock()

    def add(self, observer: Observer) -> None:
        with self._lock:
            self._observers.append(observer)

    def publish(self, method: str, *args: Any) -> None:
        with self._lock:
            targets = list(self._observers)
        for obs in targets:
            try:
                getattr(obs, method)(*args)
            except Exception:
                logger.exception("Observer %r failed in %s", obs, method)


@dataclass
class StepContext:
    runner: CommandRunner
    cfg: InstallConfig = field(default_factory=lambda: InstallConfig(raw={}))
    emit_line: Callable[[str], None] = lambda line: None
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class Step(Protocol):
    """A single idempotent step."""

    step_id: str
    critical: bool

    def is_satisfied(self, ctx: StepContext) -> bool:
        ...

    def run(self, ctx: StepContext) -> StepResult:
        ...


class Sequencer:
    """Runs steps strictly in declaration order and fans results out to observers.

    The sequencer never retries; a step that wants a fallback does it inside
    its own run(). Nothing raised by a step escapes: precondition and action
    errors become FAILED results.
    """

    def __init__(
        self,
        *,
        runner: Optional[CommandRunner] = None,
        cfg: Optional[InstallConfig] = None,
        observers: Iterable[Observer] = (),
    ) -> None:
        self.runner = runner or CommandRunner()
        self.cfg = cfg or InstallConfig(raw={})
        self._observers = ObserverSet(observers)
        self._cancel = threading.Event()
        self._parser = OutputParser()
        self._executor: Optional[ThreadPoolExecutor] = None

    def subscribe(self, observer: Observer) -> None:
        self._observers.add(observer)

    def emit_line(self, line: str) -> None:
        self._observers.publish("on_event", ProgressEvent(kind=LINE, value=line))
        for event in self._parser.scan(line):
            self._observers.publish("on_event", event)

    def cancel(self) -> None:
        logger.info("Cancel requested")
        self._cancel.set()
        self.runner.cancel()

    def start(self, steps: Sequence[Step], *, report: Optional[SequenceReport] = None) -> "Future[SequenceReport]":
        """Run on a single background worker so the caller is never blocked."""

        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sequencer")
        return self._executor.submit(self.run, steps, report=report)

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def run(self, steps: Sequence[Step], *, report: Optional[SequenceReport] = None) -> SequenceReport:
        # A cancel only applies to the run that was in flight.
        self._cancel.clear()
        if report is None:
            report = SequenceReport.for_steps(steps)
        for step in steps:
            report.add(step.step_id, critical=step.critical)

        ctx = StepContext(runner=self.runner, cfg=self.cfg, emit_line=self.emit_line, cancel_event=self._cancel)

        for step in steps:
            if self._cancel.is_set():
                report.cancelled = True
                logger.info("Cancelled before %s", step.step_id)
                break

            logger.info("Running step %s", step.step_id)
            self._observers.publish("on_step_started", step.step_id)

            result = self._run_step(step, ctx)
            if self._cancel.is_set():
                report.cancelled = True
            if report.cancelled and result.outcome is Outcome.FAILED:
                result = StepResult.failed(f"Cancelled: {result.message}" if result.message else "Cancelled")

            report.record(step.step_id, result)
            logger.info("[%s] %s %s", result.outcome.value, step.step_id, result.message)
            self._observers.publish("on_result", step.step_id, result)

            if report.cancelled:
                break
            if result.outcome is Outcome.FAILED and step.critical:
                report.halted_by = step.step_id
                logger.error("Critical step %s failed; remaining steps left pending", step.step_id)
                break

        self._observers.publish("on_report", report)
        return report

    def _run_step(self, step: Step, ctx: StepContext) -> StepResult:
        try:
            satisfied = step.is_satisfied(ctx)
        except Exception as e:
            logger.exception("Precondition of %s raised", step.step_id)
            return StepResult.failed(f"Precondition check failed: {e}")

        if satisfied:
            msg = getattr(step, "skip_message", "") or f"{step.step_id} already satisfied"
            return StepResult.skipped(msg)

        try:
            result = step.run(ctx)
        except Exception as e:
            logger.exception("Step %s raised", step.step_id)
            return StepResult.failed(f"{type(e).__name__}: {e}")

        if not isinstance(result, StepResult) or not result.outcome.terminal:
            return StepResult.failed(f"Step returned no outcome ({result!r})")
        return result


class _CompletedEarlier:
    """Wraps a step that a previous run already completed."""

    def __init__(self, step: Step) -> None:
        self.step_id = step.step_id
        self.critical = step.critical
        self.skip_message = "Completed in a previous run"

    def is_satisfied(self, ctx: StepContext) -> bool:
        return True

    def run(self, ctx: StepContext) -> StepResult:
        return StepResult.skipped(self.skip_message)


@dataclass(frozen=True)
class PipelineResult:
    state: Dict[str, Any]
    report: SequenceReport
    ran_steps: List[str]
    skipped_steps: List[str]


def select_steps(steps: Sequence[Step], *, start_at: Optional[str] = None, stop_after: Optional[str] = None) -> List[Step]:
    selected: List[Step] = []
    started = start_at is None
    for step in steps:
        if not started:
            if step.step_id == start_at:
                started = True
            else:
                continue
        selected.append(step)
        if stop_after is not None and step.step_id == stop_after:
            break
    return selected


def run_pipeline(
    *,
    state: Dict[str, Any],
    steps: Sequence[Step],
    sequencer: Sequencer,
    start_at: Optional[str] = None,
    stop_after: Optional[str] = None,
    force: bool = False,
    resume: bool = True,
) -> PipelineResult:
    """Run steps in order with resume/idempotency semantics.

    With resume=False (the update plan) every selected step runs and none
    is recorded as completed, so a later run does it again.
    """

    selected = select_steps(steps, start_at=start_at, stop_after=stop_after)
    skip_completed = resume and not force
    wrapped: List[Step] = [
        _CompletedEarlier(s) if skip_completed and is_step_completed(state, s.step_id) else s for s in selected
    ]

    exe = state.setdefault("execution", {})
    exe["current_step"] = None
    report = sequencer.run(wrapped)

    ran: List[str] = []
    skipped: List[str] = []
    for name, result in report.items():
        if result.outcome is Outcome.DONE:
            ran.append(name)
        elif result.outcome is Outcome.SKIPPED:
            skipped.append(name)
        if resume and result.outcome in (Outcome.DONE, Outcome.SKIPPED):
            mark_step_completed(state, name)
        elif result.outcome is Outcome.FAILED:
            exe.setdefault("errors", []).append({"step": name, "error": result.message})
            if report.halted_by == name:
                exe["current_step"] = name

    exe["last_report"] = report.to_dict()
    return PipelineResult(state=state, report=report, ran_steps=ran, skipped_steps=skipped)
