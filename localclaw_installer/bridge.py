from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Mapping, Optional, Union

from .lib.output_parser import COMPLETE, TIMEOUT, ProgressEvent
from .pipeline import Observer, ObserverSet, Outcome, SequenceReport, StepResult

logger = logging.getLogger(__name__)

COMPLETED = "complete"
TIMED_OUT = "timeout"
CANCELLED = "cancelled"


@dataclass(frozen=True)
class StatusEntry:
    component: str
    state: str


def parse_status_line(line: str) -> Optional[StatusEntry]:
    """Parse one `component:state` record; None for anything else."""

    component, sep, state = line.strip().partition(":")
    component, state = component.strip(), state.strip()
    if not sep or not component or not state:
        return None
    return StatusEntry(component=component, state=state.upper())


def prepare_channel(status_path: Union[str, Path], marker_path: Union[str, Path]) -> None:
    """Clear leftovers of an earlier run before launching a detached one."""

    Path(marker_path).unlink(missing_ok=True)
    status = Path(status_path)
    status.parent.mkdir(parents=True, exist_ok=True)
    status.write_text("", encoding="ascii")


class StatusBridge:
    """Recovers step outcomes from a detached run through a status file.

    The detached process appends one `component:state` line per finished
    phase and touches the marker file as its very last action. Each poll
    drains the lines not seen yet, emitting one line event per record and
    updating the mapped step in the local report. The marker is checked
    before draining, so every line written ahead of it is consumed before
    completion is reported.

    Completion fires once, after which both files are removed. With a
    timeout, steps still pending when it expires become TIMED_OUT and the
    files are left in place.
    """

    def __init__(
        self,
        status_path: Union[str, Path],
        marker_path: Union[str, Path],
        *,
        report: Optional[SequenceReport] = None,
        components: Optional[Mapping[str, str]] = None,
        poll_interval_s: float = 2.0,
        timeout_s: Optional[float] = 3600.0,
        observers: Iterable[Observer] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.status_path = Path(status_path)
        self.marker_path = Path(marker_path)
        self.report = report if report is not None else SequenceReport()
        self.components = dict(components or {})
        self.poll_interval_s = poll_interval_s
        self.timeout_s = timeout_s
        self._observers = ObserverSet(observers)
        self._clock = clock
        self._consumed = 0
        self._started_at: Optional[float] = None
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self.result: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.result is not None

    def subscribe(self, observer: Observer) -> None:
        self._observers.add(observer)

    def poll_once(self) -> bool:
        """One tick. Returns True once watching is over."""

        if self.finished:
            return True
        if self._started_at is None:
            self._started_at = self._clock()

        marker_seen = self.marker_path.exists()
        self._drain(final=marker_seen)

        if marker_seen:
            self._finish(COMPLETED)
            return True

        if self.timeout_s is not None and self._clock() - self._started_at >= self.timeout_s:
            self._finish(TIMED_OUT)
            return True

        return False

    def watch(self) -> SequenceReport:
        while not self._stop.is_set():
            if self.poll_once():
                break
            self._stop.wait(self.poll_interval_s)
        return self.report

    def start(self) -> "Future[SequenceReport]":
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="status-bridge")
        return self._executor.submit(self.watch)

    def cancel(self) -> None:
        """Stop polling; unread status lines are dropped."""

        self._stop.set()
        with self._lock:
            if self.result is None:
                self.result = CANCELLED
                self.report.cancelled = True
                logger.info("Stopped watching %s", self.status_path)

    def _read_lines(self, *, final: bool) -> List[str]:
        try:
            text = self.status_path.read_bytes().decode("ascii", errors="replace")
        except FileNotFoundError:
            return []

        if not final:
            # A line without its terminator may still be mid-write.
            text = text[: text.rfind("\n") + 1]
        return [ln.strip() for ln in text.splitlines() if ln.strip()]

    def _drain(self, *, final: bool) -> None:
        lines = self._read_lines(final=final)
        if len(lines) < self._consumed:
            logger.warning("Status file %s shrank; skipping to its end", self.status_path)
            self._consumed = len(lines)
            return

        fresh = lines[self._consumed :]
        self._consumed = len(lines)
        for line in fresh:
            self._handle(line)

    def _handle(self, line: str) -> None:
        entry = parse_status_line(line)
        if entry is None:
            logger.debug("Unstructured status line: %s", line)
            self._observers.publish("on_event", ProgressEvent.line(line))
            return

        self._observers.publish("on_event", ProgressEvent.line(f"[{entry.component}] {entry.state}"))

        outcome = Outcome.from_state(entry.state)
        if outcome is None or not outcome.terminal:
            return

        name = self.components.get(entry.component, entry.component)
        if name in self.report and self.report.outcome(name).terminal:
            logger.warning("Ignoring repeated status for %s: %s", name, entry.state)
            return

        result = StepResult(outcome, f"{entry.component}:{entry.state}")
        self.report.record(name, result)
        self._observers.publish("on_result", name, result)

    def _finish(self, how: str) -> None:
        with self._lock:
            if self.result is not None:
                return
            self.result = how

        if how == TIMED_OUT:
            msg = f"No completion marker after {self.timeout_s:g}s"
            logger.error("Detached run timed out: %s", msg)
            for name in self.report.pending():
                result = StepResult(Outcome.TIMED_OUT, msg)
                self.report.record(name, result)
                self._observers.publish("on_result", name, result)
            self._observers.publish("on_event", ProgressEvent(kind=TIMEOUT, value=msg))
            self._observers.publish("on_report", self.report)
            return

        logger.info("Detached run complete")
        self._observers.publish("on_event", ProgressEvent(kind=COMPLETE, value="install complete"))
        self._observers.publish("on_report", self.report)
        self.marker_path.unlink(missing_ok=True)
        self.status_path.unlink(missing_ok=True)
