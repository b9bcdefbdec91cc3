from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Mapping, Optional, Sequence

from .output_parser import OutputParser

logger = logging.getLogger(__name__)

EXIT_TIMEOUT = 124
EXIT_NOT_EXECUTABLE = 126
EXIT_NOT_FOUND = 127

# Runs "$0" "$@" verbatim after the login profile has set up PATH.
_EXEC_ARGS = 'exec "$0" "$@"'

Dispatch = Callable[[Callable[[], None]], object]


def login_shell() -> str:
    return os.environ.get("SHELL") or "/bin/bash"


def _fmt_argv(argv: Sequence[str], redact: Sequence[str] = ()) -> str:
    text = " ".join(shlex.quote(a) for a in argv)
    for secret in redact:
        if secret:
            text = text.replace(secret, "***")
    return text


@dataclass(frozen=True)
class Command:
    """One external invocation: an executable plus its arguments.

    Arguments are never interpolated into a shell string. With login_shell
    the argv is handed to the user's login shell as positional parameters so
    profile PATH customizations (Homebrew, nvm, ...) are honored.
    """

    argv: tuple[str, ...]
    login_shell: bool = True
    # Substrings masked whenever the command is logged.
    redact: tuple[str, ...] = ()

    @classmethod
    def of(cls, *argv: object, login_shell: bool = True, redact: Sequence[str] = ()) -> "Command":
        return cls(argv=tuple(str(a) for a in argv), login_shell=login_shell, redact=tuple(redact))

    def popen_argv(self) -> List[str]:
        if not self.login_shell:
            return list(self.argv)
        return [login_shell(), "-lc", _EXEC_ARGS, *self.argv]

    def __str__(self) -> str:
        return _fmt_argv(self.argv, self.redact)


@dataclass(frozen=True)
class CmdResult:
    argv: list[str]
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def first_line(self) -> str:
        return self.output.splitlines()[0].strip() if self.output.strip() else ""


def _spawn_failure(cmd: Command, err: OSError) -> CmdResult:
    if isinstance(err, FileNotFoundError):
        code = EXIT_NOT_FOUND
    elif isinstance(err, PermissionError):
        code = EXIT_NOT_EXECUTABLE
    else:
        code = 1
    logger.warning("Could not start %s: %s", cmd, err)
    return CmdResult(argv=list(cmd.argv), returncode=code, output=f"Failed command: {cmd}\n{err}")


def terminate_process(proc: subprocess.Popen, grace_s: float = 3.0) -> None:
    """SIGTERM the process group, then SIGKILL it if it outlives grace_s."""

    for sig in (signal.SIGTERM, signal.SIGKILL):
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            return
        except OSError:
            if sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()

        deadline = time.monotonic() + grace_s
        while time.monotonic() < deadline:
            if proc.poll() is not None:
                return
            time.sleep(0.05)


def run_cmd(
    cmd: Command,
    *,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    input_text: str | None = None,
    timeout_s: float | None = None,
    dry_run: bool = False,
    on_spawn: Optional[Callable[[subprocess.Popen], None]] = None,
) -> CmdResult:
    """Run a command to completion with consistent logging.

    - Always logs the command.
    - stdout and stderr are captured interleaved.
    - Never raises for spawn errors or timeouts; those come back as a
      failing CmdResult.
    - dry_run logs but does not execute.
    - on_spawn receives the child (its own process group) before waiting.
    """

    argv_list = list(cmd.argv)
    logger.info("CMD %s", cmd)

    if dry_run:
        return CmdResult(argv=argv_list, returncode=0, output="")

    try:
        proc = subprocess.Popen(
            cmd.popen_argv(),
            stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            cwd=cwd,
            env=dict(os.environ, **(env or {})),
            start_new_session=True,
        )
    except OSError as e:
        return _spawn_failure(cmd, e)

    if on_spawn is not None:
        on_spawn(proc)

    try:
        out, _ = proc.communicate(input_text, timeout=timeout_s)
    except subprocess.TimeoutExpired:
        terminate_process(proc)
        proc.communicate()
        logger.warning("Timed out after %ss: %s", timeout_s, cmd)
        return CmdResult(
            argv=argv_list,
            returncode=EXIT_TIMEOUT,
            output=f"Command timed out after {timeout_s}s: {cmd}",
        )

    output = (out or "").strip()
    if output:
        logger.debug("OUTPUT %s", output)

    return CmdResult(argv=argv_list, returncode=proc.returncode, output=output)


def _inline(fn: Callable[[], None]) -> None:
    fn()


class CommandRunner:
    """Executes commands for steps, blocking or streaming.

    The most recently spawned process of run(), stream() or run_streaming()
    is tracked; cancel() terminates it and is a no-op when nothing is running.
    """

    def __init__(
        self,
        *,
        env: Mapping[str, str] | None = None,
        dry_run: bool = False,
        terminate_grace_s: float = 3.0,
        chunk_size: int = 4096,
    ) -> None:
        self.env = dict(env or {})
        self.dry_run = dry_run
        self.terminate_grace_s = terminate_grace_s
        self.chunk_size = chunk_size
        self._lock = threading.Lock()
        self._current: Optional[subprocess.Popen] = None

    def _track(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._current = proc

    def _untrack(self, proc: subprocess.Popen) -> None:
        with self._lock:
            if self._current is proc:
                self._current = None

    def run(self, cmd: Command, **kwargs) -> CmdResult:
        spawned: List[subprocess.Popen] = []

        def _on_spawn(proc: subprocess.Popen) -> None:
            spawned.append(proc)
            self._track(proc)

        try:
            return run_cmd(cmd, env=self.env, dry_run=self.dry_run, on_spawn=_on_spawn, **kwargs)
        finally:
            for proc in spawned:
                self._untrack(proc)

    def has_command(self, name: str) -> bool:
        r = run_cmd(Command.of("/bin/sh", "-c", 'command -v "$1"', "sh", name), env=self.env)
        return r.ok and bool(r.output)

    def installed_version(self, name: str) -> str:
        r = run_cmd(Command.of(name, "--version"), env=self.env)
        if not r.ok or not r.first_line:
            return "Not installed"
        return r.first_line

    def run_streaming(
        self,
        cmd: Command,
        on_line: Callable[[str], None],
        on_exit: Callable[[int], None],
        *,
        dispatch: Optional[Dispatch] = None,
    ) -> threading.Thread:
        """Start cmd and deliver its output line by line as it arrives.

        on_line fires once per complete line of interleaved stdout/stderr and
        on_exit(code) fires exactly once after the last line. Both go through
        dispatch (for example a single-worker executor's submit) so delivery
        can be moved to the caller's context; by default they run on the
        reader thread. Callbacks of one invocation never overlap.

        Returns the reader thread; joining it waits for on_exit to have been
        dispatched.
        """

        deliver = dispatch or _inline
        gate = threading.Lock()

        def _send(fn: Callable, arg) -> None:
            def _call() -> None:
                with gate:
                    fn(arg)

            deliver(_call)

        logger.info("CMD (streaming) %s", cmd)

        if self.dry_run:
            t = threading.Thread(target=_send, args=(on_exit, 0), daemon=True)
            t.start()
            return t

        try:
            proc = subprocess.Popen(
                cmd.popen_argv(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=dict(os.environ, **self.env),
                start_new_session=True,
            )
        except OSError as e:
            failure = _spawn_failure(cmd, e)

            def _report_failure() -> None:
                _send(on_line, failure.output.splitlines()[0])
                _send(on_exit, failure.returncode)

            t = threading.Thread(target=_report_failure, daemon=True)
            t.start()
            return t

        self._track(proc)

        t = threading.Thread(target=self._pump, args=(proc, _send, on_line, on_exit), daemon=True)
        t.start()
        return t

    def stream(self, cmd: Command, on_line: Callable[[str], None]) -> CmdResult:
        """Blocking wrapper around run_streaming that also captures output."""

        lines: List[str] = []
        codes: List[int] = []

        def _line(line: str) -> None:
            lines.append(line)
            on_line(line)

        t = self.run_streaming(cmd, _line, codes.append)
        t.join()
        code = codes[0] if codes else 1
        return CmdResult(argv=list(cmd.argv), returncode=code, output="\n".join(lines))

    def cancel(self) -> None:
        with self._lock:
            proc = self._current
        if proc is None or proc.poll() is not None:
            return
        logger.info("Cancelling running command (pid=%s)", proc.pid)
        terminate_process(proc, self.terminate_grace_s)

    def _pump(self, proc: subprocess.Popen, send, on_line, on_exit) -> None:
        parser = OutputParser()
        assert proc.stdout is not None
        try:
            while True:
                chunk = proc.stdout.read1(self.chunk_size)
                if not chunk:
                    break
                for line in parser.feed(chunk):
                    send(on_line, line)
            for line in parser.finish():
                send(on_line, line)
        finally:
            proc.stdout.close()

        code = proc.wait()
        self._untrack(proc)
        logger.info("Exit %s (pid=%s)", code, proc.pid)
        send(on_exit, code)
