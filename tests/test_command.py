# tests/test_command.py

import threading
import time
from concurrent.futures import ThreadPoolExecutor

from localclaw_installer.lib.command import (
    EXIT_NOT_FOUND,
    EXIT_TIMEOUT,
    Command,
    CommandRunner,
    run_cmd,
)


def sh(script):
    return Command.of("/bin/sh", "-c", script, login_shell=False)


def test_run_cmd_captures_interleaved_output_and_exit_code():
    r = run_cmd(sh("echo out; echo err 1>&2; exit 3"))
    assert r.returncode == 3
    assert not r.ok
    assert "out" in r.output
    assert "err" in r.output


def test_missing_binary_becomes_exit_127():
    r = run_cmd(Command.of("/nonexistent/localclaw-missing-tool", login_shell=False))
    assert r.returncode == EXIT_NOT_FOUND
    assert "Failed command" in r.output


def test_timeout_becomes_failing_result():
    r = run_cmd(sh("sleep 5"), timeout_s=0.2)
    assert r.returncode == EXIT_TIMEOUT


def test_dry_run_does_not_execute(tmp_path):
    marker = tmp_path / "touched"
    r = run_cmd(Command.of("touch", str(marker), login_shell=False), dry_run=True)
    assert r.ok
    assert not marker.exists()


def test_arguments_are_not_interpolated(tmp_path):
    r = run_cmd(Command.of("echo", "$HOME; rm -rf /", login_shell=False))
    assert r.output == "$HOME; rm -rf /"


def test_login_shell_wraps_argv(monkeypatch):
    monkeypatch.setenv("SHELL", "/bin/zsh")
    cmd = Command.of("echo", "a b")
    assert cmd.popen_argv() == ["/bin/zsh", "-lc", 'exec "$0" "$@"', "echo", "a b"]
    assert str(cmd) == "echo 'a b'"


def test_streaming_delivers_lines_then_exit_once():
    runner = CommandRunner()
    lines, codes = [], []
    t = runner.run_streaming(sh("printf 'a\\nb\\r c\\n'; printf tail; exit 2"), lines.append, codes.append)
    t.join(10)
    assert lines == ["a", "b", "c", "tail"]
    assert codes == [2]


def test_streaming_spawn_failure_reports_through_callbacks():
    runner = CommandRunner()
    lines, codes = [], []
    t = runner.run_streaming(Command.of("/nonexistent/localclaw-missing-tool", login_shell=False), lines.append, codes.append)
    t.join(10)
    assert codes == [EXIT_NOT_FOUND]
    assert lines and lines[0].startswith("Failed command")


def test_streaming_dispatch_moves_callbacks_to_the_callers_executor():
    runner = CommandRunner()
    threads = []
    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="ui") as pool:
        t = runner.run_streaming(
            sh("echo one; echo two"),
            lambda line: threads.append(threading.current_thread().name),
            lambda code: threads.append(threading.current_thread().name),
            dispatch=pool.submit,
        )
        t.join(10)
    assert len(threads) == 3
    assert all(name.startswith("ui") for name in threads)


def test_stream_returns_captured_output():
    runner = CommandRunner()
    seen = []
    r = runner.stream(sh("echo 10%; echo 20%"), seen.append)
    assert r.ok
    assert seen == ["10%", "20%"]
    assert r.output == "10%\n20%"


def test_cancel_without_running_command_is_noop():
    CommandRunner().cancel()


def test_cancel_terminates_running_command():
    runner = CommandRunner(terminate_grace_s=2.0)
    codes = []
    t = runner.run_streaming(Command.of("sleep", "30", login_shell=False), lambda line: None, codes.append)
    runner.cancel()
    t.join(10)
    assert not t.is_alive()
    assert codes and codes[0] != 0


def test_cancel_terminates_blocking_run():
    runner = CommandRunner(terminate_grace_s=2.0)
    with ThreadPoolExecutor(max_workers=1) as pool:
        fut = pool.submit(runner.run, Command.of("sleep", "30", login_shell=False))
        deadline = time.monotonic() + 5
        while runner._current is None and time.monotonic() < deadline:
            time.sleep(0.01)
        started = time.monotonic()
        runner.cancel()
        r = fut.result(timeout=10)
    assert not r.ok
    assert time.monotonic() - started < 5
    assert runner._current is None


def test_redacted_values_never_reach_the_log(caplog):
    caplog.set_level("INFO")
    cmd = Command.of("echo", "http://localhost:18789?token=s3cret", login_shell=False, redact=("s3cret",))
    r = run_cmd(cmd)
    assert r.output == "http://localhost:18789?token=s3cret"
    assert "s3cret" not in caplog.text
    assert "token=***" in caplog.text
