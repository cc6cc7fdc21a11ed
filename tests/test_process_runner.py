from __future__ import annotations

import sys
from pathlib import Path

import allure
import pytest

from task_conduit.models import Invocation
from task_conduit.runner import ProcessStartError, run_command, run_invocation, run_shell_command

pytestmark = [
    allure.epic("Process Runtime"),
    allure.feature("Idle Timeout and Capture"),
]


def _python(code: str, **kwargs):
    return run_command(sys.executable, ["-c", code], **kwargs)


def test_captures_stdout_stderr_and_exit_code() -> None:
    outcome = _python(
        "import sys; print('out'); print('err', file=sys.stderr); sys.exit(4)",
        timeout_seconds=20,
    )

    assert outcome.stdout.strip() == "out"
    assert outcome.stderr.strip() == "err"
    assert outcome.exit_code == 4
    assert outcome.timed_out is False
    assert outcome.signal is None
    assert outcome.duration_ms >= 0


def test_input_text_is_written_to_stdin() -> None:
    outcome = _python(
        "import sys; data = sys.stdin.read(); print(data.upper())",
        input_text="hello agent",
        timeout_seconds=20,
    )

    assert outcome.stdout.strip() == "HELLO AGENT"


def test_env_overlays_parent_environment(tmp_path: Path) -> None:
    outcome = _python(
        "import os; print(os.environ['CONDUIT_TEST_VALUE'], os.getcwd())",
        env={"CONDUIT_TEST_VALUE": "42"},
        cwd=tmp_path,
        timeout_seconds=20,
    )

    value, cwd = outcome.stdout.split()
    assert value == "42"
    assert Path(cwd).resolve() == tmp_path.resolve()


def test_silent_process_is_killed_with_partial_output() -> None:
    outcome = _python(
        "import sys, time; print('started', flush=True); time.sleep(30)",
        timeout_seconds=1,
    )

    assert outcome.timed_out is True
    assert outcome.stdout.strip() == "started"
    assert outcome.exit_code == -1
    assert outcome.signal == "SIGTERM"
    assert outcome.duration_ms < 15000


def test_chatty_process_outlives_the_idle_window() -> None:
    outcome = _python(
        "import time\n"
        "for _ in range(15):\n"
        "    print('tick', flush=True)\n"
        "    time.sleep(0.2)\n",
        timeout_seconds=1,
    )

    assert outcome.timed_out is False
    assert outcome.exit_code == 0
    assert outcome.stdout.count("tick") == 15
    assert outcome.duration_ms >= 2500


def test_non_positive_timeout_disables_idle_timer() -> None:
    outcome = _python("import time; time.sleep(0.5); print('done')", timeout_seconds=0)

    assert outcome.timed_out is False
    assert outcome.stdout.strip() == "done"


def test_missing_binary_raises_start_error() -> None:
    with pytest.raises(ProcessStartError) as error:
        run_command("definitely-not-a-real-binary-xyz", [], timeout_seconds=5)

    assert error.value.command == "definitely-not-a-real-binary-xyz"
    assert isinstance(error.value.cause, FileNotFoundError)


def test_invalid_spawn_arguments_raise_start_error() -> None:
    with pytest.raises(ProcessStartError) as bad_env:
        _python("pass", env={"A=B": "1"}, timeout_seconds=5)
    with pytest.raises(ProcessStartError) as null_byte:
        _python('print("x\x00")', timeout_seconds=5)

    assert isinstance(bad_env.value.cause, ValueError)
    assert isinstance(null_byte.value.cause, ValueError)
    assert str(null_byte.value).startswith(f"Failed to start {sys.executable}")


def test_log_sink_mirrors_labelled_lines(tmp_path: Path) -> None:
    log_path = tmp_path / "run.md"
    log_path.write_text("# header\n", "utf-8")

    _python(
        "import sys; print('a\\nb', flush=True); print('oops', file=sys.stderr)",
        timeout_seconds=20,
        log_path=log_path,
    )

    lines = log_path.read_text("utf-8").splitlines()
    assert lines[0] == "# header"
    assert "[stdout] a" in lines
    assert "[stdout] b" in lines
    assert "[stderr] oops" in lines


def test_log_sink_keeps_characters_split_across_reads(tmp_path: Path) -> None:
    log_path = tmp_path / "run.md"

    outcome = _python(
        "import sys, time\n"
        "sys.stdout.buffer.write(b\"caf\\xc3\"); sys.stdout.flush()\n"
        "time.sleep(0.3)\n"
        "sys.stdout.buffer.write(b\"\\xa9 ok\\ntail\"); sys.stdout.flush()\n",
        timeout_seconds=20,
        log_path=log_path,
    )

    assert outcome.stdout == "caf\u00e9 ok\ntail"
    assert log_path.read_text("utf-8").splitlines() == ["[stdout] caf\u00e9 ok", "[stdout] tail"]


def test_unwritable_log_sink_does_not_lose_output(tmp_path: Path) -> None:
    outcome = _python(
        "print('still captured')",
        timeout_seconds=20,
        log_path=tmp_path / "missing-dir" / "run.md",
    )

    assert outcome.stdout.strip() == "still captured"
    assert outcome.exit_code == 0


def test_run_invocation_uses_invocation_fields(tmp_path: Path) -> None:
    invocation = Invocation(
        command=sys.executable,
        args=("-c", "import os, sys; print(sys.stdin.read() + os.environ['X'])"),
        cwd=str(tmp_path),
        env={"X": "!"},
        input_text="hi",
    )

    outcome = run_invocation(invocation, timeout_seconds=20)

    assert outcome.stdout.strip() == "hi!"


def test_run_shell_command_runs_through_shell(tmp_path: Path) -> None:
    (tmp_path / "marker.txt").write_text("x", "utf-8")

    outcome = run_shell_command("ls && exit 3", tmp_path, timeout_seconds=20)

    assert "marker.txt" in outcome.stdout
    assert outcome.exit_code == 3
