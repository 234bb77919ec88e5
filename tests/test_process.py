from __future__ import annotations

from pathlib import Path
import sys

import pytest

from aihelper.models import StreamName
from aihelper.observability import configure_logging
from aihelper.process import ExecutionSpawnError, spawn_process


def _python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


def test_spawn_process_streams_prompt_and_output(tmp_path: Path) -> None:
    handle = spawn_process(
        _python("import sys; data = sys.stdin.read(); print(data.upper())"),
        cwd=tmp_path,
        prompt="review this",
    )
    lines: list[tuple[StreamName, str]] = []
    handle.add_output_listener(lambda stream, text: lines.append((stream, text)))

    assert handle.wait(timeout=10) == 0
    handle.join_output(5)
    assert ("stdout", "REVIEW THIS") in lines
    assert handle.returncode == 0
    assert handle.is_alive is False


def test_spawn_process_runs_in_working_dir(tmp_path: Path) -> None:
    handle = spawn_process(_python("import os; print(os.getcwd())"), cwd=tmp_path, prompt="")
    lines: list[str] = []
    handle.add_output_listener(lambda stream, text: lines.append(text))

    handle.wait(timeout=10)
    handle.join_output(5)
    assert Path(lines[0]).resolve() == tmp_path.resolve()


def test_output_before_first_listener_is_replayed(tmp_path: Path) -> None:
    handle = spawn_process(
        _python("import sys; print('early'); print('warn', file=sys.stderr)"),
        cwd=tmp_path,
        prompt="",
        model="m1",
    )
    handle.wait(timeout=10)
    handle.join_output(5)

    seen: list[tuple[StreamName, str]] = []
    handle.add_output_listener(lambda stream, text: seen.append((stream, text)))

    assert ("stdout", "early") in seen
    assert ("stderr", "warn") in seen
    assert handle.model == "m1"
    assert "warn" in handle.stderr_text()


def test_wait_for_stderr_match_finds_signature(tmp_path: Path) -> None:
    handle = spawn_process(
        _python(
            "import sys, time\n"
            "print('Error: Quota Exceeded for model', file=sys.stderr, flush=True)\n"
            "time.sleep(30)\n"
        ),
        cwd=tmp_path,
        prompt="",
    )
    try:
        matched = handle.wait_for_stderr_match(("quota exceeded", "status 429"), timeout=10)
        assert matched == "quota exceeded"
    finally:
        assert handle.terminate() is True
        handle.wait(timeout=10)


def test_wait_for_stderr_match_returns_none_on_eof(tmp_path: Path) -> None:
    handle = spawn_process(
        _python("import sys; print('all good', file=sys.stderr)"), cwd=tmp_path, prompt=""
    )

    assert handle.wait_for_stderr_match(("quota exceeded",), timeout=10) is None
    handle.wait(timeout=10)


def test_wait_for_stderr_match_returns_none_after_window(tmp_path: Path) -> None:
    handle = spawn_process(_python("import time; time.sleep(30)"), cwd=tmp_path, prompt="")
    try:
        assert handle.wait_for_stderr_match(("quota exceeded",), timeout=0.2) is None
    finally:
        handle.terminate()
        handle.wait(timeout=10)


def test_terminate_after_exit_is_a_no_op(tmp_path: Path) -> None:
    handle = spawn_process(_python("pass"), cwd=tmp_path, prompt="")
    handle.wait(timeout=10)

    assert handle.terminate() is False


def test_failing_listener_does_not_stop_others(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    handle = spawn_process(_python("print('x')"), cwd=tmp_path, prompt="")
    handle.wait(timeout=10)
    handle.join_output(5)

    def broken(stream: StreamName, text: str) -> None:
        raise RuntimeError("boom")

    seen: list[str] = []
    handle.add_output_listener(broken)
    handle.add_output_listener(lambda stream, text: seen.append(text))

    assert "event=ai_output_listener_failed" in capsys.readouterr().err
    # Backlog goes to the first listener only.
    assert seen == []


def test_spawn_process_missing_executable_raises(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)

    with pytest.raises(ExecutionSpawnError, match="Failed to start") as exc_info:
        spawn_process(["aihelper-definitely-missing-binary"], cwd=tmp_path, prompt="hi")

    assert exc_info.value.argv == ("aihelper-definitely-missing-binary",)
    assert "event=ai_spawn_failed" in capsys.readouterr().err
