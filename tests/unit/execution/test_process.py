"""
pctest-orchestrator — unit tests for leaf process supervision

File: tests/unit/execution/test_process.py
Last updated: 2026-10-17

Purpose
- Validate natural exit, output draining, timeout tree-kill and cancellation.
- A tree that survives termination is escalated as an error, never ignored.
"""

from __future__ import annotations

import asyncio
import os
import sys
import textwrap
from pathlib import Path

import psutil
import pytest

from pctest_orchestrator.domain.errors import ErrorCode, ProcessTerminationError
from pctest_orchestrator.execution import process as process_module
from pctest_orchestrator.execution.process import ExitReason, ProcessStartError, supervise_process
from pctest_orchestrator.utils.concurrency import CancellationToken

pytestmark = pytest.mark.skipif(os.name == "nt", reason="process-group semantics are POSIX-only")

SPAWN_GRANDCHILD = textwrap.dedent(
    """
    import pathlib, subprocess, sys, time
    child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    pathlib.Path(sys.argv[1]).write_text(str(child.pid))
    time.sleep(60)
    """
)


def _alive(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


async def _supervise(tmp_path: Path, code: str, *args: str, **kwargs: object):  # type: ignore[no-untyped-def]
    return await supervise_process(
        [sys.executable, "-c", code, *args],
        cwd=tmp_path,
        env=dict(os.environ),
        stdout_path=tmp_path / "stdout.log",
        stderr_path=tmp_path / "stderr.log",
        kill_grace_seconds=1.0,
        **kwargs,  # type: ignore[arg-type]
    )


async def test_natural_exit_reports_code_and_drains_output(tmp_path: Path) -> None:
    code = "import sys\nfor i in range(2000): print('line', i)\nprint('oops', file=sys.stderr)\nsys.exit(7)"

    outcome = await _supervise(tmp_path, code, timeout_seconds=30)

    assert outcome.reason is ExitReason.EXITED
    assert outcome.exit_code == 7
    lines = (tmp_path / "stdout.log").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2000
    assert lines[-1] == "line 1999"
    assert "oops" in (tmp_path / "stderr.log").read_text(encoding="utf-8")


async def test_arguments_with_spaces_stay_single_tokens(tmp_path: Path) -> None:
    code = "import sys\nprint(repr(sys.argv[1:]))"

    await _supervise(tmp_path, code, "-Name", "two words", timeout_seconds=30)

    assert "['-Name', 'two words']" in (tmp_path / "stdout.log").read_text(encoding="utf-8")


async def test_redactor_applies_to_log_files(tmp_path: Path) -> None:
    await _supervise(
        tmp_path,
        "print('token=hunter2')",
        timeout_seconds=30,
        redact=lambda text: text.replace("hunter2", "***"),
    )

    assert (tmp_path / "stdout.log").read_text(encoding="utf-8").strip() == "token=***"


async def test_line_longer_than_the_stream_limit_is_logged_whole(tmp_path: Path) -> None:
    code = "import sys\nsys.stdout.write('x' * 3_000_000 + '\\nEND\\n')"

    outcome = await _supervise(tmp_path, code, timeout_seconds=60)

    assert outcome.exit_code == 0
    lines = (tmp_path / "stdout.log").read_text(encoding="utf-8").split("\n")
    assert len(lines[0]) == 3_000_000
    assert lines[1:] == ["END", ""]


async def test_secret_split_across_writes_is_still_redacted(tmp_path: Path) -> None:
    code = (
        "import sys, time\n"
        "sys.stdout.write('pass=hun'); sys.stdout.flush(); time.sleep(0.2)\n"
        "sys.stdout.write('ter2\\nlast line without newline hunter2')"
    )

    await _supervise(
        tmp_path,
        code,
        timeout_seconds=30,
        redact=lambda text: text.replace("hunter2", "***"),
    )

    text = (tmp_path / "stdout.log").read_text(encoding="utf-8")
    assert text == "pass=***\nlast line without newline ***"


@pytest.mark.slow
async def test_timeout_kills_the_whole_tree(tmp_path: Path) -> None:
    pid_file = tmp_path / "grandchild.pid"

    outcome = await _supervise(tmp_path, SPAWN_GRANDCHILD, str(pid_file), timeout_seconds=1.5)

    assert outcome.timed_out
    assert outcome.exit_code is not None and outcome.exit_code != 0
    assert pid_file.exists()
    grandchild = int(pid_file.read_text())
    await asyncio.sleep(0.2)
    assert not _alive(grandchild)
    assert not _alive(outcome.pid)


@pytest.mark.slow
async def test_cancellation_terminates_and_reports_cancelled(tmp_path: Path) -> None:
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.5, token.cancel)

    outcome = await _supervise(
        tmp_path, "import time; time.sleep(60)", timeout_seconds=30, cancel_token=token
    )

    assert outcome.cancelled
    assert outcome.duration_seconds < 20


async def test_missing_interpreter_raises_start_error(tmp_path: Path) -> None:
    with pytest.raises(ProcessStartError):
        await supervise_process(
            [str(tmp_path / "no-such-interpreter")],
            cwd=tmp_path,
            env={},
            stdout_path=tmp_path / "stdout.log",
            stderr_path=tmp_path / "stderr.log",
            timeout_seconds=5,
        )


async def test_tree_that_survives_termination_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    async def never_exits(process: object, timeout: float) -> bool:
        return False

    monkeypatch.setattr(process_module, "_wait_exit", never_exits)

    with pytest.raises(ProcessTerminationError) as excinfo:
        await _supervise(tmp_path, "import time; time.sleep(60)", timeout_seconds=0.5)

    assert excinfo.value.code is ErrorCode.PROCESS_KILL_FAILED
    assert excinfo.value.root_pid in excinfo.value.surviving_pids
    await asyncio.sleep(0.2)
    assert not _alive(excinfo.value.root_pid)
