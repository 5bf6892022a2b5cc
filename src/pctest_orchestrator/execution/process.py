"""
pctest-orchestrator — leaf process supervision

File: src/pctest_orchestrator/execution/process.py
Last updated: 2026-10-17

Purpose
- Spawn one leaf interpreter, pump its output to log files, and race its natural exit
  against a timeout timer and a cancellation token.

Functional requirements
- stdout pump, stderr pump, exit wait, timer and cancellation are independent tasks;
  the only decision point is "first of exit/timer/cancel".
- Timeout and cancellation converge on ``terminate_process_tree``, which signals the
  whole tree (process group plus every psutil-visible descendant), escalates to kill
  after a grace period, and raises ``ProcessTerminationError`` if anything survives.
- Finalization always waits for the real exit of the root process and drains both pumps;
  pumps read fixed-size chunks, so a line of any length reaches the log intact.

Non-functional requirements
- No shell: argv is passed as a list so whitespace never splits a value.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import signal
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Final, cast

import psutil

from pctest_orchestrator.domain.errors import ProcessTerminationError
from pctest_orchestrator.utils.concurrency import CancellationToken, first_completed

logger = logging.getLogger(__name__)

_STREAM_LIMIT: Final[int] = 1024 * 1024
_CHUNK_SIZE: Final[int] = 64 * 1024
_POSIX: Final[bool] = os.name != "nt"

Redactor = Callable[[str], str]


class ExitReason(StrEnum):
    EXITED = "exited"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class ProcessStartError(RuntimeError):
    """The interpreter could not be started at all."""


@dataclass(frozen=True, slots=True)
class ProcessOutcome:
    reason: ExitReason
    exit_code: int | None
    pid: int
    duration_seconds: float

    @property
    def timed_out(self) -> bool:
        return self.reason is ExitReason.TIMED_OUT

    @property
    def cancelled(self) -> bool:
        return self.reason is ExitReason.CANCELLED


def _no_redaction(text: str) -> str:
    return text


async def supervise_process(
    argv: Sequence[str],
    *,
    cwd: Path,
    env: Mapping[str, str],
    stdout_path: Path,
    stderr_path: Path,
    timeout_seconds: float | None,
    cancel_token: CancellationToken | None = None,
    kill_grace_seconds: float = 5.0,
    redact: Redactor = _no_redaction,
) -> ProcessOutcome:
    """Run ``argv`` to completion (or until timed out / cancelled) and report how it ended."""
    started = time.monotonic()
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            env=dict(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=_POSIX,
            limit=_STREAM_LIMIT,
        )
    except OSError as exc:
        raise ProcessStartError(f"failed to start {argv[0]!r}: {exc}") from exc

    logger.info("spawned pid %d: %s", process.pid, argv[0])
    # Both pipes exist because they were requested with PIPE above.
    stdout = cast(asyncio.StreamReader, process.stdout)
    stderr = cast(asyncio.StreamReader, process.stderr)
    pumps = [
        asyncio.create_task(_pump(stdout, stdout_path, redact)),
        asyncio.create_task(_pump(stderr, stderr_path, redact)),
    ]

    contenders: dict[str, Awaitable[object]] = {"exit": process.wait()}
    if cancel_token is not None:
        contenders["cancel"] = cancel_token.wait()

    try:
        winner = await first_completed(contenders, timeout_seconds=timeout_seconds)
        if winner == "exit":
            reason = ExitReason.EXITED
        else:
            reason = ExitReason.CANCELLED if winner == "cancel" else ExitReason.TIMED_OUT
            logger.warning("pid %d %s; terminating process tree", process.pid, reason.value)
            await terminate_process_tree(process, grace_seconds=kill_grace_seconds)
        exit_code = await process.wait()
        await _drain(pumps, process, grace_seconds=kill_grace_seconds)
    except BaseException:
        for task in pumps:
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.gather(*pumps, return_exceptions=True)
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
        raise

    return ProcessOutcome(
        reason=reason,
        exit_code=exit_code,
        pid=process.pid,
        duration_seconds=time.monotonic() - started,
    )


async def terminate_process_tree(
    process: asyncio.subprocess.Process, *, grace_seconds: float = 5.0
) -> None:
    """
    Terminate ``process`` and every descendant, escalating from terminate to kill.

    The root is reaped through asyncio; descendants are tracked with psutil because they
    are not our children. Raises ``ProcessTerminationError`` when anything survives.
    """

    descendants = _descendants(process.pid)
    _signal_tree(process, descendants, signal.SIGTERM if _POSIX else None)
    survivors = await asyncio.to_thread(_wait_gone, descendants, grace_seconds)
    root_exited = await _wait_exit(process, grace_seconds)

    if survivors or not root_exited:
        logger.warning(
            "escalating to kill for pid %d (%d descendant(s) still alive)", process.pid, len(survivors)
        )
        _kill_tree(process, survivors)
        survivors = await asyncio.to_thread(_wait_gone, survivors, grace_seconds)
        root_exited = await _wait_exit(process, grace_seconds)

    remaining = [item.pid for item in survivors]
    if not root_exited:
        remaining.append(process.pid)
    if remaining:
        raise ProcessTerminationError(process.pid, remaining)


def _descendants(pid: int) -> list[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return []


def _signal_tree(
    process: asyncio.subprocess.Process,
    descendants: Sequence[psutil.Process],
    group_signal: signal.Signals | None,
) -> None:
    if group_signal is not None:
        # The leaf runs in its own session, so its pgid equals its pid.
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, group_signal)
    with contextlib.suppress(ProcessLookupError):
        process.terminate()
    for child in descendants:
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            child.terminate()


def _kill_tree(process: asyncio.subprocess.Process, survivors: Sequence[psutil.Process]) -> None:
    if _POSIX:
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, signal.SIGKILL)
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    for child in survivors:
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            child.kill()


def _wait_gone(procs: Sequence[psutil.Process], timeout: float) -> list[psutil.Process]:
    if not procs:
        return []
    _, alive = psutil.wait_procs(list(procs), timeout=timeout)
    return [item for item in alive if _is_alive(item)]


def _is_alive(proc: psutil.Process) -> bool:
    # A zombie has already exited; it only waits for its (new) parent to reap it.
    try:
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


async def _wait_exit(process: asyncio.subprocess.Process, timeout: float) -> bool:
    try:
        await asyncio.wait_for(process.wait(), timeout=max(timeout, 0.01))
    except TimeoutError:
        return False
    return True


async def _drain(
    pumps: list[asyncio.Task[None]],
    process: asyncio.subprocess.Process,
    *,
    grace_seconds: float,
) -> None:
    done, pending = await asyncio.wait(pumps, timeout=max(grace_seconds, 0.1))
    if pending:
        # A surviving descendant still holds the pipes open; close the group and stop pumping.
        logger.warning("output pipes of pid %d still open after exit; closing", process.pid)
        if _POSIX:
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(process.pid, signal.SIGKILL)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
    for task in done:
        exc = task.exception()
        if exc is not None:
            logger.warning("output pump for pid %d failed: %s", process.pid, exc)


async def _pump(stream: asyncio.StreamReader, path: Path, redact: Redactor) -> None:
    # Whole lines go through the redactor; an unterminated tail waits for its newline
    # unless it grows past the stream limit.
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    with path.open("a", encoding="utf-8") as handle:
        while True:
            chunk = await stream.read(_CHUNK_SIZE)
            pending += decoder.decode(chunk, final=not chunk)
            if not chunk:
                if pending:
                    handle.write(redact(pending))
                    handle.flush()
                return
            cut = pending.rfind("\n") + 1
            if cut == 0 and len(pending) >= _STREAM_LIMIT:
                cut = len(pending)
            if cut:
                handle.write(redact(pending[:cut]))
                handle.flush()
                pending = pending[cut:]


__all__ = [
    "ExitReason",
    "ProcessOutcome",
    "ProcessStartError",
    "supervise_process",
    "terminate_process_tree",
]
