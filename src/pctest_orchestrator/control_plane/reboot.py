"""
pctest-orchestrator — reboot suspension and resume sessions

File: src/pctest_orchestrator/control_plane/reboot.py
Last updated: 2026-10-17

Purpose
- Persist a resumable session when a walk suspends for a reboot, hand the reboot to a
  host hook, and validate the session when the orchestrator is started again.

Functional requirements
- The session lives in the top-level run folder as ``session.json`` and carries the walk
  cursor, the original run request and a random resume token; secret values are never
  stored (EnvRefs are re-resolved from the environment on resume).
- A resume needs the matching token and a session that is still pending.
- Each resume increments ``resumeCount``; exceeding the configured maximum aborts the
  session instead of running the case again. A new suspension starts from zero unless it
  suspends the same case run at the same phase again.
- The host hook is pluggable: ``none`` only records intent, ``command`` runs configured
  argv templates to register the resume, request the reboot and clean up.
"""

from __future__ import annotations

import logging
import secrets
import subprocess
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol

import structlog

from pctest_orchestrator.constants import SESSION_FILE
from pctest_orchestrator.control_plane.walker import Suspension
from pctest_orchestrator.domain.errors import ErrorCode, ProtocolError
from pctest_orchestrator.domain.models import JSONValue, RunType
from pctest_orchestrator.domain.results import format_timestamp, parse_timestamp, utc_now
from pctest_orchestrator.utils.fs import atomic_write_json, read_json_object

logger = logging.getLogger(__name__)

SESSION_SCHEMA_VERSION = 1


class SessionState(StrEnum):
    PENDING_RESUME = "PendingResume"
    RESUMING = "Resuming"
    FINALIZED = "Finalized"
    ABORTED = "Aborted"


@dataclass(frozen=True, slots=True)
class ResumeSession:
    run_id: str
    entity_type: RunType
    entity_id: str
    resume_token: str
    suspension: Suspension
    run_request: Mapping[str, Any]
    state: SessionState = SessionState.PENDING_RESUME
    resume_count: int = 0
    context: Mapping[str, Any] = field(default_factory=dict)
    case_run_folder: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "schemaVersion": SESSION_SCHEMA_VERSION,
            "runId": self.run_id,
            "entityType": self.entity_type.value,
            "entityId": self.entity_id,
            "state": self.state.value,
            "resumeToken": self.resume_token,
            "resumeCount": self.resume_count,
            **self.suspension.to_dict(),
            "currentChildRunId": self.suspension.suite_run_id or self.suspension.case_run_id,
            "caseRunFolder": self.case_run_folder,
            "runRequest": dict(self.run_request),
            "context": dict(self.context),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ResumeSession:
        try:
            created_at = data.get("createdAt")
            if created_at is not None and parse_timestamp(created_at) is None:
                raise ValueError(f"createdAt is not a timestamp: {created_at!r}")
            request = data["runRequest"]
            if not isinstance(request, Mapping):
                raise TypeError("runRequest must be an object")
            return cls(
                run_id=str(data["runId"]),
                entity_type=RunType(data["entityType"]),
                entity_id=str(data["entityId"]),
                resume_token=str(data["resumeToken"]),
                suspension=Suspension.from_dict(data),
                run_request=dict(request),
                state=SessionState(data.get("state", SessionState.PENDING_RESUME)),
                resume_count=int(data.get("resumeCount", 0)),
                context=dict(data.get("context") or {}),
                case_run_folder=data.get("caseRunFolder"),
                created_at=created_at,
                updated_at=data.get("updatedAt"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ProtocolError(ErrorCode.RESUME_SESSION_INVALID, f"session file is malformed: {exc}") from exc


class SessionStore:
    """Reads and writes ``session.json`` in the top-level run folder."""

    def __init__(self, runs_root: Path) -> None:
        self._runs_root = Path(runs_root)

    @property
    def runs_root(self) -> Path:
        return self._runs_root

    def path_for(self, run_id: str) -> Path:
        return self._runs_root / run_id / SESSION_FILE

    def exists(self, run_id: str) -> bool:
        return self.path_for(run_id).is_file()

    def save(self, session: ResumeSession) -> ResumeSession:
        stamped = replace(session, updated_at=format_timestamp(utc_now()))
        atomic_write_json(self.path_for(session.run_id), stamped.to_dict())
        return stamped

    def load(self, run_id: str) -> ResumeSession:
        path = self.path_for(run_id)
        if not path.is_file():
            raise ProtocolError(ErrorCode.RESUME_SESSION_INVALID, f"no resume session for run {run_id}")
        try:
            document = read_json_object(path)
        except (OSError, ValueError) as exc:
            raise ProtocolError(ErrorCode.RESUME_SESSION_INVALID, f"unreadable session file: {exc}") from exc
        return ResumeSession.from_dict(document)


class RebootHook(Protocol):
    """Host integration invoked around a reboot."""

    def register_resume(self, session: ResumeSession) -> None: ...

    def request_reboot(self, session: ResumeSession) -> None: ...

    def unregister_resume(self, session: ResumeSession) -> None: ...


class NoopRebootHook:
    """Records intent only; the operator reboots and resumes by hand."""

    def register_resume(self, session: ResumeSession) -> None:
        logger.info("resume registration skipped for %s (hook disabled)", session.run_id)

    def request_reboot(self, session: ResumeSession) -> None:
        logger.warning(
            "run %s is waiting for a reboot; resume with: pctest resume %s --token %s",
            session.run_id,
            session.run_id,
            session.resume_token,
        )

    def unregister_resume(self, session: ResumeSession) -> None:
        return None


@dataclass(frozen=True, slots=True)
class CommandRebootHook:
    """
    Runs argv templates for each hook step.

    Templates may use ``{run_id}``, ``{token}``, ``{delay_sec}`` and ``{reason}``; an empty
    template skips the step. A non-zero exit is a protocol error.
    """

    register_command: Sequence[str] = ()
    reboot_command: Sequence[str] = ()
    unregister_command: Sequence[str] = ()
    timeout_seconds: float = 60.0

    def register_resume(self, session: ResumeSession) -> None:
        self._invoke("register", self.register_command, session)

    def request_reboot(self, session: ResumeSession) -> None:
        self._invoke("reboot", self.reboot_command, session)

    def unregister_resume(self, session: ResumeSession) -> None:
        self._invoke("unregister", self.unregister_command, session)

    def _invoke(self, step: str, template: Sequence[str], session: ResumeSession) -> None:
        if not template:
            return
        values = {
            "run_id": session.run_id,
            "token": session.resume_token,
            "delay_sec": session.suspension.delay_sec or 0,
            "reason": session.suspension.reason,
        }
        argv = [part.format(**values) for part in template]
        logger.info("reboot hook %s: %s", step, argv[0])
        try:
            completed = subprocess.run(
                argv,
                check=False,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ProtocolError(ErrorCode.REBOOT_REQUEST_INVALID, f"reboot hook {step} failed: {exc}") from exc
        if completed.returncode != 0:
            raise ProtocolError(
                ErrorCode.REBOOT_REQUEST_INVALID,
                f"reboot hook {step} exited with {completed.returncode}: {completed.stderr.strip()}",
            )


def create_reboot_hook(reboot_config: Mapping[str, Any]) -> RebootHook:
    """Build the hook named by the ``[reboot]`` config section."""
    if reboot_config.get("hook", "none") == "command":
        return CommandRebootHook(
            register_command=tuple(reboot_config.get("register_command", ())),
            reboot_command=tuple(reboot_config.get("reboot_command", ())),
            unregister_command=tuple(reboot_config.get("unregister_command", ())),
        )
    return NoopRebootHook()


def _carried_resume_count(previous: ResumeSession | None, suspension: Suspension) -> int:
    if previous is None:
        return 0
    same_continuation = (
        previous.suspension.case_run_id == suspension.case_run_id
        and previous.suspension.next_phase == suspension.next_phase
    )
    return previous.resume_count if same_continuation else 0


class RebootController:
    """Owns the session lifecycle: suspend, begin resume, finalize."""

    def __init__(
        self,
        store: SessionStore,
        hook: RebootHook | None = None,
        *,
        max_resume_count: int = 1,
        logger: Any | None = None,
    ) -> None:
        if max_resume_count < 0:
            raise ValueError("max_resume_count must be >= 0")
        self._store = store
        self._hook = hook if hook is not None else NoopRebootHook()
        self._max_resume_count = max_resume_count
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def store(self) -> SessionStore:
        return self._store

    def suspend(
        self,
        *,
        run_id: str,
        entity_type: RunType,
        entity_id: str,
        suspension: Suspension,
        run_request: Mapping[str, Any],
        context: Mapping[str, Any] | None = None,
        previous: ResumeSession | None = None,
    ) -> ResumeSession:
        """Persist a pending session (a fresh token every time) and hand off to the hook."""
        now = format_timestamp(utc_now())
        session = ResumeSession(
            run_id=run_id,
            entity_type=entity_type,
            entity_id=entity_id,
            resume_token=uuid.uuid4().hex,
            suspension=suspension,
            run_request=run_request,
            resume_count=_carried_resume_count(previous, suspension),
            context=context or {},
            case_run_folder=str(self._store.runs_root / suspension.case_run_id),
            created_at=previous.created_at if previous else now,
        )
        session = self._store.save(session)
        self._logger.info(
            "reboot_session_saved",
            run_id=run_id,
            case_run_id=suspension.case_run_id,
            next_phase=suspension.next_phase,
            resume_count=session.resume_count,
        )
        self._hook.register_resume(session)
        self._hook.request_reboot(session)
        return session

    def begin_resume(self, run_id: str, token: str) -> ResumeSession:
        """
        Validate and claim a pending session.

        Raises ``ProtocolError`` for a missing/finished session, a wrong token, or a loop;
        in the loop case the session is marked ``Aborted`` before raising.
        """

        session = self._store.load(run_id)
        if session.state is not SessionState.PENDING_RESUME:
            raise ProtocolError(
                ErrorCode.RESUME_SESSION_INVALID,
                f"run {run_id} is not waiting for a resume (state {session.state.value})",
            )
        if not secrets.compare_digest(session.resume_token, token):
            raise ProtocolError(ErrorCode.RESUME_TOKEN_MISMATCH, f"resume token does not match run {run_id}")

        session = replace(session, resume_count=session.resume_count + 1)
        if session.resume_count > self._max_resume_count:
            self._store.save(replace(session, state=SessionState.ABORTED))
            self._logger.warning(
                "resume_loop_detected",
                run_id=run_id,
                resume_count=session.resume_count,
                max_resume_count=self._max_resume_count,
            )
            raise ProtocolError(
                ErrorCode.RESUME_LOOP_DETECTED,
                f"run {run_id} exceeded {self._max_resume_count} resume(s)",
            )
        session = self._store.save(replace(session, state=SessionState.RESUMING))
        self._logger.info("resume_started", run_id=run_id, resume_count=session.resume_count)
        return session

    def finalize(self, session: ResumeSession, *, aborted: bool = False) -> ResumeSession:
        state = SessionState.ABORTED if aborted else SessionState.FINALIZED
        session = self._store.save(replace(session, state=state))
        self._hook.unregister_resume(session)
        self._logger.info("resume_session_closed", run_id=session.run_id, state=state.value)
        return session


__all__ = [
    "CommandRebootHook",
    "NoopRebootHook",
    "RebootController",
    "RebootHook",
    "ResumeSession",
    "SessionState",
    "SessionStore",
    "create_reboot_hook",
]
