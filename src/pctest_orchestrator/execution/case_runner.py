"""
pctest-orchestrator — authoritative execution of one test case

File: src/pctest_orchestrator/execution/case_runner.py
Last updated: 2026-10-17

Purpose
- Own one leaf invocation end to end: run folder, snapshots, injected environment,
  supervised process, and the authoritative result record.

Functional requirements
- Status is derived by the runner only: timeout → Timeout, cancellation → Aborted,
  start failure → Error, exit 0 → Passed (or RebootRequired), exit 1 → Failed,
  anything else → Error. A script's self-report is stored as evidence only.
- A reboot request is honoured only after exit 0; a request left behind by any other
  exit is ignored and removed.
- Secret values never reach params.json, env.json, result.json or the log files.
"""

from __future__ import annotations

import logging
import traceback
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePath
from typing import TYPE_CHECKING

from pctest_orchestrator.constants import (
    ENGINE_VERSION,
    ENV_ASSETS_ROOT,
    ENV_CONTROL_DIR,
    ENV_MODULES_ROOT,
    ENV_PHASE,
    ENV_RUN_ID,
    ENV_TESTCASE_ID,
    ENV_TESTCASE_NAME,
    ENV_TESTCASE_PATH,
    ENV_TESTCASE_VER,
    MODULES_DIR,
    REDACTED,
)
from pctest_orchestrator.domain.errors import ErrorCode, ProcessTerminationError
from pctest_orchestrator.domain.ids import CASE_RUN_PREFIX, generate_run_id
from pctest_orchestrator.domain.models import CaseManifest, RunStatus
from pctest_orchestrator.domain.results import (
    CaseResult,
    ErrorInfo,
    IndexEntry,
    NodeLineage,
    RebootInfo,
    format_timestamp,
    utc_now,
)
from pctest_orchestrator.execution.arguments import build_command
from pctest_orchestrator.execution.control import (
    RebootRequest,
    RebootRequestError,
    clear_reboot_request,
    read_reboot_request,
)
from pctest_orchestrator.execution.process import (
    ProcessOutcome,
    ProcessStartError,
    supervise_process,
)
from pctest_orchestrator.observability.events import EventCode
from pctest_orchestrator.observability.logging import correlation_scope, register_secret_values
from pctest_orchestrator.persistence.run_folders import CaseRunFolder, environment_snapshot
from pctest_orchestrator.utils.fs import is_within

if TYPE_CHECKING:
    from pctest_orchestrator.discovery.scanner import DiscoveredEntity
    from pctest_orchestrator.persistence.index import RunIndex
    from pctest_orchestrator.resolution.environment import EffectiveEnvironment
    from pctest_orchestrator.resolution.inputs import ResolvedInputs
    from pctest_orchestrator.utils.concurrency import CancellationToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RunnerSettings:
    interpreter: str
    script_name: str
    assets_root: Path
    interpreter_args: tuple[str, ...] = ()
    default_timeout_sec: int = 3600
    kill_grace_sec: float = 5.0


@dataclass(frozen=True, slots=True)
class CaseInvocation:
    """Everything needed to launch one case without re-resolving anything."""

    entity: DiscoveredEntity[CaseManifest]
    inputs: ResolvedInputs
    environment: EffectiveEnvironment
    lineage: NodeLineage = field(default_factory=NodeLineage)
    working_dir: str | None = None
    resolved_ref: str | None = None

    @property
    def manifest(self) -> CaseManifest:
        return self.entity.manifest


@dataclass(frozen=True, slots=True)
class CaseOutcome:
    result: CaseResult
    folder: CaseRunFolder
    reboot_request: RebootRequest | None = None

    @property
    def status(self) -> RunStatus:
        return self.result.status


def validate_working_dir(working_dir: str) -> str | None:
    """Return an error message when ``working_dir`` could leave the case run folder."""
    pure = PurePath(working_dir)
    if pure.is_absolute() or pure.drive:
        return f"workingDir {working_dir!r} must be a relative path"
    if ".." in pure.parts:
        return f"workingDir {working_dir!r} must not contain '..'"
    return None


class CaseRunner:
    """Runs one case invocation and writes its authoritative record."""

    def __init__(
        self,
        settings: RunnerSettings,
        runs_root: Path,
        index: RunIndex,
        *,
        is_elevated: bool,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self._settings = settings
        self._runs_root = runs_root
        self._index = index
        self._is_elevated = is_elevated
        self._cancel_token = cancel_token

    def allocate_folder(self) -> CaseRunFolder:
        return CaseRunFolder.allocate(self._runs_root, generate_run_id(CASE_RUN_PREFIX))

    async def run(
        self,
        invocation: CaseInvocation,
        *,
        phase: int = 0,
        folder: CaseRunFolder | None = None,
        resumed: bool = False,
    ) -> CaseOutcome:
        """
        Execute ``invocation`` at ``phase``.

        A folder is allocated when ``folder`` is not given. With ``resumed`` the phase
        re-enters the run folder of its suspended predecessor and no snapshots are written.
        """

        run_folder = folder if folder is not None else self.allocate_folder()
        if not resumed:
            self._write_snapshots(run_folder, invocation)

        manifest = invocation.manifest
        with correlation_scope(
            run_id=run_folder.run_id,
            node_id=invocation.lineage.node_id,
            test_id=str(manifest.identity),
            phase=str(phase),
        ):
            run_folder.events.info(
                EventCode.CASE_RESUMED if resumed else EventCode.CASE_STARTED,
                f"{manifest.identity} phase {phase} starting",
                phase=phase,
                nodeId=invocation.lineage.node_id,
            )
            started = utc_now()
            try:
                outcome = await self._execute(run_folder, invocation, phase)
            except ProcessTerminationError as exc:
                result = self._result(
                    run_folder,
                    invocation,
                    phase,
                    RunStatus.ERROR,
                    started,
                    error=ErrorInfo(
                        type="ProcessTerminationError",
                        message=str(exc),
                        code=exc.code.value,
                        stack=traceback.format_exc(),
                    ),
                )
                self._finalize(run_folder, result)
                raise
            result, request = self._derive(run_folder, invocation, phase, started, outcome)
            self._finalize(run_folder, result)
            return CaseOutcome(result=result, folder=run_folder, reboot_request=request)

    def record_aborted(self, invocation: CaseInvocation, reason: str) -> CaseOutcome:
        """Write an Aborted record for a node that was never started."""
        run_folder = self.allocate_folder()
        self._write_snapshots(run_folder, invocation)
        now = utc_now()
        result = self._result(
            run_folder,
            invocation,
            0,
            RunStatus.ABORTED,
            now,
            error=ErrorInfo(type="Aborted", source="Orchestrator", message=reason),
        )
        run_folder.events.warning(EventCode.NODE_ABORTED, reason, nodeId=invocation.lineage.node_id)
        self._finalize(run_folder, result)
        return CaseOutcome(result=result, folder=run_folder)

    async def _execute(
        self, run_folder: CaseRunFolder, invocation: CaseInvocation, phase: int
    ) -> ProcessOutcome | ErrorInfo:
        manifest = invocation.manifest
        clear_reboot_request(run_folder.control_dir)

        cwd = run_folder.path
        if invocation.working_dir:
            cwd = run_folder.path / invocation.working_dir
            if validate_working_dir(invocation.working_dir) is not None or not is_within(
                cwd, run_folder.path, strict=False
            ):
                return ErrorInfo(
                    type="ValidationError",
                    message=f"workingDir {invocation.working_dir!r} escapes the run folder",
                    code=ErrorCode.WORKING_DIR_CONTAINMENT_FAILED.value,
                )
            cwd.mkdir(parents=True, exist_ok=True)

        script = invocation.entity.folder / self._settings.script_name
        if not script.is_file():
            return ErrorInfo(type="RunnerError", message=f"script not found: {script}")

        secrets = (*invocation.inputs.secret_values(), *invocation.environment.secret_values())
        register_secret_values(secrets)
        passed_secrets = sorted(name for name in invocation.inputs.secret_names if name in invocation.inputs.values)
        if passed_secrets:
            logger.warning("secret parameter(s) passed on the command line: %s", passed_secrets)
            run_folder.events.warning(
                EventCode.SECRET_ON_COMMAND_LINE,
                "secret values are visible on the process command line",
                parameters=passed_secrets,
            )

        timeout = manifest.timeout_sec or self._settings.default_timeout_sec
        try:
            return await supervise_process(
                build_command(
                    self._settings.interpreter,
                    self._settings.interpreter_args,
                    script,
                    invocation.inputs.values,
                ),
                cwd=cwd,
                env=self._process_environment(run_folder, invocation, phase),
                stdout_path=run_folder.stdout_path,
                stderr_path=run_folder.stderr_path,
                timeout_seconds=float(timeout),
                cancel_token=self._cancel_token,
                kill_grace_seconds=self._settings.kill_grace_sec,
                redact=_secret_redactor(secrets),
            )
        except ProcessStartError as exc:
            logger.error("runner failed to start %s: %s", manifest.identity, exc)
            return ErrorInfo(type="RunnerError", message=str(exc), stack=traceback.format_exc())

    def _process_environment(
        self, run_folder: CaseRunFolder, invocation: CaseInvocation, phase: int
    ) -> dict[str, str]:
        manifest = invocation.manifest
        assets_root = self._settings.assets_root
        env = dict(invocation.environment.variables)
        env.update(
            {
                ENV_TESTCASE_PATH: str(invocation.entity.folder),
                ENV_TESTCASE_NAME: manifest.name,
                ENV_TESTCASE_ID: manifest.id,
                ENV_TESTCASE_VER: manifest.version,
                ENV_RUN_ID: run_folder.run_id,
                ENV_PHASE: str(phase),
                ENV_CONTROL_DIR: str(run_folder.control_dir),
                ENV_ASSETS_ROOT: str(assets_root),
                ENV_MODULES_ROOT: str(assets_root / MODULES_DIR),
                "PYTHONUNBUFFERED": "1",
            }
        )
        return env

    def _derive(
        self,
        run_folder: CaseRunFolder,
        invocation: CaseInvocation,
        phase: int,
        started: datetime,
        outcome: ProcessOutcome | ErrorInfo,
    ) -> tuple[CaseResult, RebootRequest | None]:
        if isinstance(outcome, ErrorInfo):
            return self._result(run_folder, invocation, phase, RunStatus.ERROR, started, error=outcome), None

        exit_code = outcome.exit_code
        request: RebootRequest | None = None
        error: ErrorInfo | None = None
        reboot: RebootInfo | None = None

        if outcome.timed_out:
            status = RunStatus.TIMEOUT
            error = ErrorInfo(type="Timeout", message="test case exceeded its timeout")
        elif outcome.cancelled:
            status = RunStatus.ABORTED
            error = ErrorInfo(type="Aborted", message="run was cancelled")
        elif exit_code == 0:
            status = RunStatus.PASSED
            try:
                request = read_reboot_request(run_folder.control_dir)
            except RebootRequestError as exc:
                status = RunStatus.ERROR
                error = ErrorInfo(
                    type="ProtocolError",
                    source="Reboot",
                    message=str(exc),
                    code=ErrorCode.REBOOT_REQUEST_INVALID.value,
                )
            if request is not None:
                status = RunStatus.REBOOT_REQUIRED
                reboot = RebootInfo(
                    next_phase=request.next_phase,
                    reason=request.reason,
                    delay_sec=request.delay_sec,
                    origin_test_id=invocation.manifest.id,
                )
                run_folder.events.info(
                    EventCode.CASE_REBOOT_REQUESTED,
                    request.reason,
                    nextPhase=request.next_phase,
                    delaySec=request.delay_sec,
                )
        elif exit_code == 1:
            status = RunStatus.FAILED
        else:
            status = RunStatus.ERROR
            error = ErrorInfo(type="ScriptError", source="Script", message=f"script exited with code {exit_code}")

        if request is None and clear_reboot_request(run_folder.control_dir):
            logger.warning("ignoring reboot request left by %s (status %s)", run_folder.run_id, status.value)
            run_folder.events.warning(
                EventCode.REBOOT_REQUEST_IGNORED,
                "reboot request ignored because the script did not exit cleanly",
                status=status.value,
            )

        result = self._result(
            run_folder,
            invocation,
            phase,
            status,
            started,
            exit_code=exit_code,
            error=error,
            reboot=reboot,
        )
        return result, request

    def _result(
        self,
        run_folder: CaseRunFolder,
        invocation: CaseInvocation,
        phase: int,
        status: RunStatus,
        started: datetime,
        *,
        exit_code: int | None = None,
        error: ErrorInfo | None = None,
        reboot: RebootInfo | None = None,
    ) -> CaseResult:
        manifest = invocation.manifest
        return CaseResult(
            run_id=run_folder.run_id,
            test_id=manifest.id,
            test_version=manifest.version,
            status=status,
            start_time=started,
            end_time=utc_now(),
            lineage=invocation.lineage,
            exit_code=exit_code,
            phase=phase,
            effective_inputs=invocation.inputs.redacted(),
            error=error,
            reboot=reboot,
            self_report=run_folder.read_self_report(),
        )

    def _finalize(self, run_folder: CaseRunFolder, result: CaseResult) -> None:
        run_folder.write_result(result)
        self._index.append(IndexEntry.from_case(result))
        event = EventCode.CASE_ERROR if result.status is RunStatus.ERROR else EventCode.CASE_COMPLETED
        run_folder.events.info(event, f"finished with {result.status.value}", status=result.status.value)
        logger.info("case run %s finished: %s", result.run_id, result.status.value)

    def _write_snapshots(self, run_folder: CaseRunFolder, invocation: CaseInvocation) -> None:
        environment = invocation.environment
        run_folder.write_manifest_snapshot(
            {
                "sourceManifest": dict(invocation.manifest.raw) or invocation.manifest.to_dict(),
                "resolvedRef": invocation.resolved_ref or str(invocation.entity.folder),
                "resolvedIdentity": str(invocation.manifest.identity),
                "effectiveEnvironment": environment.redacted_overlay(),
                "effectiveInputs": invocation.inputs.redacted(),
                "inputTemplates": dict(invocation.inputs.templates),
                "resolvedAt": format_timestamp(utc_now()),
                "engineVersion": ENGINE_VERSION,
            }
        )
        run_folder.write_params(invocation.inputs.redacted())
        run_folder.write_env_snapshot(
            environment_snapshot(environment.redacted_overlay(), is_elevated=self._is_elevated)
        )


def _secret_redactor(secrets: tuple[str, ...]) -> Callable[[str], str]:
    ordered = sorted({item for item in secrets if item}, key=len, reverse=True)

    def redact(text: str) -> str:
        for secret in ordered:
            text = text.replace(secret, REDACTED)
        return text

    return redact


def process_environment_names() -> tuple[str, ...]:
    """Names of the variables always injected into a leaf process."""
    return (
        ENV_TESTCASE_PATH,
        ENV_TESTCASE_NAME,
        ENV_TESTCASE_ID,
        ENV_TESTCASE_VER,
        ENV_RUN_ID,
        ENV_PHASE,
        ENV_CONTROL_DIR,
        ENV_ASSETS_ROOT,
        ENV_MODULES_ROOT,
    )


__all__ = [
    "CaseInvocation",
    "CaseOutcome",
    "CaseRunner",
    "RunnerSettings",
    "process_environment_names",
    "validate_working_dir",
]
