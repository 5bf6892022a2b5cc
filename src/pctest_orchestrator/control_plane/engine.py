"""
pctest-orchestrator — engine facade

File: src/pctest_orchestrator/control_plane/engine.py
Last updated: 2026-10-17

Purpose
- One entry point for the outer surfaces: discover, run a request, resume a suspended run.

Functional requirements
- Pre-flight (discovery conflicts, arena resolution, privilege gate) completes before
  anything is spawned; a rejected request still leaves a run folder with an ``Error``
  result and one index line, then the ``ValidationError`` propagates.
- A suspended walk is handed to the reboot controller; a finished resume finalizes the
  session so the continuation is consumed exactly once.
- A resume loop marks the top-level result ``Aborted`` before the protocol error escapes.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import structlog

from pctest_orchestrator.constants import RESULT_FILE, RESULT_SCHEMA_VERSION
from pctest_orchestrator.control_plane.privilege import evaluate_privilege, is_process_elevated
from pctest_orchestrator.control_plane.reboot import (
    RebootController,
    RebootHook,
    ResumeSession,
    SessionStore,
    create_reboot_hook,
)
from pctest_orchestrator.control_plane.tree import ArenaNode, ExecutionArena, NodeKind, build_arena
from pctest_orchestrator.control_plane.walker import Suspension, TreeWalker, WalkOutcome
from pctest_orchestrator.discovery.scanner import DiscoveryResult, DiscoveryRoots, discover
from pctest_orchestrator.domain.errors import ErrorCode, ProtocolError, ValidationError
from pctest_orchestrator.domain.ids import (
    CASE_RUN_PREFIX,
    PLAN_RUN_PREFIX,
    SUITE_RUN_PREFIX,
    generate_run_id,
    parse_identity,
)
from pctest_orchestrator.domain.models import RunRequest, RunStatus, RunType
from pctest_orchestrator.domain.results import (
    IndexEntry,
    NodeLineage,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from pctest_orchestrator.execution.case_runner import CaseRunner, RunnerSettings
from pctest_orchestrator.execution.control import clear_reboot_request
from pctest_orchestrator.observability.events import EventCode
from pctest_orchestrator.persistence.index import RunIndex
from pctest_orchestrator.persistence.run_folders import CaseRunFolder, GroupRunFolder
from pctest_orchestrator.utils.concurrency import CancellationToken
from pctest_orchestrator.utils.fs import atomic_write_json, read_json_object

logger = logging.getLogger(__name__)

_RUN_PREFIXES: Final[dict[RunType, str]] = {
    RunType.TEST_CASE: CASE_RUN_PREFIX,
    RunType.TEST_SUITE: SUITE_RUN_PREFIX,
    RunType.TEST_PLAN: PLAN_RUN_PREFIX,
}


@dataclass(frozen=True, slots=True)
class RunReport:
    """What the outer surface needs to know about a run."""

    run_id: str
    run_type: RunType
    status: RunStatus
    folder: Path
    resume_token: str | None = None

    @property
    def suspended(self) -> bool:
        return self.status is RunStatus.REBOOT_REQUIRED

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "runId": self.run_id,
            "runType": self.run_type.value,
            "status": self.status.value,
            "folder": str(self.folder),
        }
        if self.resume_token is not None:
            out["resumeToken"] = self.resume_token
        return out


class OrchestratorEngine:
    """Facade over discovery, pre-flight, the tree walker and the reboot controller."""

    def __init__(
        self,
        config: Mapping[str, Any],
        *,
        cancel_token: CancellationToken | None = None,
        reboot_hook: RebootHook | None = None,
        decision_logger: Any | None = None,
        base_environment: Mapping[str, str] | None = None,
        is_elevated: bool | None = None,
    ) -> None:
        paths = config["paths"]
        runner = config["runner"]
        reboot = config["reboot"]
        self._roots = DiscoveryRoots(
            test_cases_root=Path(paths["test_cases_root"]),
            test_suites_root=Path(paths["test_suites_root"]),
            test_plans_root=Path(paths["test_plans_root"]),
        )
        self._runs_root = Path(paths["runs_root"])
        self._settings = RunnerSettings(
            interpreter=runner["interpreter"],
            script_name=runner["script_name"],
            assets_root=Path(paths["assets_root"]),
            interpreter_args=tuple(runner.get("interpreter_args", ())),
            default_timeout_sec=int(runner["default_timeout_sec"]),
            kill_grace_sec=float(runner["kill_grace_sec"]),
        )
        self._cancel_token = cancel_token
        self._base_environment = base_environment
        self._is_elevated = is_process_elevated() if is_elevated is None else is_elevated
        self._decisions = decision_logger if decision_logger is not None else structlog.get_logger(__name__)
        self._index = RunIndex(self._runs_root)
        self._controller = RebootController(
            SessionStore(self._runs_root),
            reboot_hook if reboot_hook is not None else create_reboot_hook(reboot),
            max_resume_count=int(reboot["max_resume_count"]),
            logger=self._decisions,
        )

    @property
    def runs_root(self) -> Path:
        return self._runs_root

    @property
    def index(self) -> RunIndex:
        return self._index

    def discover(self) -> DiscoveryResult:
        return discover(self._roots)

    async def run(self, request: RunRequest) -> RunReport:
        """Validate ``request`` completely, then walk it."""
        self._runs_root.mkdir(parents=True, exist_ok=True)
        with self._index:
            try:
                arena = self._preflight(request)
            except ValidationError as exc:
                self._record_rejection(request, exc)
                raise

            notices: list[tuple[EventCode, str]] = []
            decision = evaluate_privilege(
                arena.root.effective_privilege, elevated=self._is_elevated, target=arena.root.identity
            )
            if decision.warning is not None:
                logger.warning(decision.warning)
                self._decisions.warning(
                    "privilege_warning",
                    target=arena.root.identity,
                    privilege=decision.effective.value,
                )
                notices.append((EventCode.PRIVILEGE_WARNING, decision.warning))
            for warning in arena.warnings:
                logger.warning("%s", warning)

            logger.info("starting %s %s", request.run_type.value, request.target)
            outcome = await self._walker().walk(arena, notices=notices)
            return self._settle(outcome, arena, session=None)

    async def resume(self, run_id: str, token: str) -> RunReport:
        """Continue the suspended run ``run_id``; the token must match its session."""
        with self._index:
            try:
                session = self._controller.begin_resume(run_id, token)
            except ProtocolError as exc:
                if exc.code is ErrorCode.RESUME_LOOP_DETECTED:
                    self._record_loop_abort(run_id, str(exc))
                raise

            try:
                request = RunRequest.from_dict(session.run_request)
                arena = self._preflight(request)
            except ValidationError:
                self._controller.finalize(session, aborted=True)
                raise

            if _locate_case(arena, session.suspension) is None:
                self._controller.finalize(session, aborted=True)
                raise ProtocolError(
                    ErrorCode.RESUME_SESSION_INVALID,
                    f"suspended case {session.suspension.case_identity} no longer matches run {run_id}",
                )

            logger.info("resuming %s at phase %d", run_id, session.suspension.next_phase)
            outcome = await self._walker().resume(arena, session.suspension, root_run_id=run_id)
            return self._settle(outcome, arena, session=session)

    def _preflight(self, request: RunRequest) -> ExecutionArena:
        discovery = self.discover()
        discovery.raise_for_conflicts()
        for warning in discovery.warnings:
            logger.warning("%s", warning)
        arena = build_arena(
            request,
            discovery,
            cases_root=self._roots.test_cases_root,
            base_environment=self._base_environment,
        )
        decision = evaluate_privilege(
            arena.root.effective_privilege, elevated=self._is_elevated, target=arena.root.identity
        )
        if decision.rejection is not None:
            raise ValidationError([decision.rejection])
        return arena

    def _walker(self) -> TreeWalker:
        runner = CaseRunner(
            self._settings,
            self._runs_root,
            self._index,
            is_elevated=self._is_elevated,
            cancel_token=self._cancel_token,
        )
        return TreeWalker(
            runner,
            self._runs_root,
            self._index,
            cancel_token=self._cancel_token,
            logger=self._decisions,
        )

    def _settle(
        self, outcome: WalkOutcome, arena: ExecutionArena, *, session: ResumeSession | None
    ) -> RunReport:
        token: str | None = None
        if outcome.suspension is not None:
            node = _locate_case(arena, outcome.suspension)
            suspended = self._controller.suspend(
                run_id=outcome.run_id,
                entity_type=outcome.run_type,
                entity_id=arena.root.identity,
                suspension=outcome.suspension,
                run_request=arena.request.to_dict(),
                context=_case_context(node),
                previous=session,
            )
            token = suspended.resume_token
        elif session is not None:
            case_folder = CaseRunFolder(self._runs_root / session.suspension.case_run_id)
            clear_reboot_request(case_folder.control_dir)
            self._controller.finalize(session)

        logger.info("%s %s finished: %s", outcome.run_type.value, outcome.run_id, outcome.status.value)
        return RunReport(
            run_id=outcome.run_id,
            run_type=outcome.run_type,
            status=outcome.status,
            folder=outcome.folder,
            resume_token=token,
        )

    def _record_rejection(self, request: RunRequest, exc: ValidationError) -> None:
        folder = GroupRunFolder.allocate(self._runs_root, generate_run_id(_RUN_PREFIXES[request.run_type]))
        now = utc_now()
        atomic_write_json(
            folder.result_path,
            {
                "schemaVersion": RESULT_SCHEMA_VERSION,
                "runType": request.run_type.value,
                "runId": folder.run_id,
                "target": request.target,
                "status": RunStatus.ERROR.value,
                "startTime": format_timestamp(now),
                "endTime": format_timestamp(now),
                "error": {
                    "type": "ValidationError",
                    "source": "Orchestrator",
                    "message": str(exc),
                },
                "issues": [issue.to_dict() for issue in exc.issues],
            },
        )
        folder.write_run_request(request.to_dict())
        lineage = NodeLineage()
        test_id = test_version = None
        try:
            identity = parse_identity(request.target)
        except ValueError:
            identity = None
        if identity is not None:
            if request.run_type is RunType.TEST_CASE:
                test_id, test_version = identity.id, identity.version
            elif request.run_type is RunType.TEST_SUITE:
                lineage = NodeLineage(suite_id=identity.id, suite_version=identity.version)
            else:
                lineage = NodeLineage(plan_id=identity.id, plan_version=identity.version)
        self._index.append(
            IndexEntry(
                run_id=folder.run_id,
                run_type=request.run_type,
                status=RunStatus.ERROR,
                start_time=now,
                end_time=now,
                test_id=test_id,
                test_version=test_version,
                lineage=lineage,
            )
        )
        logger.error("run request %s rejected with %d issue(s)", request.target, len(exc.issues))

    def _record_loop_abort(self, run_id: str, message: str) -> None:
        session = self._controller.store.load(run_id)
        folder = self._runs_root / run_id
        result_path = folder / RESULT_FILE
        document = read_json_object(result_path) if result_path.is_file() else {"runId": run_id}
        now = utc_now()
        document.update(
            {
                "status": RunStatus.ABORTED.value,
                "endTime": format_timestamp(now),
                "message": "Resume loop detected",
                "error": {
                    "type": "ProtocolError",
                    "source": "Orchestrator",
                    "message": message,
                    "code": ErrorCode.RESUME_LOOP_DETECTED.value,
                },
            }
        )
        document.pop("reboot", None)
        atomic_write_json(result_path, document)
        self._index.append(
            IndexEntry(
                run_id=run_id,
                run_type=session.entity_type,
                status=RunStatus.ABORTED,
                start_time=parse_timestamp(document.get("startTime")) or now,
                end_time=now,
                test_id=document.get("testId"),
                test_version=document.get("testVersion"),
                lineage=NodeLineage.from_dict(document),
            )
        )
        self._decisions.warning("resume_aborted", run_id=run_id, reason="resume loop detected")


def _locate_case(arena: ExecutionArena, suspension: Suspension) -> ArenaNode | None:
    """Find the arena node a suspension points at, or ``None`` if the tree changed."""
    root = arena.root
    if root.kind is NodeKind.CASE:
        candidate: ArenaNode | None = root
    else:
        suite = root
        if root.kind is NodeKind.PLAN:
            suites = arena.children(root.index)
            position = suspension.plan_position
            if position is None or not 0 <= position < len(suites):
                return None
            suite = suites[position]
        cases = arena.children(suite.index)
        if not 0 <= suspension.node_position < len(cases):
            return None
        candidate = cases[suspension.node_position]
        if candidate.node_id != suspension.node_id:
            return None
    if candidate is None or candidate.identity != suspension.case_identity:
        return None
    return candidate


def _case_context(node: ArenaNode | None) -> dict[str, Any]:
    if node is None or node.invocation is None:
        return {}
    invocation = node.invocation
    return {
        "nodeId": node.node_id,
        "effectiveInputs": invocation.inputs.redacted(),
        "secretInputs": sorted(invocation.inputs.secret_names),
        "secretVariables": sorted(invocation.environment.secret_names),
        "environment": invocation.environment.redacted_overlay(),
    }


__all__ = ["OrchestratorEngine", "RunReport"]
