"""
pctest-orchestrator — sequential tree walker

File: src/pctest_orchestrator/control_plane/walker.py
Last updated: 2026-10-17

Purpose
- Execute a resolved arena: a standalone case, a suite, or a plan of suites, writing
  group folders, ``children.jsonl`` lines, group results and index lines on the way.

Functional requirements
- Nodes run strictly in declaration order, one at a time.
- ``retryOnError`` re-runs a node only while its status is ``Error``; every attempt gets
  its own run folder and its own children line, and only the last attempt counts.
- Suite ``repeat`` replays the whole node list; node ``repeat`` replays one node.
- With ``continueOnFailure`` off, the first non-Passed node stops the walk and every
  remaining sibling of the current pass is recorded as ``Aborted``.
- A ``RebootRequired`` case suspends the walk: every open group writes a
  ``RebootRequired`` result and the walk returns a ``Suspension`` cursor that
  ``resume`` accepts later.

Non-functional requirements
- Decision logs (retry, stop, suspend) go through an injectable ``structlog`` logger.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from pctest_orchestrator.constants import ENGINE_VERSION
from pctest_orchestrator.control_plane.tree import ArenaNode, ExecutionArena, NodeKind
from pctest_orchestrator.domain.errors import ErrorCode, ProcessTerminationError, ProtocolError
from pctest_orchestrator.domain.ids import PLAN_RUN_PREFIX, SUITE_RUN_PREFIX, generate_run_id
from pctest_orchestrator.domain.models import JSONValue, RunStatus, RunType
from pctest_orchestrator.domain.results import (
    CaseResult,
    ChildEntry,
    ErrorInfo,
    GroupResult,
    IndexEntry,
    NodeLineage,
    RebootInfo,
    StatusCounts,
    aggregate_status,
    format_timestamp,
    parse_timestamp,
    settled_children,
    utc_now,
)
from pctest_orchestrator.execution.case_runner import CaseOutcome
from pctest_orchestrator.observability.events import EventCode
from pctest_orchestrator.observability.logging import correlation_scope
from pctest_orchestrator.persistence.run_folders import CaseRunFolder, GroupRunFolder

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime

    from pctest_orchestrator.execution.case_runner import CaseInvocation, CaseRunner
    from pctest_orchestrator.observability.events import EventLog
    from pctest_orchestrator.persistence.index import RunIndex
    from pctest_orchestrator.utils.concurrency import CancellationToken

Slot = tuple[str, int, int]

_ABORT_REASON = "not run because an earlier node did not pass and continueOnFailure is off"


@dataclass(frozen=True, slots=True)
class Suspension:
    """Where a walk stopped for a reboot, and what the suspended case asked for."""

    case_run_id: str
    case_identity: str
    next_phase: int
    reason: str
    delay_sec: int | None = None
    node_id: str | None = None
    suite_run_id: str | None = None
    suite_iteration: int = 0
    node_position: int = 0
    node_repeat: int = 0
    attempt: int = 1
    plan_position: int | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "caseRunId": self.case_run_id,
            "caseIdentity": self.case_identity,
            "nextPhase": self.next_phase,
            "reason": self.reason,
            "delaySec": self.delay_sec,
            "nodeId": self.node_id,
            "suiteRunId": self.suite_run_id,
            "currentIteration": self.suite_iteration,
            "currentNodeIndex": self.node_position,
            "currentRepeat": self.node_repeat,
            "attempt": self.attempt,
            "planNodeIndex": self.plan_position,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Suspension:
        try:
            return cls(
                case_run_id=str(data["caseRunId"]),
                case_identity=str(data["caseIdentity"]),
                next_phase=int(data["nextPhase"]),
                reason=str(data["reason"]),
                delay_sec=data.get("delaySec"),
                node_id=data.get("nodeId"),
                suite_run_id=data.get("suiteRunId"),
                suite_iteration=int(data.get("currentIteration", 0)),
                node_position=int(data.get("currentNodeIndex", 0)),
                node_repeat=int(data.get("currentRepeat", 0)),
                attempt=int(data.get("attempt", 1)),
                plan_position=data.get("planNodeIndex"),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise ProtocolError(
                ErrorCode.RESUME_SESSION_INVALID, f"session cursor is malformed: {exc}"
            ) from exc

    def reboot_info(self) -> RebootInfo:
        return RebootInfo(
            next_phase=self.next_phase,
            reason=self.reason,
            delay_sec=self.delay_sec,
            origin_test_id=self.case_identity.partition("@")[0],
        )


@dataclass(frozen=True, slots=True)
class WalkOutcome:
    """What the top-level node of a walk produced."""

    run_id: str
    run_type: RunType
    status: RunStatus
    folder: Path
    result: CaseResult | GroupResult
    suspension: Suspension | None = None


@dataclass(slots=True)
class _GroupState:
    folder: GroupRunFolder
    started: datetime
    settled: dict[Slot, ChildEntry]
    child_run_ids: list[str]

    def record(self, entry: ChildEntry) -> None:
        self.folder.append_child(entry)
        if entry.status is RunStatus.REBOOT_REQUIRED:
            self.settled.pop(entry.slot, None)
        else:
            self.settled[entry.slot] = entry
        if entry.run_id not in self.child_run_ids:
            self.child_run_ids.append(entry.run_id)

    @property
    def statuses(self) -> list[RunStatus]:
        return [entry.status for entry in self.settled.values()]


class TreeWalker:
    """Walks an execution arena sequentially and persists group records."""

    def __init__(
        self,
        case_runner: CaseRunner,
        runs_root: Path,
        index: RunIndex,
        *,
        cancel_token: CancellationToken | None = None,
        logger: Any | None = None,
    ) -> None:
        self._runner = case_runner
        self._runs_root = runs_root
        self._index = index
        self._cancel_token = cancel_token
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def _cancelled(self) -> bool:
        return self._cancel_token is not None and self._cancel_token.is_cancelled

    async def walk(
        self,
        arena: ExecutionArena,
        *,
        notices: Sequence[tuple[EventCode, str]] = (),
    ) -> WalkOutcome:
        """Run ``arena`` from the beginning; ``notices`` are emitted into the root folder."""
        return await self._dispatch(arena, resume=None, root_run_id=None, notices=notices)

    async def resume(self, arena: ExecutionArena, suspension: Suspension, *, root_run_id: str) -> WalkOutcome:
        """Continue a suspended walk at the case recorded in ``suspension``."""
        return await self._dispatch(arena, resume=suspension, root_run_id=root_run_id, notices=())

    async def _dispatch(
        self,
        arena: ExecutionArena,
        *,
        resume: Suspension | None,
        root_run_id: str | None,
        notices: Sequence[tuple[EventCode, str]],
    ) -> WalkOutcome:
        root = arena.root
        if root.kind is NodeKind.CASE:
            return await self._walk_case_root(root, resume, notices)
        if root.kind is NodeKind.SUITE:
            result, suspension = await self._walk_suite(
                arena,
                root,
                lineage=NodeLineage(),
                resume=resume,
                top_level=True,
                notices=notices,
            )
            run_type = RunType.TEST_SUITE
        else:
            result, suspension = await self._walk_plan(arena, resume, root_run_id, notices)
            run_type = RunType.TEST_PLAN
        return WalkOutcome(
            run_id=result.run_id,
            run_type=run_type,
            status=result.status,
            folder=self._runs_root / result.run_id,
            result=result,
            suspension=suspension,
        )

    async def _walk_case_root(
        self,
        root: ArenaNode,
        resume: Suspension | None,
        notices: Sequence[tuple[EventCode, str]],
    ) -> WalkOutcome:
        assert root.invocation is not None
        if resume is not None:
            outcome = await self._runner.run(
                root.invocation,
                phase=resume.next_phase,
                folder=CaseRunFolder(self._runs_root / resume.case_run_id),
                resumed=True,
            )
        else:
            folder = self._runner.allocate_folder()
            _emit_notices(folder.events, notices)
            outcome = await self._runner.run(root.invocation, folder=folder)
        suspension = None
        if outcome.reboot_request is not None:
            suspension = self._suspension(root, outcome)
            self._logger.info("walk_suspended", run_id=outcome.result.run_id, next_phase=suspension.next_phase)
        return WalkOutcome(
            run_id=outcome.result.run_id,
            run_type=RunType.TEST_CASE,
            status=outcome.status,
            folder=outcome.folder.path,
            result=outcome.result,
            suspension=suspension,
        )

    async def _walk_suite(
        self,
        arena: ExecutionArena,
        node: ArenaNode,
        *,
        lineage: NodeLineage,
        resume: Suspension | None,
        top_level: bool,
        notices: Sequence[tuple[EventCode, str]] = (),
    ) -> tuple[GroupResult, Suspension | None]:
        state = self._open_group(
            arena,
            node,
            run_type=RunType.TEST_SUITE,
            resume_run_id=resume.suite_run_id if resume else None,
            top_level=top_level,
            notices=notices,
        )
        with correlation_scope(run_id=state.folder.run_id, node_id=node.node_id):
            try:
                suspension = await self._walk_suite_nodes(arena, node, state, resume)
            except ProcessTerminationError as exc:
                self._finish_group(node, RunType.TEST_SUITE, state, lineage, error=_termination_error(exc))
                raise
            result = self._finish_group(node, RunType.TEST_SUITE, state, lineage, suspension=suspension)
        return result, suspension

    async def _walk_suite_nodes(
        self,
        arena: ExecutionArena,
        node: ArenaNode,
        state: _GroupState,
        resume: Suspension | None,
    ) -> Suspension | None:
        cases = arena.children(node.index)
        start_iteration = resume.suite_iteration if resume else 0
        aborting = False
        for iteration in range(start_iteration, node.controls.repeat):
            for position, case_node in enumerate(cases):
                for repeat_index in range(case_node.repeat):
                    slot = (case_node.node_id or "", iteration, repeat_index)
                    if slot in state.settled:
                        continue
                    if aborting:
                        self._record_case(
                            state,
                            case_node,
                            self._runner.record_aborted(self._bound(case_node, state), _ABORT_REASON),
                            iteration,
                            repeat_index,
                        )
                        continue
                    if self._cancelled:
                        self._logger.info("walk_cancelled", run_id=state.folder.run_id)
                        return None
                    pending = None
                    if resume is not None and (iteration, position, repeat_index) == (
                        resume.suite_iteration,
                        resume.node_position,
                        resume.node_repeat,
                    ):
                        pending, resume = resume, None
                    outcome, suspension = await self._run_case_node(
                        state, case_node, iteration, position, repeat_index, pending
                    )
                    if suspension is not None:
                        return suspension
                    if outcome.status is not RunStatus.PASSED and not node.continue_on_failure:
                        aborting = True
                        self._logger.info(
                            "continue_on_failure_stop",
                            run_id=state.folder.run_id,
                            node_id=case_node.node_id,
                            status=outcome.status.value,
                        )
            if aborting:
                break
        return None

    async def _run_case_node(
        self,
        state: _GroupState,
        case_node: ArenaNode,
        iteration: int,
        position: int,
        repeat_index: int,
        resume: Suspension | None,
    ) -> tuple[CaseOutcome, Suspension | None]:
        invocation = self._bound(case_node, state)
        max_attempts = 1 + case_node.retry_on_error
        attempt = resume.attempt if resume else 1
        while True:
            if resume is not None:
                outcome = await self._runner.run(
                    invocation,
                    phase=resume.next_phase,
                    folder=CaseRunFolder(self._runs_root / resume.case_run_id),
                    resumed=True,
                )
                resume = None
            else:
                outcome = await self._runner.run(invocation)
            self._record_case(state, case_node, outcome, iteration, repeat_index, attempt)

            if outcome.reboot_request is not None:
                suspension = replace(
                    self._suspension(case_node, outcome),
                    suite_run_id=state.folder.run_id,
                    suite_iteration=iteration,
                    node_position=position,
                    node_repeat=repeat_index,
                    attempt=attempt,
                )
                self._logger.info(
                    "walk_suspended",
                    run_id=state.folder.run_id,
                    case_run_id=outcome.result.run_id,
                    next_phase=suspension.next_phase,
                )
                return outcome, suspension

            if outcome.status is RunStatus.ERROR and attempt < max_attempts and not self._cancelled:
                attempt += 1
                self._logger.info(
                    "node_retry_scheduled",
                    run_id=state.folder.run_id,
                    node_id=case_node.node_id,
                    attempt=attempt,
                    max_attempts=max_attempts,
                )
                state.folder.events.info(
                    EventCode.NODE_RETRY,
                    f"retrying {case_node.node_id} after Error",
                    nodeId=case_node.node_id,
                    attempt=attempt,
                    failedRunId=outcome.result.run_id,
                )
                continue
            return outcome, None

    async def _walk_plan(
        self,
        arena: ExecutionArena,
        resume: Suspension | None,
        root_run_id: str | None,
        notices: Sequence[tuple[EventCode, str]],
    ) -> tuple[GroupResult, Suspension | None]:
        root = arena.root
        plan = root.entity.manifest  # type: ignore[union-attr]
        state = self._open_group(
            arena,
            root,
            run_type=RunType.TEST_PLAN,
            resume_run_id=root_run_id if resume else None,
            top_level=True,
            notices=notices,
        )
        suspension: Suspension | None = None
        with correlation_scope(run_id=state.folder.run_id):
            aborting = False
            try:
                for position, suite_node in enumerate(arena.children(root.index)):
                    slot = (suite_node.node_id or "", 0, 0)
                    if slot in state.settled:
                        continue
                    child_lineage = NodeLineage(
                        node_id=suite_node.node_id,
                        plan_id=plan.id,
                        plan_version=plan.version,
                        parent_run_id=state.folder.run_id,
                    )
                    if aborting:
                        aborted = self._record_aborted_group(arena, suite_node, child_lineage)
                        state.record(_suite_entry(suite_node, aborted))
                        continue
                    if self._cancelled:
                        self._logger.info("walk_cancelled", run_id=state.folder.run_id)
                        break
                    pending = None
                    if resume is not None and resume.plan_position == position:
                        pending, resume = resume, None
                    result, suspension = await self._walk_suite(
                        arena, suite_node, lineage=child_lineage, resume=pending, top_level=False
                    )
                    state.record(_suite_entry(suite_node, result))
                    if suspension is not None:
                        suspension = replace(suspension, plan_position=position)
                        break
                    if result.status is not RunStatus.PASSED and not root.continue_on_failure:
                        aborting = True
                        self._logger.info(
                            "continue_on_failure_stop",
                            run_id=state.folder.run_id,
                            node_id=suite_node.node_id,
                            status=result.status.value,
                        )
            except ProcessTerminationError as exc:
                self._finish_group(root, RunType.TEST_PLAN, state, NodeLineage(), error=_termination_error(exc))
                raise
            result = self._finish_group(root, RunType.TEST_PLAN, state, NodeLineage(), suspension=suspension)
        return result, suspension

    def _open_group(
        self,
        arena: ExecutionArena,
        node: ArenaNode,
        *,
        run_type: RunType,
        resume_run_id: str | None,
        top_level: bool,
        notices: Sequence[tuple[EventCode, str]],
    ) -> _GroupState:
        resumed_code, started_code = (
            (EventCode.SUITE_RESUMED, EventCode.SUITE_STARTED)
            if run_type is RunType.TEST_SUITE
            else (EventCode.PLAN_RESUMED, EventCode.PLAN_STARTED)
        )
        if resume_run_id is not None:
            folder = GroupRunFolder(self._runs_root / resume_run_id)
            entries = folder.read_children()
            previous = folder.read_result() or {}
            folder.events.info(resumed_code, f"{node.identity} resuming")
            child_run_ids: list[str] = []
            for entry in entries:
                if entry.run_id not in child_run_ids:
                    child_run_ids.append(entry.run_id)
            return _GroupState(
                folder=folder,
                started=parse_timestamp(previous.get("startTime")) or utc_now(),
                settled=settled_children(entries),
                child_run_ids=child_run_ids,
            )

        prefix = SUITE_RUN_PREFIX if run_type is RunType.TEST_SUITE else PLAN_RUN_PREFIX
        folder = GroupRunFolder.allocate(self._runs_root, generate_run_id(prefix))
        self._write_group_snapshots(folder, node)
        if top_level:
            folder.write_run_request(arena.request.to_dict())
        folder.events.info(started_code, f"{node.identity} starting", nodeId=node.node_id)
        _emit_notices(folder.events, notices)
        for warning in arena.warnings:
            if warning.payload.get("suite") == node.identity:
                folder.events.warning(EventCode.MAX_PARALLEL_IGNORED, warning.message, **dict(warning.payload))
        return _GroupState(folder=folder, started=utc_now(), settled={}, child_run_ids=[])

    def _write_group_snapshots(self, folder: GroupRunFolder, node: ArenaNode) -> None:
        manifest = node.entity.manifest if node.entity is not None else None
        folder.write_manifest_snapshot(
            {
                "sourceManifest": dict(manifest.raw) if manifest is not None else {},
                "resolvedIdentity": node.identity,
                "resolvedAt": format_timestamp(utc_now()),
                "engineVersion": ENGINE_VERSION,
            }
        )
        folder.write_controls(
            {**node.controls.to_dict(), "continueOnFailure": node.continue_on_failure}
        )
        folder.write_environment(node.environment.redacted_overlay())

    def _finish_group(
        self,
        node: ArenaNode,
        run_type: RunType,
        state: _GroupState,
        lineage: NodeLineage,
        *,
        suspension: Suspension | None = None,
        error: ErrorInfo | None = None,
    ) -> GroupResult:
        statuses = state.statuses
        message: str | None = None
        reboot: RebootInfo | None = None
        if error is not None:
            status = RunStatus.ERROR
        elif suspension is not None:
            status = RunStatus.REBOOT_REQUIRED
            reboot = suspension.reboot_info()
            message = f"suspended for reboot at {suspension.case_run_id}"
        else:
            status = aggregate_status(statuses, cancelled=self._cancelled)

        identity_id, _, identity_version = node.identity.partition("@")
        result = GroupResult(
            run_id=state.folder.run_id,
            run_type=run_type,
            entity_id=identity_id,
            entity_version=identity_version,
            status=status,
            start_time=state.started,
            end_time=utc_now(),
            lineage=lineage,
            counts=StatusCounts.tally(statuses),
            child_run_ids=tuple(state.child_run_ids),
            message=message,
            error=error,
            reboot=reboot,
        )
        state.folder.write_result(result)
        self._index.append(IndexEntry.from_group(result))
        completed = EventCode.SUITE_COMPLETED if run_type is RunType.TEST_SUITE else EventCode.PLAN_COMPLETED
        state.folder.events.info(completed, f"finished with {status.value}", status=status.value)
        self._logger.info(
            "group_finished",
            run_id=result.run_id,
            run_type=run_type.value,
            status=status.value,
            total=result.counts.total,
        )
        return result

    def _record_aborted_group(
        self, arena: ExecutionArena, node: ArenaNode, lineage: NodeLineage
    ) -> GroupResult:
        folder = GroupRunFolder.allocate(self._runs_root, generate_run_id(SUITE_RUN_PREFIX))
        self._write_group_snapshots(folder, node)
        folder.events.warning(EventCode.NODE_ABORTED, _ABORT_REASON, nodeId=node.node_id)
        identity_id, _, identity_version = node.identity.partition("@")
        now = utc_now()
        result = GroupResult(
            run_id=folder.run_id,
            run_type=RunType.TEST_SUITE,
            entity_id=identity_id,
            entity_version=identity_version,
            status=RunStatus.ABORTED,
            start_time=now,
            end_time=now,
            lineage=lineage,
            message=_ABORT_REASON,
        )
        folder.write_result(result)
        self._index.append(IndexEntry.from_group(result))
        return result

    def _record_case(
        self,
        state: _GroupState,
        case_node: ArenaNode,
        outcome: CaseOutcome,
        iteration: int,
        repeat_index: int,
        attempt: int = 1,
    ) -> None:
        result = outcome.result
        state.record(
            ChildEntry(
                run_id=result.run_id,
                node_id=case_node.node_id or "",
                status=result.status,
                test_id=result.test_id,
                test_version=result.test_version,
                iteration=iteration,
                repeat_index=repeat_index,
                attempt=attempt,
            )
        )

    def _bound(self, case_node: ArenaNode, state: _GroupState) -> CaseInvocation:
        assert case_node.invocation is not None
        invocation = case_node.invocation
        return replace(invocation, lineage=replace(invocation.lineage, parent_run_id=state.folder.run_id))

    def _suspension(self, node: ArenaNode, outcome: CaseOutcome) -> Suspension:
        request = outcome.reboot_request
        assert request is not None
        return Suspension(
            case_run_id=outcome.result.run_id,
            case_identity=node.identity,
            next_phase=request.next_phase,
            reason=request.reason,
            delay_sec=request.delay_sec,
            node_id=node.node_id,
        )


def _suite_entry(node: ArenaNode, result: GroupResult) -> ChildEntry:
    return ChildEntry(
        run_id=result.run_id,
        node_id=node.node_id or "",
        status=result.status,
        suite_id=result.entity_id,
        suite_version=result.entity_version,
    )


def _emit_notices(events: EventLog, notices: Sequence[tuple[EventCode, str]]) -> None:
    for code, message in notices:
        events.warning(code, message)


def _termination_error(exc: ProcessTerminationError) -> ErrorInfo:
    return ErrorInfo(type="ProcessTerminationError", source="Orchestrator", message=str(exc), code=exc.code.value)


__all__ = ["Suspension", "TreeWalker", "WalkOutcome"]
