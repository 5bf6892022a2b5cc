"""
pctest-orchestrator — authoritative run result records

File: src/pctest_orchestrator/domain/results.py
Last updated: 2026-10-17

Purpose
- Define the engine-owned records persisted per run: case results, group (suite/plan)
  results, index lines, and children.jsonl entries.

Functional requirements
- Records serialize to the camelCase JSON shapes consumed by external tools.
- Group status is derived by a single precedence rule so every caller agrees.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Final

from pctest_orchestrator.constants import RESULT_SCHEMA_VERSION, RUNNER_VERSION
from pctest_orchestrator.domain.models import JSONValue, RunStatus, RunType

# Highest first; an empty group falls through to Passed.
_AGGREGATE_PRECEDENCE: Final[tuple[RunStatus, ...]] = (
    RunStatus.ERROR,
    RunStatus.TIMEOUT,
    RunStatus.FAILED,
    RunStatus.ABORTED,
)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def aggregate_status(statuses: Iterable[RunStatus], *, cancelled: bool = False) -> RunStatus:
    """Fold child statuses into one group status (``Error > Timeout > Failed > Aborted``)."""
    if cancelled:
        return RunStatus.ABORTED
    seen = set(statuses)
    for status in _AGGREGATE_PRECEDENCE:
        if status in seen:
            return status
    return RunStatus.PASSED


def _drop_none(payload: dict[str, Any]) -> dict[str, JSONValue]:
    return {key: value for key, value in payload.items() if value is not None}


@dataclass(frozen=True, slots=True)
class ErrorInfo:
    type: str
    message: str
    source: str = "Runner"
    stack: str | None = None
    code: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return _drop_none(
            {
                "type": self.type,
                "source": self.source,
                "message": self.message,
                "stack": self.stack,
                "code": self.code,
            }
        )


@dataclass(frozen=True, slots=True)
class RebootInfo:
    next_phase: int
    reason: str
    delay_sec: int | None = None
    origin_test_id: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return _drop_none(
            {
                "nextPhase": self.next_phase,
                "reason": self.reason,
                "delaySec": self.delay_sec,
                "originTestId": self.origin_test_id,
            }
        )


@dataclass(frozen=True, slots=True)
class NodeLineage:
    """Identifiers that place a run inside its suite/plan ancestry."""

    node_id: str | None = None
    suite_id: str | None = None
    suite_version: str | None = None
    plan_id: str | None = None
    plan_version: str | None = None
    parent_run_id: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "nodeId": self.node_id,
            "suiteId": self.suite_id,
            "suiteVersion": self.suite_version,
            "planId": self.plan_id,
            "planVersion": self.plan_version,
            "parentRunId": self.parent_run_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> NodeLineage:
        return cls(
            node_id=data.get("nodeId"),
            suite_id=data.get("suiteId"),
            suite_version=data.get("suiteVersion"),
            plan_id=data.get("planId"),
            plan_version=data.get("planVersion"),
            parent_run_id=data.get("parentRunId"),
        )


@dataclass(frozen=True, slots=True)
class CaseResult:
    """The authoritative outcome of one leaf invocation."""

    run_id: str
    test_id: str
    test_version: str
    status: RunStatus
    start_time: datetime
    end_time: datetime
    lineage: NodeLineage = field(default_factory=NodeLineage)
    exit_code: int | None = None
    phase: int = 0
    effective_inputs: Mapping[str, JSONValue] = field(default_factory=dict)
    error: ErrorInfo | None = None
    reboot: RebootInfo | None = None
    self_report: JSONValue = None

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, Any] = {
            "schemaVersion": RESULT_SCHEMA_VERSION,
            "runType": RunType.TEST_CASE.value,
            "runId": self.run_id,
            "testId": self.test_id,
            "testVersion": self.test_version,
            **self.lineage.to_dict(),
            "status": self.status.value,
            "startTime": format_timestamp(self.start_time),
            "endTime": format_timestamp(self.end_time),
            "exitCode": self.exit_code,
            "phase": self.phase,
            "effectiveInputs": dict(self.effective_inputs),
            "error": self.error.to_dict() if self.error else None,
            "reboot": self.reboot.to_dict() if self.reboot else None,
            "selfReport": self.self_report,
            "runner": {"version": RUNNER_VERSION},
        }
        return _drop_none(payload)


@dataclass(frozen=True, slots=True)
class StatusCounts:
    passed: int = 0
    failed: int = 0
    error: int = 0
    timeout: int = 0
    aborted: int = 0
    reboot_required: int = 0

    @property
    def total(self) -> int:
        return self.passed + self.failed + self.error + self.timeout + self.aborted + self.reboot_required

    @classmethod
    def tally(cls, statuses: Iterable[RunStatus]) -> StatusCounts:
        values = list(statuses)
        return cls(
            passed=values.count(RunStatus.PASSED),
            failed=values.count(RunStatus.FAILED),
            error=values.count(RunStatus.ERROR),
            timeout=values.count(RunStatus.TIMEOUT),
            aborted=values.count(RunStatus.ABORTED),
            reboot_required=values.count(RunStatus.REBOOT_REQUIRED),
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "passed": self.passed,
            "failed": self.failed,
            "error": self.error,
            "timeout": self.timeout,
            "aborted": self.aborted,
            "rebootRequired": self.reboot_required,
            "total": self.total,
        }


@dataclass(frozen=True, slots=True)
class GroupResult:
    """The outcome of a suite or plan run."""

    run_id: str
    run_type: RunType
    entity_id: str
    entity_version: str
    status: RunStatus
    start_time: datetime
    end_time: datetime
    lineage: NodeLineage = field(default_factory=NodeLineage)
    counts: StatusCounts = field(default_factory=StatusCounts)
    child_run_ids: tuple[str, ...] = ()
    message: str | None = None
    error: ErrorInfo | None = None
    reboot: RebootInfo | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        id_key, version_key = (
            ("suiteId", "suiteVersion") if self.run_type is RunType.TEST_SUITE else ("planId", "planVersion")
        )
        payload: dict[str, Any] = {
            "schemaVersion": RESULT_SCHEMA_VERSION,
            "runType": self.run_type.value,
            "runId": self.run_id,
            **self.lineage.to_dict(),
            id_key: self.entity_id,
            version_key: self.entity_version,
            "status": self.status.value,
            "startTime": format_timestamp(self.start_time),
            "endTime": format_timestamp(self.end_time),
            "counts": self.counts.to_dict(),
            "childRunIds": list(self.child_run_ids),
            "message": self.message,
            "error": self.error.to_dict() if self.error else None,
            "reboot": self.reboot.to_dict() if self.reboot else None,
        }
        return _drop_none(payload)


@dataclass(frozen=True, slots=True)
class ChildEntry:
    """One line of a group's ``children.jsonl``."""

    run_id: str
    node_id: str
    status: RunStatus
    test_id: str | None = None
    test_version: str | None = None
    suite_id: str | None = None
    suite_version: str | None = None
    iteration: int = 0
    repeat_index: int = 0
    attempt: int = 1

    @property
    def slot(self) -> tuple[str, int, int]:
        """The (node, suite iteration, node repeat) position this entry fills."""
        return (self.node_id, self.iteration, self.repeat_index)

    def to_dict(self) -> dict[str, JSONValue]:
        return _drop_none(
            {
                "runId": self.run_id,
                "nodeId": self.node_id,
                "testId": self.test_id,
                "testVersion": self.test_version,
                "suiteId": self.suite_id,
                "suiteVersion": self.suite_version,
                "iteration": self.iteration,
                "repeatIndex": self.repeat_index,
                "attempt": self.attempt,
                "status": self.status.value,
            }
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ChildEntry:
        run_id = data.get("runId")
        node_id = data.get("nodeId")
        if not isinstance(run_id, str) or not isinstance(node_id, str):
            raise ValueError("children entry requires string runId and nodeId")
        return cls(
            run_id=run_id,
            node_id=node_id,
            status=RunStatus(data.get("status")),
            test_id=data.get("testId"),
            test_version=data.get("testVersion"),
            suite_id=data.get("suiteId"),
            suite_version=data.get("suiteVersion"),
            iteration=int(data.get("iteration", 0)),
            repeat_index=int(data.get("repeatIndex", 0)),
            attempt=int(data.get("attempt", 1)),
        )


def settled_children(entries: Iterable[ChildEntry]) -> dict[tuple[str, int, int], ChildEntry]:
    """
    Collapse a children log to the latest settled entry per slot.

    Later lines win (a retry supersedes its failed attempt). A ``RebootRequired`` line
    reopens its slot because the suspended run appends its final line when it resumes.
    """

    settled: dict[tuple[str, int, int], ChildEntry] = {}
    for entry in entries:
        if entry.status is RunStatus.REBOOT_REQUIRED:
            settled.pop(entry.slot, None)
            continue
        settled[entry.slot] = entry
    return settled


@dataclass(frozen=True, slots=True)
class IndexEntry:
    """One self-contained line of the global ``index.jsonl``."""

    run_id: str
    run_type: RunType
    status: RunStatus
    start_time: datetime
    end_time: datetime
    test_id: str | None = None
    test_version: str | None = None
    lineage: NodeLineage = field(default_factory=NodeLineage)

    @classmethod
    def from_case(cls, result: CaseResult) -> IndexEntry:
        return cls(
            run_id=result.run_id,
            run_type=RunType.TEST_CASE,
            status=result.status,
            start_time=result.start_time,
            end_time=result.end_time,
            test_id=result.test_id,
            test_version=result.test_version,
            lineage=result.lineage,
        )

    @classmethod
    def from_group(cls, result: GroupResult) -> IndexEntry:
        lineage = result.lineage
        if result.run_type is RunType.TEST_SUITE:
            lineage = NodeLineage(
                node_id=lineage.node_id,
                suite_id=result.entity_id,
                suite_version=result.entity_version,
                plan_id=lineage.plan_id,
                plan_version=lineage.plan_version,
                parent_run_id=lineage.parent_run_id,
            )
        else:
            lineage = NodeLineage(
                node_id=lineage.node_id,
                plan_id=result.entity_id,
                plan_version=result.entity_version,
                parent_run_id=lineage.parent_run_id,
            )
        return cls(
            run_id=result.run_id,
            run_type=result.run_type,
            status=result.status,
            start_time=result.start_time,
            end_time=result.end_time,
            lineage=lineage,
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "runId": self.run_id,
            "runType": self.run_type.value,
            "testId": self.test_id,
            "testVersion": self.test_version,
            **self.lineage.to_dict(),
            "startTime": format_timestamp(self.start_time),
            "endTime": format_timestamp(self.end_time),
            "status": self.status.value,
        }


__all__ = [
    "CaseResult",
    "ChildEntry",
    "ErrorInfo",
    "GroupResult",
    "IndexEntry",
    "NodeLineage",
    "RebootInfo",
    "StatusCounts",
    "aggregate_status",
    "format_timestamp",
    "parse_timestamp",
    "settled_children",
    "utc_now",
]
