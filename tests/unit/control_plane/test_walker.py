"""
pctest-orchestrator — unit tests for the sequential tree walker

File: tests/unit/control_plane/test_walker.py
Last updated: 2026-10-17

Purpose
- Cover ordering, continueOnFailure, retryOnError, repeat and plan aggregation through
  the engine facade with real (tiny) leaf scripts.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from conftest import (
    FAIL_SCRIPT,
    FLAKY_SCRIPT,
    PASS_SCRIPT,
    RecordingHook,
    build_engine,
    read_json,
    read_json_lines,
)

from pctest_orchestrator.domain.models import RunRequest, RunStatus, RunType
from pctest_orchestrator.utils.concurrency import CancellationToken

if TYPE_CHECKING:
    from conftest import RecordingLogger, Workspace


def _three_node_suite(workspace: Workspace, **controls: object) -> None:
    workspace.case("Pass", case_id="Pass")
    workspace.case("Fail", case_id="Fail", script=FAIL_SCRIPT)
    workspace.suite(
        "Smoke",
        suite_id="Smoke",
        nodes=[
            {"nodeId": "first", "ref": "Pass"},
            {"nodeId": "second", "ref": "Fail"},
            {"nodeId": "third", "ref": "Pass"},
        ],
        controls=dict(controls) or None,
    )


async def test_suite_of_passing_cases_passes(workspace: Workspace, decisions: RecordingLogger) -> None:
    workspace.case("Pass", case_id="Pass", script=PASS_SCRIPT)
    workspace.suite(
        "Smoke", suite_id="Smoke", nodes=[{"nodeId": "a", "ref": "Pass"}, {"nodeId": "b", "ref": "Pass"}]
    )
    engine = build_engine(workspace, logger=decisions, hook=RecordingHook())

    report = await engine.run(RunRequest.from_dict({"suite": "Smoke@1.0"}))

    assert report.run_type is RunType.TEST_SUITE
    assert report.status is RunStatus.PASSED
    assert report.run_id.startswith("S-")
    result = read_json(report.folder / "result.json")
    assert result["suiteId"] == "Smoke"
    assert result["counts"]["passed"] == 2
    assert result["counts"]["total"] == 2
    children = read_json_lines(report.folder / "children.jsonl")
    assert [child["nodeId"] for child in children] == ["a", "b"]
    assert result["childRunIds"] == [child["runId"] for child in children]
    assert (report.folder / "runRequest.json").is_file()
    assert len(workspace.index_lines()) == 3
    assert decisions.events("group_finished")[0]["status"] == "Passed"


async def test_first_failure_aborts_remaining_siblings(workspace: Workspace, decisions: RecordingLogger) -> None:
    _three_node_suite(workspace)
    engine = build_engine(workspace, logger=decisions)

    report = await engine.run(RunRequest.from_dict({"suite": "Smoke@1.0"}))

    assert report.status is RunStatus.FAILED
    children = read_json_lines(report.folder / "children.jsonl")
    assert [child["status"] for child in children] == ["Passed", "Failed", "Aborted"]
    aborted = read_json(workspace.runs / children[2]["runId"] / "result.json")
    assert aborted["status"] == "Aborted"
    assert aborted["nodeId"] == "third"
    assert [event["node_id"] for event in decisions.events("continue_on_failure_stop")] == ["second"]


async def test_continue_on_failure_runs_every_node(workspace: Workspace, decisions: RecordingLogger) -> None:
    _three_node_suite(workspace, continueOnFailure=True)
    engine = build_engine(workspace, logger=decisions)

    report = await engine.run(RunRequest.from_dict({"suite": "Smoke@1.0"}))

    assert report.status is RunStatus.FAILED
    children = read_json_lines(report.folder / "children.jsonl")
    assert [child["status"] for child in children] == ["Passed", "Failed", "Passed"]
    assert decisions.events("continue_on_failure_stop") == []


async def test_retry_on_error_reruns_until_pass(workspace: Workspace, decisions: RecordingLogger) -> None:
    workspace.case("Flaky", case_id="Flaky", script=FLAKY_SCRIPT)
    workspace.suite(
        "Smoke",
        suite_id="Smoke",
        nodes=[{"nodeId": "flaky", "ref": "Flaky", "controls": {"retryOnError": 2}}],
    )
    engine = build_engine(workspace, logger=decisions)

    report = await engine.run(RunRequest.from_dict({"suite": "Smoke@1.0"}))

    assert report.status is RunStatus.PASSED
    children = read_json_lines(report.folder / "children.jsonl")
    assert [(child["attempt"], child["status"]) for child in children] == [(1, "Error"), (2, "Passed")]
    assert children[0]["runId"] != children[1]["runId"]
    assert read_json(report.folder / "result.json")["counts"]["total"] == 1
    retries = decisions.events("node_retry_scheduled")
    assert [(event["attempt"], event["max_attempts"]) for event in retries] == [(2, 3)]


async def test_failed_status_is_never_retried(workspace: Workspace, decisions: RecordingLogger) -> None:
    workspace.case("Fail", case_id="Fail", script=FAIL_SCRIPT)
    workspace.suite(
        "Smoke", suite_id="Smoke", nodes=[{"nodeId": "f", "ref": "Fail"}], controls={"retryOnError": 3}
    )
    engine = build_engine(workspace, logger=decisions)

    report = await engine.run(RunRequest.from_dict({"suite": "Smoke@1.0"}))

    assert report.status is RunStatus.FAILED
    assert len(read_json_lines(report.folder / "children.jsonl")) == 1
    assert decisions.events("node_retry_scheduled") == []


async def test_suite_and_node_repeat(workspace: Workspace) -> None:
    workspace.case("Pass", case_id="Pass")
    workspace.suite(
        "Smoke",
        suite_id="Smoke",
        nodes=[{"nodeId": "a", "ref": "Pass"}, {"nodeId": "b", "ref": "Pass", "controls": {"repeat": 2}}],
        controls={"repeat": 2},
    )
    engine = build_engine(workspace)

    report = await engine.run(RunRequest.from_dict({"suite": "Smoke@1.0"}))

    assert report.status is RunStatus.PASSED
    children = read_json_lines(report.folder / "children.jsonl")
    assert [(c["nodeId"], c["iteration"], c["repeatIndex"]) for c in children] == [
        ("a", 0, 0),
        ("b", 0, 0),
        ("b", 0, 1),
        ("a", 1, 0),
        ("b", 1, 0),
        ("b", 1, 1),
    ]
    assert read_json(report.folder / "result.json")["counts"]["passed"] == 6


async def test_plan_continues_after_failed_suite_by_default(workspace: Workspace) -> None:
    workspace.case("Pass", case_id="Pass")
    workspace.case("Fail", case_id="Fail", script=FAIL_SCRIPT)
    workspace.suite("Red", suite_id="Red", nodes=[{"nodeId": "f", "ref": "Fail"}])
    workspace.suite("Green", suite_id="Green", nodes=[{"nodeId": "p", "ref": "Pass"}])
    workspace.plan("Nightly", plan_id="Nightly", suites=["Red@1.0", "Green@1.0"])
    engine = build_engine(workspace)

    report = await engine.run(RunRequest.from_dict({"plan": "Nightly@1.0"}))

    assert report.run_type is RunType.TEST_PLAN
    assert report.run_id.startswith("P-")
    assert report.status is RunStatus.FAILED
    children = read_json_lines(report.folder / "children.jsonl")
    assert [(c["suiteId"], c["status"]) for c in children] == [("Red", "Failed"), ("Green", "Passed")]
    green = read_json(workspace.runs / children[1]["runId"] / "result.json")
    assert green["planId"] == "Nightly"
    assert green["parentRunId"] == report.run_id


async def test_plan_without_continue_aborts_later_suites(workspace: Workspace, decisions: RecordingLogger) -> None:
    workspace.case("Pass", case_id="Pass")
    workspace.case("Fail", case_id="Fail", script=FAIL_SCRIPT)
    workspace.suite("Red", suite_id="Red", nodes=[{"nodeId": "f", "ref": "Fail"}])
    workspace.suite("Green", suite_id="Green", nodes=[{"nodeId": "p", "ref": "Pass"}])
    workspace.plan(
        "Nightly",
        plan_id="Nightly",
        suites=["Red@1.0", "Green@1.0"],
        controls={"continueOnFailure": False},
    )
    engine = build_engine(workspace, logger=decisions)

    report = await engine.run(RunRequest.from_dict({"plan": "Nightly@1.0"}))

    assert report.status is RunStatus.FAILED
    children = read_json_lines(report.folder / "children.jsonl")
    assert [c["status"] for c in children] == ["Failed", "Aborted"]
    aborted = read_json(workspace.runs / children[1]["runId"] / "result.json")
    assert aborted["status"] == "Aborted"
    assert not (workspace.runs / children[1]["runId"] / "children.jsonl").exists()
    assert [event["node_id"] for event in decisions.events("continue_on_failure_stop")] == ["Red@1.0"]


async def test_cancelled_walk_is_aborted(workspace: Workspace, decisions: RecordingLogger) -> None:
    workspace.case("Pass", case_id="Pass")
    workspace.suite("Smoke", suite_id="Smoke", nodes=[{"nodeId": "a", "ref": "Pass"}])
    token = CancellationToken()
    token.cancel()
    engine = build_engine(workspace, logger=decisions, cancel_token=token)

    report = await engine.run(RunRequest.from_dict({"suite": "Smoke@1.0"}))

    assert report.status is RunStatus.ABORTED
    assert read_json_lines(report.folder / "children.jsonl") == []
    assert len(decisions.events("walk_cancelled")) == 1
