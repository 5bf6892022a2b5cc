"""
pctest-orchestrator — unit tests for the engine facade

File: tests/unit/control_plane/test_engine.py
Last updated: 2026-10-17

Purpose
- Pre-flight rejection leaves an auditable record; the privilege gate runs before spawn.
- A process tree that cannot be killed ends the run as an Error at every level.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from conftest import FAIL_SCRIPT, SLEEP_SCRIPT, build_engine, read_json, read_json_lines

from pctest_orchestrator.domain.errors import (
    DiscoveryError,
    ErrorCode,
    ProcessTerminationError,
    ProtocolError,
    ValidationError,
)
from pctest_orchestrator.execution import process as process_module
from pctest_orchestrator.domain.models import RunRequest, RunStatus, RunType

if TYPE_CHECKING:
    from conftest import RecordingLogger, Workspace


async def test_standalone_case_run(workspace: Workspace) -> None:
    workspace.case("Fail", case_id="Fail", script=FAIL_SCRIPT)
    engine = build_engine(workspace)

    report = await engine.run(RunRequest.from_dict({"testCase": "Fail@1.0"}))

    assert report.run_type is RunType.TEST_CASE
    assert report.status is RunStatus.FAILED
    assert report.resume_token is None
    assert report.to_dict()["status"] == "Failed"
    result = read_json(report.folder / "result.json")
    assert result["testId"] == "Fail"
    assert result["exitCode"] == 1
    [line] = workspace.index_lines()
    assert line["runId"] == report.run_id
    assert line["status"] == "Failed"


async def test_rejected_request_still_leaves_a_record(workspace: Workspace) -> None:
    engine = build_engine(workspace)

    with pytest.raises(ValidationError) as excinfo:
        await engine.run(RunRequest.from_dict({"testCase": "Missing@2.0"}))

    assert excinfo.value.codes == (ErrorCode.RUN_REQUEST_IDENTITY_NOT_FOUND,)
    [folder] = workspace.run_folders("R")
    result = read_json(folder / "result.json")
    assert result["status"] == "Error"
    assert result["issues"][0]["code"] == ErrorCode.RUN_REQUEST_IDENTITY_NOT_FOUND.value
    assert read_json(folder / "runRequest.json") == {"testCase": "Missing@2.0"}
    [line] = workspace.index_lines()
    assert (line["runId"], line["status"], line["testId"], line["testVersion"]) == (
        folder.name,
        "Error",
        "Missing",
        "2.0",
    )


async def test_discovery_conflict_rejects_every_run(workspace: Workspace) -> None:
    workspace.case("One", case_id="Same")
    workspace.case("Two", case_id="Same")
    workspace.suite("Smoke", suite_id="Smoke", nodes=[{"nodeId": "a", "ref": "One"}])
    engine = build_engine(workspace)

    with pytest.raises(DiscoveryError):
        await engine.run(RunRequest.from_dict({"suite": "Smoke@1.0"}))

    [folder] = workspace.run_folders("S")
    assert read_json(folder / "result.json")["status"] == "Error"
    assert workspace.index_lines()[0]["suiteId"] == "Smoke"


async def test_admin_required_is_rejected_before_spawn(workspace: Workspace) -> None:
    workspace.case("Admin", case_id="Admin", privilege="AdminRequired")
    workspace.case("User", case_id="User")
    workspace.suite(
        "Mixed", suite_id="Mixed", nodes=[{"nodeId": "u", "ref": "User"}, {"nodeId": "a", "ref": "Admin"}]
    )
    engine = build_engine(workspace, is_elevated=False)

    with pytest.raises(ValidationError) as excinfo:
        await engine.run(RunRequest.from_dict({"suite": "Mixed@1.0"}))

    assert excinfo.value.codes == (ErrorCode.PRIVILEGE_REQUIRED,)
    assert workspace.run_folders("R") == []
    assert len(workspace.run_folders("S")) == 1


async def test_admin_required_runs_when_elevated(workspace: Workspace) -> None:
    workspace.case("Admin", case_id="Admin", privilege="AdminRequired")
    engine = build_engine(workspace, is_elevated=True)

    report = await engine.run(RunRequest.from_dict({"testCase": "Admin@1.0"}))

    assert report.status is RunStatus.PASSED


async def test_admin_preferred_warns_and_runs(workspace: Workspace, decisions: RecordingLogger) -> None:
    workspace.case("Pref", case_id="Pref", privilege="AdminPreferred")
    engine = build_engine(workspace, logger=decisions, is_elevated=False)

    report = await engine.run(RunRequest.from_dict({"testCase": "Pref@1.0"}))

    assert report.status is RunStatus.PASSED
    assert decisions.events("privilege_warning") == [{"target": "Pref@1.0", "privilege": "AdminPreferred"}]
    codes = [event["code"] for event in read_json_lines(report.folder / "events.jsonl")]
    assert "Privilege.Warning" in codes


async def test_resume_of_unknown_run_is_a_protocol_error(workspace: Workspace) -> None:
    engine = build_engine(workspace)

    with pytest.raises(ProtocolError) as excinfo:
        await engine.resume("S-20261017-000000-0000", "token")

    assert excinfo.value.code is ErrorCode.RESUME_SESSION_INVALID


async def test_unkillable_case_errors_the_case_and_its_suite(
    workspace: Workspace, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def never_exits(process: object, timeout: float) -> bool:
        return False

    monkeypatch.setattr(process_module, "_wait_exit", never_exits)
    workspace.case("Hang", case_id="Hang", script=SLEEP_SCRIPT, timeout_sec=1)
    workspace.case("Next", case_id="Next")
    workspace.suite(
        "Stuck",
        suite_id="Stuck",
        nodes=[{"nodeId": "hang", "ref": "Hang"}, {"nodeId": "next", "ref": "Next"}],
    )

    with pytest.raises(ProcessTerminationError) as excinfo:
        await build_engine(workspace).run(RunRequest.from_dict({"suite": "Stuck@1.0"}))

    assert excinfo.value.code is ErrorCode.PROCESS_KILL_FAILED
    [case_folder] = workspace.run_folders("R")
    case_result = read_json(case_folder / "result.json")
    assert case_result["status"] == "Error"
    assert case_result["error"]["code"] == "Process.Kill.Failed"
    [suite_folder] = workspace.run_folders("S")
    suite_result = read_json(suite_folder / "result.json")
    assert suite_result["status"] == "Error"
    assert suite_result["error"]["code"] == "Process.Kill.Failed"
    assert [(line["runType"], line["status"]) for line in workspace.index_lines()] == [
        ("TestCase", "Error"),
        ("TestSuite", "Error"),
    ]
