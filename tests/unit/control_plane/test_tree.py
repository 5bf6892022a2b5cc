"""
pctest-orchestrator — unit tests for arena construction

File: tests/unit/control_plane/test_tree.py
Last updated: 2026-10-17

Purpose
- Validate the pre-flight arena: node order, privilege roll-up, environment layering,
  override targeting and collected validation issues.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from pctest_orchestrator.control_plane.tree import NodeKind, build_arena
from pctest_orchestrator.discovery.scanner import DiscoveryRoots, discover
from pctest_orchestrator.domain.errors import ErrorCode, ValidationError
from pctest_orchestrator.domain.models import Privilege, RunRequest

if TYPE_CHECKING:
    from conftest import Workspace
    from pctest_orchestrator.control_plane.tree import ExecutionArena


def _arena(workspace: Workspace, request: dict[str, Any], **env: str) -> ExecutionArena:
    discovery = discover(
        DiscoveryRoots(
            test_cases_root=workspace.cases,
            test_suites_root=workspace.suites,
            test_plans_root=workspace.plans,
        )
    )
    return build_arena(
        RunRequest.from_dict(request),
        discovery,
        cases_root=workspace.cases,
        base_environment={"PATH": "/bin", **env},
    )


def _codes(excinfo: pytest.ExceptionInfo[ValidationError]) -> list[str]:
    return sorted(code.value for code in excinfo.value.codes)


def test_suite_arena_lists_children_after_parent(workspace: Workspace) -> None:
    workspace.case("A", case_id="A")
    workspace.case("B", case_id="B", privilege="AdminPreferred")
    workspace.suite(
        "Smoke",
        suite_id="Smoke",
        nodes=[{"nodeId": "a", "ref": "A"}, {"nodeId": "b", "ref": "B", "controls": {"retryOnError": 2}}],
        controls={"retryOnError": 1},
    )

    arena = _arena(workspace, {"suite": "Smoke@1.0"})

    assert [node.kind for node in arena.nodes] == [NodeKind.SUITE, NodeKind.CASE, NodeKind.CASE]
    assert [node.node_id for node in arena.children(0)] == ["a", "b"]
    assert [node.retry_on_error for node in arena.children(0)] == [1, 2]
    assert arena.root.effective_privilege is Privilege.ADMIN_PREFERRED
    invocation = arena.nodes[1].invocation
    assert invocation is not None
    assert invocation.lineage.suite_id == "Smoke"


def test_environment_layers_plan_suite_request(workspace: Workspace) -> None:
    workspace.case("A", case_id="A")
    workspace.suite(
        "Smoke",
        suite_id="Smoke",
        nodes=[{"nodeId": "a", "ref": "A"}],
        environment={"env": {"LEVEL": "suite", "SUITE_ONLY": "1"}},
    )
    workspace.plan(
        "Nightly",
        plan_id="Nightly",
        suites=["Smoke@1.0"],
        environment={"env": {"LEVEL": "plan", "PLAN_ONLY": "1"}},
    )

    arena = _arena(
        workspace, {"plan": "Nightly@1.0", "environmentOverrides": {"env": {"REQ": "1"}}}, LEVEL="os"
    )

    case = arena.nodes[2]
    assert case.invocation is not None
    env = case.invocation.environment
    assert env.get("LEVEL") == "suite"
    assert env.get("PLAN_ONLY") == "1"
    assert env.get("REQ") == "1"
    assert env.get("PATH") == "/bin"
    assert arena.root.environment.get("LEVEL") == "plan"


def test_request_overrides_beat_node_inputs(workspace: Workspace) -> None:
    workspace.case("A", case_id="A", parameters=[{"name": "N", "type": "int", "default": 1}])
    workspace.suite("Smoke", suite_id="Smoke", nodes=[{"nodeId": "a", "ref": "A", "inputs": {"N": 2}}])

    plain = _arena(workspace, {"suite": "Smoke@1.0"})
    overridden = _arena(workspace, {"suite": "Smoke@1.0", "nodeOverrides": {"a": {"inputs": {"N": 3}}}})

    assert plain.nodes[1].invocation.inputs.values == {"N": 2}  # type: ignore[union-attr]
    assert overridden.nodes[1].invocation.inputs.values == {"N": 3}  # type: ignore[union-attr]


def test_all_issues_are_collected_before_failing(workspace: Workspace) -> None:
    workspace.case("A", case_id="A", parameters=[{"name": "N", "type": "int", "required": True}])
    workspace.suite(
        "Broken",
        suite_id="Broken",
        nodes=[
            {"nodeId": "a", "ref": "A"},
            {"nodeId": "ghost", "ref": "Ghost"},
            {"nodeId": "a", "ref": "A", "inputs": {"N": 1}},
        ],
    )

    with pytest.raises(ValidationError) as excinfo:
        _arena(workspace, {"suite": "Broken@1.0", "nodeOverrides": {"nope": {"inputs": {}}}})

    assert _codes(excinfo) == sorted(
        [
            ErrorCode.SUITE_NODE_ID_DUPLICATE.value,
            ErrorCode.RUN_REQUEST_UNKNOWN_NODE_ID.value,
            ErrorCode.PARAMETER_REQUIRED.value,
            ErrorCode.SUITE_TEST_CASE_REF_INVALID.value,
        ]
    )


def test_plan_rejects_input_overrides(workspace: Workspace) -> None:
    workspace.plan("Nightly", plan_id="Nightly", suites=[])

    with pytest.raises(ValidationError) as excinfo:
        _arena(workspace, {"plan": "Nightly@1.0", "nodeOverrides": {"a": {"inputs": {"X": 1}}}})

    assert _codes(excinfo) == [ErrorCode.RUN_REQUEST_PLAN_INPUT_OVERRIDE.value]


def test_plan_suite_ref_not_found_names_the_node(workspace: Workspace) -> None:
    workspace.plan("Nightly", plan_id="Nightly", suites=["Missing@1.0"])

    with pytest.raises(ValidationError) as excinfo:
        _arena(workspace, {"plan": "Nightly@1.0"})

    issue = excinfo.value.issues[0]
    assert issue.code is ErrorCode.PLAN_SUITE_REF_NOT_FOUND
    assert issue.payload["nodeId"] == "Missing@1.0"


def test_plan_environment_rejects_unknown_keys(workspace: Workspace) -> None:
    workspace.plan("Nightly", plan_id="Nightly", suites=[], environment={"env": {}, "workingDir": "x"})

    with pytest.raises(ValidationError) as excinfo:
        _arena(workspace, {"plan": "Nightly@1.0"})

    assert _codes(excinfo) == [ErrorCode.PLAN_ENVIRONMENT_INVALID_KEY.value]


def test_empty_environment_key_is_rejected(workspace: Workspace) -> None:
    workspace.case("A", case_id="A")

    with pytest.raises(ValidationError) as excinfo:
        _arena(workspace, {"testCase": "A@1.0", "environmentOverrides": {"env": {"": "x"}}})

    assert _codes(excinfo) == [ErrorCode.ENVIRONMENT_KEY_EMPTY.value]


def test_working_dir_escape_is_rejected(workspace: Workspace) -> None:
    workspace.case("A", case_id="A")
    workspace.suite(
        "Smoke",
        suite_id="Smoke",
        nodes=[{"nodeId": "a", "ref": "A"}],
        environment={"workingDir": "../outside"},
    )

    with pytest.raises(ValidationError) as excinfo:
        _arena(workspace, {"suite": "Smoke@1.0"})

    assert _codes(excinfo) == [ErrorCode.WORKING_DIR_CONTAINMENT_FAILED.value]


def test_max_parallel_is_only_a_warning(workspace: Workspace) -> None:
    workspace.case("A", case_id="A")
    workspace.suite("Smoke", suite_id="Smoke", nodes=[{"nodeId": "a", "ref": "A"}], controls={"maxParallel": 4})

    arena = _arena(workspace, {"suite": "Smoke@1.0"})

    assert [warning.code for warning in arena.warnings] == [ErrorCode.CONTROLS_MAX_PARALLEL_IGNORED]


def test_unknown_target_is_not_found(workspace: Workspace) -> None:
    with pytest.raises(ValidationError) as excinfo:
        _arena(workspace, {"testCase": "Nope@1.0"})

    assert _codes(excinfo) == [ErrorCode.RUN_REQUEST_IDENTITY_NOT_FOUND.value]
