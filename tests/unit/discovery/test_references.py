"""
pctest-orchestrator — unit tests for reference resolution

File: tests/unit/discovery/test_references.py
Last updated: 2026-10-17

Purpose
- Validate suite→case folder refs (OutOfRoot > NotFound > MissingManifest) and identity lookups.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest

from pctest_orchestrator.discovery.references import RefFailure, resolve_case_ref, resolve_identity
from pctest_orchestrator.discovery.scanner import DiscoveryRoots, discover
from pctest_orchestrator.domain.errors import ErrorCode
from pctest_orchestrator.domain.models import RunType

if TYPE_CHECKING:
    from conftest import Workspace


def _discover(workspace: Workspace):  # type: ignore[no-untyped-def]
    return discover(
        DiscoveryRoots(
            test_cases_root=workspace.cases,
            test_suites_root=workspace.suites,
            test_plans_root=workspace.plans,
        )
    )


def test_resolves_folder_ref_to_discovered_case(workspace: Workspace) -> None:
    workspace.case("Stress/CpuBurn", case_id="CpuBurn")

    resolved = resolve_case_ref("Stress/CpuBurn", workspace.cases, _discover(workspace))

    assert resolved.ok
    assert resolved.entity is not None
    assert resolved.entity.identity == "CpuBurn@1.0"


def test_dot_dot_escape_is_out_of_root(workspace: Workspace) -> None:
    outside = workspace.root / "Elsewhere"
    outside.mkdir()

    resolved = resolve_case_ref("../Elsewhere", workspace.cases, _discover(workspace), node_id="n1")

    assert not resolved.ok
    assert resolved.issue is not None
    assert resolved.issue.code is ErrorCode.SUITE_TEST_CASE_REF_INVALID
    assert resolved.issue.payload["reason"] == RefFailure.OUT_OF_ROOT.value
    assert resolved.issue.payload["nodeId"] == "n1"


@pytest.mark.skipif(os.name == "nt", reason="symlinks need privileges on Windows")
def test_symlink_pointing_outside_is_out_of_root(workspace: Workspace) -> None:
    outside = workspace.root / "Outside" / "Sneaky"
    outside.mkdir(parents=True)
    (outside / "test.manifest.json").write_text(
        '{"id": "Sneaky", "name": "S", "category": "C", "version": "1"}', encoding="utf-8"
    )
    (workspace.cases / "Sneaky").symlink_to(outside, target_is_directory=True)

    resolved = resolve_case_ref("Sneaky", workspace.cases, _discover(workspace))

    assert resolved.issue is not None
    assert resolved.issue.payload["reason"] == RefFailure.OUT_OF_ROOT.value


def test_missing_folder_is_not_found(workspace: Workspace) -> None:
    resolved = resolve_case_ref("Ghost", workspace.cases, _discover(workspace))

    assert resolved.issue is not None
    assert resolved.issue.payload["reason"] == RefFailure.NOT_FOUND.value


def test_folder_without_manifest_is_missing_manifest(workspace: Workspace) -> None:
    (workspace.cases / "Empty").mkdir()

    resolved = resolve_case_ref("Empty", workspace.cases, _discover(workspace))

    assert resolved.issue is not None
    assert resolved.issue.payload["reason"] == RefFailure.MISSING_MANIFEST.value


def test_unparsable_manifest_counts_as_missing(workspace: Workspace) -> None:
    folder = workspace.cases / "Broken"
    folder.mkdir()
    (folder / "test.manifest.json").write_text("[]", encoding="utf-8")

    resolved = resolve_case_ref("Broken", workspace.cases, _discover(workspace))

    assert resolved.issue is not None
    assert resolved.issue.payload["reason"] == RefFailure.MISSING_MANIFEST.value


def test_resolve_identity_reports_format_and_not_found(workspace: Workspace) -> None:
    workspace.suite("Smoke", suite_id="Smoke", nodes=[])
    discovery = _discover(workspace)

    assert resolve_identity("Smoke@1.0", RunType.TEST_SUITE, discovery).ok

    bad = resolve_identity("Smoke", RunType.TEST_SUITE, discovery)
    assert bad.issue is not None
    assert bad.issue.code is ErrorCode.RUN_REQUEST_IDENTITY_INVALID_FORMAT

    missing = resolve_identity(
        "Smoke@9.9", RunType.TEST_SUITE, discovery, not_found_code=ErrorCode.PLAN_SUITE_REF_NOT_FOUND
    )
    assert missing.issue is not None
    assert missing.issue.code is ErrorCode.PLAN_SUITE_REF_NOT_FOUND
