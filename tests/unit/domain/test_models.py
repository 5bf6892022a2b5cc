"""
pctest-orchestrator — unit tests for manifest and request models

File: tests/unit/domain/test_models.py
Last updated: 2026-10-17

Purpose
- Validate parsing of case/suite/plan manifests, EnvRefs, controls and run requests.
"""

from __future__ import annotations

import pytest

from pctest_orchestrator.domain.errors import ErrorCode, ValidationError
from pctest_orchestrator.domain.models import (
    CaseManifest,
    EnvRef,
    ManifestError,
    ParameterDefinition,
    ParameterType,
    PlanManifest,
    Privilege,
    RunRequest,
    RunType,
    SuiteControls,
    SuiteManifest,
    max_privilege,
)


def _case(**extra: object) -> dict[str, object]:
    return {"id": "CpuBurn", "name": "CPU burn", "category": "Stress", "version": "1.0", **extra}


def test_case_manifest_defaults_and_identity() -> None:
    manifest = CaseManifest.from_dict(_case())

    assert str(manifest.identity) == "CpuBurn@1.0"
    assert manifest.privilege is Privilege.USER
    assert manifest.timeout_sec is None
    assert manifest.schema_version == "1.5.0"


def test_case_manifest_requires_core_fields() -> None:
    with pytest.raises(ManifestError, match="category"):
        CaseManifest.from_dict({"id": "A", "name": "A", "version": "1"})


def test_case_manifest_rejects_duplicate_parameter_names() -> None:
    parameters = [{"name": "Level", "type": "int"}, {"name": "Level", "type": "string"}]

    with pytest.raises(ManifestError, match="duplicate"):
        CaseManifest.from_dict(_case(parameters=parameters))


def test_parameter_bool_alias_and_array_suffix() -> None:
    flag = ParameterDefinition.from_dict({"name": "Verbose", "type": "bool"})
    paths = ParameterDefinition.from_dict({"name": "Targets", "type": "path[]"})

    assert flag.type is ParameterType.BOOLEAN
    assert not flag.is_array
    assert paths.type is ParameterType.PATH
    assert paths.is_array
    assert paths.type_name == "path[]"


def test_enum_parameter_requires_enum_values() -> None:
    with pytest.raises(ManifestError, match="enumValues"):
        ParameterDefinition.from_dict({"name": "Mode", "type": "enum"})


def test_parameter_rejects_inverted_range_and_bad_pattern() -> None:
    with pytest.raises(ManifestError, match="min must be <= max"):
        ParameterDefinition.from_dict({"name": "N", "type": "int", "min": 5, "max": 1})
    with pytest.raises(ManifestError, match="regular expression"):
        ParameterDefinition.from_dict({"name": "S", "type": "string", "pattern": "("})


def test_env_ref_round_trip_keeps_flags() -> None:
    ref = EnvRef.from_dict({"$env": "LAB_PASSWORD", "required": True, "secret": True})

    assert ref == EnvRef(name="LAB_PASSWORD", required=True, secret=True)
    assert ref.to_dict() == {"$env": "LAB_PASSWORD", "required": True, "secret": True}
    assert EnvRef.is_env_ref({"$env": "X"})
    assert not EnvRef.is_env_ref({"env": "X"})


def test_suite_manifest_parses_nodes_and_controls() -> None:
    manifest = SuiteManifest.from_dict(
        {
            "id": "Smoke",
            "name": "Smoke",
            "version": "2.0",
            "controls": {"repeat": 2, "continueOnFailure": True, "retryOnError": 1},
            "environment": {"env": {"LAB": "A"}, "workingDir": "work"},
            "testCases": [
                {"nodeId": "burn", "ref": "Stress/CpuBurn", "inputs": {"Level": {"$env": "LEVEL"}}},
                {"nodeId": "idle", "ref": "Idle", "controls": {"repeat": 3}},
            ],
        }
    )

    assert manifest.controls.repeat == 2
    assert manifest.controls.retry_on_error == 1
    assert manifest.environment.working_dir == "work"
    assert isinstance(manifest.test_cases[0].inputs["Level"], EnvRef)
    assert manifest.test_cases[1].controls.repeat == 3
    assert manifest.test_cases[1].controls.retry_on_error is None


def test_suite_controls_reject_zero_repeat() -> None:
    with pytest.raises(ManifestError, match="repeat"):
        SuiteControls.from_dict({"repeat": 0})


def test_suite_controls_overlay_only_applies_non_defaults() -> None:
    base = SuiteControls(repeat=3, retry_on_error=2)

    merged = base.overlay(SuiteControls(max_parallel=1, continue_on_failure=True))

    assert merged.repeat == 3
    assert merged.retry_on_error == 2
    assert merged.continue_on_failure is True


def test_plan_string_suites_get_suffixed_node_ids() -> None:
    manifest = PlanManifest.from_dict(
        {"id": "Nightly", "name": "Nightly", "version": "1", "suites": ["Smoke@1", "Smoke@1", "Soak@2"]}
    )

    assert [node.node_id for node in manifest.nodes] == ["Smoke@1", "Smoke@1_2", "Soak@2"]
    assert manifest.continue_on_failure is True


def test_plan_environment_collects_invalid_keys() -> None:
    manifest = PlanManifest.from_dict(
        {"id": "P", "name": "P", "version": "1", "environment": {"env": {}, "workingDir": "x"}}
    )

    assert manifest.environment.invalid_keys == ("workingDir",)


def test_max_privilege_picks_strictest() -> None:
    assert max_privilege() is Privilege.USER
    assert max_privilege(Privilege.USER, Privilege.ADMIN_PREFERRED) is Privilege.ADMIN_PREFERRED
    assert (
        max_privilege(Privilege.ADMIN_REQUIRED, Privilege.ADMIN_PREFERRED) is Privilege.ADMIN_REQUIRED
    )


def test_run_request_requires_exactly_one_target() -> None:
    with pytest.raises(ValidationError) as excinfo:
        RunRequest.from_dict({"suite": "A@1", "plan": "B@1"})

    assert excinfo.value.codes == (ErrorCode.RUN_REQUEST_TARGET_INVALID,)


def test_run_request_round_trip_preserves_env_ref_templates() -> None:
    request = RunRequest.from_dict(
        {
            "suite": "Smoke@1.0",
            "nodeOverrides": {"burn": {"inputs": {"Token": {"$env": "TOKEN", "secret": True}}}},
            "environmentOverrides": {"env": {"LAB": "B"}},
        }
    )

    assert request.run_type is RunType.TEST_SUITE
    assert isinstance(request.node_overrides["burn"]["Token"], EnvRef)
    assert request.to_dict() == {
        "suite": "Smoke@1.0",
        "nodeOverrides": {"burn": {"inputs": {"Token": {"$env": "TOKEN", "secret": True}}}},
        "environmentOverrides": {"env": {"LAB": "B"}},
    }
