"""
pctest-orchestrator — unit tests for effective input resolution

File: tests/unit/resolution/test_inputs.py
Last updated: 2026-10-17

Purpose
- Validate layer priority, EnvRef fallbacks, secret flagging and collected issues.
"""

from __future__ import annotations

from typing import Any

import pytest

from pctest_orchestrator.constants import REDACTED
from pctest_orchestrator.domain.errors import ErrorCode, ValidationError
from pctest_orchestrator.domain.models import CaseManifest, EnvRef
from pctest_orchestrator.resolution.environment import EffectiveEnvironment
from pctest_orchestrator.resolution.inputs import merge_input_layers, resolve_inputs


def _manifest(*parameters: dict[str, Any]) -> CaseManifest:
    return CaseManifest.from_dict(
        {"id": "Case", "name": "Case", "category": "Test", "version": "1.0", "parameters": list(parameters)}
    )


def _env(**variables: str) -> EffectiveEnvironment:
    return EffectiveEnvironment(variables=variables)


def test_request_beats_node_beats_default() -> None:
    manifest = _manifest(
        {"name": "A", "type": "int", "default": 1},
        {"name": "B", "type": "int", "default": 1},
        {"name": "C", "type": "int", "default": 1},
    )

    resolved = resolve_inputs(manifest, [{"B": 2, "C": 2}, {"C": 3}], _env())

    assert dict(resolved.values) == {"A": 1, "B": 2, "C": 3}


def test_merge_skips_parameters_without_default() -> None:
    manifest = _manifest({"name": "A", "type": "int"}, {"name": "B", "type": "int", "default": 4})

    assert merge_input_layers(manifest, [None]) == {"B": 4}


def test_unknown_parameter_is_an_error() -> None:
    with pytest.raises(ValidationError) as excinfo:
        resolve_inputs(_manifest({"name": "A", "type": "int"}), [{"Z": 1}], _env(), node_id="n1")

    assert excinfo.value.codes == (ErrorCode.PARAMETER_UNKNOWN,)
    assert excinfo.value.issues[0].payload == {"parameter": "Z", "nodeId": "n1"}


def test_env_ref_reads_effective_environment() -> None:
    manifest = _manifest({"name": "Count", "type": "int"})

    resolved = resolve_inputs(manifest, [{"Count": EnvRef(name="COUNT")}], _env(COUNT="12"))

    assert dict(resolved.values) == {"Count": 12}
    assert resolved.templates["Count"] == {"$env": "COUNT"}


def test_env_ref_falls_back_to_default_then_omits() -> None:
    manifest = _manifest({"name": "A", "type": "string"}, {"name": "B", "type": "string"})

    resolved = resolve_inputs(
        manifest,
        [{"A": EnvRef(name="MISSING", default="fallback"), "B": EnvRef(name="EMPTY")}],
        _env(EMPTY=""),
    )

    assert dict(resolved.values) == {"A": "fallback"}


def test_required_env_ref_without_value_fails() -> None:
    manifest = _manifest({"name": "A", "type": "string"})

    with pytest.raises(ValidationError) as excinfo:
        resolve_inputs(manifest, [{"A": EnvRef(name="MISSING", required=True)}], _env())

    assert excinfo.value.codes == (ErrorCode.ENVREF_RESOLVE_FAILED,)


def test_secret_env_ref_is_flagged_and_redacted() -> None:
    manifest = _manifest({"name": "Password", "type": "string"})

    resolved = resolve_inputs(
        manifest, [{"Password": EnvRef(name="DB_PASS", secret=True)}], _env(DB_PASS="s3cret")
    )

    assert resolved.values["Password"] == "s3cret"
    assert resolved.redacted() == {"Password": REDACTED}
    assert resolved.secret_names == frozenset({"Password"})
    assert resolved.secret_variables == frozenset({"DB_PASS"})
    assert resolved.secret_values() == ("s3cret",)


def test_missing_required_parameter_is_reported_once() -> None:
    manifest = _manifest(
        {"name": "A", "type": "int", "required": True},
        {"name": "B", "type": "int", "required": True},
    )

    with pytest.raises(ValidationError) as excinfo:
        resolve_inputs(manifest, [{"B": "x"}], _env())

    assert sorted(code.value for code in excinfo.value.codes) == [
        ErrorCode.PARAMETER_REQUIRED.value,
        ErrorCode.PARAMETER_TYPE_INVALID.value,
    ]


def test_all_issues_are_collected_together() -> None:
    manifest = _manifest({"name": "A", "type": "int", "min": 0}, {"name": "B", "type": "enum", "enumValues": ["x"]})

    with pytest.raises(ValidationError) as excinfo:
        resolve_inputs(manifest, [{"A": -1, "B": "y", "C": 1}], _env())

    assert len(excinfo.value.issues) == 3
