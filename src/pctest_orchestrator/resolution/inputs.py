"""
pctest-orchestrator — effective input resolution

File: src/pctest_orchestrator/resolution/inputs.py
Last updated: 2026-10-17

Purpose
- Compute the effective input set of one case invocation from case defaults, node
  overrides and run-request overrides (highest wins), resolving EnvRefs against the
  effective environment.

Functional requirements
- Undeclared names are reported as ``Parameter.Unknown``, never ignored.
- A missing or empty EnvRef variable falls back to the EnvRef default, fails when
  ``required``, and otherwise omits the parameter entirely.
- Secret EnvRef values are flagged so every persisted snapshot can redact them.
- All issues are collected and raised together as one ``ValidationError``.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from pctest_orchestrator.constants import REDACTED
from pctest_orchestrator.domain.errors import ErrorCode, ValidationError, ValidationIssue
from pctest_orchestrator.domain.models import (
    CaseManifest,
    EnvRef,
    JSONValue,
    ParameterDefinition,
    input_template,
)
from pctest_orchestrator.resolution.environment import EffectiveEnvironment
from pctest_orchestrator.resolution.values import ParameterValueError, convert_parameter_value


@dataclass(frozen=True, slots=True)
class ResolvedInputs:
    values: Mapping[str, JSONValue] = field(default_factory=dict)
    secret_names: frozenset[str] = frozenset()
    secret_variables: frozenset[str] = frozenset()
    templates: Mapping[str, JSONValue] = field(default_factory=dict)

    def redacted(self) -> dict[str, JSONValue]:
        return {
            name: REDACTED if name in self.secret_names else value
            for name, value in self.values.items()
        }

    def secret_values(self) -> tuple[str, ...]:
        out: list[str] = []
        for name in sorted(self.secret_names):
            value = self.values.get(name)
            if isinstance(value, list):
                out.extend(str(item) for item in value if str(item))
            elif value is not None and str(value):
                out.append(str(value))
        return tuple(out)


def merge_input_layers(
    manifest: CaseManifest, layers: Sequence[Mapping[str, object] | None]
) -> dict[str, object]:
    """Case defaults first, then each override layer in increasing priority."""
    merged: dict[str, object] = {
        definition.name: definition.default
        for definition in manifest.parameters
        if definition.default is not None
    }
    for layer in layers:
        merged.update(layer or {})
    return merged


def resolve_inputs(
    manifest: CaseManifest,
    layers: Sequence[Mapping[str, object] | None],
    environment: EffectiveEnvironment,
    *,
    node_id: str | None = None,
) -> ResolvedInputs:
    """Merge, resolve and validate the inputs for one case invocation."""
    merged = merge_input_layers(manifest, layers)
    issues: list[ValidationIssue] = []
    values: dict[str, JSONValue] = {}
    secret_names: set[str] = set()
    secret_variables: set[str] = set()

    for name in merged:
        if manifest.parameter(name) is None:
            issues.append(
                _issue(
                    ErrorCode.PARAMETER_UNKNOWN,
                    f"parameter {name!r} is not declared by {manifest.identity}",
                    name,
                    node_id,
                )
            )

    for definition in manifest.parameters:
        if definition.name not in merged:
            continue
        raw = merged[definition.name]
        try:
            if isinstance(raw, EnvRef):
                resolved = _resolve_env_ref(definition, raw, environment)
                if raw.secret:
                    secret_names.add(definition.name)
                    secret_variables.add(raw.name)
                if resolved is _OMIT:
                    continue
                values[definition.name] = resolved  # type: ignore[assignment]
            elif raw is not None:
                values[definition.name] = convert_parameter_value(definition, raw)
        except ParameterValueError as exc:
            issues.append(_issue(exc.code, str(exc), definition.name, node_id))

    for definition in manifest.parameters:
        if definition.required and definition.name not in values and not _has_issue(issues, definition.name):
            issues.append(
                _issue(
                    ErrorCode.PARAMETER_REQUIRED,
                    f"required parameter {definition.name!r} has no value",
                    definition.name,
                    node_id,
                )
            )

    if issues:
        raise ValidationError(issues)
    return ResolvedInputs(
        values=values,
        secret_names=frozenset(secret_names),
        secret_variables=frozenset(secret_variables),
        templates={name: input_template(value) for name, value in merged.items()},
    )


_OMIT = object()


def _resolve_env_ref(
    definition: ParameterDefinition, ref: EnvRef, environment: EffectiveEnvironment
) -> object:
    text = environment.get(ref.name)
    if text:
        return convert_parameter_value(definition, text, from_environment=True)
    if ref.default is not None:
        return convert_parameter_value(definition, ref.default)
    if ref.required:
        raise ParameterValueError(
            definition.name,
            ErrorCode.ENVREF_RESOLVE_FAILED,
            f"required environment variable {ref.name!r} is not set",
        )
    return _OMIT


def _has_issue(issues: list[ValidationIssue], parameter: str) -> bool:
    return any(issue.payload.get("parameter") == parameter for issue in issues)


def _issue(code: ErrorCode, message: str, parameter: str, node_id: str | None) -> ValidationIssue:
    payload: dict[str, object] = {"parameter": parameter}
    if node_id is not None:
        payload["nodeId"] = node_id
    return ValidationIssue(code, message, payload)


__all__ = ["ResolvedInputs", "merge_input_layers", "resolve_inputs"]
