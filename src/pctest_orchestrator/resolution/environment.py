"""Effective-environment layering for leaf invocations."""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from pctest_orchestrator.constants import REDACTED
from pctest_orchestrator.domain.errors import ErrorCode, ValidationIssue


@dataclass(frozen=True, slots=True)
class EffectiveEnvironment:
    """
    Process environment plus the orchestrator's overlays.

    ``overlay`` holds only the variables contributed by plan/suite/request layers; it is
    what gets snapshotted. ``secret_names`` lists variables whose values must be redacted.
    """

    variables: Mapping[str, str] = field(default_factory=dict)
    overlay: Mapping[str, str] = field(default_factory=dict)
    secret_names: frozenset[str] = frozenset()

    def get(self, name: str) -> str | None:
        return self.variables.get(name)

    def with_secrets(self, names: Iterable[str]) -> EffectiveEnvironment:
        return EffectiveEnvironment(
            variables=self.variables,
            overlay=self.overlay,
            secret_names=self.secret_names | frozenset(names),
        )

    def redacted_overlay(self) -> dict[str, str]:
        return {
            name: REDACTED if name in self.secret_names else value
            for name, value in sorted(self.overlay.items())
        }

    def secret_values(self) -> tuple[str, ...]:
        return tuple(
            value for name in sorted(self.secret_names) if (value := self.variables.get(name))
        )


def layer_environment(
    *layers: Mapping[str, str] | None,
    base: Mapping[str, str] | None = None,
    source: str = "environment",
) -> tuple[EffectiveEnvironment, list[ValidationIssue]]:
    """
    Overlay ``layers`` (lowest priority first) on top of ``base`` (defaults to ``os.environ``).

    Empty or whitespace-only keys are reported as ``Environment.Key.Empty`` and skipped.
    """

    issues: list[ValidationIssue] = []
    variables: dict[str, str] = dict(os.environ if base is None else base)
    overlay: dict[str, str] = {}
    for layer in layers:
        for name, value in (layer or {}).items():
            if not name or not name.strip():
                issues.append(
                    ValidationIssue(
                        ErrorCode.ENVIRONMENT_KEY_EMPTY,
                        f"{source} contains an empty variable name",
                        {"source": source},
                    )
                )
                continue
            variables[name] = value
            overlay[name] = value
    return EffectiveEnvironment(variables=variables, overlay=overlay), issues


__all__ = ["EffectiveEnvironment", "layer_environment"]
