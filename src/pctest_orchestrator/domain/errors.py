"""Error taxonomy: stable error codes, structured issues, and typed exceptions."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    """Stable machine-readable error codes recorded in results and diagnostics."""

    DISCOVERY_DUPLICATE_IDENTITY = "Discovery.DuplicateIdentity"
    MANIFEST_PARSE_FAILED = "Manifest.Parse.Failed"
    MANIFEST_SCHEMA_INVALID = "Manifest.Schema.Invalid"
    MANIFEST_REQUIRED_FIELD_MISSING = "Manifest.RequiredField.Missing"
    SUITE_TEST_CASE_REF_INVALID = "Suite.TestCaseRef.Invalid"
    SUITE_NODE_ID_DUPLICATE = "Suite.NodeId.Duplicate"
    PLAN_SUITE_REF_NOT_FOUND = "Plan.SuiteRef.NotFound"
    PLAN_ENVIRONMENT_INVALID_KEY = "Plan.Environment.InvalidKey"
    RUN_REQUEST_IDENTITY_INVALID_FORMAT = "RunRequest.Identity.InvalidFormat"
    RUN_REQUEST_IDENTITY_NOT_FOUND = "RunRequest.Identity.NotFound"
    RUN_REQUEST_TARGET_INVALID = "RunRequest.Target.Invalid"
    RUN_REQUEST_UNKNOWN_NODE_ID = "RunRequest.NodeOverrides.UnknownNodeId"
    RUN_REQUEST_PLAN_INPUT_OVERRIDE = "RunRequest.Plan.InputOverrideNotAllowed"
    PARAMETER_UNKNOWN = "Parameter.Unknown"
    PARAMETER_REQUIRED = "Parameter.Required"
    PARAMETER_TYPE_INVALID = "Parameter.Type.Invalid"
    PARAMETER_RANGE_INVALID = "Parameter.Range.Invalid"
    PARAMETER_ENUM_INVALID = "Parameter.Enum.Invalid"
    PARAMETER_PATTERN_INVALID = "Parameter.Pattern.Invalid"
    ENVREF_RESOLVE_FAILED = "EnvRef.ResolveFailed"
    ENVREF_SECRET_ON_COMMAND_LINE = "EnvRef.SecretOnCommandLine"
    ENVIRONMENT_KEY_EMPTY = "Environment.Key.Empty"
    PRIVILEGE_REQUIRED = "Privilege.Required"
    WORKING_DIR_CONTAINMENT_FAILED = "WorkingDir.Containment.Failed"
    CONTROLS_MAX_PARALLEL_IGNORED = "Controls.MaxParallel.Ignored"
    REBOOT_REQUEST_INVALID = "Reboot.Request.Invalid"
    RESUME_SESSION_INVALID = "Resume.Session.Invalid"
    RESUME_TOKEN_MISMATCH = "Resume.Token.Mismatch"
    RESUME_LOOP_DETECTED = "Resume.LoopDetected"
    PROCESS_KILL_FAILED = "Process.Kill.Failed"


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    """One structured discovery/validation failure."""

    code: ErrorCode
    message: str
    payload: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.payload:
            out["payload"] = dict(self.payload)
        return out

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"


class OrchestratorError(RuntimeError):
    """Base error for orchestrator failures surfaced to callers."""


class ValidationError(OrchestratorError):
    """Raised once with every issue collected during discovery or pre-flight validation."""

    def __init__(self, issues: Iterable[ValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {issue}" for issue in self.issues)
        super().__init__(f"validation failed:\n{rendered}")

    @property
    def codes(self) -> tuple[ErrorCode, ...]:
        return tuple(issue.code for issue in self.issues)


class DiscoveryError(ValidationError):
    """Raised when discovery finds conflicts that make the identity maps ambiguous."""


class ProtocolError(OrchestratorError):
    """Raised for reboot/resume protocol violations."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        self.code = code
        super().__init__(f"[{code.value}] {message}")


class ProcessTerminationError(OrchestratorError):
    """Raised when a process tree survives every termination attempt."""

    def __init__(self, root_pid: int, surviving_pids: Iterable[int]) -> None:
        self.code = ErrorCode.PROCESS_KILL_FAILED
        self.root_pid = root_pid
        self.surviving_pids = tuple(sorted(surviving_pids))
        super().__init__(
            f"[{self.code.value}] process tree rooted at pid {root_pid} survived termination: "
            f"{list(self.surviving_pids)}"
        )


__all__ = [
    "DiscoveryError",
    "ErrorCode",
    "OrchestratorError",
    "ProcessTerminationError",
    "ProtocolError",
    "ValidationError",
    "ValidationIssue",
]
