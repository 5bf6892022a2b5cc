"""Stable constants shared across the orchestrator subsystems."""

from __future__ import annotations

from typing import Final

# Versions stamped into persisted records.
CONFIG_SCHEMA_VERSION: Final[int] = 1
RESULT_SCHEMA_VERSION: Final[str] = "1.5.0"
MANIFEST_SCHEMA_VERSION: Final[str] = "1.5.0"
ENGINE_VERSION: Final[str] = "1.0.0"
RUNNER_VERSION: Final[str] = "1.0.0"

# Manifest file names recognised by discovery.
CASE_MANIFEST_FILE: Final[str] = "test.manifest.json"
SUITE_MANIFEST_FILE: Final[str] = "suite.manifest.json"
PLAN_MANIFEST_FILE: Final[str] = "plan.manifest.json"

# Run folder layout.
MANIFEST_SNAPSHOT_FILE: Final[str] = "manifest.json"
PARAMS_FILE: Final[str] = "params.json"
ENV_SNAPSHOT_FILE: Final[str] = "env.json"
RESULT_FILE: Final[str] = "result.json"
STDOUT_LOG_FILE: Final[str] = "stdout.log"
STDERR_LOG_FILE: Final[str] = "stderr.log"
EVENTS_FILE: Final[str] = "events.jsonl"
ARTIFACTS_DIR: Final[str] = "artifacts"
CONTROL_DIR: Final[str] = "control"
CONTROLS_FILE: Final[str] = "controls.json"
ENVIRONMENT_FILE: Final[str] = "environment.json"
RUN_REQUEST_FILE: Final[str] = "runRequest.json"
CHILDREN_FILE: Final[str] = "children.jsonl"
SESSION_FILE: Final[str] = "session.json"
REBOOT_REQUEST_FILE: Final[str] = "reboot.json"
INDEX_FILE: Final[str] = "index.jsonl"

# Environment variables injected into every leaf invocation.
ENV_TESTCASE_PATH: Final[str] = "PVTX_TESTCASE_PATH"
ENV_TESTCASE_NAME: Final[str] = "PVTX_TESTCASE_NAME"
ENV_TESTCASE_ID: Final[str] = "PVTX_TESTCASE_ID"
ENV_TESTCASE_VER: Final[str] = "PVTX_TESTCASE_VER"
ENV_RUN_ID: Final[str] = "PVTX_RUN_ID"
ENV_PHASE: Final[str] = "PVTX_PHASE"
ENV_CONTROL_DIR: Final[str] = "PVTX_CONTROL_DIR"
ENV_ASSETS_ROOT: Final[str] = "PVTX_ASSETS_ROOT"
ENV_MODULES_ROOT: Final[str] = "PVTX_MODULES_ROOT"
MODULES_DIR: Final[str] = "modules"

REDACTED: Final[str] = "***"
REBOOT_REQUEST_TYPE: Final[str] = "control.reboot_required"

__all__ = [
    "ARTIFACTS_DIR",
    "CASE_MANIFEST_FILE",
    "CHILDREN_FILE",
    "CONFIG_SCHEMA_VERSION",
    "CONTROLS_FILE",
    "CONTROL_DIR",
    "ENGINE_VERSION",
    "ENVIRONMENT_FILE",
    "ENV_ASSETS_ROOT",
    "ENV_CONTROL_DIR",
    "ENV_MODULES_ROOT",
    "ENV_PHASE",
    "ENV_RUN_ID",
    "ENV_SNAPSHOT_FILE",
    "ENV_TESTCASE_ID",
    "ENV_TESTCASE_NAME",
    "ENV_TESTCASE_PATH",
    "ENV_TESTCASE_VER",
    "EVENTS_FILE",
    "INDEX_FILE",
    "MANIFEST_SCHEMA_VERSION",
    "MANIFEST_SNAPSHOT_FILE",
    "MODULES_DIR",
    "PARAMS_FILE",
    "PLAN_MANIFEST_FILE",
    "REBOOT_REQUEST_FILE",
    "REBOOT_REQUEST_TYPE",
    "REDACTED",
    "RESULT_FILE",
    "RESULT_SCHEMA_VERSION",
    "RUNNER_VERSION",
    "RUN_REQUEST_FILE",
    "SESSION_FILE",
    "STDERR_LOG_FILE",
    "STDOUT_LOG_FILE",
    "SUITE_MANIFEST_FILE",
]
