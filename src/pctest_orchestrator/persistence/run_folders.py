"""
pctest-orchestrator — run-folder ownership and snapshot writers

File: src/pctest_orchestrator/persistence/run_folders.py
Last updated: 2026-10-17

Purpose
- Allocate one folder per run id and write the engine-owned records inside it.

Functional requirements
- The engine is the sole writer of manifest.json, params.json, env.json, result.json and
  the two log files; every JSON snapshot goes through the atomic write helper.
- The leaf script only owns ``artifacts/``; nothing else it creates is read back.
- Callers hand in values that are already redacted; this layer never sees plaintext
  secrets for snapshots.
"""

from __future__ import annotations

import json
import logging
import platform
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pctest_orchestrator.constants import (
    ARTIFACTS_DIR,
    CHILDREN_FILE,
    CONTROL_DIR,
    CONTROLS_FILE,
    ENGINE_VERSION,
    ENV_SNAPSHOT_FILE,
    ENVIRONMENT_FILE,
    MANIFEST_SNAPSHOT_FILE,
    PARAMS_FILE,
    RESULT_FILE,
    RUN_REQUEST_FILE,
    RUNNER_VERSION,
    STDERR_LOG_FILE,
    STDOUT_LOG_FILE,
)
from pctest_orchestrator.domain.results import (
    CaseResult,
    ChildEntry,
    GroupResult,
    format_timestamp,
    utc_now,
)
from pctest_orchestrator.observability.events import EventLog
from pctest_orchestrator.utils.fs import (
    allocate_directory,
    append_json_line,
    atomic_write_json,
    read_json_object,
)

logger = logging.getLogger(__name__)


def environment_snapshot(
    redacted_environment: Mapping[str, str], *, is_elevated: bool
) -> dict[str, Any]:
    """Host description plus the (already redacted) effective environment overlay."""
    return {
        "osVersion": platform.platform(),
        "platform": sys.platform,
        "machine": platform.machine(),
        "pythonVersion": platform.python_version(),
        "runnerVersion": RUNNER_VERSION,
        "engineVersion": ENGINE_VERSION,
        "isElevated": is_elevated,
        "capturedAt": format_timestamp(utc_now()),
        "environment": dict(redacted_environment),
    }


@dataclass(slots=True)
class _RunFolder:
    path: Path
    events: EventLog = field(init=False)

    def __post_init__(self) -> None:
        self.events = EventLog(self.path, self.path.name)

    @property
    def run_id(self) -> str:
        return self.path.name

    @property
    def result_path(self) -> Path:
        return self.path / RESULT_FILE

    def write_manifest_snapshot(self, payload: Mapping[str, Any]) -> None:
        atomic_write_json(self.path / MANIFEST_SNAPSHOT_FILE, dict(payload))

    def read_result(self) -> dict[str, Any] | None:
        if not self.result_path.is_file():
            return None
        return read_json_object(self.result_path)


@dataclass(slots=True)
class CaseRunFolder(_RunFolder):
    """Folder of one leaf invocation."""

    @classmethod
    def allocate(cls, runs_root: Path, run_id: str) -> CaseRunFolder:
        folder = cls(allocate_directory(runs_root, run_id))
        folder.artifacts_dir.mkdir(exist_ok=True)
        folder.control_dir.mkdir(exist_ok=True)
        return folder

    @property
    def artifacts_dir(self) -> Path:
        return self.path / ARTIFACTS_DIR

    @property
    def control_dir(self) -> Path:
        return self.artifacts_dir / CONTROL_DIR

    @property
    def stdout_path(self) -> Path:
        return self.path / STDOUT_LOG_FILE

    @property
    def stderr_path(self) -> Path:
        return self.path / STDERR_LOG_FILE

    def write_params(self, redacted_inputs: Mapping[str, Any]) -> None:
        atomic_write_json(self.path / PARAMS_FILE, dict(redacted_inputs))

    def write_env_snapshot(self, snapshot: Mapping[str, Any]) -> None:
        atomic_write_json(self.path / ENV_SNAPSHOT_FILE, dict(snapshot))

    def write_result(self, result: CaseResult) -> None:
        atomic_write_json(self.result_path, result.to_dict())

    def read_self_report(self) -> Any:
        """Return ``artifacts/result.json`` if the script wrote parseable JSON, else ``None``."""
        candidate = self.artifacts_dir / RESULT_FILE
        if not candidate.is_file():
            return None
        try:
            return json.loads(candidate.read_text(encoding="utf-8-sig"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.info("ignoring unreadable self-report in %s: %s", self.run_id, exc)
            return None


@dataclass(slots=True)
class GroupRunFolder(_RunFolder):
    """Folder of a suite or plan run."""

    @classmethod
    def allocate(cls, runs_root: Path, run_id: str) -> GroupRunFolder:
        return cls(allocate_directory(runs_root, run_id))

    @property
    def children_path(self) -> Path:
        return self.path / CHILDREN_FILE

    def write_controls(self, controls: Mapping[str, Any]) -> None:
        atomic_write_json(self.path / CONTROLS_FILE, dict(controls))

    def write_environment(self, redacted_environment: Mapping[str, str]) -> None:
        atomic_write_json(self.path / ENVIRONMENT_FILE, {"env": dict(redacted_environment)})

    def write_run_request(self, request: Mapping[str, Any]) -> None:
        atomic_write_json(self.path / RUN_REQUEST_FILE, dict(request))

    def append_child(self, entry: ChildEntry) -> None:
        append_json_line(self.children_path, entry.to_dict())

    def read_children(self) -> list[ChildEntry]:
        """Return child entries in file order; unreadable lines are skipped."""
        if not self.children_path.is_file():
            return []
        entries: list[ChildEntry] = []
        with self.children_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                if not line.strip():
                    continue
                try:
                    entries.append(ChildEntry.from_dict(json.loads(line)))
                except (json.JSONDecodeError, ValueError, AttributeError) as exc:
                    logger.warning("skipping unreadable children line in %s: %s", self.run_id, exc)
        return entries

    def write_result(self, result: GroupResult) -> None:
        atomic_write_json(self.result_path, result.to_dict())


def open_run_folder(runs_root: Path, run_id: str) -> Path:
    """Return the existing folder of ``run_id`` or raise ``FileNotFoundError``."""
    path = Path(runs_root) / run_id
    if not path.is_dir():
        raise FileNotFoundError(f"run folder not found: {path}")
    return path


__all__ = [
    "CaseRunFolder",
    "GroupRunFolder",
    "environment_snapshot",
    "open_run_folder",
]
