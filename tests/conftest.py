"""
pctest-orchestrator — shared test fixtures

File: tests/conftest.py
Last updated: 2026-10-17

Purpose
- Build throwaway TestCases/TestSuites/TestPlans trees with tiny Python leaf scripts
  executed by ``sys.executable``, so every test runs offline on any POSIX host.
- Provide a recording stand-in for the injectable ``structlog`` decision logger.
"""

from __future__ import annotations

import json
import os
import textwrap
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from pctest_orchestrator.config import assert_valid_config, default_config, merge_config
from pctest_orchestrator.control_plane.engine import OrchestratorEngine
from pctest_orchestrator.control_plane.reboot import ResumeSession
from pctest_orchestrator.observability.logging import clear_secret_values, shutdown_logging
from pctest_orchestrator.utils.concurrency import CancellationToken

PASS_SCRIPT = "import sys\nsys.exit(0)\n"
FAIL_SCRIPT = "import sys\nsys.exit(1)\n"
CRASH_SCRIPT = "import sys\nsys.exit(3)\n"

ECHO_ARGS_SCRIPT = textwrap.dedent(
    """
    import json, os, pathlib, sys
    out = pathlib.Path(os.environ["PVTX_CONTROL_DIR"]).parent / "argv.json"
    out.write_text(json.dumps({"argv": sys.argv[1:], "env": dict(os.environ)}))
    print("args:", " ".join(sys.argv[1:]))
    sys.exit(0)
    """
)

SLEEP_SCRIPT = textwrap.dedent(
    """
    import time
    time.sleep(30)
    """
)

# Phase 0 asks for a reboot and records itself; phase 1 records itself and passes.
REBOOT_SCRIPT = textwrap.dedent(
    """
    import json, os, pathlib, sys
    control = pathlib.Path(os.environ["PVTX_CONTROL_DIR"])
    state_path = control / "state.json"
    phase = int(os.environ["PVTX_PHASE"])
    state = json.loads(state_path.read_text()) if state_path.exists() else {"phases": []}
    state["phases"].append(phase)
    state_path.write_text(json.dumps(state))
    print(f"phase {phase}")
    if phase == 0:
        (control / "reboot.json").write_text(json.dumps({
            "type": "control.reboot_required",
            "nextPhase": 1,
            "reason": "driver install",
            "reboot": {"delaySec": 0},
        }))
    sys.exit(0)
    """
)

# Fails on the first attempt, passes afterwards; attempts are counted in a file next to it.
FLAKY_SCRIPT = textwrap.dedent(
    """
    import os, pathlib, sys
    marker = pathlib.Path(os.environ["PVTX_TESTCASE_PATH"]) / "attempts.txt"
    count = int(marker.read_text()) if marker.exists() else 0
    marker.write_text(str(count + 1))
    sys.exit(2 if count == 0 else 0)
    """
)


@dataclass
class Workspace:
    """A disposable repository of manifests rooted at ``root``."""

    root: Path
    overrides: dict[str, Any] = field(default_factory=dict)

    @property
    def cases(self) -> Path:
        return self.root / "TestCases"

    @property
    def suites(self) -> Path:
        return self.root / "TestSuites"

    @property
    def plans(self) -> Path:
        return self.root / "TestPlans"

    @property
    def runs(self) -> Path:
        return self.root / "Runs"

    def case(
        self,
        folder: str,
        *,
        case_id: str,
        version: str = "1.0",
        script: str = PASS_SCRIPT,
        parameters: Sequence[Mapping[str, Any]] = (),
        privilege: str = "User",
        timeout_sec: int | None = None,
    ) -> Path:
        path = self.cases / folder
        path.mkdir(parents=True, exist_ok=True)
        manifest: dict[str, Any] = {
            "schemaVersion": "1.5.0",
            "id": case_id,
            "name": case_id,
            "category": "Test",
            "version": version,
            "privilege": privilege,
            "parameters": list(parameters),
        }
        if timeout_sec is not None:
            manifest["timeoutSec"] = timeout_sec
        _write_json(path / "test.manifest.json", manifest)
        (path / "run.py").write_text(script, encoding="utf-8")
        return path

    def suite(
        self,
        folder: str,
        *,
        suite_id: str,
        nodes: Sequence[Mapping[str, Any]],
        version: str = "1.0",
        controls: Mapping[str, Any] | None = None,
        environment: Mapping[str, Any] | None = None,
    ) -> Path:
        path = self.suites / folder
        path.mkdir(parents=True, exist_ok=True)
        manifest: dict[str, Any] = {
            "id": suite_id,
            "name": suite_id,
            "version": version,
            "testCases": list(nodes),
        }
        if controls is not None:
            manifest["controls"] = dict(controls)
        if environment is not None:
            manifest["environment"] = dict(environment)
        _write_json(path / "suite.manifest.json", manifest)
        return path

    def plan(
        self,
        folder: str,
        *,
        plan_id: str,
        suites: Sequence[str],
        version: str = "1.0",
        controls: Mapping[str, Any] | None = None,
        environment: Mapping[str, Any] | None = None,
    ) -> Path:
        path = self.plans / folder
        path.mkdir(parents=True, exist_ok=True)
        manifest: dict[str, Any] = {
            "id": plan_id,
            "name": plan_id,
            "version": version,
            "suites": list(suites),
        }
        if controls is not None:
            manifest["controls"] = dict(controls)
        if environment is not None:
            manifest["environment"] = dict(environment)
        _write_json(path / "plan.manifest.json", manifest)
        return path

    def config(self, **sections: Mapping[str, Any]) -> dict[str, Any]:
        """Validated config pointing at this workspace; ``sections`` overlay it."""
        overlay: dict[str, Any] = {
            "paths": {
                "test_cases_root": str(self.cases),
                "test_suites_root": str(self.suites),
                "test_plans_root": str(self.plans),
                "runs_root": str(self.runs),
                "assets_root": str(self.root / "Assets"),
            },
            "runner": {"kill_grace_sec": 0.5, "default_timeout_sec": 60},
            "observability": {"log_dir": str(self.root / "logs")},
        }
        merged = merge_config(merge_config(default_config(), overlay), dict(sections))
        return assert_valid_config(merged)

    def write_config_file(self, **sections: Mapping[str, Any]) -> Path:
        """Write a ``pctest.toml`` for CLI tests (paths relative to the workspace)."""
        lines = [
            "[paths]",
            'test_cases_root = "TestCases"',
            'test_suites_root = "TestSuites"',
            'test_plans_root = "TestPlans"',
            'runs_root = "Runs"',
            'assets_root = "Assets"',
            "",
            "[runner]",
            "kill_grace_sec = 0.5",
            "default_timeout_sec = 60",
            "",
            "[observability]",
            'log_dir = "logs"',
        ]
        for section, values in sections.items():
            lines.append("")
            lines.append(f"[{section}]")
            for key, value in values.items():
                lines.append(f"{key} = {json.dumps(value)}")
        path = self.root / "pctest.toml"
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    def run_folders(self, prefix: str) -> list[Path]:
        if not self.runs.is_dir():
            return []
        return sorted(path for path in self.runs.iterdir() if path.is_dir() and path.name.startswith(f"{prefix}-"))

    def index_lines(self) -> list[dict[str, Any]]:
        path = self.runs / "index.jsonl"
        if not path.is_file():
            return []
        return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


@dataclass
class RecordingLogger:
    """Collects ``structlog``-style calls as ``(level, event, fields)`` tuples."""

    records: list[tuple[str, str, dict[str, Any]]] = field(default_factory=list)

    def info(self, event: str, **fields: Any) -> None:
        self.records.append(("info", event, fields))

    def warning(self, event: str, **fields: Any) -> None:
        self.records.append(("warning", event, fields))

    def error(self, event: str, **fields: Any) -> None:
        self.records.append(("error", event, fields))

    def debug(self, event: str, **fields: Any) -> None:
        self.records.append(("debug", event, fields))

    def events(self, name: str) -> list[dict[str, Any]]:
        return [fields for _, event, fields in self.records if event == name]


@dataclass
class RecordingHook:
    """Reboot hook that only remembers which steps ran, and for which session."""

    calls: list[tuple[str, str]] = field(default_factory=list)
    sessions: list[ResumeSession] = field(default_factory=list)

    def register_resume(self, session: ResumeSession) -> None:
        self.calls.append(("register", session.run_id))
        self.sessions.append(session)

    def request_reboot(self, session: ResumeSession) -> None:
        self.calls.append(("reboot", session.run_id))

    def unregister_resume(self, session: ResumeSession) -> None:
        self.calls.append(("unregister", session.run_id))


def build_engine(
    workspace: Workspace,
    *,
    logger: RecordingLogger | None = None,
    hook: RecordingHook | None = None,
    is_elevated: bool = False,
    environment: Mapping[str, str] | None = None,
    cancel_token: CancellationToken | None = None,
    **sections: Mapping[str, Any],
) -> OrchestratorEngine:
    base = dict(os.environ)
    base.update(environment or {})
    return OrchestratorEngine(
        workspace.config(**sections),
        cancel_token=cancel_token,
        reboot_hook=hook,
        decision_logger=logger,
        base_environment=base,
        is_elevated=is_elevated,
    )


def read_json(path: Path) -> dict[str, Any]:
    return json.loads(path.read_text(encoding="utf-8"))


def read_json_lines(path: Path) -> list[dict[str, Any]]:
    if not path.is_file():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def _write_json(path: Path, payload: Mapping[str, Any]) -> None:
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


@pytest.fixture
def workspace(tmp_path: Path) -> Workspace:
    for name in ("TestCases", "TestSuites", "TestPlans", "Assets"):
        (tmp_path / name).mkdir()
    return Workspace(root=tmp_path)


@pytest.fixture
def decisions() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture(autouse=True)
def _reset_logging_state() -> Iterator[None]:
    yield
    shutdown_logging()
    clear_secret_values()
