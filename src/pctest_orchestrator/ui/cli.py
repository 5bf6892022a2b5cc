"""Command-line interface router for pctest-orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
import sys
import time
from collections.abc import Awaitable, Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from pctest_orchestrator.config import (
    ConfigLoadError,
    ConfigValidationError,
    effective_config,
    load_config,
)
from pctest_orchestrator.control_plane import OrchestratorEngine, RunReport
from pctest_orchestrator.domain.errors import (
    ProcessTerminationError,
    ProtocolError,
    ValidationError,
)
from pctest_orchestrator.domain.models import RunRequest, RunStatus
from pctest_orchestrator.observability.logging import setup_logging, shutdown_logging
from pctest_orchestrator.ui.render import CLIRenderer, create_renderer
from pctest_orchestrator.utils.concurrency import CancellationToken

EXIT_PASSED: Final[int] = 0
EXIT_NOT_PASSED: Final[int] = 1
EXIT_REJECTED: Final[int] = 2
EXIT_PROTOCOL: Final[int] = 3
EXIT_INTERNAL: Final[int] = 4
EXIT_REBOOT_REQUIRED: Final[int] = 5

_TARGET_KEYS: Final[dict[str, str]] = {"case": "testCase", "suite": "suite", "plan": "plan"}


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="pctest",
        description=(
            "pctest-orchestrator — discover and run PC test cases, suites and plans.\n\n"
            "Common workflows:\n"
            "  pctest discover                    List discovered cases, suites and plans\n"
            "  pctest run --suite Smoke@1.0       Run a suite\n"
            "  pctest resume RUN_ID --token T     Continue a run after a reboot\n"
            "  pctest show-config                 Print the effective config\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to pctest TOML config (default: ./pctest.toml if present).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Echo structured logs to stderr.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # discover ------------------------------------------------------------
    discover_parser = subparsers.add_parser(
        "discover",
        parents=[common],
        help="List discovered cases, suites and plans",
        description=(
            "Scan the configured roots and report every entity, plus identity conflicts.\n\n"
            "Examples:\n"
            "  pctest discover\n"
            "  pctest discover --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    discover_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    discover_parser.set_defaults(handler=_cmd_discover)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Run a case, suite or plan",
        description=(
            "Validate a run request completely, then execute it.\n\n"
            "Examples:\n"
            "  pctest run --case CpuBurn@1.0 --inputs '{\"DurationSec\": 5}'\n"
            "  pctest run --suite Smoke@1.0 --node-overrides '{\"burn\": {\"inputs\": {}}}'\n"
            "  pctest run --plan Nightly@2.0 --env '{\"LAB\": \"A\"}'\n"
            "  pctest run --request request.json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    target = run_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--case", metavar="ID@VER", help="Run one test case")
    target.add_argument("--suite", metavar="ID@VER", help="Run a test suite")
    target.add_argument("--plan", metavar="ID@VER", help="Run a test plan")
    target.add_argument("--request", metavar="FILE", help="Run the request described by a JSON file")
    run_parser.add_argument("--inputs", metavar="JSON", default=None, help="Case input overrides")
    run_parser.add_argument(
        "--node-overrides", metavar="JSON", default=None, help="Per-node input overrides for a suite"
    )
    run_parser.add_argument("--env", metavar="JSON", default=None, help="Environment overrides")
    run_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    run_parser.set_defaults(handler=_cmd_run)

    # resume --------------------------------------------------------------
    resume_parser = subparsers.add_parser(
        "resume",
        parents=[common],
        help="Continue a run suspended for a reboot",
        description=(
            "Resume the run recorded in Runs/<RUN_ID>/session.json.\n\n"
            "Examples:\n"
            "  pctest resume S-20261017120000-1a2b3c4d --token 9f...\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    resume_parser.add_argument("run_id", help="Top-level run id of the suspended run")
    resume_parser.add_argument("--token", required=True, help="Resume token issued at suspension")
    resume_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    resume_parser.set_defaults(handler=_cmd_resume)

    # show-config ---------------------------------------------------------
    config_parser = subparsers.add_parser(
        "show-config",
        parents=[common],
        help="Print the effective (redacted) configuration",
    )
    config_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    config_parser.set_defaults(handler=_cmd_show_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return EXIT_REJECTED

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    """Compatibility wrapper for main-module wiring."""

    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_discover(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    result = OrchestratorEngine(config, is_elevated=False).discover()

    rows = [
        (kind, identity, str(entity.manifest_path))
        for kind, entities in (("case", result.cases), ("suite", result.suites), ("plan", result.plans))
        for identity, entity in sorted(entities.items())
    ]
    exit_code = EXIT_PASSED if result.ok else EXIT_REJECTED

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "discover",
                "entities": [{"kind": k, "identity": i, "manifest": p} for k, i, p in rows],
                "issues": [issue.to_dict() for issue in result.issues],
                "warnings": [issue.to_dict() for issue in result.warnings],
            }
        )
        return exit_code

    renderer = _get_renderer(args)
    if rows:
        renderer.table(("Kind", "Identity", "Manifest"), rows)
    else:
        renderer.text("No cases, suites or plans found.")
    if result.warnings:
        renderer.section("Warnings:")
        renderer.items([str(issue) for issue in result.warnings])
    if result.issues:
        renderer.section("Conflicts:")
        renderer.items([str(issue) for issue in result.issues])
    return exit_code


def _cmd_run(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    request = _build_request(args)

    def operation(engine: OrchestratorEngine) -> Awaitable[RunReport]:
        return engine.run(request)

    return _execute(args, config, operation, command="run")


def _cmd_resume(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    run_id = _require_str(getattr(args, "run_id", None), "run_id")
    token = _require_str(getattr(args, "token", None), "token")

    def operation(engine: OrchestratorEngine) -> Awaitable[RunReport]:
        return engine.resume(run_id, token)

    return _execute(args, config, operation, command="resume")


def _cmd_show_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    redacted = effective_config(config)

    if _flag(args, "json"):
        _emit_json({"command": "show-config", "config": redacted})
        return EXIT_PASSED

    renderer = _get_renderer(args)
    renderer.kv("Config file", _optional_str(getattr(args, "config_path", None)) or "(default)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return EXIT_PASSED


def _execute(
    args: argparse.Namespace,
    config: Mapping[str, Any],
    operation: Callable[[OrchestratorEngine], Awaitable[RunReport]],
    *,
    command: str,
) -> int:
    json_output = _flag(args, "json")
    try:
        with _logging_session(config, command, verbose=_flag(args, "verbose")):
            report = asyncio.run(_drive(config, operation))
    except ValidationError as exc:
        if json_output:
            _emit_json(
                {
                    "command": command,
                    "status": "Rejected",
                    "issues": [issue.to_dict() for issue in exc.issues],
                }
            )
        else:
            renderer = _get_renderer(args, stream=sys.stderr)
            renderer.heading("Run request rejected:")
            renderer.items([str(issue) for issue in exc.issues])
        return EXIT_REJECTED
    except (ProtocolError, ProcessTerminationError) as exc:
        raise CLIError(str(exc), exit_code=EXIT_PROTOCOL) from exc

    exit_code = exit_code_for_status(report.status)
    if json_output:
        _emit_json({"command": command, **report.to_dict()})
        return exit_code

    renderer = _get_renderer(args)
    renderer.kv("Run ID", report.run_id)
    renderer.kv("Type", report.run_type.value)
    renderer.status("Status", report.status.value)
    renderer.kv("Folder", report.folder)
    if report.suspended and report.resume_token is not None:
        renderer.next_steps([f"pctest resume {report.run_id} --token {report.resume_token}"])
    return exit_code


async def _drive(
    config: Mapping[str, Any],
    operation: Callable[[OrchestratorEngine], Awaitable[RunReport]],
) -> RunReport:
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    installed = _install_interrupt_handler(loop, token)
    try:
        return await operation(OrchestratorEngine(config, cancel_token=token))
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def _install_interrupt_handler(loop: asyncio.AbstractEventLoop, token: CancellationToken) -> bool:
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except (NotImplementedError, RuntimeError, ValueError):
        return False
    return True


def exit_code_for_status(status: RunStatus) -> int:
    """Map a top-level run status onto the process exit code contract."""

    if status is RunStatus.PASSED:
        return EXIT_PASSED
    if status is RunStatus.REBOOT_REQUIRED:
        return EXIT_REBOOT_REQUIRED
    return EXIT_NOT_PASSED


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace, *, stream: Any = None) -> CLIRenderer:
    """Retrieve or create a CLI renderer from the parsed namespace."""

    no_color = _flag(args, "no_color")
    verbose = _flag(args, "verbose")
    return create_renderer(no_color=no_color, verbose=verbose, stream=stream)


# ---------------------------------------------------------------------------
# Helpers: config, requests and logging
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    try:
        return load_config(config_path)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=EXIT_REJECTED) from exc


def _build_request(args: argparse.Namespace) -> RunRequest:
    inputs = _parse_json_object(getattr(args, "inputs", None), "--inputs")
    node_overrides = _parse_json_object(getattr(args, "node_overrides", None), "--node-overrides")
    env = _parse_json_object(getattr(args, "env", None), "--env")

    request_path = _optional_str(getattr(args, "request", None))
    if request_path is not None:
        if inputs or node_overrides or env:
            raise CLIError(
                "--request cannot be combined with --inputs, --node-overrides or --env",
                exit_code=EXIT_REJECTED,
            )
        document = _read_request_file(Path(request_path))
    else:
        document = {}
        for option, key in _TARGET_KEYS.items():
            value = _optional_str(getattr(args, option, None))
            if value is not None:
                document[key] = value
        if inputs:
            document["caseInputs"] = inputs
        if node_overrides:
            document["nodeOverrides"] = node_overrides
        if env:
            document["environmentOverrides"] = {"env": env}

    try:
        return RunRequest.from_dict(document)
    except ValidationError as exc:
        raise CLIError(
            "; ".join(str(issue) for issue in exc.issues), exit_code=EXIT_REJECTED
        ) from exc


def _read_request_file(path: Path) -> dict[str, Any]:
    try:
        raw = path.expanduser().read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"cannot read run request {path}: {exc}", exit_code=EXIT_REJECTED) from exc
    return _parse_json_object(raw, str(path)) or {}


def _parse_json_object(raw: str | None, label: str) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise CLIError(f"{label} is not valid JSON: {exc}", exit_code=EXIT_REJECTED) from exc
    if not isinstance(parsed, dict):
        raise CLIError(f"{label} must be a JSON object", exit_code=EXIT_REJECTED)
    return parsed


@contextmanager
def _logging_session(config: Mapping[str, Any], command: str, *, verbose: bool) -> Iterator[None]:
    observability = dict(config.get("observability", {}))
    if verbose:
        observability["log_to_stderr"] = True
    stamp = time.strftime("%Y%m%dT%H%M%SZ", time.gmtime())
    handle = setup_logging(observability, session_id=f"{command}-{stamp}-{os.getpid()}")
    try:
        yield
    finally:
        shutdown_logging(handle)


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise CLIError(f"{name} must be a non-empty string", exit_code=EXIT_REJECTED)
    return value


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = [
    "CLIError",
    "EXIT_INTERNAL",
    "EXIT_NOT_PASSED",
    "EXIT_PASSED",
    "EXIT_PROTOCOL",
    "EXIT_REBOOT_REQUIRED",
    "EXIT_REJECTED",
    "build_parser",
    "exit_code_for_status",
    "main",
    "run_cli",
]
