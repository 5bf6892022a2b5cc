"""Executable CLI entrypoint for ``pctest_orchestrator``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


class ExitCode(IntEnum):
    """Deterministic process exit-code contract."""

    PASSED = 0
    NOT_PASSED = 1
    REJECTED = 2
    PROTOCOL_ERROR = 3
    INTERNAL_ERROR = 4
    REBOOT_REQUIRED = 5


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint used by ``python -m pctest_orchestrator`` and the ``pctest`` script."""

    try:
        from pctest_orchestrator.ui.cli import run_cli

        return _normalize_exit_code(run_cli(argv))
    except SystemExit as exc:
        return _normalize_exit_code(exc.code)
    except KeyboardInterrupt:
        _write_stderr("interrupted")
        return int(ExitCode.PROTOCOL_ERROR)
    except BaseException as exc:  # noqa: BLE001 - CLI boundary normalization.
        exit_code = _route_exception(exc)
        _emit_failure(exc, exit_code)
        return int(exit_code)


def _normalize_exit_code(raw_code: object) -> int:
    if isinstance(raw_code, int) and raw_code in {code.value for code in ExitCode}:
        return raw_code
    if raw_code is None:
        return int(ExitCode.PASSED)
    if isinstance(raw_code, str) and raw_code.strip():
        _write_stderr(raw_code.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _route_exception(exc: BaseException) -> ExitCode:
    rejected_types = _load_rejection_types()
    protocol_types = _load_protocol_types()

    for item in _iter_exception_chain(exc):
        if isinstance(item, rejected_types):
            return ExitCode.REJECTED
        if isinstance(item, protocol_types):
            return ExitCode.PROTOCOL_ERROR
    return ExitCode.INTERNAL_ERROR


def _load_rejection_types() -> tuple[type[BaseException], ...]:
    from pctest_orchestrator.config.loader import ConfigLoadError
    from pctest_orchestrator.config.schema import ConfigValidationError
    from pctest_orchestrator.domain.errors import ValidationError

    return (ConfigLoadError, ConfigValidationError, ValidationError)


def _load_protocol_types() -> tuple[type[BaseException], ...]:
    from pctest_orchestrator.domain.errors import ProcessTerminationError, ProtocolError

    return (ProtocolError, ProcessTerminationError)


def _iter_exception_chain(exc: BaseException) -> list[BaseException]:
    seen: set[int] = set()
    items: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None:
        marker = id(current)
        if marker in seen:
            break
        seen.add(marker)
        items.append(current)
        if current.__cause__ is not None:
            current = current.__cause__
            continue
        if current.__context__ is not None and not current.__suppress_context__:
            current = current.__context__
            continue
        break
    return items


def _emit_failure(exc: BaseException, exit_code: ExitCode) -> None:
    if exit_code is ExitCode.INTERNAL_ERROR:
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        return
    _write_stderr(str(exc).strip() or exc.__class__.__name__)


def _write_stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "cli_entrypoint"]
