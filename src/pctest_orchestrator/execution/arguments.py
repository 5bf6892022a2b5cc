"""Command-line construction for leaf invocations."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from pathlib import Path

from pctest_orchestrator.domain.models import JSONValue


def format_argument_value(value: JSONValue) -> str:
    """Render one resolved value as a single argv token."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    if isinstance(value, float):
        return repr(value)
    return str(value)


def build_parameter_arguments(values: Mapping[str, JSONValue]) -> list[str]:
    """
    Turn resolved inputs into discrete ``-Name value`` pairs.

    ``None`` values are skipped entirely; nothing is ever passed as a placeholder.
    """

    args: list[str] = []
    for name, value in values.items():
        if value is None:
            continue
        args.extend((f"-{name}", format_argument_value(value)))
    return args


def build_command(
    interpreter: str,
    interpreter_args: Sequence[str],
    script: Path,
    values: Mapping[str, JSONValue],
) -> list[str]:
    """Full argv for ``asyncio.create_subprocess_exec``; never joined into a shell string."""
    return [interpreter, *interpreter_args, str(script), *build_parameter_arguments(values)]


__all__ = ["build_command", "build_parameter_arguments", "format_argument_value"]
