"""
pctest-orchestrator — tagged parameter-value conversion

File: src/pctest_orchestrator/resolution/values.py
Last updated: 2026-10-17

Purpose
- Convert loosely typed JSON/environment values into the declared parameter type.

Functional requirements
- One converter per ``ParameterType``; ``convert_parameter_value`` is the single entry
  point and never branches on the runtime type of the declaration.
- Range (inclusive), enum membership (case-sensitive) and pattern (full match) checks
  apply to scalars and to every array element.
- Every failure raises ``ParameterValueError`` naming the parameter and a stable code.
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Callable
from typing import Final

from pctest_orchestrator.domain.errors import ErrorCode
from pctest_orchestrator.domain.models import (
    NUMERIC_TYPES,
    STRING_LIKE_TYPES,
    JSONValue,
    ParameterDefinition,
    ParameterType,
)

_INT_TEXT_RE: Final[re.Pattern[str]] = re.compile(r"^[+-]?\d+$")
_TRUE_TOKENS: Final[frozenset[str]] = frozenset({"true", "1"})
_FALSE_TOKENS: Final[frozenset[str]] = frozenset({"false", "0"})


class ParameterValueError(ValueError):
    """A value could not be converted to, or does not satisfy, its declaration."""

    def __init__(self, parameter: str, code: ErrorCode, message: str) -> None:
        self.parameter = parameter
        self.code = code
        super().__init__(f"parameter {parameter!r}: {message}")


Converter = Callable[[object, ParameterDefinition], JSONValue]


def _type_error(definition: ParameterDefinition, value: object) -> ParameterValueError:
    return ParameterValueError(
        definition.name,
        ErrorCode.PARAMETER_TYPE_INVALID,
        f"expected {definition.type.value}, got {type(value).__name__} {value!r}",
    )


def _convert_int(value: object, definition: ParameterDefinition) -> JSONValue:
    if isinstance(value, bool):
        raise _type_error(definition, value)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    if isinstance(value, str) and _INT_TEXT_RE.fullmatch(value.strip()):
        return int(value.strip())
    raise _type_error(definition, value)


def _convert_double(value: object, definition: ParameterDefinition) -> JSONValue:
    if isinstance(value, bool):
        raise _type_error(definition, value)
    if isinstance(value, (int, float)):
        parsed = float(value)
    elif isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            raise _type_error(definition, value) from None
    else:
        raise _type_error(definition, value)
    if not math.isfinite(parsed):
        raise _type_error(definition, value)
    return parsed


def _convert_boolean(value: object, definition: ParameterDefinition) -> JSONValue:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        token = value.strip().lower()
        if token in _TRUE_TOKENS:
            return True
        if token in _FALSE_TOKENS:
            return False
    raise _type_error(definition, value)


def _convert_text(value: object, definition: ParameterDefinition) -> JSONValue:
    if isinstance(value, str):
        return value
    raise _type_error(definition, value)


def _convert_enum(value: object, definition: ParameterDefinition) -> JSONValue:
    if not isinstance(value, str):
        raise _type_error(definition, value)
    if value not in definition.enum_values:
        raise ParameterValueError(
            definition.name,
            ErrorCode.PARAMETER_ENUM_INVALID,
            f"{value!r} is not one of {list(definition.enum_values)}",
        )
    return value


_CONVERTERS: Final[dict[ParameterType, Converter]] = {
    ParameterType.STRING: _convert_text,
    ParameterType.PATH: _convert_text,
    ParameterType.FILE: _convert_text,
    ParameterType.FOLDER: _convert_text,
    ParameterType.INT: _convert_int,
    ParameterType.DOUBLE: _convert_double,
    ParameterType.BOOLEAN: _convert_boolean,
    ParameterType.ENUM: _convert_enum,
}


def _check_constraints(converted: JSONValue, definition: ParameterDefinition) -> None:
    if definition.type in NUMERIC_TYPES:
        number = float(converted)  # type: ignore[arg-type]
        if definition.minimum is not None and number < definition.minimum:
            raise ParameterValueError(
                definition.name,
                ErrorCode.PARAMETER_RANGE_INVALID,
                f"{converted!r} is below the minimum {definition.minimum!r}",
            )
        if definition.maximum is not None and number > definition.maximum:
            raise ParameterValueError(
                definition.name,
                ErrorCode.PARAMETER_RANGE_INVALID,
                f"{converted!r} is above the maximum {definition.maximum!r}",
            )
    if definition.pattern is not None and definition.type in STRING_LIKE_TYPES:
        if re.fullmatch(definition.pattern, str(converted)) is None:
            raise ParameterValueError(
                definition.name,
                ErrorCode.PARAMETER_PATTERN_INVALID,
                f"{converted!r} does not match pattern {definition.pattern!r}",
            )


def _convert_scalar(value: object, definition: ParameterDefinition) -> JSONValue:
    converted = _CONVERTERS[definition.type](value, definition)
    _check_constraints(converted, definition)
    return converted


def convert_parameter_value(
    definition: ParameterDefinition,
    value: object,
    *,
    from_environment: bool = False,
) -> JSONValue:
    """
    Convert ``value`` to the type declared by ``definition`` and validate it.

    ``from_environment`` marks text read from an environment variable; array parameters
    then accept a JSON array literal.
    """

    if not definition.is_array:
        return _convert_scalar(value, definition)

    items = value
    if from_environment and isinstance(value, str):
        try:
            items = json.loads(value)
        except json.JSONDecodeError:
            raise ParameterValueError(
                definition.name,
                ErrorCode.PARAMETER_TYPE_INVALID,
                f"environment value is not a JSON array: {value!r}",
            ) from None
    if not isinstance(items, (list, tuple)):
        raise ParameterValueError(
            definition.name,
            ErrorCode.PARAMETER_TYPE_INVALID,
            f"expected {definition.type_name}, got {type(items).__name__}",
        )
    return [_convert_scalar(item, definition) for item in items]


__all__ = ["ParameterValueError", "convert_parameter_value"]
