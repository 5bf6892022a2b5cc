"""Dataclass manifest models with lenient (forward-compatible) parsing."""

from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum, StrEnum
from typing import TYPE_CHECKING, Any, Final, NoReturn, TypeVar

from pctest_orchestrator.constants import MANIFEST_SCHEMA_VERSION
from pctest_orchestrator.domain import ids as domain_ids
from pctest_orchestrator.domain.errors import ErrorCode, ValidationError, ValidationIssue

if TYPE_CHECKING:
    from pctest_orchestrator.domain.ids import Identity

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT: Final[int] = 8192
_PARAMETER_NAME_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_ARRAY_SUFFIX: Final[str] = "[]"
_ENV_REF_KEY: Final[str] = "$env"
DEFAULT_TIMEOUT_POLICY: Final[str] = "AbortOnTimeout"


class Privilege(StrEnum):
    USER = "User"
    ADMIN_PREFERRED = "AdminPreferred"
    ADMIN_REQUIRED = "AdminRequired"

    @property
    def rank(self) -> int:
        return _PRIVILEGE_ORDER.index(self)


_PRIVILEGE_ORDER: Final[tuple[Privilege, ...]] = (
    Privilege.USER,
    Privilege.ADMIN_PREFERRED,
    Privilege.ADMIN_REQUIRED,
)


def max_privilege(*values: Privilege) -> Privilege:
    """Return the strictest privilege among ``values`` (``User`` when empty)."""
    if not values:
        return Privilege.USER
    return max(values, key=lambda item: item.rank)


class RunStatus(StrEnum):
    PASSED = "Passed"
    FAILED = "Failed"
    ERROR = "Error"
    TIMEOUT = "Timeout"
    ABORTED = "Aborted"
    REBOOT_REQUIRED = "RebootRequired"


class RunType(StrEnum):
    TEST_CASE = "TestCase"
    TEST_SUITE = "TestSuite"
    TEST_PLAN = "TestPlan"


class ParameterType(StrEnum):
    STRING = "string"
    INT = "int"
    DOUBLE = "double"
    BOOLEAN = "boolean"
    ENUM = "enum"
    PATH = "path"
    FILE = "file"
    FOLDER = "folder"


_TYPE_ALIASES: Final[dict[str, ParameterType]] = {"bool": ParameterType.BOOLEAN}
STRING_LIKE_TYPES: Final[frozenset[ParameterType]] = frozenset(
    {ParameterType.STRING, ParameterType.PATH, ParameterType.FILE, ParameterType.FOLDER}
)
NUMERIC_TYPES: Final[frozenset[ParameterType]] = frozenset(
    {ParameterType.INT, ParameterType.DOUBLE}
)


class ManifestError(ValueError):
    """Raised when a manifest document cannot be parsed into a model."""

    def __init__(self, message: str, *, code: ErrorCode = ErrorCode.MANIFEST_SCHEMA_INVALID) -> None:
        self.code = code
        super().__init__(message)


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        raise NotImplementedError

    def to_json(self) -> str:
        return _canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        if not isinstance(raw, str):
            _fail(cls.__name__, f"expected JSON string, got {type(raw).__name__}")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ManifestError(
                f"{cls.__name__}: invalid JSON: {exc}", code=ErrorCode.MANIFEST_PARSE_FAILED
            ) from exc
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


def _fail(
    path: str, message: str, *, code: ErrorCode = ErrorCode.MANIFEST_SCHEMA_INVALID
) -> NoReturn:
    raise ManifestError(f"{path}: {message}", code=code)


def _canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _expect_object(value: object, path: str, *, required: set[str] | None = None) -> dict[str, object]:
    # Unknown fields are tolerated so newer manifests keep loading.
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    missing = sorted(key for key in (required or set()) if parsed.get(key) in (None, ""))
    if missing:
        _fail(path, f"missing required fields: {missing}", code=ErrorCode.MANIFEST_REQUIRED_FIELD_MISSING)
    return parsed


def _as_str(value: object, path: str, *, min_len: int = 1, max_len: int = _MAX_TEXT) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, min_len=0)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        else:
            _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_optional_number(value: object, path: str) -> float | int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    if not math.isfinite(float(value)):
        _fail(path, "must be finite")
    return value


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(str(item.value) for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_sequence(value: object, path: str) -> list[object]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_str_tuple(value: object, path: str) -> tuple[str, ...]:
    return tuple(_as_str(item, f"{path}[{index}]") for index, item in enumerate(_as_sequence(value, path)))


def _as_str_dict(value: object, path: str) -> dict[str, str]:
    if value is None:
        return {}
    parsed = _expect_object(value, path)
    out: dict[str, str] = {}
    for key, item in parsed.items():
        if item is None:
            item = ""
        if isinstance(item, bool) or not isinstance(item, (str, int, float)):
            _fail(f"{path}.{key}", f"expected string value, got {type(item).__name__}")
        out[key] = item if isinstance(item, str) else json.dumps(item)
    return out


def _as_input_map(value: object, path: str) -> dict[str, object]:
    if value is None:
        return {}
    parsed = _expect_object(value, path)
    return {key: _parse_input_value(item, f"{path}.{key}") for key, item in parsed.items()}


def _identity_part(value: object, path: str) -> str:
    text = _as_str(value, path)
    try:
        return domain_ids.validate_identity_part(text, path.rsplit(".", 1)[-1])
    except ValueError as exc:
        _fail(path, str(exc))


@dataclass(frozen=True, slots=True)
class EnvRef(CanonicalModel):
    """A parameter value resolved from an environment variable at run time."""

    name: str
    default: JSONValue = None
    required: bool = False
    secret: bool = False

    @staticmethod
    def is_env_ref(value: object) -> bool:
        return isinstance(value, Mapping) and _ENV_REF_KEY in value

    def to_dict(self) -> dict[str, JSONValue]:
        out: dict[str, JSONValue] = {_ENV_REF_KEY: self.name}
        if self.default is not None:
            out["default"] = self.default
        if self.required:
            out["required"] = True
        if self.secret:
            out["secret"] = True
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> EnvRef:
        parsed = _expect_object(data, "EnvRef", required={_ENV_REF_KEY})
        return cls(
            name=_as_str(parsed[_ENV_REF_KEY], f"EnvRef.{_ENV_REF_KEY}"),
            default=parsed.get("default"),  # type: ignore[arg-type]
            required=_as_bool(parsed.get("required", False), "EnvRef.required"),
            secret=_as_bool(parsed.get("secret", False), "EnvRef.secret"),
        )


def _parse_input_value(value: object, path: str) -> object:
    if EnvRef.is_env_ref(value):
        try:
            return EnvRef.from_dict(value)  # type: ignore[arg-type]
        except ManifestError as exc:
            _fail(path, str(exc))
    return value


def input_template(value: object) -> JSONValue:
    """Render an input value (literal or :class:`EnvRef`) back to its JSON form."""
    if isinstance(value, EnvRef):
        return value.to_dict()
    return value  # type: ignore[return-value]


@dataclass(frozen=True, slots=True)
class ParameterDefinition(CanonicalModel):
    name: str
    type: ParameterType
    is_array: bool = False
    required: bool = False
    default: JSONValue = None
    minimum: float | int | None = None
    maximum: float | int | None = None
    enum_values: tuple[str, ...] = ()
    pattern: str | None = None
    unit: str | None = None
    ui_hint: str | None = None
    help: str | None = None

    @property
    def type_name(self) -> str:
        return f"{self.type.value}{_ARRAY_SUFFIX}" if self.is_array else self.type.value

    def to_dict(self) -> dict[str, JSONValue]:
        out: dict[str, JSONValue] = {
            "name": self.name,
            "type": self.type_name,
            "required": self.required,
        }
        if self.default is not None:
            out["default"] = self.default
        if self.minimum is not None:
            out["min"] = self.minimum
        if self.maximum is not None:
            out["max"] = self.maximum
        if self.enum_values:
            out["enumValues"] = list(self.enum_values)
        for key, value in (("pattern", self.pattern), ("unit", self.unit), ("uiHint", self.ui_hint), ("help", self.help)):
            if value is not None:
                out[key] = value
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ParameterDefinition:
        parsed = _expect_object(data, "Parameter", required={"name", "type"})
        name = _as_str(parsed["name"], "Parameter.name")
        path = f"Parameter[{name}]"
        if not _PARAMETER_NAME_RE.fullmatch(name):
            _fail(f"{path}.name", f"must match {_PARAMETER_NAME_RE.pattern}")

        raw_type = _as_str(parsed["type"], f"{path}.type").lower()
        is_array = raw_type.endswith(_ARRAY_SUFFIX)
        base = raw_type[: -len(_ARRAY_SUFFIX)] if is_array else raw_type
        param_type = _TYPE_ALIASES.get(base) or _as_enum(ParameterType, base, f"{path}.type")

        enum_values = _as_str_tuple(parsed.get("enumValues"), f"{path}.enumValues")
        if param_type is ParameterType.ENUM and not enum_values:
            _fail(f"{path}.enumValues", "enum parameters must declare enumValues")

        pattern = _as_optional_str(parsed.get("pattern"), f"{path}.pattern") or None
        if pattern is not None:
            try:
                re.compile(pattern)
            except re.error as exc:
                _fail(f"{path}.pattern", f"invalid regular expression: {exc}")

        minimum = _as_optional_number(parsed.get("min"), f"{path}.min")
        maximum = _as_optional_number(parsed.get("max"), f"{path}.max")
        if minimum is not None and maximum is not None and minimum > maximum:
            _fail(path, "min must be <= max")

        return cls(
            name=name,
            type=param_type,
            is_array=is_array,
            required=_as_bool(parsed.get("required", False), f"{path}.required"),
            default=parsed.get("default"),  # type: ignore[arg-type]
            minimum=minimum,
            maximum=maximum,
            enum_values=enum_values,
            pattern=pattern,
            unit=_as_optional_str(parsed.get("unit"), f"{path}.unit"),
            ui_hint=_as_optional_str(parsed.get("uiHint"), f"{path}.uiHint"),
            help=_as_optional_str(parsed.get("help"), f"{path}.help"),
        )


@dataclass(frozen=True, slots=True)
class CaseManifest(CanonicalModel):
    id: str
    name: str
    category: str
    version: str
    privilege: Privilege = Privilege.USER
    timeout_sec: int | None = None
    description: str | None = None
    tags: tuple[str, ...] = ()
    parameters: tuple[ParameterDefinition, ...] = ()
    schema_version: str = MANIFEST_SCHEMA_VERSION
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def identity(self) -> Identity:
        return domain_ids.Identity(self.id, self.version)

    def parameter(self, name: str) -> ParameterDefinition | None:
        for definition in self.parameters:
            if definition.name == name:
                return definition
        return None

    def to_dict(self) -> dict[str, JSONValue]:
        out: dict[str, JSONValue] = {
            "schemaVersion": self.schema_version,
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "version": self.version,
            "privilege": self.privilege.value,
            "tags": list(self.tags),
            "parameters": [item.to_dict() for item in self.parameters],
        }
        if self.timeout_sec is not None:
            out["timeoutSec"] = self.timeout_sec
        if self.description is not None:
            out["description"] = self.description
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> CaseManifest:
        parsed = _expect_object(data, "CaseManifest", required={"id", "name", "category", "version"})
        parameters = tuple(
            ParameterDefinition.from_dict(item)  # type: ignore[arg-type]
            for item in _as_sequence(parsed.get("parameters"), "CaseManifest.parameters")
        )
        names = [item.name for item in parameters]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            _fail("CaseManifest.parameters", f"duplicate parameter names: {duplicates}")

        timeout = parsed.get("timeoutSec")
        return cls(
            id=_identity_part(parsed["id"], "CaseManifest.id"),
            name=_as_str(parsed["name"], "CaseManifest.name"),
            category=_as_str(parsed["category"], "CaseManifest.category"),
            version=_identity_part(parsed["version"], "CaseManifest.version"),
            privilege=_as_enum(Privilege, parsed.get("privilege", Privilege.USER.value), "CaseManifest.privilege"),
            timeout_sec=None if timeout is None else _as_int(timeout, "CaseManifest.timeoutSec", minimum=1),
            description=_as_optional_str(parsed.get("description"), "CaseManifest.description"),
            tags=_as_str_tuple(parsed.get("tags"), "CaseManifest.tags"),
            parameters=parameters,
            schema_version=_as_str(
                str(parsed.get("schemaVersion", MANIFEST_SCHEMA_VERSION)), "CaseManifest.schemaVersion"
            ),
            raw=dict(parsed),
        )


@dataclass(frozen=True, slots=True)
class SuiteControls(CanonicalModel):
    repeat: int = 1
    max_parallel: int = 1
    continue_on_failure: bool = False
    retry_on_error: int = 0
    timeout_policy: str = DEFAULT_TIMEOUT_POLICY

    def overlay(self, override: SuiteControls) -> SuiteControls:
        """Apply a plan node's controls on top; only non-default values win."""
        defaults = SuiteControls()
        return SuiteControls(
            repeat=override.repeat if override.repeat != defaults.repeat else self.repeat,
            max_parallel=(
                override.max_parallel if override.max_parallel != defaults.max_parallel else self.max_parallel
            ),
            continue_on_failure=self.continue_on_failure or override.continue_on_failure,
            retry_on_error=(
                override.retry_on_error
                if override.retry_on_error != defaults.retry_on_error
                else self.retry_on_error
            ),
            timeout_policy=(
                override.timeout_policy
                if override.timeout_policy != defaults.timeout_policy
                else self.timeout_policy
            ),
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "repeat": self.repeat,
            "maxParallel": self.max_parallel,
            "continueOnFailure": self.continue_on_failure,
            "retryOnError": self.retry_on_error,
            "timeoutPolicy": self.timeout_policy,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object] | None) -> SuiteControls:
        parsed = _expect_object(data or {}, "Controls")
        return cls(
            repeat=_as_int(parsed.get("repeat", 1), "Controls.repeat", minimum=1),
            max_parallel=_as_int(parsed.get("maxParallel", 1), "Controls.maxParallel", minimum=1),
            continue_on_failure=_as_bool(
                parsed.get("continueOnFailure", False), "Controls.continueOnFailure"
            ),
            retry_on_error=_as_int(parsed.get("retryOnError", 0), "Controls.retryOnError", minimum=0),
            timeout_policy=_as_str(
                parsed.get("timeoutPolicy", DEFAULT_TIMEOUT_POLICY), "Controls.timeoutPolicy"
            ),
        )


@dataclass(frozen=True, slots=True)
class NodeControls(CanonicalModel):
    """Per-node overrides inside a suite; ``None`` inherits the suite value."""

    retry_on_error: int | None = None
    repeat: int | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        out: dict[str, JSONValue] = {}
        if self.retry_on_error is not None:
            out["retryOnError"] = self.retry_on_error
        if self.repeat is not None:
            out["repeat"] = self.repeat
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, object] | None) -> NodeControls:
        parsed = _expect_object(data or {}, "NodeControls")
        retry = parsed.get("retryOnError")
        repeat = parsed.get("repeat")
        return cls(
            retry_on_error=None if retry is None else _as_int(retry, "NodeControls.retryOnError", minimum=0),
            repeat=None if repeat is None else _as_int(repeat, "NodeControls.repeat", minimum=1),
        )


@dataclass(frozen=True, slots=True)
class SuiteEnvironment(CanonicalModel):
    env: Mapping[str, str] = field(default_factory=dict)
    working_dir: str | None = None
    runner_hints: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, JSONValue]:
        out: dict[str, JSONValue] = {"env": dict(self.env)}
        if self.working_dir is not None:
            out["workingDir"] = self.working_dir
        if self.runner_hints:
            out["runnerHints"] = dict(self.runner_hints)
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, object] | None) -> SuiteEnvironment:
        parsed = _expect_object(data or {}, "Environment")
        hints = parsed.get("runnerHints")
        return cls(
            env=_as_str_dict(parsed.get("env"), "Environment.env"),
            working_dir=_as_optional_str(parsed.get("workingDir"), "Environment.workingDir") or None,
            runner_hints=_expect_object(hints, "Environment.runnerHints") if hints is not None else {},
        )


@dataclass(frozen=True, slots=True)
class SuiteNode(CanonicalModel):
    node_id: str
    ref: str
    inputs: Mapping[str, object] = field(default_factory=dict)
    controls: NodeControls = field(default_factory=NodeControls)

    def to_dict(self) -> dict[str, JSONValue]:
        out: dict[str, JSONValue] = {
            "nodeId": self.node_id,
            "ref": self.ref,
            "inputs": {key: input_template(value) for key, value in self.inputs.items()},
        }
        controls = self.controls.to_dict()
        if controls:
            out["controls"] = controls
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> SuiteNode:
        parsed = _expect_object(data, "SuiteNode", required={"nodeId", "ref"})
        node_id = _as_str(parsed["nodeId"], "SuiteNode.nodeId")
        return cls(
            node_id=node_id,
            ref=_as_str(parsed["ref"], f"SuiteNode[{node_id}].ref"),
            inputs=_as_input_map(parsed.get("inputs"), f"SuiteNode[{node_id}].inputs"),
            controls=NodeControls.from_dict(parsed.get("controls")),  # type: ignore[arg-type]
        )


@dataclass(frozen=True, slots=True)
class SuiteManifest(CanonicalModel):
    id: str
    name: str
    version: str
    test_cases: tuple[SuiteNode, ...] = ()
    controls: SuiteControls = field(default_factory=SuiteControls)
    environment: SuiteEnvironment = field(default_factory=SuiteEnvironment)
    description: str | None = None
    tags: tuple[str, ...] = ()
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def identity(self) -> Identity:
        return domain_ids.Identity(self.id, self.version)

    def to_dict(self) -> dict[str, JSONValue]:
        out: dict[str, JSONValue] = {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "tags": list(self.tags),
            "controls": self.controls.to_dict(),
            "environment": self.environment.to_dict(),
            "testCases": [node.to_dict() for node in self.test_cases],
        }
        if self.description is not None:
            out["description"] = self.description
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> SuiteManifest:
        parsed = _expect_object(data, "SuiteManifest", required={"id", "name", "version"})
        return cls(
            id=_identity_part(parsed["id"], "SuiteManifest.id"),
            name=_as_str(parsed["name"], "SuiteManifest.name"),
            version=_identity_part(parsed["version"], "SuiteManifest.version"),
            test_cases=tuple(
                SuiteNode.from_dict(item)  # type: ignore[arg-type]
                for item in _as_sequence(parsed.get("testCases"), "SuiteManifest.testCases")
            ),
            controls=SuiteControls.from_dict(parsed.get("controls")),  # type: ignore[arg-type]
            environment=SuiteEnvironment.from_dict(parsed.get("environment")),  # type: ignore[arg-type]
            description=_as_optional_str(parsed.get("description"), "SuiteManifest.description"),
            tags=_as_str_tuple(parsed.get("tags"), "SuiteManifest.tags"),
            raw=dict(parsed),
        )


@dataclass(frozen=True, slots=True)
class PlanEnvironment(CanonicalModel):
    env: Mapping[str, str] = field(default_factory=dict)
    invalid_keys: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, JSONValue]:
        return {"env": dict(self.env)}

    @classmethod
    def from_dict(cls, data: Mapping[str, object] | None) -> PlanEnvironment:
        parsed = _expect_object(data or {}, "PlanEnvironment")
        return cls(
            env=_as_str_dict(parsed.get("env"), "PlanEnvironment.env"),
            invalid_keys=tuple(sorted(key for key in parsed if key != "env")),
        )


@dataclass(frozen=True, slots=True)
class PlanNode(CanonicalModel):
    node_id: str
    ref: str
    controls: SuiteControls = field(default_factory=SuiteControls)

    def to_dict(self) -> dict[str, JSONValue]:
        return {"nodeId": self.node_id, "ref": self.ref, "controls": self.controls.to_dict()}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PlanNode:
        parsed = _expect_object(data, "PlanNode", required={"ref"})
        ref = _as_str(parsed["ref"], "PlanNode.ref")
        return cls(
            node_id=_as_str(parsed.get("nodeId", ref), "PlanNode.nodeId"),
            ref=ref,
            controls=SuiteControls.from_dict(parsed.get("controls")),  # type: ignore[arg-type]
        )


@dataclass(frozen=True, slots=True)
class PlanManifest(CanonicalModel):
    id: str
    name: str
    version: str
    nodes: tuple[PlanNode, ...] = ()
    environment: PlanEnvironment = field(default_factory=PlanEnvironment)
    continue_on_failure: bool = True
    description: str | None = None
    tags: tuple[str, ...] = ()
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def identity(self) -> Identity:
        return domain_ids.Identity(self.id, self.version)

    def to_dict(self) -> dict[str, JSONValue]:
        out: dict[str, JSONValue] = {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "tags": list(self.tags),
            "environment": self.environment.to_dict(),
            "controls": {"continueOnFailure": self.continue_on_failure},
            "testSuites": [node.to_dict() for node in self.nodes],
        }
        if self.description is not None:
            out["description"] = self.description
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PlanManifest:
        parsed = _expect_object(data, "PlanManifest", required={"id", "name", "version"})
        nodes: list[PlanNode] = [
            PlanNode.from_dict(item)  # type: ignore[arg-type]
            for item in _as_sequence(parsed.get("testSuites"), "PlanManifest.testSuites")
        ]
        seen: dict[str, int] = {}
        for index, item in enumerate(_as_sequence(parsed.get("suites"), "PlanManifest.suites")):
            ref = _as_str(item, f"PlanManifest.suites[{index}]")
            seen[ref] = seen.get(ref, 0) + 1
            node_id = ref if seen[ref] == 1 else f"{ref}_{seen[ref]}"
            nodes.append(PlanNode(node_id=node_id, ref=ref))

        controls = _expect_object(parsed.get("controls") or {}, "PlanManifest.controls")
        return cls(
            id=_identity_part(parsed["id"], "PlanManifest.id"),
            name=_as_str(parsed["name"], "PlanManifest.name"),
            version=_identity_part(parsed["version"], "PlanManifest.version"),
            nodes=tuple(nodes),
            environment=PlanEnvironment.from_dict(parsed.get("environment")),  # type: ignore[arg-type]
            continue_on_failure=_as_bool(
                controls.get("continueOnFailure", True), "PlanManifest.controls.continueOnFailure"
            ),
            description=_as_optional_str(parsed.get("description"), "PlanManifest.description"),
            tags=_as_str_tuple(parsed.get("tags"), "PlanManifest.tags"),
            raw=dict(parsed),
        )


@dataclass(frozen=True, slots=True)
class RunRequest(CanonicalModel):
    """An invocation: one target plus optional input and environment overrides."""

    run_type: RunType
    target: str
    case_inputs: Mapping[str, object] = field(default_factory=dict)
    node_overrides: Mapping[str, Mapping[str, object]] = field(default_factory=dict)
    environment_overrides: Mapping[str, str] = field(default_factory=dict)

    @property
    def has_overrides(self) -> bool:
        return bool(self.case_inputs or self.node_overrides or self.environment_overrides)

    def to_dict(self) -> dict[str, JSONValue]:
        key = _TARGET_KEYS[self.run_type]
        out: dict[str, JSONValue] = {key: self.target}
        if self.case_inputs:
            out["caseInputs"] = {k: input_template(v) for k, v in self.case_inputs.items()}
        if self.node_overrides:
            out["nodeOverrides"] = {
                node_id: {"inputs": {k: input_template(v) for k, v in inputs.items()}}
                for node_id, inputs in self.node_overrides.items()
            }
        if self.environment_overrides:
            out["environmentOverrides"] = {"env": dict(self.environment_overrides)}
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RunRequest:
        """Parse a request document; every problem is reported as one ``ValidationError``."""
        if not isinstance(data, Mapping):
            raise ValidationError(
                [ValidationIssue(ErrorCode.RUN_REQUEST_TARGET_INVALID, "run request must be a JSON object")]
            )
        targets = [(run_type, data[key]) for run_type, key in _TARGET_KEYS.items() if data.get(key)]
        if len(targets) != 1:
            raise ValidationError(
                [
                    ValidationIssue(
                        ErrorCode.RUN_REQUEST_TARGET_INVALID,
                        "run request must name exactly one of: suite, testCase, plan",
                        {"targets": sorted(_TARGET_KEYS[run_type] for run_type, _ in targets)},
                    )
                ]
            )
        run_type, target = targets[0]
        if not isinstance(target, str):
            raise ValidationError(
                [ValidationIssue(ErrorCode.RUN_REQUEST_TARGET_INVALID, "run request target must be a string")]
            )

        try:
            case_inputs = _as_input_map(data.get("caseInputs"), "RunRequest.caseInputs")
            node_overrides: dict[str, dict[str, object]] = {}
            for node_id, override in _expect_object(
                data.get("nodeOverrides") or {}, "RunRequest.nodeOverrides"
            ).items():
                body = _expect_object(override or {}, f"RunRequest.nodeOverrides.{node_id}")
                node_overrides[node_id] = _as_input_map(
                    body.get("inputs"), f"RunRequest.nodeOverrides.{node_id}.inputs"
                )
            env_block = _expect_object(
                data.get("environmentOverrides") or {}, "RunRequest.environmentOverrides"
            )
            env = _as_str_dict(env_block.get("env"), "RunRequest.environmentOverrides.env")
        except ManifestError as exc:
            raise ValidationError(
                [ValidationIssue(ErrorCode.RUN_REQUEST_TARGET_INVALID, str(exc))]
            ) from exc

        return cls(
            run_type=run_type,
            target=target,
            case_inputs=case_inputs,
            node_overrides=node_overrides,
            environment_overrides=env,
        )


_TARGET_KEYS: Final[dict[RunType, str]] = {
    RunType.TEST_SUITE: "suite",
    RunType.TEST_CASE: "testCase",
    RunType.TEST_PLAN: "plan",
}


__all__ = [
    "CanonicalModel",
    "CaseManifest",
    "DEFAULT_TIMEOUT_POLICY",
    "EnvRef",
    "JSONValue",
    "ManifestError",
    "NUMERIC_TYPES",
    "NodeControls",
    "ParameterDefinition",
    "ParameterType",
    "PlanEnvironment",
    "PlanManifest",
    "PlanNode",
    "Privilege",
    "RunRequest",
    "RunStatus",
    "RunType",
    "STRING_LIKE_TYPES",
    "SuiteControls",
    "SuiteEnvironment",
    "SuiteManifest",
    "SuiteNode",
    "input_template",
    "max_privilege",
]
