"""Canonical run-id generation and ``id@version`` identity handling."""

from __future__ import annotations

import re
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Final

CASE_RUN_PREFIX: Final[str] = "R"
SUITE_RUN_PREFIX: Final[str] = "S"
PLAN_RUN_PREFIX: Final[str] = "P"
RUN_ID_RANDOM_BYTES: Final[int] = 4
IDENTITY_SEPARATOR: Final[str] = "@"

_RUN_ID_PREFIXES: Final[frozenset[str]] = frozenset(
    {CASE_RUN_PREFIX, SUITE_RUN_PREFIX, PLAN_RUN_PREFIX}
)
_RUN_ID_RE: Final[re.Pattern[str]] = re.compile(r"^([RSP])-(\d{14})-([0-9a-f]{8})(?:_\d+)?$")
_IDENTITY_PART_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9._-]+$")

_RandBytes = Callable[[int], bytes]


@dataclass(frozen=True, slots=True, order=True)
class Identity:
    """An entity identity: ``id`` and ``version`` joined by ``@``."""

    id: str
    version: str

    def __post_init__(self) -> None:
        validate_identity_part(self.id, "id")
        validate_identity_part(self.version, "version")

    def __str__(self) -> str:
        return f"{self.id}{IDENTITY_SEPARATOR}{self.version}"


def validate_identity_part(value: object, label: str) -> str:
    """Validate one half of an identity and return it unchanged."""
    if not isinstance(value, str):
        raise ValueError(f"identity {label} must be a string, got {type(value).__name__}")
    if not _IDENTITY_PART_RE.fullmatch(value):
        raise ValueError(f"identity {label} {value!r} must match {_IDENTITY_PART_RE.pattern}")
    return value


def parse_identity(raw: object) -> Identity:
    """Parse ``id@version`` and raise ``ValueError`` on anything else."""
    if not isinstance(raw, str):
        raise ValueError(f"identity must be a string, got {type(raw).__name__}")
    if raw.count(IDENTITY_SEPARATOR) != 1:
        raise ValueError(f"identity {raw!r} must have the form id@version")
    entity_id, version = raw.split(IDENTITY_SEPARATOR)
    return Identity(id=entity_id, version=version)


def format_identity(entity_id: str, version: str) -> str:
    return str(Identity(id=entity_id, version=version))


def generate_run_id(
    prefix: str = CASE_RUN_PREFIX,
    *,
    now: datetime | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate ``<prefix>-YYYYMMDDHHMMSS-<8 hex>`` using the UTC clock."""
    if prefix not in _RUN_ID_PREFIXES:
        raise ValueError(f"run id prefix must be one of {sorted(_RUN_ID_PREFIXES)}, got {prefix!r}")
    moment = now if now is not None else datetime.now(tz=UTC)
    if moment.tzinfo is None:
        raise ValueError("run id timestamp must be timezone-aware")
    stamp = moment.astimezone(UTC).strftime("%Y%m%d%H%M%S")
    generator = randbytes if randbytes is not None else secrets.token_bytes
    random_part = generator(RUN_ID_RANDOM_BYTES)
    if len(random_part) != RUN_ID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {RUN_ID_RANDOM_BYTES} bytes")
    return f"{prefix}-{stamp}-{random_part.hex()}"


def validate_run_id(id_str: object) -> str:
    """Validate a run id (including an optional ``_n`` collision suffix)."""
    if not isinstance(id_str, str):
        raise ValueError(f"run id must be a string, got {type(id_str).__name__}")
    if not _RUN_ID_RE.fullmatch(id_str):
        raise ValueError(f"invalid run id {id_str!r}; expected e.g. R-20260101120000-0a1b2c3d")
    return id_str


def run_id_prefix(id_str: str) -> str:
    return validate_run_id(id_str)[0]


__all__ = [
    "CASE_RUN_PREFIX",
    "IDENTITY_SEPARATOR",
    "Identity",
    "PLAN_RUN_PREFIX",
    "RUN_ID_RANDOM_BYTES",
    "SUITE_RUN_PREFIX",
    "format_identity",
    "generate_run_id",
    "parse_identity",
    "run_id_prefix",
    "validate_identity_part",
    "validate_run_id",
]
