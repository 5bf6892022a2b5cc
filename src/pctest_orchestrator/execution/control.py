"""Control-directory protocol: the reboot request a leaf script may leave behind."""

from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from pctest_orchestrator.constants import REBOOT_REQUEST_FILE, REBOOT_REQUEST_TYPE

logger = logging.getLogger(__name__)

_ALLOWED_KEYS: Final[frozenset[str]] = frozenset({"type", "nextPhase", "reason", "reboot"})
_ALLOWED_REBOOT_KEYS: Final[frozenset[str]] = frozenset({"delaySec"})


class RebootRequestError(ValueError):
    """The request file exists but is not a valid reboot request."""


@dataclass(frozen=True, slots=True)
class RebootRequest:
    next_phase: int
    reason: str
    delay_sec: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "type": REBOOT_REQUEST_TYPE,
            "nextPhase": self.next_phase,
            "reason": self.reason,
        }
        if self.delay_sec is not None:
            out["reboot"] = {"delaySec": self.delay_sec}
        return out

    @classmethod
    def from_dict(cls, data: object) -> RebootRequest:
        if not isinstance(data, Mapping):
            raise RebootRequestError("reboot request root must be an object")
        unexpected = sorted(str(key) for key in data if key not in _ALLOWED_KEYS)
        if unexpected:
            raise RebootRequestError(f"unexpected properties in reboot request: {unexpected}")
        if data.get("type") != REBOOT_REQUEST_TYPE:
            raise RebootRequestError(f"reboot request 'type' must be {REBOOT_REQUEST_TYPE!r}")

        next_phase = data.get("nextPhase")
        if isinstance(next_phase, bool) or not isinstance(next_phase, int) or next_phase < 1:
            raise RebootRequestError("reboot request 'nextPhase' must be an integer >= 1")

        reason = data.get("reason")
        if not isinstance(reason, str) or not reason.strip():
            raise RebootRequestError("reboot request 'reason' must be a non-empty string")

        delay_sec: int | None = None
        if "reboot" in data:
            reboot = data["reboot"]
            if not isinstance(reboot, Mapping):
                raise RebootRequestError("reboot request 'reboot' must be an object when provided")
            unexpected = sorted(str(key) for key in reboot if key not in _ALLOWED_REBOOT_KEYS)
            if unexpected:
                raise RebootRequestError(f"unexpected properties in reboot request 'reboot': {unexpected}")
            if "delaySec" in reboot:
                delay = reboot["delaySec"]
                if isinstance(delay, bool) or not isinstance(delay, int) or delay < 0:
                    raise RebootRequestError("reboot request 'reboot.delaySec' must be an integer >= 0")
                delay_sec = delay

        return cls(next_phase=next_phase, reason=reason, delay_sec=delay_sec)


def reboot_request_path(control_dir: Path) -> Path:
    return control_dir / REBOOT_REQUEST_FILE


def read_reboot_request(control_dir: Path) -> RebootRequest | None:
    """Return the pending request, ``None`` when there is none, or raise ``RebootRequestError``."""
    path = reboot_request_path(control_dir)
    if not path.is_file():
        return None
    try:
        document = json.loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise RebootRequestError(f"failed to parse reboot request: {exc}") from exc
    return RebootRequest.from_dict(document)


def clear_reboot_request(control_dir: Path) -> bool:
    """Remove a request file; returns ``True`` when one was present."""
    path = reboot_request_path(control_dir)
    if not path.exists():
        return False
    with contextlib.suppress(FileNotFoundError):
        path.unlink()
    return True


__all__ = [
    "RebootRequest",
    "RebootRequestError",
    "clear_reboot_request",
    "read_reboot_request",
    "reboot_request_path",
]
