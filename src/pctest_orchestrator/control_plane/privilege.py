"""Process elevation detection and the pre-flight privilege gate."""

from __future__ import annotations

import ctypes
import os
from dataclasses import dataclass

from pctest_orchestrator.domain.errors import ErrorCode, ValidationIssue
from pctest_orchestrator.domain.models import Privilege


def is_process_elevated() -> bool:
    """``True`` when running as root (POSIX) or as an administrator (Windows)."""
    geteuid = getattr(os, "geteuid", None)
    if geteuid is not None:
        return geteuid() == 0
    try:
        return bool(ctypes.windll.shell32.IsUserAnAdmin())  # type: ignore[attr-defined]
    except (AttributeError, OSError):
        return False


@dataclass(frozen=True, slots=True)
class PrivilegeDecision:
    effective: Privilege
    elevated: bool
    rejection: ValidationIssue | None = None
    warning: str | None = None

    @property
    def allowed(self) -> bool:
        return self.rejection is None


def evaluate_privilege(effective: Privilege, *, elevated: bool, target: str) -> PrivilegeDecision:
    """Gate a run on its rolled-up privilege before anything is spawned."""
    if elevated or effective is Privilege.USER:
        return PrivilegeDecision(effective=effective, elevated=elevated)
    if effective is Privilege.ADMIN_REQUIRED:
        return PrivilegeDecision(
            effective=effective,
            elevated=elevated,
            rejection=ValidationIssue(
                ErrorCode.PRIVILEGE_REQUIRED,
                f"{target} requires elevated privileges but the orchestrator is not elevated",
                {"target": target, "privilege": effective.value},
            ),
        )
    return PrivilegeDecision(
        effective=effective,
        elevated=elevated,
        warning=f"{target} prefers elevated privileges; continuing without them",
    )


__all__ = ["PrivilegeDecision", "evaluate_privilege", "is_process_elevated"]
