"""Best-effort per-run ``events.jsonl`` diagnostics writer."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Final

from pctest_orchestrator.constants import EVENTS_FILE
from pctest_orchestrator.domain.results import format_timestamp, utc_now
from pctest_orchestrator.utils.fs import append_json_line

logger = logging.getLogger(__name__)

_DEFAULT_ERROR_BUFFER: Final[int] = 64


class EventCode(StrEnum):
    CASE_STARTED = "TestCase.Started"
    CASE_COMPLETED = "TestCase.Completed"
    CASE_REBOOT_REQUESTED = "TestCase.RebootRequested"
    CASE_RESUMED = "TestCase.Resumed"
    CASE_ERROR = "TestCase.Error"
    SUITE_STARTED = "TestSuite.Started"
    SUITE_RESUMED = "TestSuite.Resumed"
    SUITE_COMPLETED = "TestSuite.Completed"
    PLAN_STARTED = "TestPlan.Started"
    PLAN_RESUMED = "TestPlan.Resumed"
    PLAN_COMPLETED = "TestPlan.Completed"
    NODE_RETRY = "Node.Retry"
    NODE_ABORTED = "Node.Aborted"
    PRIVILEGE_WARNING = "Privilege.Warning"
    SECRET_ON_COMMAND_LINE = "EnvRef.SecretOnCommandLine"
    MAX_PARALLEL_IGNORED = "Controls.MaxParallel.Ignored"
    REBOOT_REQUEST_IGNORED = "Reboot.Request.Ignored"


class EventLevel(StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class WriteFailure:
    """A diagnostics write that failed without interrupting the run."""

    path: str
    code: str
    message: str


@dataclass(slots=True)
class EventLog:
    """
    Append-only event sink for one run folder.

    Events are diagnostics only and never a source of truth for status, so a failed
    write is recorded in ``failures`` and logged instead of being raised.
    """

    folder: Path
    run_id: str
    failures: deque[WriteFailure] = field(
        default_factory=lambda: deque(maxlen=_DEFAULT_ERROR_BUFFER)
    )
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def path(self) -> Path:
        return self.folder / EVENTS_FILE

    def emit(
        self,
        code: EventCode | str,
        message: str,
        *,
        level: EventLevel = EventLevel.INFO,
        payload: Mapping[str, Any] | None = None,
    ) -> bool:
        record: dict[str, Any] = {
            "timestamp": format_timestamp(utc_now()),
            "level": level.value,
            "code": str(code),
            "message": message,
            "runId": self.run_id,
        }
        if payload:
            record["payload"] = dict(payload)
        try:
            with self._lock:
                append_json_line(self.path, record)
        except (OSError, TypeError, ValueError) as exc:
            self.failures.append(WriteFailure(str(self.path), str(code), str(exc)))
            logger.warning("event write failed for %s (%s): %s", self.run_id, code, exc)
            return False
        return True

    def info(self, code: EventCode | str, message: str, **payload: Any) -> bool:
        return self.emit(code, message, payload=payload)

    def warning(self, code: EventCode | str, message: str, **payload: Any) -> bool:
        return self.emit(code, message, level=EventLevel.WARNING, payload=payload)

    def error(self, code: EventCode | str, message: str, **payload: Any) -> bool:
        return self.emit(code, message, level=EventLevel.ERROR, payload=payload)


__all__ = ["EventCode", "EventLevel", "EventLog", "WriteFailure"]
