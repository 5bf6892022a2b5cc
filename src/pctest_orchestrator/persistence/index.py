"""Append-only global run index (``index.jsonl``)."""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from types import TracebackType
from typing import IO, Any

from pctest_orchestrator.constants import INDEX_FILE
from pctest_orchestrator.domain.results import IndexEntry
from pctest_orchestrator.utils.fs import canonical_json

logger = logging.getLogger(__name__)


class RunIndex:
    """
    Single-owner append-only log with an explicit open/append/flush/close lifecycle.

    One instance is created per engine and handed to whichever component finalizes a
    run; appends are serialised by a lock so a future parallel walker stays safe.
    """

    def __init__(self, runs_root: Path) -> None:
        self._path = Path(runs_root) / INDEX_FILE
        self._handle: IO[str] | None = None
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    def open(self) -> RunIndex:
        with self._lock:
            if self._handle is None:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                self._handle = self._path.open("a", encoding="utf-8")
        return self

    def append(self, entry: IndexEntry) -> None:
        line = canonical_json(entry.to_dict()) + "\n"
        with self._lock:
            if self._handle is None:
                raise RuntimeError("run index is not open")
            self._handle.write(line)
            self._handle.flush()
            os.fsync(self._handle.fileno())
        logger.debug("indexed %s %s as %s", entry.run_type.value, entry.run_id, entry.status.value)

    def flush(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.flush()

    def close(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.flush()
                self._handle.close()
                self._handle = None

    def __enter__(self) -> RunIndex:
        return self.open()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    def read_entries(self) -> list[dict[str, Any]]:
        """Return every parseable line; a torn trailing line is skipped."""
        if not self._path.is_file():
            return []
        entries: list[dict[str, Any]] = []
        with self._path.open("r", encoding="utf-8") as handle:
            for line in handle:
                text = line.strip()
                if not text:
                    continue
                try:
                    parsed = json.loads(text)
                except json.JSONDecodeError:
                    logger.warning("skipping unreadable index line in %s", self._path)
                    continue
                if isinstance(parsed, dict):
                    entries.append(parsed)
        return entries


__all__ = ["RunIndex"]
