"""Utility exports for filesystem and concurrency helpers."""

from pctest_orchestrator.utils.concurrency import (
    CancellationToken,
    first_completed,
)
from pctest_orchestrator.utils.fs import (
    allocate_directory,
    append_json_line,
    atomic_write,
    atomic_write_json,
    canonical_json,
    is_within,
    read_json_object,
)

__all__ = [
    "CancellationToken",
    "allocate_directory",
    "append_json_line",
    "atomic_write",
    "atomic_write_json",
    "canonical_json",
    "first_completed",
    "is_within",
    "read_json_object",
]
