"""
pctest-orchestrator — filesystem utilities

File: src/pctest_orchestrator/utils/fs.py
Last updated: 2026-10-17

Purpose
- Provide safe, minimal filesystem helpers for atomic writes, append-only JSON lines,
  collision-free folder allocation, and symlink-aware containment checks.

Functional requirements
- Atomic writes use temp files in the destination directory and replace in a single step.
- Containment is always decided on fully resolved paths so a link cannot escape a root.

Non-functional requirements
- Standard library only and cross-platform behavior where feasible.
"""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Mapping

PathLike = str | os.PathLike[str]

__all__ = [
    "allocate_directory",
    "append_json_line",
    "atomic_write",
    "atomic_write_json",
    "canonical_json",
    "is_within",
    "read_json_object",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    The write strategy is:
    1. create temp file in the same directory,
    2. write + flush + fsync file data,
    3. replace target via ``os.replace``.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        if isinstance(data, bytes):
            with os.fdopen(fd, "wb") as file_handle:
                file_handle.write(data)
                file_handle.flush()
                os.fsync(file_handle.fileno())
        else:
            with os.fdopen(fd, "w", encoding=encoding) as file_handle:
                file_handle.write(data)
                file_handle.flush()
                os.fsync(file_handle.fileno())

        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def canonical_json(value: object, *, indent: int | None = None) -> str:
    """Serialize ``value`` deterministically (sorted keys, UTF-8 text)."""

    if indent is None:
        return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return json.dumps(value, sort_keys=True, indent=indent, ensure_ascii=False)


def atomic_write_json(path: PathLike, payload: object) -> None:
    """Write a pretty-printed JSON document through :func:`atomic_write`."""

    atomic_write(path, canonical_json(payload, indent=2) + "\n")


def append_json_line(path: PathLike, record: Mapping[str, Any]) -> None:
    """Append one canonical JSON object as a single line and flush it to disk."""

    line = canonical_json(dict(record)) + "\n"
    with Path(path).open("a", encoding="utf-8") as handle:
        handle.write(line)
        handle.flush()
        os.fsync(handle.fileno())


def read_json_object(path: PathLike) -> dict[str, Any]:
    """Read a JSON file whose root must be an object."""

    with Path(path).open("r", encoding="utf-8-sig") as handle:
        parsed = json.load(handle)
    if not isinstance(parsed, dict):
        raise ValueError(f"{path!s}: JSON root must be an object")
    return parsed


def allocate_directory(parent: PathLike, name: str) -> Path:
    """
    Create ``parent/name`` exclusively, appending ``_1``, ``_2``... on collision.

    ``mkdir`` without ``exist_ok`` is the arbiter, so two allocators racing for the same
    name can never share a folder.
    """

    root = Path(parent)
    root.mkdir(parents=True, exist_ok=True)
    attempt = 0
    while True:
        candidate = root / (name if attempt == 0 else f"{name}_{attempt}")
        try:
            candidate.mkdir()
        except FileExistsError:
            attempt += 1
            continue
        return candidate


def is_within(child: PathLike, parent: PathLike, *, strict: bool = True) -> bool:
    """
    Return ``True`` if resolved ``child`` is within resolved ``parent``.

    With ``strict=False`` the child does not need to exist: every existing component is
    still resolved (symlinks included) before the comparison.
    """

    try:
        resolved_parent = Path(parent).resolve(strict=True)
    except FileNotFoundError:
        return False
    if not resolved_parent.is_dir():
        return False

    try:
        resolved_child = Path(child).resolve(strict=strict)
    except FileNotFoundError:
        return False

    return _is_relative_to(resolved_child, resolved_parent)


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True


def _fsync_directory(path: Path) -> None:
    """
    Best-effort directory fsync for metadata durability after ``os.replace``.

    Some platforms/filesystems do not support fsync on directories.
    """

    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
