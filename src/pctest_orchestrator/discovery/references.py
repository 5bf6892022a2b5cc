"""Reference resolution: suite→case folder refs and ``id@version`` lookups."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Generic, TypeVar

from pctest_orchestrator.constants import CASE_MANIFEST_FILE
from pctest_orchestrator.domain.errors import ErrorCode, ValidationIssue
from pctest_orchestrator.domain.ids import parse_identity
from pctest_orchestrator.domain.models import RunType
from pctest_orchestrator.utils.fs import is_within

if TYPE_CHECKING:
    from pctest_orchestrator.discovery.scanner import DiscoveredEntity, DiscoveryResult

E = TypeVar("E")


class RefFailure(StrEnum):
    OUT_OF_ROOT = "OutOfRoot"
    NOT_FOUND = "NotFound"
    MISSING_MANIFEST = "MissingManifest"


@dataclass(frozen=True, slots=True)
class Resolved(Generic[E]):
    """Either a resolved entity or the structured issue explaining why not."""

    entity: E | None = None
    issue: ValidationIssue | None = None

    @property
    def ok(self) -> bool:
        return self.entity is not None


def resolve_case_ref(
    ref: str,
    cases_root: Path,
    discovery: DiscoveryResult,
    *,
    node_id: str | None = None,
) -> Resolved[DiscoveredEntity]:  # type: ignore[type-arg]
    """
    Resolve a suite node's folder reference against the case root.

    Containment is decided on the fully resolved path, so a symlink inside the root that
    points outside it is ``OutOfRoot`` even though the literal path looks contained.
    Failure priority: OutOfRoot, then NotFound, then MissingManifest.
    """

    candidate = Path(ref)
    if not candidate.is_absolute():
        candidate = cases_root / candidate
    resolved = candidate.resolve(strict=False)

    if not is_within(resolved, cases_root, strict=False):
        return Resolved(issue=_ref_issue(ref, RefFailure.OUT_OF_ROOT, resolved, node_id))
    if not resolved.is_dir():
        return Resolved(issue=_ref_issue(ref, RefFailure.NOT_FOUND, resolved, node_id))
    if not (resolved / CASE_MANIFEST_FILE).is_file():
        return Resolved(issue=_ref_issue(ref, RefFailure.MISSING_MANIFEST, resolved, node_id))

    entity = discovery.case_in_folder(resolved)
    if entity is None:
        # Present on disk but skipped by discovery as unparsable.
        return Resolved(issue=_ref_issue(ref, RefFailure.MISSING_MANIFEST, resolved, node_id))
    return Resolved(entity=entity)


def resolve_identity(
    raw: str,
    kind: RunType,
    discovery: DiscoveryResult,
    *,
    not_found_code: ErrorCode = ErrorCode.RUN_REQUEST_IDENTITY_NOT_FOUND,
) -> Resolved[DiscoveredEntity]:  # type: ignore[type-arg]
    """Look up an ``id@version`` string among the discovered entities of ``kind``."""
    try:
        identity = parse_identity(raw)
    except ValueError as exc:
        return Resolved(
            issue=ValidationIssue(
                ErrorCode.RUN_REQUEST_IDENTITY_INVALID_FORMAT,
                str(exc),
                {"identity": raw, "entityType": kind.value},
            )
        )

    entity = discovery.entities(kind).get(str(identity))
    if entity is None:
        return Resolved(
            issue=ValidationIssue(
                not_found_code,
                f"{kind.value} {identity} was not found under the configured root",
                {"identity": str(identity), "entityType": kind.value},
            )
        )
    return Resolved(entity=entity)


def _ref_issue(ref: str, reason: RefFailure, resolved: Path, node_id: str | None) -> ValidationIssue:
    messages = {
        RefFailure.OUT_OF_ROOT: "resolves outside the test case root",
        RefFailure.NOT_FOUND: "does not name an existing folder",
        RefFailure.MISSING_MANIFEST: f"has no readable {CASE_MANIFEST_FILE}",
    }
    payload: dict[str, object] = {"ref": ref, "reason": reason.value, "resolvedPath": str(resolved)}
    if node_id is not None:
        payload["nodeId"] = node_id
    return ValidationIssue(
        ErrorCode.SUITE_TEST_CASE_REF_INVALID,
        f"test case ref {ref!r} {messages[reason]}",
        payload,
    )


__all__ = ["RefFailure", "Resolved", "resolve_case_ref", "resolve_identity"]
