"""
pctest-orchestrator — manifest discovery

File: src/pctest_orchestrator/discovery/scanner.py
Last updated: 2026-10-17

Purpose
- Scan the configured case, suite and plan roots and build one ``id@version`` map per
  entity kind.

Functional requirements
- Duplicate identities are collected (all of them, with both paths) rather than raised
  on first sight; ``DiscoveryResult.raise_for_conflicts`` raises once with every issue.
- A manifest that cannot be parsed is skipped with a warning so one broken case never
  blocks the whole scan.
- Folder location is never part of identity.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Generic, TypeVar

from pctest_orchestrator.constants import (
    CASE_MANIFEST_FILE,
    PLAN_MANIFEST_FILE,
    SUITE_MANIFEST_FILE,
)
from pctest_orchestrator.domain.errors import (
    DiscoveryError,
    ErrorCode,
    ValidationIssue,
)
from pctest_orchestrator.domain.models import (
    CaseManifest,
    ManifestError,
    PlanManifest,
    RunType,
    SuiteManifest,
)
from pctest_orchestrator.utils.fs import read_json_object

logger = logging.getLogger(__name__)

M = TypeVar("M", CaseManifest, SuiteManifest, PlanManifest)


@dataclass(frozen=True, slots=True)
class DiscoveryRoots:
    test_cases_root: Path
    test_suites_root: Path
    test_plans_root: Path


@dataclass(frozen=True, slots=True)
class DiscoveredEntity(Generic[M]):
    """A parsed manifest together with the file it was loaded from."""

    manifest: M
    manifest_path: Path

    @property
    def folder(self) -> Path:
        return self.manifest_path.parent

    @property
    def identity(self) -> str:
        return str(self.manifest.identity)


@dataclass(frozen=True, slots=True)
class DiscoveryResult:
    cases: Mapping[str, DiscoveredEntity[CaseManifest]] = field(default_factory=dict)
    suites: Mapping[str, DiscoveredEntity[SuiteManifest]] = field(default_factory=dict)
    plans: Mapping[str, DiscoveredEntity[PlanManifest]] = field(default_factory=dict)
    issues: tuple[ValidationIssue, ...] = ()
    warnings: tuple[ValidationIssue, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.issues

    def raise_for_conflicts(self) -> None:
        if self.issues:
            raise DiscoveryError(self.issues)

    def entities(self, kind: RunType) -> Mapping[str, DiscoveredEntity]:  # type: ignore[type-arg]
        if kind is RunType.TEST_CASE:
            return self.cases
        if kind is RunType.TEST_SUITE:
            return self.suites
        return self.plans

    def case_in_folder(self, folder: Path) -> DiscoveredEntity[CaseManifest] | None:
        """Return the case whose manifest lives directly in ``folder`` (resolved comparison)."""
        target = folder.resolve()
        for entity in self.cases.values():
            if entity.folder.resolve() == target:
                return entity
        return None


def discover(roots: DiscoveryRoots) -> DiscoveryResult:
    """Scan every root and return identity maps plus collected issues and warnings."""
    issues: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []

    cases = _scan_root(
        roots.test_cases_root, CASE_MANIFEST_FILE, CaseManifest.from_dict, RunType.TEST_CASE, issues, warnings
    )
    suites = _scan_root(
        roots.test_suites_root, SUITE_MANIFEST_FILE, SuiteManifest.from_dict, RunType.TEST_SUITE, issues, warnings
    )
    plans = _scan_root(
        roots.test_plans_root, PLAN_MANIFEST_FILE, PlanManifest.from_dict, RunType.TEST_PLAN, issues, warnings
    )

    logger.info(
        "discovery complete: %d case(s), %d suite(s), %d plan(s), %d conflict(s), %d warning(s)",
        len(cases),
        len(suites),
        len(plans),
        len(issues),
        len(warnings),
    )
    return DiscoveryResult(
        cases=cases,
        suites=suites,
        plans=plans,
        issues=tuple(issues),
        warnings=tuple(warnings),
    )


def load_manifest(path: Path, parser: Callable[[Mapping[str, object]], M]) -> M:
    """Read and parse one manifest file; raises ``ManifestError`` on any failure."""
    try:
        document = read_json_object(path)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, ValueError) as exc:
        raise ManifestError(f"{path}: {exc}", code=ErrorCode.MANIFEST_PARSE_FAILED) from exc
    return parser(document)


def _scan_root(
    root: Path,
    file_name: str,
    parser: Callable[[Mapping[str, object]], M],
    kind: RunType,
    issues: list[ValidationIssue],
    warnings: list[ValidationIssue],
) -> dict[str, DiscoveredEntity[M]]:
    found: dict[str, DiscoveredEntity[M]] = {}
    if not root.is_dir():
        logger.warning("%s root does not exist: %s", kind.value, root)
        return found

    for manifest_path in sorted(root.rglob(file_name)):
        if not manifest_path.is_file():
            continue
        try:
            manifest = load_manifest(manifest_path, parser)
        except ManifestError as exc:
            logger.warning("skipping unparsable manifest %s: %s", manifest_path, exc)
            warnings.append(
                ValidationIssue(exc.code, str(exc), {"path": str(manifest_path), "entityType": kind.value})
            )
            continue

        identity = str(manifest.identity)
        existing = found.get(identity)
        if existing is not None:
            issues.append(
                ValidationIssue(
                    ErrorCode.DISCOVERY_DUPLICATE_IDENTITY,
                    f"{kind.value} identity {identity} is declared by more than one manifest",
                    {
                        "identity": identity,
                        "entityType": kind.value,
                        "paths": [str(existing.manifest_path), str(manifest_path)],
                    },
                )
            )
            continue
        found[identity] = DiscoveredEntity(manifest=manifest, manifest_path=manifest_path)
    return found


__all__ = [
    "DiscoveredEntity",
    "DiscoveryResult",
    "DiscoveryRoots",
    "discover",
    "load_manifest",
]
