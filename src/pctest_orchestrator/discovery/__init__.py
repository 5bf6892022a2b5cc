"""Manifest discovery and identity/reference resolution."""

from pctest_orchestrator.discovery.references import (
    RefFailure,
    Resolved,
    resolve_case_ref,
    resolve_identity,
)
from pctest_orchestrator.discovery.scanner import (
    DiscoveredEntity,
    DiscoveryResult,
    DiscoveryRoots,
    discover,
    load_manifest,
)

__all__ = [
    "DiscoveredEntity",
    "DiscoveryResult",
    "DiscoveryRoots",
    "RefFailure",
    "Resolved",
    "discover",
    "load_manifest",
    "resolve_case_ref",
    "resolve_identity",
]
