"""Domain layer: identities, manifest models, result records, and the error taxonomy."""

from pctest_orchestrator.domain.errors import (
    DiscoveryError,
    ErrorCode,
    OrchestratorError,
    ProcessTerminationError,
    ProtocolError,
    ValidationError,
    ValidationIssue,
)
from pctest_orchestrator.domain.ids import Identity, generate_run_id, parse_identity
from pctest_orchestrator.domain.models import (
    CaseManifest,
    EnvRef,
    ManifestError,
    ParameterDefinition,
    ParameterType,
    PlanManifest,
    PlanNode,
    Privilege,
    RunRequest,
    RunStatus,
    RunType,
    SuiteControls,
    SuiteManifest,
    SuiteNode,
)
from pctest_orchestrator.domain.results import (
    CaseResult,
    ChildEntry,
    GroupResult,
    IndexEntry,
    NodeLineage,
    aggregate_status,
    settled_children,
)

__all__ = [
    "CaseManifest",
    "CaseResult",
    "ChildEntry",
    "DiscoveryError",
    "EnvRef",
    "ErrorCode",
    "GroupResult",
    "Identity",
    "IndexEntry",
    "ManifestError",
    "NodeLineage",
    "OrchestratorError",
    "ParameterDefinition",
    "ParameterType",
    "PlanManifest",
    "PlanNode",
    "Privilege",
    "ProcessTerminationError",
    "ProtocolError",
    "RunRequest",
    "RunStatus",
    "RunType",
    "SuiteControls",
    "SuiteManifest",
    "SuiteNode",
    "ValidationError",
    "ValidationIssue",
    "aggregate_status",
    "generate_run_id",
    "parse_identity",
    "settled_children",
]
