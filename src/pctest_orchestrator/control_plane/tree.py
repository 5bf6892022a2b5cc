"""
pctest-orchestrator — pre-flight execution arena

File: src/pctest_orchestrator/control_plane/tree.py
Last updated: 2026-10-17

Purpose
- Turn a run request into a flat, index-addressed node list (the arena) in which every
  reference, override target, parameter conversion and EnvRef lookup is already resolved.

Functional requirements
- Nothing is spawned while building the arena; every issue is collected and raised as a
  single ``ValidationError``.
- Children are always appended after their parent, so a reverse scan is a bottom-up
  traversal (used for the privilege roll-up).
- Environment layering: OS < plan env < suite env < request overrides.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from pctest_orchestrator.discovery.references import resolve_case_ref, resolve_identity
from pctest_orchestrator.discovery.scanner import DiscoveredEntity, DiscoveryResult
from pctest_orchestrator.domain.errors import ErrorCode, ValidationError, ValidationIssue
from pctest_orchestrator.domain.models import (
    CaseManifest,
    PlanManifest,
    Privilege,
    RunRequest,
    RunType,
    SuiteControls,
    SuiteManifest,
    max_privilege,
)
from pctest_orchestrator.domain.results import NodeLineage
from pctest_orchestrator.execution.case_runner import CaseInvocation, validate_working_dir
from pctest_orchestrator.resolution.environment import EffectiveEnvironment, layer_environment
from pctest_orchestrator.resolution.inputs import resolve_inputs


class NodeKind(StrEnum):
    CASE = "case"
    SUITE = "suite"
    PLAN = "plan"


@dataclass(slots=True)
class ArenaNode:
    index: int
    kind: NodeKind
    identity: str
    node_id: str | None
    parent: int | None
    privilege: Privilege
    children: list[int] = field(default_factory=list)
    effective_privilege: Privilege = Privilege.USER
    # Case nodes.
    invocation: CaseInvocation | None = None
    retry_on_error: int = 0
    repeat: int = 1
    # Group nodes.
    entity: DiscoveredEntity | None = None  # type: ignore[type-arg]
    controls: SuiteControls = field(default_factory=SuiteControls)
    continue_on_failure: bool = False
    environment: EffectiveEnvironment = field(default_factory=EffectiveEnvironment)


@dataclass(slots=True)
class ExecutionArena:
    nodes: list[ArenaNode]
    request: RunRequest
    warnings: list[ValidationIssue] = field(default_factory=list)

    @property
    def root(self) -> ArenaNode:
        return self.nodes[0]

    def node(self, index: int) -> ArenaNode:
        return self.nodes[index]

    def children(self, index: int) -> list[ArenaNode]:
        return [self.nodes[child] for child in self.nodes[index].children]

    def roll_up_privilege(self) -> Privilege:
        """Compute every node's effective privilege bottom-up and return the root's."""
        for node in reversed(self.nodes):
            node.effective_privilege = max_privilege(
                node.privilege, *(self.nodes[child].effective_privilege for child in node.children)
            )
        return self.root.effective_privilege


class _ArenaBuilder:
    def __init__(
        self,
        request: RunRequest,
        discovery: DiscoveryResult,
        cases_root: Path,
        base_environment: Mapping[str, str],
    ) -> None:
        self._request = request
        self._discovery = discovery
        self._cases_root = cases_root
        self._base = base_environment
        self._nodes: list[ArenaNode] = []
        self.issues: list[ValidationIssue] = []
        self.warnings: list[ValidationIssue] = []

    def build(self) -> list[ArenaNode]:
        request = self._request
        if request.run_type is RunType.TEST_PLAN and (request.case_inputs or request.node_overrides):
            self.issues.append(
                ValidationIssue(
                    ErrorCode.RUN_REQUEST_PLAN_INPUT_OVERRIDE,
                    "plan runs do not accept caseInputs or nodeOverrides",
                    {"target": request.target},
                )
            )
        if request.run_type is RunType.TEST_SUITE and request.case_inputs:
            self._target_issue("caseInputs apply to standalone test case runs only")
        if request.run_type is RunType.TEST_CASE and request.node_overrides:
            self._target_issue("nodeOverrides apply to suite runs only")

        resolved = resolve_identity(request.target, request.run_type, self._discovery)
        if resolved.issue is not None:
            self.issues.append(resolved.issue)
            return self._nodes

        entity = resolved.entity
        if request.run_type is RunType.TEST_CASE:
            self._add_standalone_case(entity)
        elif request.run_type is RunType.TEST_SUITE:
            self._add_suite(entity, parent=None, node_id=None, env_layers=(), overlay=None, top_level=True)
        else:
            self._add_plan(entity)
        return self._nodes

    def _target_issue(self, message: str) -> None:
        self.issues.append(
            ValidationIssue(ErrorCode.RUN_REQUEST_TARGET_INVALID, message, {"target": self._request.target})
        )

    def _append(self, node: ArenaNode) -> ArenaNode:
        node.index = len(self._nodes)
        self._nodes.append(node)
        if node.parent is not None:
            self._nodes[node.parent].children.append(node.index)
        return node

    def _environment(self, *layers: Mapping[str, str], source: str) -> EffectiveEnvironment:
        environment, issues = layer_environment(*layers, base=self._base, source=source)
        self.issues.extend(issues)
        return environment

    def _add_standalone_case(self, entity: DiscoveredEntity[CaseManifest]) -> None:
        manifest = entity.manifest
        environment = self._environment(self._request.environment_overrides, source="environmentOverrides")
        invocation = self._invocation(
            entity,
            environment,
            [self._request.case_inputs],
            lineage=NodeLineage(),
            node_id=None,
            working_dir=None,
            resolved_ref=str(entity.folder),
        )
        self._append(
            ArenaNode(
                index=0,
                kind=NodeKind.CASE,
                identity=str(manifest.identity),
                node_id=None,
                parent=None,
                privilege=manifest.privilege,
                invocation=invocation,
                entity=entity,
                environment=invocation.environment if invocation else environment,
            )
        )

    def _add_plan(self, entity: DiscoveredEntity[PlanManifest]) -> None:
        plan = entity.manifest
        for key in plan.environment.invalid_keys:
            self.issues.append(
                ValidationIssue(
                    ErrorCode.PLAN_ENVIRONMENT_INVALID_KEY,
                    f"plan environment only supports 'env'; found {key!r}",
                    {"plan": str(plan.identity), "key": key},
                )
            )
        self._check_duplicate_node_ids([node.node_id for node in plan.nodes], str(plan.identity))

        plan_env = self._environment(
            plan.environment.env, self._request.environment_overrides, source=f"plan {plan.identity}"
        )
        root = self._append(
            ArenaNode(
                index=0,
                kind=NodeKind.PLAN,
                identity=str(plan.identity),
                node_id=None,
                parent=None,
                privilege=Privilege.USER,
                entity=entity,
                continue_on_failure=plan.continue_on_failure,
                environment=plan_env,
            )
        )
        secret_variables: set[str] = set()
        for plan_node in plan.nodes:
            resolved = resolve_identity(
                plan_node.ref,
                RunType.TEST_SUITE,
                self._discovery,
                not_found_code=ErrorCode.PLAN_SUITE_REF_NOT_FOUND,
            )
            if resolved.issue is not None:
                payload = dict(resolved.issue.payload)
                payload["nodeId"] = plan_node.node_id
                self.issues.append(ValidationIssue(resolved.issue.code, resolved.issue.message, payload))
                continue
            suite_node = self._add_suite(
                resolved.entity,
                parent=root.index,
                node_id=plan_node.node_id,
                env_layers=(plan.environment.env,),
                overlay=plan_node.controls,
                top_level=False,
                plan=plan,
            )
            secret_variables.update(suite_node.environment.secret_names)
        root.environment = plan_env.with_secrets(secret_variables)

    def _add_suite(
        self,
        entity: DiscoveredEntity[SuiteManifest],
        *,
        parent: int | None,
        node_id: str | None,
        env_layers: tuple[Mapping[str, str], ...],
        overlay: SuiteControls | None,
        top_level: bool,
        plan: PlanManifest | None = None,
    ) -> ArenaNode:
        suite = entity.manifest
        identity = str(suite.identity)
        controls = suite.controls.overlay(overlay) if overlay is not None else suite.controls
        if controls.max_parallel > 1:
            self.warnings.append(
                ValidationIssue(
                    ErrorCode.CONTROLS_MAX_PARALLEL_IGNORED,
                    f"suite {identity} sets maxParallel={controls.max_parallel}; nodes run sequentially",
                    {"suite": identity, "maxParallel": controls.max_parallel},
                )
            )
        working_dir = suite.environment.working_dir
        if working_dir is not None:
            problem = validate_working_dir(working_dir)
            if problem is not None:
                self.issues.append(
                    ValidationIssue(ErrorCode.WORKING_DIR_CONTAINMENT_FAILED, problem, {"suite": identity})
                )

        self._check_duplicate_node_ids([node.node_id for node in suite.test_cases], identity)
        overrides = self._request.node_overrides if top_level else {}
        known = {node.node_id for node in suite.test_cases}
        for unknown in sorted(set(overrides) - known):
            self.issues.append(
                ValidationIssue(
                    ErrorCode.RUN_REQUEST_UNKNOWN_NODE_ID,
                    f"nodeOverrides names {unknown!r}, which is not a node of {identity}",
                    {"nodeId": unknown, "suite": identity},
                )
            )

        environment = self._environment(
            *env_layers,
            suite.environment.env,
            self._request.environment_overrides,
            source=f"suite {identity}",
        )
        suite_node = self._append(
            ArenaNode(
                index=0,
                kind=NodeKind.SUITE,
                identity=identity,
                node_id=node_id,
                parent=parent,
                privilege=Privilege.USER,
                entity=entity,
                controls=controls,
                continue_on_failure=controls.continue_on_failure,
                environment=environment,
            )
        )

        secret_variables: set[str] = set()
        for suite_case in suite.test_cases:
            resolved = resolve_case_ref(suite_case.ref, self._cases_root, self._discovery, node_id=suite_case.node_id)
            if resolved.issue is not None:
                self.issues.append(resolved.issue)
                continue
            case_entity: DiscoveredEntity[CaseManifest] = resolved.entity
            lineage = NodeLineage(
                node_id=suite_case.node_id,
                suite_id=suite.id,
                suite_version=suite.version,
                plan_id=plan.id if plan else None,
                plan_version=plan.version if plan else None,
            )
            invocation = self._invocation(
                case_entity,
                environment,
                [suite_case.inputs, overrides.get(suite_case.node_id)],
                lineage=lineage,
                node_id=suite_case.node_id,
                working_dir=working_dir,
                resolved_ref=str(case_entity.folder),
            )
            if invocation is None:
                continue
            secret_variables.update(invocation.environment.secret_names)
            self._append(
                ArenaNode(
                    index=0,
                    kind=NodeKind.CASE,
                    identity=str(case_entity.manifest.identity),
                    node_id=suite_case.node_id,
                    parent=suite_node.index,
                    privilege=case_entity.manifest.privilege,
                    invocation=invocation,
                    entity=case_entity,
                    retry_on_error=(
                        suite_case.controls.retry_on_error
                        if suite_case.controls.retry_on_error is not None
                        else controls.retry_on_error
                    ),
                    repeat=suite_case.controls.repeat or 1,
                    environment=invocation.environment,
                )
            )
        suite_node.environment = environment.with_secrets(secret_variables)
        return suite_node

    def _invocation(
        self,
        entity: DiscoveredEntity[CaseManifest],
        environment: EffectiveEnvironment,
        layers: list[Mapping[str, object] | None],
        *,
        lineage: NodeLineage,
        node_id: str | None,
        working_dir: str | None,
        resolved_ref: str,
    ) -> CaseInvocation | None:
        try:
            inputs = resolve_inputs(entity.manifest, layers, environment, node_id=node_id)
        except ValidationError as exc:
            self.issues.extend(exc.issues)
            return None
        return CaseInvocation(
            entity=entity,
            inputs=inputs,
            environment=environment.with_secrets(inputs.secret_variables),
            lineage=lineage,
            working_dir=working_dir,
            resolved_ref=resolved_ref,
        )

    def _check_duplicate_node_ids(self, node_ids: list[str], owner: str) -> None:
        seen: set[str] = set()
        for node_id in node_ids:
            if node_id in seen:
                self.issues.append(
                    ValidationIssue(
                        ErrorCode.SUITE_NODE_ID_DUPLICATE,
                        f"nodeId {node_id!r} appears more than once in {owner}",
                        {"nodeId": node_id, "owner": owner},
                    )
                )
            seen.add(node_id)


def build_arena(
    request: RunRequest,
    discovery: DiscoveryResult,
    *,
    cases_root: Path,
    base_environment: Mapping[str, str] | None = None,
) -> ExecutionArena:
    """Resolve ``request`` into an execution arena or raise one ``ValidationError``."""
    builder = _ArenaBuilder(
        request,
        discovery,
        cases_root,
        dict(os.environ) if base_environment is None else base_environment,
    )
    nodes = builder.build()
    if builder.issues:
        raise ValidationError(builder.issues)
    arena = ExecutionArena(nodes=nodes, request=request, warnings=builder.warnings)
    arena.roll_up_privilege()
    return arena


__all__ = ["ArenaNode", "ExecutionArena", "NodeKind", "build_arena"]
