"""Control plane: pre-flight arena, tree walker, privilege gate, and reboot sessions."""

from pctest_orchestrator.control_plane.engine import OrchestratorEngine, RunReport
from pctest_orchestrator.control_plane.privilege import (
    PrivilegeDecision,
    evaluate_privilege,
    is_process_elevated,
)
from pctest_orchestrator.control_plane.reboot import (
    CommandRebootHook,
    NoopRebootHook,
    RebootController,
    RebootHook,
    ResumeSession,
    SessionState,
    SessionStore,
    create_reboot_hook,
)
from pctest_orchestrator.control_plane.tree import ArenaNode, ExecutionArena, NodeKind, build_arena
from pctest_orchestrator.control_plane.walker import Suspension, TreeWalker, WalkOutcome

__all__ = [
    "ArenaNode",
    "CommandRebootHook",
    "ExecutionArena",
    "NodeKind",
    "NoopRebootHook",
    "OrchestratorEngine",
    "PrivilegeDecision",
    "RebootController",
    "RebootHook",
    "ResumeSession",
    "RunReport",
    "SessionState",
    "SessionStore",
    "Suspension",
    "TreeWalker",
    "WalkOutcome",
    "build_arena",
    "create_reboot_hook",
    "evaluate_privilege",
    "is_process_elevated",
]
