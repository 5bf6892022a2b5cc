"""Leaf execution: argument building, supervised processes, and the case runner."""

from pctest_orchestrator.execution.arguments import build_command, build_parameter_arguments
from pctest_orchestrator.execution.case_runner import (
    CaseInvocation,
    CaseOutcome,
    CaseRunner,
    RunnerSettings,
    process_environment_names,
    validate_working_dir,
)
from pctest_orchestrator.execution.control import (
    RebootRequest,
    RebootRequestError,
    clear_reboot_request,
    read_reboot_request,
)
from pctest_orchestrator.execution.process import (
    ExitReason,
    ProcessOutcome,
    ProcessStartError,
    supervise_process,
    terminate_process_tree,
)

__all__ = [
    "CaseInvocation",
    "CaseOutcome",
    "CaseRunner",
    "ExitReason",
    "ProcessOutcome",
    "ProcessStartError",
    "RebootRequest",
    "RebootRequestError",
    "RunnerSettings",
    "build_command",
    "build_parameter_arguments",
    "clear_reboot_request",
    "process_environment_names",
    "read_reboot_request",
    "supervise_process",
    "terminate_process_tree",
    "validate_working_dir",
]
