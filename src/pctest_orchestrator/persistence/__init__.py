"""Run-folder persistence and the global run index."""

from pctest_orchestrator.persistence.index import RunIndex
from pctest_orchestrator.persistence.run_folders import (
    CaseRunFolder,
    GroupRunFolder,
    environment_snapshot,
    open_run_folder,
)

__all__ = [
    "CaseRunFolder",
    "GroupRunFolder",
    "RunIndex",
    "environment_snapshot",
    "open_run_folder",
]
