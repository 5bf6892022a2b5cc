"""
pctest-orchestrator — package root

File: src/pctest_orchestrator/__init__.py
Last updated: 2026-10-17

Purpose
- Package root for the PC test orchestrator: discovery of cases, suites and plans,
  supervised execution of leaf scripts, run-folder persistence, and reboot/resume.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
