"""Unit tests for the pre-flight privilege gate."""

from __future__ import annotations

import pytest

from pctest_orchestrator.control_plane.privilege import evaluate_privilege
from pctest_orchestrator.domain.errors import ErrorCode
from pctest_orchestrator.domain.models import Privilege


@pytest.mark.parametrize("privilege", list(Privilege))
def test_elevated_process_is_always_allowed(privilege: Privilege) -> None:
    decision = evaluate_privilege(privilege, elevated=True, target="Smoke@1.0")

    assert decision.allowed
    assert decision.warning is None


def test_admin_required_is_rejected_when_not_elevated() -> None:
    decision = evaluate_privilege(Privilege.ADMIN_REQUIRED, elevated=False, target="Smoke@1.0")

    assert not decision.allowed
    assert decision.rejection is not None
    assert decision.rejection.code is ErrorCode.PRIVILEGE_REQUIRED
    assert decision.rejection.payload == {"target": "Smoke@1.0", "privilege": "AdminRequired"}


def test_admin_preferred_only_warns() -> None:
    decision = evaluate_privilege(Privilege.ADMIN_PREFERRED, elevated=False, target="Smoke@1.0")

    assert decision.allowed
    assert decision.warning is not None
    assert "Smoke@1.0" in decision.warning
