"""Unit tests for resume sessions, the reboot controller and reboot hooks."""

from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path

import pytest
from conftest import RecordingHook, RecordingLogger

from pctest_orchestrator.control_plane.reboot import (
    CommandRebootHook,
    NoopRebootHook,
    RebootController,
    ResumeSession,
    SessionState,
    SessionStore,
    create_reboot_hook,
)
from pctest_orchestrator.control_plane.walker import Suspension
from pctest_orchestrator.domain.errors import ErrorCode, ProtocolError
from pctest_orchestrator.domain.models import RunType


def _suspension() -> Suspension:
    return Suspension(
        case_run_id="R-20261017-000000-abcd",
        case_identity="Driver@1.0",
        next_phase=1,
        reason="driver install",
        delay_sec=5,
        node_id="driver",
        suite_run_id="S-20261017-000000-abcd",
    )


def _controller(
    tmp_path: Path, *, max_resume_count: int = 1
) -> tuple[RebootController, RecordingHook, RecordingLogger]:
    hook = RecordingHook()
    logger = RecordingLogger()
    controller = RebootController(
        SessionStore(tmp_path), hook, max_resume_count=max_resume_count, logger=logger
    )
    return controller, hook, logger


def _suspend(controller: RebootController, previous: ResumeSession | None = None) -> ResumeSession:
    run_id = "S-20261017-000000-abcd"
    (controller.store.runs_root / run_id).mkdir(exist_ok=True)
    return controller.suspend(
        run_id=run_id,
        entity_type=RunType.TEST_SUITE,
        entity_id="Smoke@1.0",
        suspension=_suspension(),
        run_request={"suite": "Smoke@1.0"},
        previous=previous,
    )


def test_suspend_persists_session_and_calls_hook(tmp_path: Path) -> None:
    controller, hook, logger = _controller(tmp_path)

    session = _suspend(controller)

    stored = controller.store.load(session.run_id)
    assert stored.state is SessionState.PENDING_RESUME
    assert stored.resume_token == session.resume_token
    assert stored.suspension == _suspension()
    assert stored.run_request == {"suite": "Smoke@1.0"}
    assert hook.calls == [("register", session.run_id), ("reboot", session.run_id)]
    assert logger.events("reboot_session_saved")[0]["next_phase"] == 1


def test_resume_claims_session_then_finalizes(tmp_path: Path) -> None:
    controller, hook, _ = _controller(tmp_path)
    session = _suspend(controller)

    claimed = controller.begin_resume(session.run_id, session.resume_token)
    assert claimed.state is SessionState.RESUMING
    assert claimed.resume_count == 1

    closed = controller.finalize(claimed)
    assert closed.state is SessionState.FINALIZED
    assert controller.store.load(session.run_id).state is SessionState.FINALIZED
    assert hook.calls[-1] == ("unregister", session.run_id)

    with pytest.raises(ProtocolError) as excinfo:
        controller.begin_resume(session.run_id, session.resume_token)
    assert excinfo.value.code is ErrorCode.RESUME_SESSION_INVALID


def test_wrong_token_is_rejected_without_consuming_session(tmp_path: Path) -> None:
    controller, _, _ = _controller(tmp_path)
    session = _suspend(controller)

    with pytest.raises(ProtocolError) as excinfo:
        controller.begin_resume(session.run_id, "not-the-token")

    assert excinfo.value.code is ErrorCode.RESUME_TOKEN_MISMATCH
    stored = controller.store.load(session.run_id)
    assert stored.state is SessionState.PENDING_RESUME
    assert stored.resume_count == 0


def test_missing_session_is_invalid(tmp_path: Path) -> None:
    controller, _, _ = _controller(tmp_path)

    with pytest.raises(ProtocolError) as excinfo:
        controller.begin_resume("S-nothing", "token")

    assert excinfo.value.code is ErrorCode.RESUME_SESSION_INVALID


def test_resuspending_the_same_phase_past_the_limit_is_a_loop(tmp_path: Path) -> None:
    controller, _, logger = _controller(tmp_path, max_resume_count=1)
    first = _suspend(controller)
    claimed = controller.begin_resume(first.run_id, first.resume_token)
    second = _suspend(controller, previous=claimed)

    assert second.resume_token != first.resume_token
    assert second.resume_count == 1

    with pytest.raises(ProtocolError) as excinfo:
        controller.begin_resume(second.run_id, second.resume_token)

    assert excinfo.value.code is ErrorCode.RESUME_LOOP_DETECTED
    assert controller.store.load(second.run_id).state is SessionState.ABORTED
    assert logger.events("resume_loop_detected")[0]["resume_count"] == 2


def test_new_phase_starts_a_fresh_resume_count(tmp_path: Path) -> None:
    controller, _, _ = _controller(tmp_path, max_resume_count=1)
    first = _suspend(controller)
    claimed = controller.begin_resume(first.run_id, first.resume_token)

    later = controller.suspend(
        run_id=first.run_id,
        entity_type=RunType.TEST_SUITE,
        entity_id="Smoke@1.0",
        suspension=replace(_suspension(), next_phase=2),
        run_request={"suite": "Smoke@1.0"},
        previous=claimed,
    )

    assert later.resume_count == 0
    resumed = controller.begin_resume(later.run_id, later.resume_token)
    assert resumed.state is SessionState.RESUMING
    assert resumed.resume_count == 1
    assert resumed.created_at == first.created_at


def test_malformed_session_file_is_invalid(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    store.path_for("S-broken").parent.mkdir()
    store.path_for("S-broken").write_text('{"runId": "S-broken"}', encoding="utf-8")

    with pytest.raises(ProtocolError) as excinfo:
        store.load("S-broken")

    assert excinfo.value.code is ErrorCode.RESUME_SESSION_INVALID


def test_session_document_shape(tmp_path: Path) -> None:
    controller, _, _ = _controller(tmp_path)
    session = _suspend(controller)

    document = session.to_dict()

    assert document["currentChildRunId"] == "S-20261017-000000-abcd"
    assert document["nextPhase"] == 1
    assert document["state"] == "PendingResume"
    assert ResumeSession.from_dict(document) == session


def test_command_hook_fills_templates(tmp_path: Path) -> None:
    controller, _, _ = _controller(tmp_path)
    session = _suspend(controller)
    out = tmp_path / "hook.txt"
    script = "import sys, pathlib; pathlib.Path(sys.argv[1]).write_text(' '.join(sys.argv[2:]))"
    hook = CommandRebootHook(
        register_command=(sys.executable, "-c", script, str(out), "{run_id}", "{token}", "{delay_sec}"),
    )

    hook.register_resume(session)
    hook.request_reboot(session)

    assert out.read_text() == f"{session.run_id} {session.resume_token} 5"


def test_command_hook_failure_is_a_protocol_error(tmp_path: Path) -> None:
    controller, _, _ = _controller(tmp_path)
    session = _suspend(controller)
    hook = CommandRebootHook(reboot_command=(sys.executable, "-c", "import sys; sys.exit(4)"))

    with pytest.raises(ProtocolError) as excinfo:
        hook.request_reboot(session)

    assert excinfo.value.code is ErrorCode.REBOOT_REQUEST_INVALID
    assert "exited with 4" in str(excinfo.value)


def test_create_reboot_hook_from_config() -> None:
    assert isinstance(create_reboot_hook({"hook": "none"}), NoopRebootHook)
    hook = create_reboot_hook({"hook": "command", "reboot_command": ["shutdown", "-r"]})
    assert isinstance(hook, CommandRebootHook)
    assert hook.reboot_command == ("shutdown", "-r")


def test_negative_resume_limit_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        RebootController(SessionStore(tmp_path), max_resume_count=-1)
