"""
pctest-orchestrator — unit tests for run ids and identities

File: tests/unit/domain/test_ids.py
Last updated: 2026-10-17

Purpose
- Validate run-id generation/validation and ``id@version`` parsing.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta, timezone

import pytest
from hypothesis import given
from hypothesis import strategies as st

from pctest_orchestrator.domain.ids import (
    CASE_RUN_PREFIX,
    PLAN_RUN_PREFIX,
    SUITE_RUN_PREFIX,
    Identity,
    format_identity,
    generate_run_id,
    parse_identity,
    run_id_prefix,
    validate_run_id,
)

_RUN_ID = re.compile(r"^[RSP]-\d{14}-[0-9a-f]{8}$")


@pytest.mark.parametrize("prefix", [CASE_RUN_PREFIX, SUITE_RUN_PREFIX, PLAN_RUN_PREFIX])
def test_generate_run_id_uses_prefix_and_utc_stamp(prefix: str) -> None:
    moment = datetime(2026, 10, 17, 23, 30, 5, tzinfo=timezone(timedelta(hours=-2)))

    run_id = generate_run_id(prefix, now=moment, randbytes=lambda n: b"\x01\x02\x03\x04")

    assert run_id == f"{prefix}-20261018013005-01020304"
    assert _RUN_ID.fullmatch(run_id)
    assert run_id_prefix(run_id) == prefix


def test_generate_run_id_rejects_unknown_prefix_and_naive_clock() -> None:
    with pytest.raises(ValueError, match="prefix"):
        generate_run_id("X")
    with pytest.raises(ValueError, match="timezone-aware"):
        generate_run_id(CASE_RUN_PREFIX, now=datetime(2026, 1, 1))


def test_generated_run_ids_are_distinct() -> None:
    ids = {generate_run_id(CASE_RUN_PREFIX, now=datetime(2026, 1, 1, tzinfo=UTC)) for _ in range(50)}

    assert len(ids) == 50


def test_validate_run_id_accepts_collision_suffix() -> None:
    assert validate_run_id("S-20261017120000-0a1b2c3d_2") == "S-20261017120000-0a1b2c3d_2"
    with pytest.raises(ValueError):
        validate_run_id("S-2026-0a1b2c3d")


def test_parse_identity_round_trips_through_str() -> None:
    identity = parse_identity("CpuBurn@1.2.0")

    assert identity == Identity("CpuBurn", "1.2.0")
    assert str(identity) == "CpuBurn@1.2.0"
    assert format_identity("CpuBurn", "1.2.0") == "CpuBurn@1.2.0"


@pytest.mark.parametrize("raw", ["CpuBurn", "a@b@c", "@1.0", "Cpu Burn@1.0", 42])
def test_parse_identity_rejects_malformed_values(raw: object) -> None:
    with pytest.raises(ValueError):
        parse_identity(raw)


@given(
    st.from_regex(r"[A-Za-z0-9._-]{1,12}", fullmatch=True),
    st.from_regex(r"[A-Za-z0-9._-]{1,12}", fullmatch=True),
)
def test_any_valid_parts_form_a_parseable_identity(entity_id: str, version: str) -> None:
    assert parse_identity(f"{entity_id}@{version}") == Identity(entity_id, version)
