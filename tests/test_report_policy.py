from __future__ import annotations

import random
from dataclasses import dataclass

import pytest

from app.domain.permissions import (
    Actor,
    Role,
    actor_from_claims,
    can_approve,
    can_create,
    can_modify,
    can_view,
)
from app.domain.state_machine import ALLOWED_TRANSITIONS, ReportStatus, can_transition

DRIVER_A = Actor(id="driver-a", role=Role.DRIVER)
DRIVER_B = Actor(id="driver-b", role=Role.DRIVER)
SUPERVISOR = Actor(id="supervisor-1", role=Role.SUPERVISOR)

STATUS_ORDER = {ReportStatus.DRAFT: 0, ReportStatus.SUBMITTED: 1, ReportStatus.APPROVED: 2}


@dataclass
class _Report:
    owner_id: str
    status: ReportStatus


def test_report_transitions_only_move_forward() -> None:
    assert can_transition(ReportStatus.DRAFT, ReportStatus.SUBMITTED)
    assert can_transition(ReportStatus.SUBMITTED, ReportStatus.APPROVED)
    assert not can_transition(ReportStatus.DRAFT, ReportStatus.APPROVED)
    assert not can_transition(ReportStatus.SUBMITTED, ReportStatus.DRAFT)
    assert not can_transition(ReportStatus.APPROVED, ReportStatus.SUBMITTED)
    assert not can_transition(ReportStatus.APPROVED, ReportStatus.DRAFT)
    assert ALLOWED_TRANSITIONS[ReportStatus.APPROVED] == set()


def test_random_transition_sequences_are_monotonic() -> None:
    rng = random.Random(20251211)
    states = list(ReportStatus)
    for _ in range(200):
        current = ReportStatus.DRAFT
        history = [current]
        for _ in range(10):
            target = rng.choice(states)
            if can_transition(current, target):
                current = target
                history.append(current)
        ranks = [STATUS_ORDER[item] for item in history]
        assert ranks == sorted(ranks)
        assert len(set(ranks)) == len(ranks)


def test_only_drivers_can_create() -> None:
    assert can_create(DRIVER_A)
    assert not can_create(SUPERVISOR)


def test_view_is_limited_to_owner() -> None:
    report = _Report(owner_id=DRIVER_A.id, status=ReportStatus.SUBMITTED)
    assert can_view(DRIVER_A, report)
    assert not can_view(DRIVER_B, report)
    assert not can_view(SUPERVISOR, report)


@pytest.mark.parametrize(
    ("actor", "status", "expected"),
    [
        (DRIVER_A, ReportStatus.DRAFT, True),
        (DRIVER_A, ReportStatus.SUBMITTED, False),
        (DRIVER_A, ReportStatus.APPROVED, False),
        (DRIVER_B, ReportStatus.DRAFT, False),
        (SUPERVISOR, ReportStatus.DRAFT, False),
    ],
)
def test_modify_requires_owner_and_draft(actor: Actor, status: ReportStatus, expected: bool) -> None:
    assert can_modify(actor, _Report(owner_id=DRIVER_A.id, status=status)) is expected


def test_modify_grant_is_not_cached_across_status_changes() -> None:
    report = _Report(owner_id=DRIVER_A.id, status=ReportStatus.DRAFT)
    assert can_modify(DRIVER_A, report)
    report.status = ReportStatus.SUBMITTED
    assert not can_modify(DRIVER_A, report)


def test_approve_requires_supervisor_and_submitted() -> None:
    assert can_approve(SUPERVISOR, _Report(owner_id=DRIVER_A.id, status=ReportStatus.SUBMITTED))
    assert not can_approve(SUPERVISOR, _Report(owner_id=DRIVER_A.id, status=ReportStatus.DRAFT))
    assert not can_approve(SUPERVISOR, _Report(owner_id=DRIVER_A.id, status=ReportStatus.APPROVED))
    assert not can_approve(DRIVER_A, _Report(owner_id=DRIVER_A.id, status=ReportStatus.SUBMITTED))


def test_actor_from_claims_rejects_unknown_role() -> None:
    assert actor_from_claims({"sub": "u-1", "role": "supervisor"}) == Actor(id="u-1", role=Role.SUPERVISOR)
    with pytest.raises(ValueError):
        actor_from_claims({"sub": "u-1", "role": "admin"})
    with pytest.raises(ValueError):
        actor_from_claims({"role": "driver"})
