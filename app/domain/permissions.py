from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol, assert_never

from app.domain.state_machine import ReportStatus


class Role(StrEnum):
    DRIVER = "driver"
    SUPERVISOR = "supervisor"


@dataclass(frozen=True)
class Actor:
    id: str
    role: Role


class _OwnedReport(Protocol):
    """Structural view of the report fields the policy reads."""

    owner_id: str
    status: ReportStatus


def actor_from_claims(claims: dict[str, Any]) -> Actor:
    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject:
        raise ValueError("token subject missing")
    return Actor(id=subject, role=Role(claims.get("role")))


def is_driver(actor: Actor) -> bool:
    match actor.role:
        case Role.DRIVER:
            return True
        case Role.SUPERVISOR:
            return False
        case _:
            assert_never(actor.role)


def is_supervisor(actor: Actor) -> bool:
    match actor.role:
        case Role.SUPERVISOR:
            return True
        case Role.DRIVER:
            return False
        case _:
            assert_never(actor.role)


def is_owner(actor: Actor, report: _OwnedReport) -> bool:
    return actor.id == report.owner_id


def can_create(actor: Actor) -> bool:
    return is_driver(actor)


def can_view(actor: Actor, report: _OwnedReport) -> bool:
    return is_owner(actor, report)


def can_modify(actor: Actor, report: _OwnedReport) -> bool:
    # update, delete and submit share this gate
    return is_owner(actor, report) and report.status == ReportStatus.DRAFT


def can_approve(actor: Actor, report: _OwnedReport) -> bool:
    return is_supervisor(actor) and report.status == ReportStatus.SUBMITTED
