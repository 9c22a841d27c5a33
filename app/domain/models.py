from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, SQLModel

from app.domain.state_machine import ClassificationRunStatus, ReportStatus

PACKAGE_ID_MAX_LENGTH = 255
LOCATION_MAX_LENGTH = 255
DESCRIPTION_MAX_LENGTH = 1000

AI_FIELD_NAMES = ("severity", "damage_type", "value_impact", "liability")


def now_utc() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    # sqlite drops tzinfo on the way back
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    report_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Report(SQLModel, table=True):
    __tablename__ = "damage_reports"
    __table_args__ = (
        Index("ix_damage_reports_owner_created", "owner_id", "created_at"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    owner_id: str = Field(index=True)
    package_id: str = Field(max_length=PACKAGE_ID_MAX_LENGTH)
    location: str = Field(max_length=LOCATION_MAX_LENGTH)
    description: str | None = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    photo_path: str | None = None
    status: ReportStatus = Field(default=ReportStatus.DRAFT, index=True)
    ai_severity: str | None = None
    ai_damage_type: str | None = None
    ai_value_impact: str | None = None
    ai_liability: str | None = None
    submitted_at: datetime | None = None
    approved_at: datetime | None = None
    approved_by: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class ClassificationRun(SQLModel, table=True):
    __tablename__ = "classification_runs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    report_id: str = Field(foreign_key="damage_reports.id", ondelete="CASCADE", index=True)
    status: ClassificationRunStatus = Field(default=ClassificationRunStatus.QUEUED, index=True)
    attempts: int = 0
    last_error: str | None = None
    next_attempt_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)
    finished_at: datetime | None = None


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    report_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class ReportInput(BaseModel):
    package_id: str = PydanticField(min_length=1, max_length=PACKAGE_ID_MAX_LENGTH)
    location: str = PydanticField(min_length=1, max_length=LOCATION_MAX_LENGTH)
    description: str | None = PydanticField(default=None, max_length=DESCRIPTION_MAX_LENGTH)

    @field_validator("package_id", "location", mode="before")
    @classmethod
    def _strip_required(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("description", mode="before")
    @classmethod
    def _blank_description_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


@dataclass(frozen=True)
class PhotoUpload:
    content: bytes
    filename: str | None = None
    content_type: str | None = None


class ClassificationResult(BaseModel):
    severity: str
    damage_type: str
    value_impact: str
    liability: str


class ReportRead(ORMReadModel):
    id: str
    owner_id: str
    package_id: str
    location: str
    description: str | None
    photo_path: str | None
    status: ReportStatus
    ai_severity: str | None
    ai_damage_type: str | None
    ai_value_impact: str | None
    ai_liability: str | None
    submitted_at: datetime | None
    approved_at: datetime | None
    approved_by: str | None
    created_at: datetime
    updated_at: datetime


class PendingClassificationRead(BaseModel):
    pending: bool


class ClassificationRunRead(ORMReadModel):
    id: str
    report_id: str
    status: ClassificationRunStatus
    attempts: int
    last_error: str | None
    next_attempt_at: datetime | None
    created_at: datetime
    finished_at: datetime | None
