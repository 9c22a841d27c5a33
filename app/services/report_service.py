from __future__ import annotations

import mimetypes
import os
from pathlib import PurePosixPath
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, update
from sqlmodel import Session, col, select

from app.domain.models import (
    ClassificationRun,
    PhotoUpload,
    Report,
    ReportInput,
    now_utc,
)
from app.domain.permissions import Actor, can_approve, can_create, can_modify, can_view, is_supervisor
from app.domain.state_machine import ReportStatus, can_transition
from app.infra.db import open_session
from app.infra.events import event_bus
from app.services.classification_service import ClassificationDispatcher
from app.services.photo_storage_service import LocalPhotoStorage, PhotoStorage, build_photo_directory

logger = structlog.get_logger()

ALLOWED_PHOTO_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "webp"})
PHOTO_MAX_BYTES = int(os.getenv("PHOTO_MAX_BYTES", str(5 * 1024 * 1024)))
PHOTO_REQUIRED_MESSAGE = "A photo of the damage is required."


class ReportError(Exception):
    pass


class NotFoundError(ReportError):
    pass


class ConflictError(ReportError):
    pass


class PermissionDeniedError(ReportError):
    pass


class ValidationError(ReportError):
    def __init__(self, errors: dict[str, list[str]]) -> None:
        super().__init__("report validation failed")
        self.errors = errors


def _source_states(target: ReportStatus) -> list[ReportStatus]:
    return [state for state in ReportStatus if can_transition(state, target)]


class ReportService:
    def __init__(
        self,
        *,
        storage: PhotoStorage | None = None,
        dispatcher: ClassificationDispatcher | None = None,
    ) -> None:
        self._storage = storage or LocalPhotoStorage.from_env()
        self._dispatcher = dispatcher or ClassificationDispatcher()

    def _validate_fields(self, fields: dict[str, Any], errors: dict[str, list[str]]) -> ReportInput | None:
        try:
            return ReportInput.model_validate(fields)
        except PydanticValidationError as exc:
            for item in exc.errors():
                field = str(item["loc"][0]) if item["loc"] else "__root__"
                errors.setdefault(field, []).append(item["msg"])
            return None

    def _photo_extension(self, photo: PhotoUpload) -> str | None:
        if photo.filename:
            suffix = PurePosixPath(photo.filename).suffix.lower().lstrip(".")
            if suffix:
                return suffix
        if photo.content_type:
            guessed = mimetypes.guess_extension(photo.content_type)
            if guessed:
                return guessed.lstrip(".")
        return None

    def _validate_photo(self, photo: PhotoUpload | None, required: bool, errors: dict[str, list[str]]) -> None:
        if photo is None or not photo.content:
            if required:
                errors.setdefault("photo", []).append(PHOTO_REQUIRED_MESSAGE)
            return
        if photo.content_type and not photo.content_type.startswith("image/"):
            errors.setdefault("photo", []).append("The photo must be an image.")
        if self._photo_extension(photo) not in ALLOWED_PHOTO_EXTENSIONS:
            errors.setdefault("photo", []).append("The photo must be a jpg, jpeg, png or webp file.")
        if len(photo.content) > PHOTO_MAX_BYTES:
            errors.setdefault("photo", []).append(f"The photo may not be larger than {PHOTO_MAX_BYTES} bytes.")

    def _validate(self, fields: dict[str, Any], photo: PhotoUpload | None, *, photo_required: bool) -> ReportInput:
        errors: dict[str, list[str]] = {}
        data = self._validate_fields(fields, errors)
        self._validate_photo(photo, photo_required, errors)
        if errors or data is None:
            raise ValidationError(errors)
        return data

    def _store_photo(self, owner_id: str, photo: PhotoUpload) -> str:
        extension = self._photo_extension(photo) or "bin"
        return self._storage.put(photo.content, directory=build_photo_directory(owner_id), extension=extension)

    def _find_mutable(self, session: Session, report_id: str, owner_id: str) -> Report:
        report = session.exec(
            select(Report)
            .where(Report.id == report_id)
            .where(Report.owner_id == owner_id)
            .where(Report.status == ReportStatus.DRAFT)
        ).first()
        if report is None:
            raise NotFoundError("report not found")
        return report

    def find_mutable(self, report_id: str, owner_id: str) -> Report:
        with open_session() as session:
            return self._find_mutable(session, report_id, owner_id)

    def get_report(self, actor: Actor, report_id: str) -> Report:
        with open_session() as session:
            report = session.get(Report, report_id)
            if report is None or not can_view(actor, report):
                raise NotFoundError("report not found")
            return report

    def list_for_driver(self, actor: Actor) -> list[Report]:
        with open_session() as session:
            statement = (
                select(Report)
                .where(Report.owner_id == actor.id)
                .order_by(col(Report.created_at).desc(), col(Report.id).desc())
            )
            return list(session.exec(statement).all())

    def has_pending_classification(self, actor: Actor) -> bool:
        with open_session() as session:
            pending = session.exec(
                select(Report.id)
                .where(Report.owner_id == actor.id)
                .where(Report.status == ReportStatus.SUBMITTED)
                .where(col(Report.photo_path).is_not(None))
                .where(col(Report.ai_severity).is_(None))
                .limit(1)
            ).first()
            return pending is not None

    def list_classification_runs(self, actor: Actor, report_id: str) -> list[ClassificationRun]:
        report = self.get_report(actor, report_id)
        with open_session() as session:
            statement = (
                select(ClassificationRun)
                .where(ClassificationRun.report_id == report.id)
                .order_by(col(ClassificationRun.created_at).desc())
            )
            return list(session.exec(statement).all())

    def _guarded_draft_update(
        self,
        session: Session,
        actor: Actor,
        report_id: str,
        values: dict[str, Any],
        *,
        target: ReportStatus | None = None,
    ) -> None:
        """Apply ``values`` only while the row is still an owned draft.

        The status check and the write are one statement, so two racing
        requests on the same draft cannot both succeed.
        """
        allowed = [ReportStatus.DRAFT]
        if target is not None:
            allowed = _source_states(target)
            values = {**values, "status": target}
        result = session.execute(
            update(Report)
            .where(Report.id == report_id)  # type: ignore[arg-type]
            .where(Report.owner_id == actor.id)  # type: ignore[arg-type]
            .where(col(Report.status).in_(allowed))
            .values(**values)
        )
        if result.rowcount != 1:
            raise NotFoundError("report not found")

    def _submit_in_session(
        self,
        session: Session,
        actor: Actor,
        report_id: str,
        values: dict[str, Any],
    ) -> ClassificationRun:
        now = now_utc()
        self._guarded_draft_update(
            session,
            actor,
            report_id,
            {**values, "submitted_at": now, "updated_at": now},
            target=ReportStatus.SUBMITTED,
        )
        return self._dispatcher.prepare(session, report_id)

    def _after_submit(self, actor: Actor, report: Report, run: ClassificationRun) -> None:
        logger.info("report_submitted", report_id=report.id, owner_id=report.owner_id)
        event_bus.publish_dict(
            "report.submitted",
            report_id=report.id,
            actor_id=actor.id,
            payload={"status": report.status, "run_id": run.id},
        )
        self._dispatcher.enqueue(run)

    def _create(self, actor: Actor, fields: dict[str, Any], photo: PhotoUpload | None, *, submit: bool) -> Report:
        if not can_create(actor):
            raise PermissionDeniedError("only drivers can create damage reports")
        data = self._validate(fields, photo, photo_required=True)
        if photo is None:
            raise ValidationError({"photo": [PHOTO_REQUIRED_MESSAGE]})
        photo_path = self._store_photo(actor.id, photo)
        now = now_utc()
        report = Report(
            owner_id=actor.id,
            package_id=data.package_id,
            location=data.location,
            description=data.description,
            photo_path=photo_path,
            status=ReportStatus.SUBMITTED if submit else ReportStatus.DRAFT,
            submitted_at=now if submit else None,
            created_at=now,
            updated_at=now,
        )
        run: ClassificationRun | None = None
        with open_session() as session:
            try:
                session.add(report)
                if submit:
                    session.flush()
                    run = self._dispatcher.prepare(session, report.id)
                session.commit()
            except Exception:
                session.rollback()
                self._storage.delete(photo_path)
                raise
            session.refresh(report)
            if run is not None:
                session.refresh(run)

        event_bus.publish_dict(
            "report.created",
            report_id=report.id,
            actor_id=actor.id,
            payload={"status": report.status, "package_id": report.package_id},
        )
        if run is not None:
            self._after_submit(actor, report, run)
        return report

    def create_draft(self, actor: Actor, fields: dict[str, Any], photo: PhotoUpload | None) -> Report:
        return self._create(actor, fields, photo, submit=False)

    def create_and_submit(self, actor: Actor, fields: dict[str, Any], photo: PhotoUpload | None) -> Report:
        return self._create(actor, fields, photo, submit=True)

    def update_draft(
        self,
        actor: Actor,
        report_id: str,
        fields: dict[str, Any],
        photo: PhotoUpload | None = None,
        *,
        submit: bool = False,
    ) -> Report:
        data = self._validate(fields, photo, photo_required=False)
        new_photo_path: str | None = None
        run: ClassificationRun | None = None
        with open_session() as session:
            report = self._find_mutable(session, report_id, actor.id)
            if not can_modify(actor, report):
                raise NotFoundError("report not found")
            old_photo_path = report.photo_path
            if photo is not None and photo.content:
                new_photo_path = self._store_photo(report.owner_id, photo)
            values: dict[str, Any] = {
                "package_id": data.package_id,
                "location": data.location,
                "description": data.description,
                "photo_path": new_photo_path or old_photo_path,
            }
            try:
                if submit:
                    run = self._submit_in_session(session, actor, report_id, values)
                else:
                    self._guarded_draft_update(session, actor, report_id, {**values, "updated_at": now_utc()})
                session.commit()
            except Exception:
                session.rollback()
                if new_photo_path is not None:
                    self._storage.delete(new_photo_path)
                raise
            session.refresh(report)
            if run is not None:
                session.refresh(run)

        # the old file goes only once the new path is committed
        if new_photo_path is not None and old_photo_path and old_photo_path != new_photo_path:
            self._storage.delete(old_photo_path)

        event_bus.publish_dict(
            "report.updated",
            report_id=report.id,
            actor_id=actor.id,
            payload={"status": report.status, "photo_replaced": new_photo_path is not None},
        )
        if run is not None:
            self._after_submit(actor, report, run)
        return report

    def submit(self, actor: Actor, report_id: str) -> Report:
        with open_session() as session:
            report = self._find_mutable(session, report_id, actor.id)
            if not can_modify(actor, report):
                raise NotFoundError("report not found")
            run = self._submit_in_session(session, actor, report_id, {})
            session.commit()
            session.refresh(report)
            session.refresh(run)

        self._after_submit(actor, report, run)
        return report

    def delete(self, actor: Actor, report_id: str) -> None:
        with open_session() as session:
            report = self._find_mutable(session, report_id, actor.id)
            if not can_modify(actor, report):
                raise NotFoundError("report not found")
            photo_path = report.photo_path
            result = session.execute(
                delete(Report)
                .where(Report.id == report_id)  # type: ignore[arg-type]
                .where(Report.owner_id == actor.id)  # type: ignore[arg-type]
                .where(Report.status == ReportStatus.DRAFT)  # type: ignore[arg-type]
            )
            if result.rowcount != 1:
                session.rollback()
                raise NotFoundError("report not found")
            session.commit()

        if photo_path:
            self._storage.delete(photo_path)
        logger.info("report_deleted", report_id=report_id, owner_id=actor.id)
        event_bus.publish_dict("report.deleted", report_id=report_id, actor_id=actor.id, payload={})

    def approve(self, actor: Actor, report_id: str) -> Report:
        with open_session() as session:
            report = session.get(Report, report_id)
            if report is None:
                raise NotFoundError("report not found")
            if not is_supervisor(actor):
                raise PermissionDeniedError("only supervisors can approve damage reports")
            if not can_approve(actor, report):
                raise ConflictError(f"illegal transition: {report.status} -> {ReportStatus.APPROVED}")
            now = now_utc()
            result = session.execute(
                update(Report)
                .where(Report.id == report_id)  # type: ignore[arg-type]
                .where(col(Report.status).in_(_source_states(ReportStatus.APPROVED)))
                .values(status=ReportStatus.APPROVED, approved_at=now, approved_by=actor.id, updated_at=now)
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConflictError(f"illegal transition: {report.status} -> {ReportStatus.APPROVED}")
            session.commit()
            session.refresh(report)

        logger.info("report_approved", report_id=report.id, approved_by=actor.id)
        event_bus.publish_dict(
            "report.approved",
            report_id=report.id,
            actor_id=actor.id,
            payload={"status": report.status},
        )
        return report
