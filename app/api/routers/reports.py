from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile, status

from app.api.deps import get_current_actor, require_role
from app.domain.models import ClassificationRunRead, PendingClassificationRead, PhotoUpload, ReportRead
from app.domain.permissions import Actor, Role
from app.services.report_service import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ReportService,
    ValidationError,
)

router = APIRouter()


def get_report_service() -> ReportService:
    return ReportService()


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
Driver = Annotated[Actor, Depends(require_role(Role.DRIVER))]
Supervisor = Annotated[Actor, Depends(require_role(Role.SUPERVISOR))]
Service = Annotated[ReportService, Depends(get_report_service)]
ReportErrors = (NotFoundError, ConflictError, PermissionDeniedError, ValidationError)


def _handle_report_error(exc: Exception) -> None:
    if isinstance(exc, ValidationError):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(exc), "errors": exc.errors},
        ) from exc
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, PermissionDeniedError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    raise exc


def _read_photo(photo: UploadFile | None) -> PhotoUpload | None:
    if photo is None:
        return None
    content = photo.file.read()
    if not content:
        return None
    return PhotoUpload(content=content, filename=photo.filename, content_type=photo.content_type)


def _form_fields(package_id: str, location: str, description: str | None) -> dict[str, Any]:
    return {"package_id": package_id, "location": location, "description": description}


@router.get("/reports", response_model=list[ReportRead])
def list_reports(actor: Driver, service: Service) -> list[ReportRead]:
    return [ReportRead.model_validate(item) for item in service.list_for_driver(actor)]


@router.get("/reports/pending", response_model=PendingClassificationRead)
def pending_classification(actor: Driver, service: Service) -> PendingClassificationRead:
    return PendingClassificationRead(pending=service.has_pending_classification(actor))


@router.post("/reports", response_model=ReportRead, status_code=status.HTTP_201_CREATED)
def create_report(
    actor: CurrentActor,
    service: Service,
    package_id: Annotated[str, Form()] = "",
    location: Annotated[str, Form()] = "",
    description: Annotated[str | None, Form()] = None,
    submit: Annotated[bool, Form()] = False,
    photo: Annotated[UploadFile | None, File()] = None,
) -> ReportRead:
    fields = _form_fields(package_id, location, description)
    try:
        if submit:
            report = service.create_and_submit(actor, fields, _read_photo(photo))
        else:
            report = service.create_draft(actor, fields, _read_photo(photo))
        return ReportRead.model_validate(report)
    except ReportErrors as exc:
        _handle_report_error(exc)
        raise


@router.get("/reports/{report_id}", response_model=ReportRead)
def get_report(report_id: str, actor: CurrentActor, service: Service) -> ReportRead:
    try:
        return ReportRead.model_validate(service.get_report(actor, report_id))
    except ReportErrors as exc:
        _handle_report_error(exc)
        raise


@router.put("/reports/{report_id}", response_model=ReportRead)
def update_report(
    report_id: str,
    actor: Driver,
    service: Service,
    package_id: Annotated[str, Form()] = "",
    location: Annotated[str, Form()] = "",
    description: Annotated[str | None, Form()] = None,
    submit: Annotated[bool, Form()] = False,
    photo: Annotated[UploadFile | None, File()] = None,
) -> ReportRead:
    try:
        report = service.update_draft(
            actor,
            report_id,
            _form_fields(package_id, location, description),
            _read_photo(photo),
            submit=submit,
        )
        return ReportRead.model_validate(report)
    except ReportErrors as exc:
        _handle_report_error(exc)
        raise


@router.post("/reports/{report_id}/submit", response_model=ReportRead)
def submit_report(report_id: str, actor: Driver, service: Service) -> ReportRead:
    try:
        return ReportRead.model_validate(service.submit(actor, report_id))
    except ReportErrors as exc:
        _handle_report_error(exc)
        raise


@router.delete("/reports/{report_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_report(report_id: str, actor: Driver, service: Service) -> Response:
    try:
        service.delete(actor, report_id)
    except ReportErrors as exc:
        _handle_report_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/reports/{report_id}/approve", response_model=ReportRead)
def approve_report(report_id: str, actor: Supervisor, service: Service) -> ReportRead:
    try:
        return ReportRead.model_validate(service.approve(actor, report_id))
    except ReportErrors as exc:
        _handle_report_error(exc)
        raise


@router.get("/reports/{report_id}/classification-runs", response_model=list[ClassificationRunRead])
def list_classification_runs(report_id: str, actor: CurrentActor, service: Service) -> list[ClassificationRunRead]:
    try:
        runs = service.list_classification_runs(actor, report_id)
        return [ClassificationRunRead.model_validate(item) for item in runs]
    except ReportErrors as exc:
        _handle_report_error(exc)
        raise
