# app/api/v1/endpoints/clinics.py
import json
from typing import Any, Callable, Iterator
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.database import get_db, get_session_factory
from app.dependencies.authz import require_clinic_admin, require_super_admin
from app.models.user import User
from app.schemas.clinic import (
    BulkUploadRequest,
    ClinicAccessLogResponse,
    ClinicCreate,
    ClinicPatientCreate,
    ClinicPatientResponse,
    ClinicProfessionalResponse,
    ClinicResponse,
)
from app.schemas.patient import PatientProfileResponse
from app.services import clinic_admin_service
from app.services.clinic_admin_service import ClinicAdminError
from app.services.registry_clients import TopusClient, get_topus_client

router = APIRouter()


def _admin_clinic(db: Session, user: User, clinic_id: UUID):
    try:
        return clinic_admin_service.require_clinic_admin(db, user=user, clinic_id=clinic_id)
    except ClinicAdminError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)


def _ndjson(events: Iterator[dict[str, Any]]) -> Iterator[str]:
    for event in events:
        yield json.dumps(event) + "\n"


@router.post(
    "/",
    response_model=ClinicResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_clinic(
    payload: ClinicCreate,
    db: Session = Depends(get_db),
    _: User = Depends(require_super_admin),
) -> ClinicResponse:
    try:
        clinic = clinic_admin_service.create_clinic(
            db, name=payload.name, admin_user_id=payload.admin_user_id
        )
    except ClinicAdminError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    return ClinicResponse.model_validate(clinic)


@router.get("/{clinic_id}/patients", response_model=list[ClinicPatientResponse])
def list_patients(
    clinic_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_clinic_admin),
) -> list[ClinicPatientResponse]:
    _admin_clinic(db, current_user, clinic_id)
    return [ClinicPatientResponse(**row) for row in clinic_admin_service.list_clinic_patients(db, clinic_id)]


@router.get("/{clinic_id}/professionals", response_model=list[ClinicProfessionalResponse])
def list_professionals(
    clinic_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_clinic_admin),
) -> list[ClinicProfessionalResponse]:
    _admin_clinic(db, current_user, clinic_id)
    return [
        ClinicProfessionalResponse(**row)
        for row in clinic_admin_service.list_clinic_professionals(db, clinic_id)
    ]


@router.post(
    "/{clinic_id}/patients",
    response_model=PatientProfileResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_patient(
    clinic_id: UUID,
    payload: ClinicPatientCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_clinic_admin),
    topus: TopusClient = Depends(get_topus_client),
) -> PatientProfileResponse:
    """
    Add one patient to the roster, creating them from Topus if needed.
    """
    _admin_clinic(db, current_user, clinic_id)
    try:
        profile, _note = clinic_admin_service.add_patient_to_clinic(
            db,
            clinic_id=clinic_id,
            document_type=payload.document_type,
            identification=payload.identification,
            topus=topus,
            assigned_professional_user_id=payload.assigned_professional_user_id,
        )
    except ClinicAdminError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    return PatientProfileResponse.model_validate(profile)


@router.post("/{clinic_id}/patients/bulk")
def bulk_add_patients(
    clinic_id: UUID,
    payload: BulkUploadRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_clinic_admin),
    topus: TopusClient = Depends(get_topus_client),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
) -> StreamingResponse:
    """
    One patient per line (`DOC_TYPE DOC_NUMBER`). Progress is streamed
    as newline-delimited JSON; each line is processed on its own and a
    bad line never stops the rest.
    """
    _admin_clinic(db, current_user, clinic_id)
    events = clinic_admin_service.bulk_upload_patients(
        payload.text,
        clinic_id=clinic_id,
        topus=topus,
        session_factory=session_factory,
        row_delay=get_settings().bulk_upload_row_delay_seconds,
    )
    return StreamingResponse(_ndjson(events), media_type="application/x-ndjson")


@router.post("/{clinic_id}/professionals/bulk")
def bulk_add_professionals(
    clinic_id: UUID,
    payload: BulkUploadRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_clinic_admin),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
) -> StreamingResponse:
    """
    One professional per line (`DOC_TYPE DOC_NUMBER EMAIL [FULL NAME]`).
    """
    _admin_clinic(db, current_user, clinic_id)
    events = clinic_admin_service.bulk_upload_professionals(
        payload.text,
        clinic_id=clinic_id,
        session_factory=session_factory,
        row_delay=get_settings().bulk_upload_row_delay_seconds,
    )
    return StreamingResponse(_ndjson(events), media_type="application/x-ndjson")


@router.get("/{clinic_id}/access-logs", response_model=list[ClinicAccessLogResponse])
def clinic_access_logs(
    clinic_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_clinic_admin),
) -> list[ClinicAccessLogResponse]:
    _admin_clinic(db, current_user, clinic_id)
    return [
        ClinicAccessLogResponse(**row)
        for row in clinic_admin_service.list_clinic_access_logs(db, clinic_id)
    ]
