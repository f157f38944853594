# app/api/v1/endpoints/guest.py
"""
Unauthenticated guest portal. Everything here is authorized by the
access grant token alone.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import FileResponse, JSONResponse
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.database import get_db
from app.schemas.access_grant import (
    GrantPermissions,
    GuestDocument,
    GuestPatient,
    GuestValidateError,
    GuestValidateRequest,
    GuestValidateResponse,
)
from app.services import access_grant_service
from app.services.access_grant_service import AccessGrantError
from app.utils.file_storage import resolve_storage_path

logger = logging.getLogger(__name__)

router = APIRouter()


def _client_info(request: Request) -> tuple[str | None, str | None]:
    ip = request.client.host if request.client else None
    return ip, request.headers.get("user-agent")


def _grant_error(exc: AccessGrantError) -> JSONResponse:
    body = GuestValidateError(error=exc.message, code=exc.code)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(by_alias=True))


@router.post(
    "/validate",
    response_model=GuestValidateResponse,
    responses={403: {"model": GuestValidateError}, 404: {"model": GuestValidateError}},
)
def validate_guest_access(
    payload: GuestValidateRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Validate a share token for an action and return the shared record.

    Every successful call counts as one access.
    """
    ip, user_agent = _client_info(request)
    try:
        result = access_grant_service.validate_grant(
            db,
            token=payload.token,
            action=payload.action,
            action_details=payload.action_details,
            ip_address=ip,
            user_agent=user_agent,
        )
    except AccessGrantError as exc:
        return _grant_error(exc)

    grant = result.grant
    permissions = GrantPermissions(**(grant.permissions or {}))
    profile = result.profile

    patient = None
    if profile is not None:
        patient = GuestPatient(
            user_id=profile.user_id,
            full_name=access_grant_service.patient_display_name(profile),
            document_type=profile.document_type,
            identification=profile.identification,
            age=profile.age,
            eps=profile.eps,
            phone=profile.phone,
        )

    prefix = get_settings().api_v1_prefix
    documents = [
        GuestDocument(
            id=doc.id,
            file_name=doc.file_name,
            file_type=doc.file_type,
            document_type=doc.document_type,
            document_date=doc.document_date.isoformat() if doc.document_date else None,
            created_at=doc.created_at,
            download_url=(
                f"{prefix}/guest/{grant.token}/documents/{doc.id}/download"
                if permissions.allow_download
                else None
            ),
        )
        for doc in result.documents
    ]

    return GuestValidateResponse(
        patient=patient,
        documents=documents,
        permissions=permissions,
        expires_at=grant.expires_at,
        time_remaining=result.time_remaining,
        access_count=grant.access_count,
        patient_user_id=grant.patient_user_id,
    )


@router.get("/{token}/documents/{document_id}/download")
def download_guest_document(
    token: str,
    document_id: UUID,
    request: Request,
    db: Session = Depends(get_db),
):
    ip, user_agent = _client_info(request)
    try:
        document = access_grant_service.open_guest_document(
            db,
            token=token,
            document_id=document_id,
            ip_address=ip,
            user_agent=user_agent,
        )
    except AccessGrantError as exc:
        return _grant_error(exc)

    path = resolve_storage_path(document.storage_path)
    if not path.exists():
        logger.error(f"Stored file missing for document {document.id}")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found",
        )
    return FileResponse(
        path,
        media_type=document.file_type or "application/octet-stream",
        filename=document.file_name,
    )
