# app/api/v1/endpoints/shared_access.py
import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.dependencies.authz import require_patient
from app.models.access_grant import AccessGrant
from app.models.user import User
from app.schemas.access_grant import (
    AccessGrantCreate,
    AccessGrantList,
    AccessGrantResponse,
    GrantPermissions,
    GuestAccessLogResponse,
)
from app.services import access_grant_service
from app.services.access_grant_service import AccessGrantError
from app.utils.datetime_utils import seconds_until, utc_now
from app.utils.qr import render_qr_svg

logger = logging.getLogger(__name__)

router = APIRouter()


def _to_response(grant: AccessGrant, now=None) -> AccessGrantResponse:
    now = now or utc_now()
    active = access_grant_service.grant_status(grant, now) == "active"
    return AccessGrantResponse(
        id=grant.id,
        token=grant.token,
        share_url=access_grant_service.build_share_url(grant.token),
        permissions=GrantPermissions(**(grant.permissions or {})),
        duration_minutes=grant.duration_minutes,
        access_count=grant.access_count,
        created_at=grant.created_at,
        expires_at=grant.expires_at,
        last_accessed_at=grant.last_accessed_at,
        revoked_at=grant.revoked_at,
        time_remaining=seconds_until(grant.expires_at, now) if active else 0,
    )


def _raise_http(exc: AccessGrantError) -> None:
    raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


@router.post(
    "/",
    response_model=AccessGrantResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_shared_access(
    payload: AccessGrantCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_patient),
) -> AccessGrantResponse:
    """
    Issue a time-boxed guest link to the caller's own record.
    """
    try:
        grant = access_grant_service.create_grant(
            db,
            patient_user_id=current_user.id,
            duration_minutes=payload.duration_minutes,
            allow_download=payload.allow_download,
            allow_chat=payload.allow_chat,
            allow_notebook=payload.allow_notebook,
        )
    except AccessGrantError as exc:
        _raise_http(exc)
    except SQLAlchemyError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Could not create the access link",
        )
    return _to_response(grant)


@router.get("/", response_model=AccessGrantList)
def list_shared_access(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_patient),
) -> AccessGrantList:
    now = utc_now()
    listing = access_grant_service.list_grants(db, patient_user_id=current_user.id, now=now)
    return AccessGrantList(
        active=[_to_response(g, now) for g in listing.active],
        expired=[_to_response(g, now) for g in listing.expired],
        revoked=[_to_response(g, now) for g in listing.revoked],
        total=listing.total,
    )


@router.post("/{grant_id}/revoke", response_model=AccessGrantResponse)
def revoke_shared_access(
    grant_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_patient),
) -> AccessGrantResponse:
    try:
        grant = access_grant_service.revoke_grant(
            db, grant_id=grant_id, patient_user_id=current_user.id
        )
    except AccessGrantError as exc:
        _raise_http(exc)
    return _to_response(grant)


@router.get("/{grant_id}/qr.svg")
def shared_access_qr(
    grant_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_patient),
) -> Response:
    """
    QR code of the share URL, as SVG.
    """
    try:
        grant = access_grant_service.get_owned_grant(
            db, grant_id=grant_id, patient_user_id=current_user.id
        )
    except AccessGrantError as exc:
        _raise_http(exc)
    svg = render_qr_svg(access_grant_service.build_share_url(grant.token))
    return Response(content=svg, media_type="image/svg+xml")


@router.get("/{grant_id}/logs", response_model=list[GuestAccessLogResponse])
def shared_access_logs(
    grant_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_patient),
) -> list[GuestAccessLogResponse]:
    try:
        logs = access_grant_service.list_guest_access_logs(
            db, grant_id=grant_id, patient_user_id=current_user.id
        )
    except AccessGrantError as exc:
        _raise_http(exc)
    return [GuestAccessLogResponse.model_validate(log) for log in logs]
