# app/services/access_grant_service.py
"""
Access Grant Manager: time-boxed guest links to one patient's record.

A grant is checked in a fixed order on every guest request:
unknown or revoked -> NOT_FOUND, expired -> EXPIRED, missing permission
-> FORBIDDEN. Every successful check bumps the access counter and writes
a guest access log entry, so a page reload counts as a new access.
"""

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.access_grant import AccessGrant, GuestAccessLog
from app.models.clinical_document import ClinicalDocument
from app.models.patient_profile import PatientProfile
from app.schemas.access_grant import ALLOWED_DURATIONS_MINUTES
from app.schemas.registry import RegistryIdentity
from app.utils.datetime_utils import as_utc, seconds_until, utc_now

logger = logging.getLogger(__name__)

# action -> permission flag it requires
ACTION_PERMISSIONS: dict[str, str] = {
    "view": "allow_view",
    "download_document": "allow_download",
    "chat_message": "allow_chat",
    "view_notebook": "allow_notebook",
}

GUEST_DOCUMENT_LIMIT = 100


class AccessGrantError(Exception):
    code = "ERROR"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class GrantNotFoundError(AccessGrantError):
    code = "NOT_FOUND"
    status_code = 404


class GrantExpiredError(AccessGrantError):
    code = "EXPIRED"
    status_code = 403


class GrantForbiddenError(AccessGrantError):
    code = "FORBIDDEN"
    status_code = 403


class InvalidGrantRequestError(AccessGrantError):
    code = "INVALID_REQUEST"
    status_code = 400


class GuestDocumentNotFoundError(AccessGrantError):
    code = "DOCUMENT_NOT_FOUND"
    status_code = 404


@dataclass
class GrantValidation:
    grant: AccessGrant
    profile: PatientProfile | None
    documents: list[ClinicalDocument] = field(default_factory=list)
    time_remaining: int = 0


@dataclass
class GrantListing:
    active: list[AccessGrant]
    expired: list[AccessGrant]
    revoked: list[AccessGrant]

    @property
    def total(self) -> int:
        return len(self.active) + len(self.expired) + len(self.revoked)


def generate_grant_token() -> str:
    """64 hex characters, 256 bits of entropy."""
    return secrets.token_hex(32)


def build_share_url(token: str) -> str:
    base = get_settings().guest_portal_base_url.rstrip("/")
    return f"{base}/guest/{token}"


def normalize_permissions(
    *,
    allow_download: bool,
    allow_chat: bool,
    allow_notebook: bool,
) -> dict[str, bool]:
    return {
        "allow_view": True,
        "allow_download": bool(allow_download),
        "allow_chat": bool(allow_chat),
        "allow_notebook": bool(allow_notebook),
    }


def patient_display_name(profile: PatientProfile | None) -> str | None:
    if profile is None:
        return None
    if profile.full_name:
        return profile.full_name
    return RegistryIdentity.from_payload(profile.registry_data).full_name


def grant_status(grant: AccessGrant, now: datetime | None = None) -> str:
    current = as_utc(now) if now is not None else utc_now()
    if grant.revoked_at is not None:
        return "revoked"
    if current >= as_utc(grant.expires_at):
        return "expired"
    return "active"


def create_grant(
    db: Session,
    *,
    patient_user_id: UUID,
    duration_minutes: int,
    allow_download: bool = False,
    allow_chat: bool = False,
    allow_notebook: bool = False,
    now: datetime | None = None,
) -> AccessGrant:
    """
    Issue a new grant for the calling patient.

    Nothing is returned (and no token exists) unless the row was committed.
    """
    if duration_minutes not in ALLOWED_DURATIONS_MINUTES:
        raise InvalidGrantRequestError(
            f"Duration must be one of {', '.join(str(d) for d in ALLOWED_DURATIONS_MINUTES)} minutes"
        )

    profile = db.get(PatientProfile, patient_user_id)
    if profile is None:
        raise InvalidGrantRequestError("Patient profile not found")

    created_at = as_utc(now) if now is not None else utc_now()
    grant = AccessGrant(
        token=generate_grant_token(),
        patient_user_id=patient_user_id,
        permissions=normalize_permissions(
            allow_download=allow_download,
            allow_chat=allow_chat,
            allow_notebook=allow_notebook,
        ),
        duration_minutes=duration_minutes,
        access_count=0,
        created_at=created_at,
        expires_at=created_at + timedelta(minutes=duration_minutes),
    )

    try:
        db.add(grant)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"Failed to persist access grant for patient {patient_user_id}")
        raise

    db.refresh(grant)
    logger.info(
        f"Access grant {grant.id} created for patient {patient_user_id} "
        f"({duration_minutes} min, permissions={grant.permissions})"
    )
    return grant


def _check_grant(
    db: Session,
    *,
    token: str,
    action: str,
    current: datetime,
) -> AccessGrant:
    grant = db.query(AccessGrant).filter(AccessGrant.token == token).first()
    if grant is None or grant.revoked_at is not None:
        raise GrantNotFoundError("Access link not found or revoked")

    if current >= as_utc(grant.expires_at):
        raise GrantExpiredError("Access link has expired")

    flag = ACTION_PERMISSIONS.get(action)
    if flag is None:
        raise InvalidGrantRequestError(f"Unknown action '{action}'")
    permissions = grant.permissions or {}
    if flag != "allow_view" and not permissions.get(flag, False):
        raise GrantForbiddenError("This access link does not allow that action")

    return grant


def _record_use(
    db: Session,
    grant: AccessGrant,
    *,
    action: str,
    action_details: dict[str, Any] | None,
    ip_address: str | None,
    user_agent: str | None,
    current: datetime,
) -> None:
    # Single UPDATE so concurrent validations cannot lose increments.
    db.execute(
        update(AccessGrant)
        .where(AccessGrant.id == grant.id)
        .values(
            access_count=AccessGrant.access_count + 1,
            last_accessed_at=current,
        )
    )
    db.add(
        GuestAccessLog(
            token_id=grant.id,
            patient_user_id=grant.patient_user_id,
            action_type=action,
            action_details=action_details,
            ip_address=ip_address,
            user_agent=user_agent[:500] if user_agent else None,
            created_at=current,
        )
    )
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"Failed to record use of access grant {grant.id}")
        raise
    db.refresh(grant)


def validate_grant(
    db: Session,
    *,
    token: str,
    action: str = "view",
    action_details: dict[str, Any] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> GrantValidation:
    """
    Check a grant for `action` and, on success, count the access.

    Returns the patient's profile and documents alongside the grant.
    """
    current = as_utc(now) if now is not None else utc_now()
    grant = _check_grant(db, token=token, action=action, current=current)

    _record_use(
        db,
        grant,
        action=action,
        action_details=action_details,
        ip_address=ip_address,
        user_agent=user_agent,
        current=current,
    )

    profile = db.get(PatientProfile, grant.patient_user_id)
    documents = (
        db.query(ClinicalDocument)
        .filter(ClinicalDocument.user_id == grant.patient_user_id)
        .order_by(ClinicalDocument.created_at.desc())
        .limit(GUEST_DOCUMENT_LIMIT)
        .all()
    )
    return GrantValidation(
        grant=grant,
        profile=profile,
        documents=documents,
        time_remaining=seconds_until(grant.expires_at, current),
    )


def open_guest_document(
    db: Session,
    *,
    token: str,
    document_id: UUID,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> ClinicalDocument:
    """
    Resolve a document for guest download. Requires allow_download and
    logs a download_document entry naming the file.
    """
    current = as_utc(now) if now is not None else utc_now()
    grant = _check_grant(db, token=token, action="download_document", current=current)

    document = (
        db.query(ClinicalDocument)
        .filter(
            ClinicalDocument.id == document_id,
            ClinicalDocument.user_id == grant.patient_user_id,
        )
        .first()
    )
    if document is None:
        raise GuestDocumentNotFoundError("Document not found")

    _record_use(
        db,
        grant,
        action="download_document",
        action_details={"documentId": str(document.id), "fileName": document.file_name},
        ip_address=ip_address,
        user_agent=user_agent,
        current=current,
    )
    return document


def list_grants(
    db: Session,
    *,
    patient_user_id: UUID,
    now: datetime | None = None,
) -> GrantListing:
    current = as_utc(now) if now is not None else utc_now()
    grants = (
        db.query(AccessGrant)
        .filter(AccessGrant.patient_user_id == patient_user_id)
        .order_by(AccessGrant.created_at.desc())
        .all()
    )

    listing = GrantListing(active=[], expired=[], revoked=[])
    for grant in grants:
        getattr(listing, grant_status(grant, current)).append(grant)
    return listing


def get_owned_grant(db: Session, *, grant_id: UUID, patient_user_id: UUID) -> AccessGrant:
    grant = (
        db.query(AccessGrant)
        .filter(
            AccessGrant.id == grant_id,
            AccessGrant.patient_user_id == patient_user_id,
        )
        .first()
    )
    if grant is None:
        raise GrantNotFoundError("Access link not found")
    return grant


def revoke_grant(
    db: Session,
    *,
    grant_id: UUID,
    patient_user_id: UUID,
    now: datetime | None = None,
) -> AccessGrant:
    """
    Permanently invalidate a grant. Revoking twice keeps the first timestamp.
    """
    grant = get_owned_grant(db, grant_id=grant_id, patient_user_id=patient_user_id)
    if grant.revoked_at is None:
        grant.revoked_at = as_utc(now) if now is not None else utc_now()
        db.commit()
        db.refresh(grant)
        logger.info(f"Access grant {grant.id} revoked by patient {patient_user_id}")
    return grant


def list_guest_access_logs(
    db: Session,
    *,
    grant_id: UUID,
    patient_user_id: UUID,
) -> list[GuestAccessLog]:
    grant = get_owned_grant(db, grant_id=grant_id, patient_user_id=patient_user_id)
    return (
        db.query(GuestAccessLog)
        .filter(GuestAccessLog.token_id == grant.id)
        .order_by(GuestAccessLog.created_at.desc())
        .all()
    )
