# app/services/professional_service.py
import logging

from sqlalchemy.orm import Session

from app.models.professional_profile import ProfessionalProfile, ValidationStatus
from app.models.user import RoleName, User
from app.services.registry_clients import RethusClient
from app.services.user_service import ensure_role
from app.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)


def get_professional_profile(db: Session, user_id) -> ProfessionalProfile | None:
    return db.get(ProfessionalProfile, user_id)


def validate_professional(
    db: Session,
    *,
    user: User,
    document_type: str,
    document_number: str,
    rethus: RethusClient,
) -> ProfessionalProfile:
    """
    Check the caller against RETHUS and record the outcome.

    A non-empty `datos_academicos` list validates the profile and grants
    the PROFESSIONAL role; anything else rejects it. Every check is
    appended to the validation history. RegistryLookupError propagates and
    leaves the profile untouched.
    """
    document_type = document_type.strip().upper()
    document_number = document_number.strip()

    result, payload = rethus.check_professional(document_type, document_number)
    checked_at = utc_now()
    status = ValidationStatus.VALIDATED if result.is_valid else ValidationStatus.REJECTED

    profile = db.get(ProfessionalProfile, user.id)
    if profile is None:
        profile = ProfessionalProfile(user_id=user.id, validation_history=[])
        db.add(profile)

    profile.document_type = document_type
    profile.document_number = document_number
    profile.rethus_data = payload
    profile.validation_status = status
    profile.validated_at = checked_at
    # Reassign so the JSON column registers the change
    profile.validation_history = list(profile.validation_history or []) + [
        {
            "checked_at": checked_at.isoformat(),
            "document_type": document_type,
            "document_number": document_number,
            "status": status.value,
            "rethus_data": payload,
        }
    ]

    if status == ValidationStatus.VALIDATED:
        ensure_role(db, user, RoleName.PROFESSIONAL)

    db.commit()
    db.refresh(profile)
    logger.info(f"RETHUS check for user {user.id}: {status.value}")
    return profile
