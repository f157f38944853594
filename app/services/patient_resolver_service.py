# app/services/patient_resolver_service.py
"""
Cascade patient search for clinical professionals, and the professional's
"current patient" selection.

Levels are tried strictly in order and the first hit wins:
1. patients already on the roster of one of the professional's clinics
2. any patient profile on the platform
3. the Topus identity registry (needs a document type), creating the
   patient on first sight
4. nothing found

Registry failures are reported as level 4, never raised.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.security import generate_unusable_password, get_password_hash
from app.models.access_audit import AccessType, PatientAccessLog
from app.models.clinic import Clinic, ClinicPatient, ClinicProfessional
from app.models.patient_profile import PatientProfile
from app.models.professional_context import ProfessionalPatientContext
from app.models.user import RoleName, User, UserRole
from app.services.registry_clients import RegistryLookupError, TopusClient
from app.utils.datetime_utils import as_utc, utc_now

logger = logging.getLogger(__name__)

LEVEL_LOCAL = 1
LEVEL_PLATFORM = 2
LEVEL_REGISTRY = 3
LEVEL_NOT_FOUND = 4


class PatientResolverError(Exception):
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NoClinicMembershipError(PatientResolverError):
    status_code = 404


class PatientNotFoundError(PatientResolverError):
    status_code = 404


class PatientAccessDeniedError(PatientResolverError):
    status_code = 403


@dataclass
class SearchOutcome:
    level: int
    profile: PatientProfile | None = None
    clinic: Clinic | None = None
    is_new: bool = False
    require_document_type: bool = False
    message: str | None = None

    @property
    def found(self) -> bool:
        return self.profile is not None

    @property
    def requires_audit(self) -> bool:
        return self.found and self.level in (LEVEL_PLATFORM, LEVEL_REGISTRY)


def get_professional_clinics(db: Session, professional_user_id: UUID) -> list[Clinic]:
    return (
        db.query(Clinic)
        .join(ClinicProfessional, ClinicProfessional.clinic_id == Clinic.id)
        .filter(ClinicProfessional.professional_user_id == professional_user_id)
        .order_by(ClinicProfessional.created_at.asc())
        .all()
    )


def is_patient_in_clinics(db: Session, patient_user_id: UUID, clinic_ids: list[UUID]) -> bool:
    if not clinic_ids:
        return False
    return (
        db.query(ClinicPatient.id)
        .filter(
            ClinicPatient.patient_user_id == patient_user_id,
            ClinicPatient.clinic_id.in_(clinic_ids),
        )
        .first()
        is not None
    )


def professional_can_access_patient(
    db: Session,
    *,
    professional_user_id: UUID,
    patient_user_id: UUID,
) -> bool:
    """
    True when the patient is on the roster of one of the professional's
    clinics, or is the professional's currently selected patient.
    """
    clinic_ids = [c.id for c in get_professional_clinics(db, professional_user_id)]
    if is_patient_in_clinics(db, patient_user_id, clinic_ids):
        return True

    context = db.get(ProfessionalPatientContext, professional_user_id)
    return context is not None and context.current_patient_user_id == patient_user_id


def _search_local(
    db: Session, identification: str, clinics: list[Clinic]
) -> tuple[PatientProfile, Clinic] | None:
    by_id = {c.id: c for c in clinics}
    row = (
        db.query(PatientProfile, ClinicPatient.clinic_id)
        .join(ClinicPatient, ClinicPatient.patient_user_id == PatientProfile.user_id)
        .filter(
            ClinicPatient.clinic_id.in_(list(by_id)),
            PatientProfile.identification == identification,
        )
        .order_by(ClinicPatient.created_at.asc())
        .first()
    )
    if row is None:
        return None
    profile, clinic_id = row
    return profile, by_id[clinic_id]


def create_patient_from_registry(
    db: Session,
    *,
    document_type: str,
    identification: str,
    full_name: str | None,
    age: int | None,
    eps: str | None,
    registry_data: dict,
) -> PatientProfile:
    """
    Create user, PATIENT role and profile in one transaction.

    Raises IntegrityError if another request created the same
    (document_type, identification) first.
    """
    user = User(
        email=f"patient_{identification}_{int(time.time() * 1000)}@patients.local",
        hashed_password=get_password_hash(generate_unusable_password()),
        full_name=full_name,
    )
    db.add(user)
    db.flush()

    db.add(UserRole(user_id=user.id, role=RoleName.PATIENT))
    profile = PatientProfile(
        user_id=user.id,
        document_type=document_type,
        identification=identification,
        full_name=full_name,
        age=age,
        eps=eps,
        registry_data=registry_data,
    )
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return profile


def search_patient(
    db: Session,
    *,
    professional_user_id: UUID,
    identification: str,
    document_type: str | None,
    topus: TopusClient,
) -> SearchOutcome:
    identification = identification.strip()
    clinics = get_professional_clinics(db, professional_user_id)
    if not clinics:
        raise NoClinicMembershipError("You are not associated with any clinic")
    primary_clinic = clinics[0]

    # Level 1
    local = _search_local(db, identification, clinics)
    if local is not None:
        profile, clinic = local
        return SearchOutcome(
            level=LEVEL_LOCAL,
            profile=profile,
            clinic=clinic,
            message="Patient found in your clinic",
        )

    # Level 2
    platform_profile = (
        db.query(PatientProfile)
        .filter(PatientProfile.identification == identification)
        .order_by(PatientProfile.created_at.asc())
        .first()
    )
    if platform_profile is not None:
        return SearchOutcome(
            level=LEVEL_PLATFORM,
            profile=platform_profile,
            clinic=primary_clinic,
            message="Patient found on the platform (access will be audited)",
        )

    # Level 3 needs a typed identity before the registry is touched
    if not document_type:
        return SearchOutcome(
            level=LEVEL_REGISTRY,
            require_document_type=True,
            message="Patient not found. Select the document type to search external sources.",
        )

    try:
        identity, payload = topus.lookup_identity(document_type, identification)
    except RegistryLookupError as exc:
        logger.warning(f"Topus lookup for {document_type} {identification} gave no identity: {exc}")
        return SearchOutcome(
            level=LEVEL_NOT_FOUND,
            message="Patient not found. Check the document or register the patient manually.",
        )

    existing = find_patient_by_document(db, document_type, identification)
    if existing is not None:
        return _as_platform_match(existing, primary_clinic)

    try:
        profile = create_patient_from_registry(
            db,
            document_type=document_type,
            identification=identification,
            full_name=identity.full_name,
            age=identity.age,
            eps=identity.eps,
            registry_data=payload,
        )
    except IntegrityError:
        # Someone else created this patient between our check and insert.
        db.rollback()
        existing = find_patient_by_document(db, document_type, identification)
        if existing is None:
            raise
        logger.info(f"Concurrent creation of {document_type} {identification}; using existing profile")
        return _as_platform_match(existing, primary_clinic)

    logger.info(f"Patient {profile.user_id} created from Topus for professional {professional_user_id}")
    return SearchOutcome(
        level=LEVEL_REGISTRY,
        profile=profile,
        clinic=primary_clinic,
        is_new=True,
        message="Patient created from external sources (access will be audited)",
    )


def find_patient_by_document(db: Session, document_type: str, identification: str) -> PatientProfile | None:
    return (
        db.query(PatientProfile)
        .filter(
            PatientProfile.document_type == document_type,
            PatientProfile.identification == identification,
        )
        .first()
    )


def _as_platform_match(profile: PatientProfile, clinic: Clinic) -> SearchOutcome:
    return SearchOutcome(
        level=LEVEL_PLATFORM,
        profile=profile,
        clinic=clinic,
        message="Patient found on the platform (access will be audited)",
    )


def select_patient(
    db: Session,
    *,
    professional_user_id: UUID,
    patient_user_id: UUID,
    clinic_id: UUID | None = None,
    level: int = LEVEL_LOCAL,
    now: datetime | None = None,
) -> tuple[ProfessionalPatientContext, PatientAccessLog]:
    """
    Make `patient_user_id` the professional's current patient and write
    the access audit entry.

    The access type is decided here from the clinic rosters, not taken
    from the caller: clinic_local only if the patient is on one of the
    professional's clinics.
    """
    current = as_utc(now) if now is not None else utc_now()

    profile = db.get(PatientProfile, patient_user_id)
    if profile is None:
        raise PatientNotFoundError("Patient not found")

    clinics = get_professional_clinics(db, professional_user_id)
    if not clinics:
        raise NoClinicMembershipError("You are not associated with any clinic")
    clinic_ids = [c.id for c in clinics]
    if clinic_id is None:
        clinic_id = clinic_ids[0]
    elif clinic_id not in clinic_ids:
        raise PatientAccessDeniedError("Not allowed")

    local = is_patient_in_clinics(db, patient_user_id, clinic_ids)
    access_type = AccessType.CLINIC_LOCAL if local else AccessType.GLOBAL_OR_EXTERNAL

    context = db.get(ProfessionalPatientContext, professional_user_id)
    if context is None:
        context = ProfessionalPatientContext(professional_user_id=professional_user_id)
        db.add(context)
    context.current_patient_user_id = patient_user_id
    context.current_clinic_id = clinic_id
    context.updated_at = current

    entry = PatientAccessLog(
        professional_user_id=professional_user_id,
        patient_user_id=patient_user_id,
        clinic_id=clinic_id,
        access_type=access_type,
        access_details={
            "action": "patient_switched",
            "level": level,
            "auditable_for_patient": not local,
            "timestamp": current.isoformat(),
        },
        created_at=current,
    )
    db.add(entry)
    db.commit()
    db.refresh(context)
    logger.info(
        f"Professional {professional_user_id} selected patient {patient_user_id} ({access_type.value})"
    )
    return context, entry


def get_professional_context(
    db: Session, professional_user_id: UUID
) -> tuple[ProfessionalPatientContext | None, PatientProfile | None]:
    context = db.get(ProfessionalPatientContext, professional_user_id)
    if context is None or context.current_patient_user_id is None:
        return context, None
    return context, db.get(PatientProfile, context.current_patient_user_id)


def list_patient_access_logs(
    db: Session, patient_user_id: UUID, limit: int = 200
) -> list[tuple[PatientAccessLog, User, Clinic | None]]:
    """
    Entries a patient may see about themselves: only auditable ones.
    """
    rows = (
        db.query(PatientAccessLog, User, Clinic)
        .join(User, User.id == PatientAccessLog.professional_user_id)
        .outerjoin(Clinic, Clinic.id == PatientAccessLog.clinic_id)
        .filter(PatientAccessLog.patient_user_id == patient_user_id)
        .order_by(PatientAccessLog.created_at.desc())
        .all()
    )
    visible = [
        (log, user, clinic)
        for log, user, clinic in rows
        if (log.access_details or {}).get("auditable_for_patient") is True
    ]
    return visible[:limit]
