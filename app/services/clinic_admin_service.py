# app/services/clinic_admin_service.py
"""
Clinic administration: clinics, their patient and professional rosters,
bulk roster uploads and the clinic's access log.

Bulk uploads are line oriented, one record per line, fields separated by
whitespace or commas:

    patients:       DOC_TYPE DOC_NUMBER [FULL NAME...]
    professionals:  DOC_TYPE DOC_NUMBER EMAIL [FULL NAME...]

Rows are processed one at a time with a fixed pause between them. Each
row runs in its own transaction, so one bad row never affects the others.
"""

import logging
import re
import time
from typing import Any, Callable, Iterator
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from app.core.database import session_scope
from app.core.security import generate_unusable_password
from app.models.access_audit import PatientAccessLog
from app.models.clinic import Clinic, ClinicPatient, ClinicProfessional
from app.models.patient_profile import PatientProfile
from app.models.professional_profile import ProfessionalProfile, ValidationStatus
from app.models.user import RoleName, User
from app.schemas.clinic import DOCUMENT_TYPES, ProfessionalBulkRow
from app.services.patient_resolver_service import (
    create_patient_from_registry,
    find_patient_by_document,
)
from app.services.registry_clients import RegistryLookupError, TopusClient
from app.services.user_service import create_user, ensure_role, get_user_by_email

logger = logging.getLogger(__name__)

_FIELD_SEPARATOR = re.compile(r"[\s,]+")


class ClinicAdminError(Exception):
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ClinicNotFoundError(ClinicAdminError):
    status_code = 404


class ClinicAccessDeniedError(ClinicAdminError):
    status_code = 403


class RowError(ClinicAdminError):
    """A single roster record could not be processed."""


def create_clinic(db: Session, *, name: str, admin_user_id: UUID | None = None) -> Clinic:
    clinic = Clinic(name=name.strip())
    db.add(clinic)
    db.flush()

    if admin_user_id is not None:
        admin = db.get(User, admin_user_id)
        if admin is None:
            db.rollback()
            raise ClinicAdminError("Admin user not found")
        ensure_role(db, admin, RoleName.CLINIC_ADMIN)
        db.add(ClinicProfessional(clinic_id=clinic.id, professional_user_id=admin.id))

    db.commit()
    db.refresh(clinic)
    logger.info(f"Clinic {clinic.id} '{clinic.name}' created")
    return clinic


def require_clinic_admin(db: Session, *, user: User, clinic_id: UUID) -> Clinic:
    """
    The clinic, if `user` may administer it: super admins always, clinic
    admins only for clinics they belong to.
    """
    clinic = db.get(Clinic, clinic_id)
    if clinic is None:
        raise ClinicNotFoundError("Clinic not found")
    if user.has_role(RoleName.SUPER_ADMIN):
        return clinic
    if not user.has_role(RoleName.CLINIC_ADMIN):
        raise ClinicAccessDeniedError("Not allowed")

    member = (
        db.query(ClinicProfessional.id)
        .filter(
            ClinicProfessional.clinic_id == clinic_id,
            ClinicProfessional.professional_user_id == user.id,
        )
        .first()
    )
    if member is None:
        raise ClinicAccessDeniedError("Not allowed")
    return clinic


def list_clinic_patients(db: Session, clinic_id: UUID) -> list[dict[str, Any]]:
    rows = (
        db.query(ClinicPatient, PatientProfile)
        .outerjoin(PatientProfile, PatientProfile.user_id == ClinicPatient.patient_user_id)
        .filter(ClinicPatient.clinic_id == clinic_id)
        .order_by(ClinicPatient.created_at.desc())
        .all()
    )
    return [
        {
            "patient_user_id": link.patient_user_id,
            "document_type": profile.document_type if profile else None,
            "identification": profile.identification if profile else None,
            "full_name": profile.full_name if profile else None,
            "eps": profile.eps if profile else None,
            "assigned_professional_user_id": link.assigned_professional_user_id,
            "created_at": link.created_at,
        }
        for link, profile in rows
    ]


def list_clinic_professionals(db: Session, clinic_id: UUID) -> list[dict[str, Any]]:
    rows = (
        db.query(ClinicProfessional, User, ProfessionalProfile)
        .join(User, User.id == ClinicProfessional.professional_user_id)
        .outerjoin(ProfessionalProfile, ProfessionalProfile.user_id == User.id)
        .filter(ClinicProfessional.clinic_id == clinic_id)
        .order_by(ClinicProfessional.created_at.desc())
        .all()
    )
    return [
        {
            "professional_user_id": user.id,
            "email": user.email,
            "full_name": user.full_name,
            "document_type": profile.document_type if profile else None,
            "document_number": profile.document_number if profile else None,
            "validation_status": profile.validation_status.value if profile else None,
            "created_at": link.created_at,
        }
        for link, user, profile in rows
    ]


def list_clinic_access_logs(db: Session, clinic_id: UUID, limit: int = 500) -> list[dict[str, Any]]:
    professional = aliased(User)
    patient = aliased(PatientProfile)
    rows = (
        db.query(PatientAccessLog, professional, patient)
        .join(professional, professional.id == PatientAccessLog.professional_user_id)
        .outerjoin(patient, patient.user_id == PatientAccessLog.patient_user_id)
        .filter(PatientAccessLog.clinic_id == clinic_id)
        .order_by(PatientAccessLog.created_at.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "id": log.id,
            "professional_user_id": log.professional_user_id,
            "professional_name": pro.full_name or pro.email,
            "patient_user_id": log.patient_user_id,
            "patient_name": pat.full_name if pat else None,
            "access_type": log.access_type.value,
            "access_details": log.access_details,
            "created_at": log.created_at,
        }
        for log, pro, pat in rows
    ]


def _link_patient(
    db: Session,
    clinic_id: UUID,
    patient_user_id: UUID,
    assigned_professional_user_id: UUID | None = None,
) -> bool:
    existing = (
        db.query(ClinicPatient)
        .filter(
            ClinicPatient.clinic_id == clinic_id,
            ClinicPatient.patient_user_id == patient_user_id,
        )
        .first()
    )
    if existing is not None:
        return False
    db.add(
        ClinicPatient(
            clinic_id=clinic_id,
            patient_user_id=patient_user_id,
            assigned_professional_user_id=assigned_professional_user_id,
        )
    )
    db.commit()
    return True


def add_patient_to_clinic(
    db: Session,
    *,
    clinic_id: UUID,
    document_type: str,
    identification: str,
    topus: TopusClient,
    assigned_professional_user_id: UUID | None = None,
) -> tuple[PatientProfile, str]:
    """
    Put a patient on the clinic roster, creating them from Topus when the
    platform does not know them yet. Returns the profile and a short note.
    """
    document_type = document_type.strip().upper()
    identification = identification.strip()
    if document_type not in DOCUMENT_TYPES:
        raise RowError(f"Unsupported document type '{document_type}'")
    if not identification:
        raise RowError("Missing document number")

    profile = find_patient_by_document(db, document_type, identification)
    note = "Existing patient linked"
    if profile is None:
        try:
            identity, payload = topus.lookup_identity(document_type, identification)
        except RegistryLookupError as exc:
            raise RowError(f"Not found in the identity registry: {exc}") from exc

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
            note = "Patient created from the identity registry"
        except IntegrityError:
            db.rollback()
            profile = find_patient_by_document(db, document_type, identification)
            if profile is None:
                raise

    if not _link_patient(db, clinic_id, profile.user_id, assigned_professional_user_id):
        note = "Patient already in clinic"
    return profile, note


def add_professional_to_clinic(
    db: Session,
    *,
    clinic_id: UUID,
    document_type: str,
    document_number: str,
    email: str | None,
    full_name: str | None = None,
) -> tuple[User, str]:
    document_type = document_type.strip().upper()
    document_number = document_number.strip()
    if document_type not in DOCUMENT_TYPES:
        raise RowError(f"Unsupported document type '{document_type}'")
    if not document_number:
        raise RowError("Missing document number")

    profile = (
        db.query(ProfessionalProfile)
        .filter(
            ProfessionalProfile.document_type == document_type,
            ProfessionalProfile.document_number == document_number,
        )
        .first()
    )
    note = "Existing professional linked"

    if profile is not None:
        user = db.get(User, profile.user_id)
    else:
        try:
            row = ProfessionalBulkRow(
                document_type=document_type,
                document_number=document_number,
                email=email or "",
                full_name=full_name,
            )
        except ValidationError as exc:
            raise RowError("A valid email is required for new professionals") from exc

        user = get_user_by_email(db, row.email)
        if user is None:
            user = create_user(
                db,
                email=row.email,
                password=generate_unusable_password(),
                full_name=row.full_name,
                roles=[RoleName.PROFESSIONAL],
            )
            note = "Professional created"
        else:
            ensure_role(db, user, RoleName.PROFESSIONAL)
        db.add(
            ProfessionalProfile(
                user_id=user.id,
                document_type=document_type,
                document_number=document_number,
                validation_status=ValidationStatus.PENDING,
                validation_history=[],
            )
        )
        db.flush()

    existing_link = (
        db.query(ClinicProfessional.id)
        .filter(
            ClinicProfessional.clinic_id == clinic_id,
            ClinicProfessional.professional_user_id == user.id,
        )
        .first()
    )
    if existing_link is None:
        db.add(ClinicProfessional(clinic_id=clinic_id, professional_user_id=user.id))
    else:
        note = "Professional already in clinic"
    db.commit()
    return user, note


def split_records(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def _patient_row(db: Session, clinic_id: UUID, fields: list[str], topus: TopusClient) -> tuple[UUID, str]:
    if len(fields) < 2:
        raise RowError("Expected: DOC_TYPE DOC_NUMBER [FULL NAME]")
    profile, note = add_patient_to_clinic(
        db,
        clinic_id=clinic_id,
        document_type=fields[0],
        identification=fields[1],
        topus=topus,
    )
    return profile.user_id, note


def _professional_row(db: Session, clinic_id: UUID, fields: list[str]) -> tuple[UUID, str]:
    if len(fields) < 2:
        raise RowError("Expected: DOC_TYPE DOC_NUMBER EMAIL [FULL NAME]")
    email = fields[2] if len(fields) > 2 and "@" in fields[2] else None
    name_fields = fields[3:] if email else fields[2:]
    user, note = add_professional_to_clinic(
        db,
        clinic_id=clinic_id,
        document_type=fields[0],
        document_number=fields[1],
        email=email,
        full_name=" ".join(name_fields) or None,
    )
    return user.id, note


def _run_bulk(
    records: list[str],
    process: Callable[[Session, list[str]], tuple[UUID, str]],
    *,
    session_factory: Callable[[], Session],
    row_delay: float,
    sleep: Callable[[float], None],
) -> Iterator[dict[str, Any]]:
    for index, raw in enumerate(records, start=1):
        yield {"type": "row", "row": index, "status": "pending", "raw": raw}

    succeeded = 0
    for index, raw in enumerate(records, start=1):
        if index > 1 and row_delay > 0:
            sleep(row_delay)
        yield {"type": "row", "row": index, "status": "processing", "raw": raw}

        fields = _FIELD_SEPARATOR.split(raw.strip())
        try:
            with session_scope(session_factory) as db:
                user_id, note = process(db, fields)
        except RowError as exc:
            yield {"type": "row", "row": index, "status": "error", "raw": raw, "message": exc.message}
            continue
        except Exception:
            logger.warning(f"Bulk row {index} failed", exc_info=True)
            yield {"type": "row", "row": index, "status": "error", "raw": raw, "message": "Unexpected error"}
            continue

        succeeded += 1
        yield {
            "type": "row",
            "row": index,
            "status": "success",
            "raw": raw,
            "message": note,
            "user_id": str(user_id),
        }

    yield {
        "type": "summary",
        "total": len(records),
        "succeeded": succeeded,
        "failed": len(records) - succeeded,
    }


def bulk_upload_patients(
    text: str,
    *,
    clinic_id: UUID,
    topus: TopusClient,
    session_factory: Callable[[], Session],
    row_delay: float = 0.0,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[dict[str, Any]]:
    """
    Stream of row events (pending, processing, success or error) followed
    by one summary event.
    """
    return _run_bulk(
        split_records(text),
        lambda db, fields: _patient_row(db, clinic_id, fields, topus),
        session_factory=session_factory,
        row_delay=row_delay,
        sleep=sleep,
    )


def bulk_upload_professionals(
    text: str,
    *,
    clinic_id: UUID,
    session_factory: Callable[[], Session],
    row_delay: float = 0.0,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[dict[str, Any]]:
    return _run_bulk(
        split_records(text),
        lambda db, fields: _professional_row(db, clinic_id, fields),
        session_factory=session_factory,
        row_delay=row_delay,
        sleep=sleep,
    )
