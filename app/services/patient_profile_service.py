# app/services/patient_profile_service.py
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.models.patient_profile import PatientProfile
from app.services.registry_clients import HismartClient
from app.utils.json_tree import build_tree


class ProfileNotFoundError(Exception):
    pass


def get_profile(db: Session, user_id: UUID) -> PatientProfile:
    profile = db.get(PatientProfile, user_id)
    if profile is None:
        raise ProfileNotFoundError("Patient profile not found")
    return profile


def update_profile(db: Session, user_id: UUID, *, phone: str | None) -> PatientProfile:
    profile = get_profile(db, user_id)
    profile.phone = phone.strip() if phone else None
    db.commit()
    db.refresh(profile)
    return profile


def enrich_with_clinical_registry(
    db: Session,
    user_id: UUID,
    *,
    hismart: HismartClient,
    force_refresh: bool = False,
) -> PatientProfile:
    """
    Attach the HiSmart clinical history under registry_data["hismart"].

    Raises RegistryLookupError when HiSmart cannot answer.
    """
    profile = get_profile(db, user_id)
    current: dict[str, Any] = dict(profile.registry_data or {})
    if current.get("hismart") and not force_refresh:
        return profile

    current["hismart"] = hismart.fetch_clinical_data(profile.document_type, profile.identification)
    # JSON columns only notice reassignment
    profile.registry_data = current
    db.commit()
    db.refresh(profile)
    return profile


def registry_tree(profile: PatientProfile) -> dict[str, Any] | None:
    if not profile.registry_data:
        return None
    return build_tree(profile.registry_data).to_dict()
