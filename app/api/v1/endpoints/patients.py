# app/api/v1/endpoints/patients.py
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.dependencies.authz import require_patient, require_professional
from app.models.patient_profile import PatientProfile
from app.models.user import User
from app.schemas.patient import (
    ClinicalRegistryRequest,
    ClinicSummary,
    PatientAccessLogResponse,
    PatientProfileResponse,
    PatientProfileUpdate,
    PatientSearchRequest,
    PatientSearchResponse,
    PatientSelectRequest,
    PatientSummary,
    ProfessionalContextResponse,
    RegistryTreeResponse,
)
from app.services import patient_profile_service, patient_resolver_service
from app.services.access_grant_service import patient_display_name
from app.services.patient_profile_service import ProfileNotFoundError
from app.services.patient_resolver_service import LEVEL_NOT_FOUND, PatientResolverError
from app.services.registry_clients import (
    HismartClient,
    RegistryLookupError,
    TopusClient,
    get_hismart_client,
    get_topus_client,
)

router = APIRouter()


def _summary(profile: PatientProfile | None) -> PatientSummary | None:
    if profile is None:
        return None
    return PatientSummary(
        user_id=profile.user_id,
        full_name=patient_display_name(profile),
        document_type=profile.document_type,
        identification=profile.identification,
        age=profile.age,
        eps=profile.eps,
        phone=profile.phone,
    )


@router.post("/search", response_model=PatientSearchResponse)
def search_patient(
    payload: PatientSearchRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_professional),
    topus: TopusClient = Depends(get_topus_client),
):
    """
    Cascade search: own clinics, then the platform, then the Topus
    registry. The first level with a hit answers.
    """
    try:
        outcome = patient_resolver_service.search_patient(
            db,
            professional_user_id=current_user.id,
            identification=payload.identification,
            document_type=payload.document_type,
            topus=topus,
        )
    except PatientResolverError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)

    body = PatientSearchResponse(
        found=outcome.found,
        level=outcome.level,
        patient=_summary(outcome.profile),
        clinica=ClinicSummary(id=outcome.clinic.id, name=outcome.clinic.name) if outcome.clinic else None,
        is_new=outcome.is_new,
        require_document_type=outcome.require_document_type,
        requires_audit=outcome.requires_audit,
        message=outcome.message,
    )
    if outcome.level == LEVEL_NOT_FOUND:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content=body.model_dump(mode="json", by_alias=True),
        )
    return body


@router.post("/select", response_model=ProfessionalContextResponse)
def select_patient(
    payload: PatientSelectRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_professional),
) -> ProfessionalContextResponse:
    try:
        context, _log = patient_resolver_service.select_patient(
            db,
            professional_user_id=current_user.id,
            patient_user_id=payload.patient_user_id,
            clinic_id=payload.clinic_id,
            level=payload.level,
        )
    except PatientResolverError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)

    return ProfessionalContextResponse(
        current_patient_user_id=context.current_patient_user_id,
        current_clinic_id=context.current_clinic_id,
        patient=_summary(db.get(PatientProfile, context.current_patient_user_id)),
        updated_at=context.updated_at,
    )


@router.get("/context", response_model=ProfessionalContextResponse)
def current_context(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_professional),
) -> ProfessionalContextResponse:
    """
    The professional's currently selected patient, if any.
    """
    context, profile = patient_resolver_service.get_professional_context(db, current_user.id)
    if context is None:
        return ProfessionalContextResponse()
    return ProfessionalContextResponse(
        current_patient_user_id=context.current_patient_user_id,
        current_clinic_id=context.current_clinic_id,
        patient=_summary(profile),
        updated_at=context.updated_at,
    )


@router.get("/me", response_model=PatientProfileResponse)
def read_my_profile(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_patient),
) -> PatientProfileResponse:
    try:
        profile = patient_profile_service.get_profile(db, current_user.id)
    except ProfileNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return PatientProfileResponse.model_validate(profile)


@router.patch("/me", response_model=PatientProfileResponse)
def update_my_profile(
    payload: PatientProfileUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_patient),
) -> PatientProfileResponse:
    try:
        profile = patient_profile_service.update_profile(db, current_user.id, phone=payload.phone)
    except ProfileNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return PatientProfileResponse.model_validate(profile)


@router.post("/me/clinical-registry", response_model=PatientProfileResponse)
def load_clinical_registry(
    payload: ClinicalRegistryRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_patient),
    hismart: HismartClient = Depends(get_hismart_client),
) -> PatientProfileResponse:
    """
    Pull the caller's clinical history from HiSmart into their profile.
    """
    try:
        profile = patient_profile_service.enrich_with_clinical_registry(
            db,
            current_user.id,
            hismart=hismart,
            force_refresh=payload.force_refresh,
        )
    except ProfileNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except RegistryLookupError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return PatientProfileResponse.model_validate(profile)


@router.get("/me/registry-tree", response_model=RegistryTreeResponse)
def read_registry_tree(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_patient),
) -> RegistryTreeResponse:
    try:
        profile = patient_profile_service.get_profile(db, current_user.id)
    except ProfileNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return RegistryTreeResponse(tree=patient_profile_service.registry_tree(profile))


@router.get("/me/access-logs", response_model=list[PatientAccessLogResponse])
def read_my_access_logs(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_patient),
) -> list[PatientAccessLogResponse]:
    """
    Out-of-clinic accesses to the caller's record by professionals.
    """
    rows = patient_resolver_service.list_patient_access_logs(db, current_user.id)
    return [
        PatientAccessLogResponse(
            id=log.id,
            professional_user_id=log.professional_user_id,
            professional_name=professional.full_name or professional.email,
            clinic_id=log.clinic_id,
            clinic_name=clinic.name if clinic else None,
            access_type=log.access_type.value,
            access_details=log.access_details,
            created_at=log.created_at,
        )
        for log, professional, clinic in rows
    ]
