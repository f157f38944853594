# app/api/v1/endpoints/professionals.py
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.api.v1.endpoints.auth import get_current_user
from app.core.database import get_db
from app.models.user import User
from app.schemas.professional import ProfessionalProfileResponse, ProfessionalValidationRequest
from app.services.professional_service import get_professional_profile, validate_professional
from app.services.registry_clients import RegistryLookupError, RethusClient, get_rethus_client

router = APIRouter()


@router.post("/me/validate", response_model=ProfessionalProfileResponse)
def validate_me(
    payload: ProfessionalValidationRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    rethus: RethusClient = Depends(get_rethus_client),
) -> ProfessionalProfileResponse:
    """
    Check the caller's credentials against RETHUS.

    A validated profile grants the PROFESSIONAL role.
    """
    try:
        profile = validate_professional(
            db,
            user=current_user,
            document_type=payload.document_type,
            document_number=payload.document_number,
            rethus=rethus,
        )
    except RegistryLookupError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return ProfessionalProfileResponse.model_validate(profile)


@router.get("/me", response_model=ProfessionalProfileResponse)
def read_me(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ProfessionalProfileResponse:
    profile = get_professional_profile(db, current_user.id)
    if profile is None:
        raise HTTPException(status_code=404, detail="Professional profile not found")
    return ProfessionalProfileResponse.model_validate(profile)
