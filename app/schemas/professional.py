# app/schemas/professional.py
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from app.models.professional_profile import ValidationStatus


class ProfessionalValidationRequest(BaseModel):
    document_type: str = Field(..., min_length=2, max_length=5)
    document_number: str = Field(..., min_length=3, max_length=50)


class ProfessionalProfileResponse(BaseModel):
    user_id: UUID
    document_type: str
    document_number: str
    validation_status: ValidationStatus
    rethus_data: dict[str, Any] | None = None
    validated_at: datetime | None = None
    validation_history: list[dict[str, Any]] = Field(default_factory=list)

    class Config:
        from_attributes = True
