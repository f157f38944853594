# app/schemas/patient.py
from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from app.schemas.common import CamelModel


class PatientSearchRequest(CamelModel):
    identification: str = Field(..., max_length=50)
    document_type: str | None = Field(None, max_length=5)

    @field_validator("identification")
    @classmethod
    def strip_identification(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("identification must not be empty")
        return v

    @field_validator("document_type")
    @classmethod
    def normalize_document_type(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip().upper()
        return v or None


class PatientSummary(CamelModel):
    user_id: UUID
    full_name: str | None
    document_type: str
    identification: str
    age: int | None = None
    eps: str | None = None
    phone: str | None = None


class ClinicSummary(CamelModel):
    id: UUID
    name: str


class PatientSearchResponse(CamelModel):
    found: bool
    level: int
    patient: PatientSummary | None = None
    clinica: ClinicSummary | None = None
    is_new: bool = False
    require_document_type: bool = False
    requires_audit: bool = False
    message: str | None = None


class PatientSelectRequest(CamelModel):
    patient_user_id: UUID
    clinic_id: UUID | None = None
    level: int = Field(1, ge=1, le=3)


class ProfessionalContextResponse(CamelModel):
    current_patient_user_id: UUID | None = None
    current_clinic_id: UUID | None = None
    patient: PatientSummary | None = None
    updated_at: datetime | None = None


class PatientProfileResponse(BaseModel):
    user_id: UUID
    document_type: str
    identification: str
    full_name: str | None
    age: int | None
    eps: str | None
    phone: str | None
    registry_data: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PatientProfileUpdate(BaseModel):
    phone: str | None = Field(None, max_length=50)


class ClinicalRegistryRequest(BaseModel):
    force_refresh: bool = False


class RegistryTreeResponse(BaseModel):
    tree: dict[str, Any] | None


class PatientAccessLogResponse(BaseModel):
    id: UUID
    professional_user_id: UUID
    professional_name: str | None = None
    clinic_id: UUID | None
    clinic_name: str | None = None
    access_type: Literal["clinic_local", "global_or_external"]
    access_details: dict[str, Any] | None
    created_at: datetime
