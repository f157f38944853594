# app/schemas/clinic.py
from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field

DOCUMENT_TYPES: tuple[str, ...] = (
    "CC", "TI", "CE", "PA", "RC", "NU", "CD", "CN", "SC", "PE", "PT",
)


class ClinicCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=255)
    admin_user_id: UUID | None = Field(
        None, description="Existing user to make CLINIC_ADMIN and member of the clinic"
    )


class ClinicResponse(BaseModel):
    id: UUID
    name: str
    created_at: datetime

    class Config:
        from_attributes = True


class ClinicPatientResponse(BaseModel):
    patient_user_id: UUID
    document_type: str | None = None
    identification: str | None = None
    full_name: str | None = None
    eps: str | None = None
    assigned_professional_user_id: UUID | None = None
    created_at: datetime


class ClinicProfessionalResponse(BaseModel):
    professional_user_id: UUID
    email: str
    full_name: str | None = None
    document_type: str | None = None
    document_number: str | None = None
    validation_status: str | None = None
    created_at: datetime


class ClinicPatientCreate(BaseModel):
    document_type: Literal[
        "CC", "TI", "CE", "PA", "RC", "NU", "CD", "CN", "SC", "PE", "PT"
    ]
    identification: str = Field(..., min_length=3, max_length=50)
    assigned_professional_user_id: UUID | None = None


class BulkUploadRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=200_000)


class BulkRowEvent(BaseModel):
    """One NDJSON line of a bulk upload stream."""

    type: Literal["row"] = "row"
    row: int
    status: Literal["pending", "processing", "success", "error"]
    raw: str
    message: str | None = None
    user_id: UUID | None = None


class BulkSummaryEvent(BaseModel):
    type: Literal["summary"] = "summary"
    total: int
    succeeded: int
    failed: int


class ClinicAccessLogResponse(BaseModel):
    id: UUID
    professional_user_id: UUID
    professional_name: str | None = None
    patient_user_id: UUID
    patient_name: str | None = None
    access_type: str
    access_details: dict[str, Any] | None = None
    created_at: datetime


class ProfessionalBulkRow(BaseModel):
    document_type: str
    document_number: str
    email: EmailStr
    full_name: str | None = None
