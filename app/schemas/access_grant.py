# app/schemas/access_grant.py
from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field

from app.schemas.common import CamelModel

ALLOWED_DURATIONS_MINUTES: tuple[int, ...] = (5, 15, 30, 60, 180)

GrantAction = Literal["view", "download_document", "chat_message", "view_notebook"]


class GrantPermissions(BaseModel):
    allow_view: bool = True
    allow_download: bool = False
    allow_chat: bool = False
    allow_notebook: bool = False


class AccessGrantCreate(BaseModel):
    duration_minutes: Literal[5, 15, 30, 60, 180] = Field(
        ..., description="Validity window; one of 5, 15, 30, 60 or 180 minutes"
    )
    allow_download: bool = False
    allow_chat: bool = False
    allow_notebook: bool = False


class AccessGrantResponse(BaseModel):
    id: UUID
    token: str
    share_url: str
    permissions: GrantPermissions
    duration_minutes: int
    access_count: int
    created_at: datetime
    expires_at: datetime
    last_accessed_at: datetime | None = None
    revoked_at: datetime | None = None
    time_remaining: int = Field(0, description="Seconds until expiry; 0 once unusable")


class AccessGrantList(BaseModel):
    active: list[AccessGrantResponse]
    expired: list[AccessGrantResponse]
    revoked: list[AccessGrantResponse]
    total: int


class GuestValidateRequest(CamelModel):
    token: str = Field(..., min_length=1, max_length=128)
    action: GrantAction = "view"
    action_details: dict[str, Any] | None = None


class GuestPatient(CamelModel):
    user_id: UUID
    full_name: str | None
    document_type: str
    identification: str
    age: int | None = None
    eps: str | None = None
    phone: str | None = None


class GuestDocument(CamelModel):
    id: UUID
    file_name: str
    file_type: str | None = None
    document_type: str | None = None
    document_date: str | None = None
    created_at: datetime
    download_url: str | None = None


class GuestValidateResponse(CamelModel):
    valid: bool = True
    patient: GuestPatient | None
    documents: list[GuestDocument]
    permissions: GrantPermissions
    expires_at: datetime
    time_remaining: int
    access_count: int
    patient_user_id: UUID


class GuestValidateError(CamelModel):
    valid: bool = False
    error: str
    code: str


class GuestAccessLogResponse(BaseModel):
    id: UUID
    action_type: str
    action_details: dict[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime

    class Config:
        from_attributes = True
