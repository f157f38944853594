# app/schemas/document.py
from datetime import date, datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel


class DocumentResponse(BaseModel):
    id: UUID
    user_id: UUID
    file_name: str
    file_type: str | None = None
    document_type: str | None = None
    document_date: date | None = None
    extracted_text: str | None = None
    structured_data: dict[str, Any] | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class DocumentUploadResponse(BaseModel):
    status: Literal["processed", "rejected", "unverifiable"]
    message: str | None = None
    document: DocumentResponse | None = None
