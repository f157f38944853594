# app/schemas/summary.py
import enum
from datetime import datetime
from typing import Any
from uuid import UUID

from app.schemas.common import CamelModel


class SummaryKind(str, enum.Enum):
    CLINICAL_MAP = "clinical-map"
    LAB_TRENDS = "lab-trends"
    MEDICATIONS = "medications"
    BODY_ANALYSIS = "body-analysis"
    DIAGNOSTIC_AIDS = "diagnostic-aids"


class SummaryRequest(CamelModel):
    target_user_id: UUID | None = None
    guest_token: str | None = None


class SummaryResponse(CamelModel):
    kind: SummaryKind
    patient_user_id: UUID
    generated_at: datetime
    data: dict[str, Any]
