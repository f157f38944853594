# app/services/document_service.py
"""
Clinical document upload with identity verification.

The file is stored first, then the AI gateway extracts its contents,
including whose document it is. A document naming someone else is
rejected: the stored file is deleted and no row is written.
"""

import base64
import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.clinical_document import ClinicalDocument
from app.models.patient_profile import PatientProfile
from app.services.ai_gateway import AIGateway, extract_json_object
from app.utils.file_storage import delete_from_storage, save_bytes_to_storage

logger = logging.getLogger(__name__)

STATUS_PROCESSED = "processed"
STATUS_REJECTED = "rejected"
STATUS_UNVERIFIABLE = "unverifiable"

MAX_TEXT_PAYLOAD_BYTES = 200_000

EXTRACTION_PROMPT = """You extract data from medical documents.
Respond ONLY with a valid JSON object with this exact structure:
{
  "document_type": "string (e.g. lab result, prescription, imaging report, clinical note)",
  "document_date": "YYYY-MM-DD or null",
  "patient_name": "string or null",
  "patient_identification": "identity document number of the patient, digits only, or null",
  "extracted_text": "full plain text of the document",
  "structured_data": { "key findings, values, medications, diagnoses": "..." }
}
Use null for anything not visible. Do not add any other text."""


class DocumentNotFoundError(Exception):
    pass


class ProfileRequiredError(Exception):
    pass


@dataclass
class UploadOutcome:
    status: str
    document: ClinicalDocument | None = None
    message: str | None = None


@dataclass
class Extraction:
    document_type: str | None = None
    document_date: date | None = None
    patient_identification: str | None = None
    extracted_text: str | None = None
    structured_data: dict[str, Any] | None = None


def normalize_identification(value: str | None) -> str:
    return re.sub(r"[^0-9A-Za-z]", "", value or "").upper()


def _parse_date(value: Any) -> date | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def parse_extraction(raw: str) -> Extraction:
    payload = extract_json_object(raw)
    if not isinstance(payload, dict):
        logger.warning("Document extraction returned no JSON object")
        return Extraction(extracted_text=raw.strip() or None)

    structured = payload.get("structured_data")
    identification = payload.get("patient_identification")
    return Extraction(
        document_type=payload.get("document_type") or None,
        document_date=_parse_date(payload.get("document_date")),
        patient_identification=str(identification) if identification else None,
        extracted_text=payload.get("extracted_text") or None,
        structured_data=structured if isinstance(structured, dict) else None,
    )


def _extraction_messages(file_bytes: bytes, file_name: str, mime_type: str | None) -> list[dict[str, Any]]:
    if mime_type and mime_type.startswith("text/"):
        text = file_bytes[:MAX_TEXT_PAYLOAD_BYTES].decode("utf-8", errors="replace")
        content: Any = f"Document '{file_name}':\n\n{text}"
    else:
        encoded = base64.b64encode(file_bytes).decode("ascii")
        content = [
            {"type": "text", "text": f"Extract the data of the document '{file_name}':"},
            {
                "type": "image_url",
                "image_url": {"url": f"data:{mime_type or 'application/octet-stream'};base64,{encoded}"},
            },
        ]
    return [
        {"role": "system", "content": EXTRACTION_PROMPT},
        {"role": "user", "content": content},
    ]


async def upload_document(
    db: Session,
    *,
    user_id: UUID,
    file_bytes: bytes,
    file_name: str,
    mime_type: str | None,
    gateway: AIGateway,
    force: bool = False,
) -> UploadOutcome:
    """
    Store, extract, verify, persist.

    `force` accepts a document in which no identification could be read;
    a document naming a different person is always rejected.
    AIGatewayError propagates after the stored file is removed.
    """
    profile = db.get(PatientProfile, user_id)
    if profile is None:
        raise ProfileRequiredError("Complete your patient profile before uploading documents")

    storage_path = save_bytes_to_storage(
        data=file_bytes,
        original_filename=file_name,
        subdir=f"patients/{user_id}",
    )

    try:
        raw = await gateway.complete(
            _extraction_messages(file_bytes, file_name, mime_type),
            json_mode=True,
        )
    except Exception:
        delete_from_storage(storage_path)
        raise

    extraction = parse_extraction(raw)

    found = normalize_identification(extraction.patient_identification)
    expected = normalize_identification(profile.identification)
    if found and found != expected:
        delete_from_storage(storage_path)
        logger.warning(f"Rejected upload by {user_id}: document belongs to another identification")
        return UploadOutcome(
            status=STATUS_REJECTED,
            message="This document appears to belong to another person and was not saved.",
        )
    if not found and not force:
        delete_from_storage(storage_path)
        return UploadOutcome(
            status=STATUS_UNVERIFIABLE,
            message="The patient's identification could not be read. Confirm to upload anyway.",
        )

    document = ClinicalDocument(
        user_id=user_id,
        file_name=file_name,
        file_type=mime_type,
        storage_path=storage_path,
        document_type=extraction.document_type,
        document_date=extraction.document_date,
        extracted_text=extraction.extracted_text,
        structured_data=extraction.structured_data,
    )
    try:
        db.add(document)
        db.commit()
        db.refresh(document)
    except SQLAlchemyError:
        db.rollback()
        delete_from_storage(storage_path)
        raise

    logger.info(f"Document {document.id} stored for {user_id}")
    return UploadOutcome(status=STATUS_PROCESSED, document=document)


def list_documents(db: Session, *, user_id: UUID) -> list[ClinicalDocument]:
    return (
        db.query(ClinicalDocument)
        .filter(ClinicalDocument.user_id == user_id)
        .order_by(ClinicalDocument.created_at.desc())
        .all()
    )


def get_document(db: Session, *, document_id: UUID, user_id: UUID) -> ClinicalDocument:
    document = (
        db.query(ClinicalDocument)
        .filter(ClinicalDocument.id == document_id, ClinicalDocument.user_id == user_id)
        .first()
    )
    if document is None:
        raise DocumentNotFoundError("Document not found")
    return document
