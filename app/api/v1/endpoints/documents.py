# app/api/v1/endpoints/documents.py
from uuid import UUID

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    HTTPException,
    UploadFile,
    status,
)
from fastapi.responses import FileResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.dependencies.authz import require_patient
from app.models.user import User
from app.schemas.document import DocumentResponse, DocumentUploadResponse
from app.services.ai_gateway import AIGateway, AIGatewayError, get_ai_gateway
from app.services.document_service import (
    STATUS_PROCESSED,
    DocumentNotFoundError,
    ProfileRequiredError,
    get_document,
    list_documents,
    upload_document,
)
from app.utils.file_storage import resolve_storage_path

router = APIRouter()


@router.post(
    "/",
    response_model=DocumentUploadResponse,
)
async def upload_clinical_document(
    file: UploadFile = File(...),
    force: bool = Form(False),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_patient),
    gateway: AIGateway = Depends(get_ai_gateway),
) -> DocumentUploadResponse:
    """
    Upload one of the caller's clinical documents.

    - Stores the file and extracts its contents through the AI gateway.
    - Rejects documents that name another person.
    - `force` accepts a document whose owner could not be read.
    """
    try:
        file_bytes = await file.read()
        outcome = await upload_document(
            db,
            user_id=current_user.id,
            file_bytes=file_bytes,
            file_name=file.filename or "document",
            mime_type=file.content_type,
            gateway=gateway,
            force=force,
        )
    except ProfileRequiredError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except AIGatewayError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    except SQLAlchemyError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save document.",
        )

    return DocumentUploadResponse(
        status=outcome.status,
        message=outcome.message,
        document=(
            DocumentResponse.model_validate(outcome.document)
            if outcome.status == STATUS_PROCESSED
            else None
        ),
    )


@router.get(
    "/",
    response_model=list[DocumentResponse],
)
def list_my_documents(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_patient),
) -> list[DocumentResponse]:
    docs = list_documents(db, user_id=current_user.id)
    return [DocumentResponse.model_validate(d) for d in docs]


@router.get("/{document_id}/download")
def download_document(
    document_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_patient),
):
    """
    Download the original file of one of the caller's documents.
    """
    try:
        doc = get_document(db, document_id=document_id, user_id=current_user.id)
    except DocumentNotFoundError:
        raise HTTPException(status_code=404, detail="Document not found")

    path = resolve_storage_path(doc.storage_path)
    if not path.exists():
        raise HTTPException(status_code=404, detail="File not found on server")

    return FileResponse(
        path,
        media_type=doc.file_type or "application/octet-stream",
        filename=doc.file_name,
    )
