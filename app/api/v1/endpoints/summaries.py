# app/api/v1/endpoints/summaries.py
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.v1.endpoints.auth import get_optional_user
from app.core.database import get_db
from app.models.user import User
from app.schemas.summary import SummaryKind, SummaryRequest, SummaryResponse
from app.services import chat_service, summary_service
from app.services.access_grant_service import AccessGrantError
from app.services.ai_gateway import AIGateway, AIGatewayError, get_ai_gateway
from app.services.chat_service import ChatAccessError
from app.services.summary_service import SummaryError
from app.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/{kind}", response_model=SummaryResponse)
async def generate_summary(
    kind: SummaryKind,
    payload: SummaryRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User | None = Depends(get_optional_user),
    gateway: AIGateway = Depends(get_ai_gateway),
):
    """
    Generate one structured summary of a patient's record.

    The owner and professionals with access to the patient call it with a
    bearer token; guests pass their share token, which must allow the
    notebook.
    """
    try:
        subject = summary_service.resolve_summary_subject(
            db,
            kind=kind,
            caller=current_user,
            target_user_id=payload.target_user_id,
            guest_token=payload.guest_token,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    except AccessGrantError as exc:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "code": exc.code})
    except ChatAccessError as exc:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    context = chat_service.load_context(db, subject=subject)
    try:
        data = await summary_service.generate_summary(gateway, kind=kind, context=context)
    except (AIGatewayError, SummaryError) as exc:
        logger.warning(f"Summary '{kind.value}' failed for {subject.patient_user_id}: {exc.status_code}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    return SummaryResponse(
        kind=kind,
        patient_user_id=subject.patient_user_id,
        generated_at=utc_now(),
        data=data,
    )
