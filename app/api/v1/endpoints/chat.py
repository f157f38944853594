# app/api/v1/endpoints/chat.py
import logging
from typing import Callable
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from app.api.v1.endpoints.auth import get_current_user, get_optional_user
from app.core.database import get_db, get_session_factory
from app.models.conversation import MessageRole
from app.models.user import User
from app.schemas.chat import (
    ChatMessageResponse,
    ChatStreamRequest,
    ConversationCreate,
    ConversationRename,
    ConversationResponse,
    FeedbackRequest,
    FeedbackResponse,
    SuggestionsRequest,
    SuggestionsResponse,
)
from app.services import chat_service
from app.services.access_grant_service import AccessGrantError
from app.services.ai_gateway import AIGateway, AIGatewayError, get_ai_gateway
from app.services.chat_service import ChatAccessError
from app.services.chat_stream_service import make_reply_store, open_relay

logger = logging.getLogger(__name__)

router = APIRouter()

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.post("/stream")
async def stream_chat(
    payload: ChatStreamRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User | None = Depends(get_optional_user),
    gateway: AIGateway = Depends(get_ai_gateway),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    """
    Stream an assistant reply as server-sent events.

    Owner and professional sessions are persisted: the user turn before
    the gateway is called, the assistant turn once the stream completes.
    A refused stream undoes the user turn, and the conversation too when
    this send created it.
    Guest sessions are authorized by their share token and keep no
    server-side transcript.
    """
    ip = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")

    try:
        subject = chat_service.resolve_chat_subject(
            db,
            caller=current_user,
            target_user_id=payload.target_user_id,
            guest_token=payload.guest_token if payload.is_guest_access else None,
            ip_address=ip,
            user_agent=user_agent,
        )
    except AccessGrantError as exc:
        return _error(exc.status_code, exc.message)
    except ChatAccessError as exc:
        return _error(exc.status_code, exc.message)

    user_text = payload.user_text

    if subject.is_guest:
        context = chat_service.load_context(db, subject=subject, client_history=payload.prior_turns)
        messages = chat_service.build_chat_messages(context, user_text=user_text, professional_view=False)
        try:
            body = await open_relay(gateway, messages)
        except AIGatewayError as exc:
            return _error(exc.status_code, exc.message)
        return StreamingResponse(body, media_type="text/event-stream", headers=STREAM_HEADERS)

    caller = subject.caller
    started_here = payload.conversation_id is None
    try:
        conversation = chat_service.get_or_create_conversation(
            db,
            user_id=caller.id,
            patient_user_id=subject.patient_user_id,
            conversation_id=payload.conversation_id,
        )
    except ChatAccessError as exc:
        return _error(exc.status_code, exc.message)
    conversation_id = conversation.id

    context = chat_service.load_context(db, subject=subject, conversation_id=conversation_id)
    messages = chat_service.build_chat_messages(
        context, user_text=user_text, professional_view=subject.professional_view
    )

    user_message = chat_service.persist_message(
        db,
        conversation_id=conversation_id,
        user_id=caller.id,
        role=MessageRole.USER,
        content=user_text,
    )
    first_exchange = chat_service.is_first_exchange(db, conversation_id)

    on_complete = make_reply_store(
        session_factory=session_factory,
        gateway=gateway,
        conversation_id=conversation_id,
        user_id=caller.id,
        first_message=user_text if first_exchange else None,
    )
    try:
        body = await open_relay(gateway, messages, on_complete=on_complete)
    except AIGatewayError as exc:
        logger.warning(f"Chat stream refused for conversation {conversation_id}: {exc.status_code}")
        chat_service.discard_refused_turn(
            db,
            message_id=user_message.id,
            conversation_id=conversation_id,
            drop_conversation=started_here,
        )
        if started_here:
            return _error(exc.status_code, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message, "conversationId": str(conversation_id)},
        )

    headers = dict(STREAM_HEADERS)
    headers["X-Conversation-Id"] = str(conversation_id)
    return StreamingResponse(body, media_type="text/event-stream", headers=headers)


@router.post("/suggestions", response_model=SuggestionsResponse)
async def suggest_questions(
    payload: SuggestionsRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    gateway: AIGateway = Depends(get_ai_gateway),
):
    """
    Three follow-up questions for the current transcript.
    """
    try:
        subject = chat_service.resolve_chat_subject(
            db, caller=current_user, target_user_id=payload.target_user_id
        )
    except ChatAccessError as exc:
        return _error(exc.status_code, exc.message)

    context = chat_service.load_context(db, subject=subject)
    try:
        suggestions = await chat_service.generate_suggestions(
            gateway,
            context=context,
            conversation=payload.conversation_context,
            professional_view=subject.professional_view,
        )
    except AIGatewayError as exc:
        return _error(exc.status_code, exc.message)
    return SuggestionsResponse(suggestions=suggestions)


@router.get("/conversations", response_model=list[ConversationResponse])
def list_my_conversations(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[ConversationResponse]:
    rows = chat_service.list_conversations(db, current_user.id)
    return [ConversationResponse.model_validate(c) for c in rows]


@router.post(
    "/conversations",
    response_model=ConversationResponse,
    status_code=status.HTTP_201_CREATED,
)
def start_conversation(
    payload: ConversationCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ConversationResponse:
    patient_user_id = payload.patient_user_id or current_user.id
    try:
        chat_service.resolve_chat_subject(db, caller=current_user, target_user_id=patient_user_id)
    except ChatAccessError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)

    conversation = chat_service.create_conversation(
        db,
        user_id=current_user.id,
        patient_user_id=patient_user_id,
        title=payload.title,
    )
    return ConversationResponse.model_validate(conversation)


@router.patch("/conversations/{conversation_id}", response_model=ConversationResponse)
def rename_conversation(
    conversation_id: UUID,
    payload: ConversationRename,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ConversationResponse:
    try:
        conversation = chat_service.rename_conversation(
            db,
            conversation_id=conversation_id,
            user_id=current_user.id,
            title=payload.title,
        )
    except ChatAccessError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    return ConversationResponse.model_validate(conversation)


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=list[ChatMessageResponse],
)
def conversation_messages(
    conversation_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[ChatMessageResponse]:
    try:
        rows = chat_service.list_messages(db, conversation_id=conversation_id, user_id=current_user.id)
    except ChatAccessError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    return [ChatMessageResponse.model_validate(m) for m in rows]


@router.post(
    "/messages/{message_id}/feedback",
    response_model=FeedbackResponse,
    status_code=status.HTTP_201_CREATED,
)
def rate_message(
    message_id: UUID,
    payload: FeedbackRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> FeedbackResponse:
    try:
        feedback = chat_service.record_feedback(
            db,
            message_id=message_id,
            user_id=current_user.id,
            rating=payload.rating,
            comment=payload.comment,
        )
    except ChatAccessError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    return FeedbackResponse.model_validate(feedback)
