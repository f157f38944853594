# app/services/chat_service.py
"""
Assistant chat: who may chat about whom, the context handed to the model,
and everything persisted around an exchange (turns, titles, feedback).

The streaming relay itself lives in chat_stream_service.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.database import session_scope
from app.models.access_grant import AccessGrant
from app.models.clinical_document import ClinicalDocument
from app.models.conversation import (
    ChatMessage,
    Conversation,
    FeedbackRating,
    MessageFeedback,
    MessageRole,
)
from app.models.patient_profile import PatientProfile
from app.models.professional_profile import ProfessionalProfile
from app.models.user import RoleName, User
from app.schemas.chat import ChatTurn
from app.services.access_grant_service import patient_display_name, validate_grant
from app.services.ai_gateway import AIGateway, AIGatewayError, extract_json_object
from app.services.patient_resolver_service import professional_can_access_patient
from app.utils.datetime_utils import utc_now
from app.utils.json_tree import render_text

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Medical consultation"
TITLE_MAX_WORDS = 5
SUGGESTION_COUNT = 3
CLINICAL_REGISTRY_CHAR_BUDGET = 1000

DEFAULT_SUGGESTIONS = [
    "What documents do I have uploaded?",
    "What does my most recent lab result show?",
    "Which medications appear in my records?",
]

PATIENT_SYSTEM_PROMPT = """You are a virtual clinical assistant for the patient. Your only purpose is to help the user understand the information contained in THEIR clinical documents.

STRICT RULES:
1. Explain medical terms in plain, clear language.
2. Summarize documents and find specific dates or results.
3. Connect information across different files.
4. ALWAYS cite the exact source of each piece of information:
   - Open with "According to the document '[FILE_NAME]'..."
   - Use numbered references for specific values, e.g. "the result was X[1]".
   - End with "Sources: 1. document_name.pdf".
5. FORBIDDEN: giving medical advice, offering diagnoses, recommending treatments or medication changes.
6. Interpret only what is explicitly written.
7. If the information is not in the documents, say so clearly.
8. Be empathetic, clear and precise. Use markdown for readability.

Your role is educational and informative. You are NOT a health professional."""

PROFESSIONAL_SYSTEM_PROMPT = """You are a professional clinical assistant supporting validated health professionals in analysing a patient's records.

CAPABILITIES:
1. Interpret laboratory results, diagnostic imaging and specialised studies using precise medical terminology.
2. Help build differential diagnoses from documented findings.
3. Correlate information across documents to surface relevant clinical patterns.
4. Provide evidence-based context to support decisions without replacing clinical judgement.

OPERATING RULES:
1. ALWAYS cite sources precisely, e.g. "Per the lab report of [DATE] in [DOCUMENT]...".
2. Flag abnormal values and their clinical relevance.
3. Point out inconsistencies or important missing data.
4. Stay objective: suggest, do not prescribe; inform, do not diagnose definitively.

Answer in markdown with clear sections and a references list at the end."""

SUGGESTIONS_PATIENT_PROMPT = f"""You generate EXPLORATORY questions that help a patient understand their existing medical information.
- Generate EXACTLY {SUGGESTION_COUNT} SHORT questions (at most 10 words each).
- Never ask for diagnoses, recommendations or medical advice.
- Focus on clarifying medical terms, dates, results and document contents.
- If there is conversation context, write follow-up questions on the same topic.
Respond ONLY with JSON: {{"suggestions": ["...", "...", "..."]}}"""

SUGGESTIONS_PROFESSIONAL_PROMPT = f"""You generate TECHNICAL follow-up questions for a health professional reviewing a patient's records.
- Generate EXACTLY {SUGGESTION_COUNT} questions (at most 15 words each) using appropriate medical terminology.
- Focus on clinical analysis, correlations, trends and relevant findings.
Respond ONLY with JSON: {{"suggestions": ["...", "...", "..."]}}"""

TITLE_PROMPT = (
    f"You write short titles (at most {TITLE_MAX_WORDS} words) for medical conversations. "
    "Reply ONLY with the title, without quotes or trailing punctuation."
)


class ChatAccessError(Exception):
    def __init__(self, message: str, status_code: int = 403) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class ChatSubject:
    """Resolved identity of one chat request."""

    patient_user_id: UUID
    caller: User | None = None
    grant: AccessGrant | None = None
    professional_view: bool = False

    @property
    def is_guest(self) -> bool:
        return self.grant is not None


@dataclass
class ChatContext:
    profile: PatientProfile | None
    documents: list[ClinicalDocument] = field(default_factory=list)
    history: list[ChatTurn] = field(default_factory=list)
    professional_info: dict[str, Any] | None = None


def resolve_chat_subject(
    db: Session,
    *,
    caller: User | None,
    target_user_id: UUID | None,
    guest_token: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> ChatSubject:
    """
    Work out whose record a chat request is about, and whether the caller
    may see it.

    Guest requests are authorized by their grant's allow_chat flag (grant
    errors propagate as AccessGrantError). Authenticated requests about
    another user need the PROFESSIONAL role and a clinic relationship or
    current selection.
    """
    if guest_token:
        validation = validate_grant(
            db,
            token=guest_token,
            action="chat_message",
            action_details={"targetUserId": str(target_user_id) if target_user_id else None},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        grant = validation.grant
        if target_user_id is not None and target_user_id != grant.patient_user_id:
            raise ChatAccessError("Not allowed", 403)
        return ChatSubject(patient_user_id=grant.patient_user_id, grant=grant)

    if caller is None:
        raise ChatAccessError("Not authenticated", 401)

    if target_user_id is None or target_user_id == caller.id:
        return ChatSubject(patient_user_id=caller.id, caller=caller)

    if not caller.has_role(RoleName.PROFESSIONAL):
        raise ChatAccessError("Not allowed", 403)
    if not professional_can_access_patient(
        db, professional_user_id=caller.id, patient_user_id=target_user_id
    ):
        raise ChatAccessError("Not allowed", 403)

    return ChatSubject(patient_user_id=target_user_id, caller=caller, professional_view=True)


def get_owned_conversation(db: Session, *, conversation_id: UUID, user_id: UUID) -> Conversation:
    conversation = (
        db.query(Conversation)
        .filter(Conversation.id == conversation_id, Conversation.user_id == user_id)
        .first()
    )
    if conversation is None:
        raise ChatAccessError("Conversation not found", 404)
    return conversation


def create_conversation(
    db: Session,
    *,
    user_id: UUID,
    patient_user_id: UUID | None,
    title: str | None = None,
) -> Conversation:
    conversation = Conversation(
        user_id=user_id,
        patient_user_id=patient_user_id,
        title=title,
        title_generated=bool(title),
    )
    db.add(conversation)
    db.commit()
    db.refresh(conversation)
    return conversation


def get_or_create_conversation(
    db: Session,
    *,
    user_id: UUID,
    patient_user_id: UUID,
    conversation_id: UUID | None,
) -> Conversation:
    if conversation_id is not None:
        return get_owned_conversation(db, conversation_id=conversation_id, user_id=user_id)
    return create_conversation(db, user_id=user_id, patient_user_id=patient_user_id)


def list_conversations(db: Session, user_id: UUID) -> list[Conversation]:
    return (
        db.query(Conversation)
        .filter(Conversation.user_id == user_id)
        .order_by(Conversation.updated_at.desc())
        .all()
    )


def rename_conversation(
    db: Session, *, conversation_id: UUID, user_id: UUID, title: str
) -> Conversation:
    conversation = get_owned_conversation(db, conversation_id=conversation_id, user_id=user_id)
    conversation.title = title.strip()
    conversation.title_generated = True
    db.commit()
    db.refresh(conversation)
    return conversation


def list_messages(db: Session, *, conversation_id: UUID, user_id: UUID) -> list[ChatMessage]:
    conversation = get_owned_conversation(db, conversation_id=conversation_id, user_id=user_id)
    return (
        db.query(ChatMessage)
        .filter(ChatMessage.conversation_id == conversation.id)
        .order_by(ChatMessage.created_at.asc())
        .all()
    )


def load_history(db: Session, conversation_id: UUID, limit: int) -> list[ChatTurn]:
    rows = (
        db.query(ChatMessage)
        .filter(ChatMessage.conversation_id == conversation_id)
        .order_by(ChatMessage.created_at.desc())
        .limit(limit)
        .all()
    )
    return [ChatTurn(role=row.role.value, content=row.content) for row in reversed(rows)]


def load_context(
    db: Session,
    *,
    subject: ChatSubject,
    conversation_id: UUID | None = None,
    client_history: list[ChatTurn] | None = None,
) -> ChatContext:
    """
    Bounded context: profile, latest documents, latest turns.

    Owner sessions read history from the conversation; guest sessions
    bring their own transcript.
    """
    settings = get_settings()

    profile = db.get(PatientProfile, subject.patient_user_id)
    documents = (
        db.query(ClinicalDocument)
        .filter(ClinicalDocument.user_id == subject.patient_user_id)
        .order_by(ClinicalDocument.created_at.desc())
        .limit(settings.chat_document_limit)
        .all()
    )

    if conversation_id is not None:
        history = load_history(db, conversation_id, settings.chat_history_limit)
    else:
        history = list(client_history or [])[-settings.chat_history_limit :]

    professional_info = None
    if subject.professional_view and subject.caller is not None:
        professional = db.get(ProfessionalProfile, subject.caller.id)
        if professional is not None and professional.rethus_data:
            professional_info = professional.rethus_data

    return ChatContext(
        profile=profile,
        documents=documents,
        history=history,
        professional_info=professional_info,
    )


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def render_context_block(context: ChatContext) -> str:
    settings = get_settings()
    lines = ["PATIENT INFORMATION:"]

    profile = context.profile
    if profile is not None:
        lines.append(f"- Name: {patient_display_name(profile) or 'Not available'}")
        lines.append(f"- Document: {profile.document_type} {profile.identification}")
        lines.append(f"- Age: {profile.age if profile.age is not None else 'Not available'}")
        lines.append(f"- Health insurer: {profile.eps or 'Not available'}")
        hismart = (profile.registry_data or {}).get("hismart")
        if hismart:
            lines.append("")
            lines.append("CLINICAL HISTORY REGISTRY:")
            lines.append(render_text(hismart, max_chars=CLINICAL_REGISTRY_CHAR_BUDGET))
    else:
        lines.append("- No profile on record")

    lines.append("")
    if context.documents:
        lines.append(f"CLINICAL DOCUMENTS ({len(context.documents)} available):")
        for idx, doc in enumerate(context.documents, start=1):
            lines.append(f"{idx}. {doc.file_name}")
            lines.append(f"   Type: {doc.document_type or 'unspecified'}")
            lines.append(f"   Date: {doc.document_date or doc.created_at.date()}")
            if doc.extracted_text:
                lines.append(
                    f"   Content: {_truncate(doc.extracted_text, settings.chat_document_char_budget)}"
                )
            if doc.structured_data:
                lines.append(
                    "   Data: "
                    + _truncate(
                        json.dumps(doc.structured_data, ensure_ascii=False, default=str),
                        settings.chat_structured_char_budget,
                    )
                )
    else:
        lines.append("No clinical documents uploaded yet.")

    return "\n".join(lines)


def _professional_header(info: dict[str, Any] | None) -> str | None:
    if not info:
        return None
    academic = info.get("datos_academicos") or []
    first = academic[0] if academic and isinstance(academic[0], dict) else {}
    profession = first.get("profesion_u_ocupacion") or "health professional"
    programme = first.get("tipo_programa") or ""
    return f"PROFESSIONAL CONTEXT:\n- Profession: {profession}\n- Programme: {programme}"


def build_chat_messages(
    context: ChatContext,
    *,
    user_text: str,
    professional_view: bool,
) -> list[dict[str, str]]:
    system_prompt = PROFESSIONAL_SYSTEM_PROMPT if professional_view else PATIENT_SYSTEM_PROMPT
    messages = [{"role": "system", "content": system_prompt}]

    header = _professional_header(context.professional_info) if professional_view else None
    if header:
        messages.append({"role": "system", "content": header})
    messages.append({"role": "system", "content": render_context_block(context)})

    messages.extend({"role": turn.role, "content": turn.content} for turn in context.history)
    messages.append({"role": "user", "content": user_text})
    return messages


def persist_message(
    db: Session,
    *,
    conversation_id: UUID | None,
    user_id: UUID,
    role: MessageRole,
    content: str,
) -> ChatMessage:
    message = ChatMessage(
        conversation_id=conversation_id,
        user_id=user_id,
        role=role,
        content=content,
    )
    db.add(message)
    if conversation_id is not None:
        conversation = db.get(Conversation, conversation_id)
        if conversation is not None:
            conversation.updated_at = utc_now()
    db.commit()
    db.refresh(message)
    return message


def persist_assistant_reply(
    session_factory: Callable[[], Session],
    *,
    conversation_id: UUID | None,
    user_id: UUID,
    content: str,
) -> UUID:
    """Store a fully reassembled assistant turn in its own transaction."""
    with session_scope(session_factory) as db:
        message = ChatMessage(
            conversation_id=conversation_id,
            user_id=user_id,
            role=MessageRole.ASSISTANT,
            content=content,
        )
        db.add(message)
        db.flush()
        return message.id


def is_first_exchange(db: Session, conversation_id: UUID) -> bool:
    """True until the conversation holds an assistant reply or a title."""
    conversation = db.get(Conversation, conversation_id)
    if conversation is None or conversation.title_generated:
        return False
    answered = (
        db.query(ChatMessage.id)
        .filter(
            ChatMessage.conversation_id == conversation_id,
            ChatMessage.role == MessageRole.ASSISTANT,
        )
        .first()
    )
    return answered is None


def discard_refused_turn(
    db: Session,
    *,
    message_id: UUID,
    conversation_id: UUID,
    drop_conversation: bool,
) -> None:
    """
    Undo a user turn the gateway refused to answer. With drop_conversation,
    the conversation goes too when nothing else was stored in it.
    """
    message = db.get(ChatMessage, message_id)
    if message is not None:
        db.delete(message)
        db.flush()

    if drop_conversation:
        remaining = (
            db.query(ChatMessage.id)
            .filter(ChatMessage.conversation_id == conversation_id)
            .first()
        )
        conversation = db.get(Conversation, conversation_id)
        if conversation is not None and remaining is None:
            db.delete(conversation)
    db.commit()


def sanitize_title(raw: str | None) -> str:
    if not raw:
        return DEFAULT_TITLE
    text = raw.strip().splitlines()[0] if raw.strip() else ""
    text = text.strip().strip("\"'`*#").strip()
    text = re.sub(r"[.:;!]+$", "", text).strip()
    words = text.split()
    if not words:
        return DEFAULT_TITLE
    return " ".join(words[:TITLE_MAX_WORDS])


async def derive_title(gateway: AIGateway, first_message: str) -> str:
    try:
        raw = await gateway.complete(
            [
                {"role": "system", "content": TITLE_PROMPT},
                {"role": "user", "content": f'Write a short title for this medical question: "{first_message}"'},
            ]
        )
    except AIGatewayError as exc:
        logger.warning(f"Title generation failed, using placeholder: {exc.message}")
        return DEFAULT_TITLE
    return sanitize_title(raw)


def store_title(
    session_factory: Callable[[], Session],
    *,
    conversation_id: UUID,
    title: str,
) -> bool:
    """
    Save a generated title unless one was already set. Returns whether it
    was written.
    """
    with session_scope(session_factory) as db:
        conversation = db.get(Conversation, conversation_id)
        if conversation is None or conversation.title_generated:
            return False
        conversation.title = title
        conversation.title_generated = True
        return True


_QUESTION_PREFIX = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


def parse_suggestions(text: str | None) -> list[str]:
    """
    Exactly SUGGESTION_COUNT suggestions from a model reply: the JSON
    "suggestions" list if present, else lines ending in '?', topped up with
    defaults.
    """
    candidates: list[str] = []
    if text:
        payload = extract_json_object(text)
        if isinstance(payload, dict) and isinstance(payload.get("suggestions"), list):
            candidates = [s.strip() for s in payload["suggestions"] if isinstance(s, str) and s.strip()]
        if not candidates:
            for line in text.splitlines():
                cleaned = _QUESTION_PREFIX.sub("", line).strip().strip('"')
                if cleaned.endswith("?"):
                    candidates.append(cleaned)

    seen: list[str] = []
    for suggestion in candidates + DEFAULT_SUGGESTIONS:
        if suggestion not in seen:
            seen.append(suggestion)
        if len(seen) == SUGGESTION_COUNT:
            break
    return seen


async def generate_suggestions(
    gateway: AIGateway,
    *,
    context: ChatContext,
    conversation: list[ChatTurn],
    professional_view: bool,
) -> list[str]:
    """
    Three follow-up questions. A 429/402 from the gateway propagates; any
    other failure falls back to the defaults.
    """
    prompt = SUGGESTIONS_PROFESSIONAL_PROMPT if professional_view else SUGGESTIONS_PATIENT_PROMPT
    recent = conversation[-4:]
    summary = "\n".join(
        f"{'User' if t.role == 'user' else 'Assistant'}: {_truncate(t.content, 200)}" for t in recent
    )
    user_content = render_context_block(context)
    if summary:
        user_content += f"\n\nCURRENT CONVERSATION:\n{summary}"

    try:
        raw = await gateway.complete(
            [
                {"role": "system", "content": prompt},
                {"role": "user", "content": user_content},
            ],
            json_mode=True,
        )
    except AIGatewayError as exc:
        if exc.status_code in (429, 402):
            raise
        logger.warning(f"Suggestion generation failed, using defaults: {exc.message}")
        return list(DEFAULT_SUGGESTIONS)
    return parse_suggestions(raw)


def record_feedback(
    db: Session,
    *,
    message_id: UUID,
    user_id: UUID,
    rating: str,
    comment: str | None = None,
) -> MessageFeedback:
    message = (
        db.query(ChatMessage)
        .join(Conversation, Conversation.id == ChatMessage.conversation_id)
        .filter(ChatMessage.id == message_id, Conversation.user_id == user_id)
        .first()
    )
    if message is None:
        raise ChatAccessError("Message not found", 404)
    if message.role != MessageRole.ASSISTANT:
        raise ChatAccessError("Feedback is only accepted on assistant messages", 400)

    feedback = MessageFeedback(
        message_id=message.id,
        user_id=user_id,
        rating=FeedbackRating(rating),
        comment=comment,
    )
    db.add(feedback)
    db.commit()
    db.refresh(feedback)
    return feedback
