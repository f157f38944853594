# app/schemas/chat.py
from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from app.models.conversation import FeedbackRating, MessageRole
from app.schemas.common import CamelModel


class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatStreamRequest(CamelModel):
    message: str | None = Field(None, max_length=8000)
    messages: list[ChatTurn] | None = None
    conversation_id: UUID | None = None
    target_user_id: UUID | None = None
    is_guest_access: bool = False
    guest_token: str | None = None

    @model_validator(mode="after")
    def require_user_text(self) -> "ChatStreamRequest":
        if not self.user_text:
            raise ValueError("A non-empty message is required")
        if self.is_guest_access and not self.guest_token:
            raise ValueError("guestToken is required for guest access")
        return self

    @property
    def user_text(self) -> str:
        if self.message and self.message.strip():
            return self.message.strip()
        for turn in reversed(self.messages or []):
            if turn.role == "user" and turn.content.strip():
                return turn.content.strip()
        return ""

    @property
    def prior_turns(self) -> list[ChatTurn]:
        """Client-held transcript before the message being sent (guest sessions)."""
        turns = list(self.messages or [])
        if not self.message and turns and turns[-1].role == "user":
            turns = turns[:-1]
        return turns


class SuggestionsRequest(CamelModel):
    conversation_context: list[ChatTurn] = Field(default_factory=list)
    target_user_id: UUID | None = None


class SuggestionsResponse(BaseModel):
    suggestions: list[str]


class ConversationCreate(BaseModel):
    title: str | None = Field(None, max_length=255)
    patient_user_id: UUID | None = None


class ConversationRename(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)


class ConversationResponse(BaseModel):
    id: UUID
    user_id: UUID
    patient_user_id: UUID | None
    title: str | None
    title_generated: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ChatMessageResponse(BaseModel):
    id: UUID
    conversation_id: UUID | None
    role: MessageRole
    content: str
    created_at: datetime

    class Config:
        from_attributes = True


class FeedbackRequest(BaseModel):
    rating: Literal["up", "down"]
    comment: str | None = Field(None, max_length=2000)


class FeedbackResponse(BaseModel):
    id: UUID
    message_id: UUID
    rating: FeedbackRating
    comment: str | None
    created_at: datetime

    class Config:
        from_attributes = True
