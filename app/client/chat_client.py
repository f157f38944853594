# app/client/chat_client.py
"""
Async client for the assistant chat.

A send is optimistic: the user turn shows up in the transcript at once and
the assistant turn grows as deltas arrive. Any failure puts the transcript
back exactly as it was before the send.
"""

import logging
from typing import Any, Callable
from uuid import UUID

import httpx

from app.background.tasks import spawn_detached
from app.client.progress import ProgressTracker, Stage
from app.schemas.chat import ChatTurn
from app.utils.sse import SSEDeltaParser

logger = logging.getLogger(__name__)

TranscriptListener = Callable[[list[ChatTurn]], None]


class ChatClientError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class NotAuthenticatedError(ChatClientError):
    pass


class RateLimitedError(ChatClientError):
    pass


class PaymentRequiredError(ChatClientError):
    pass


class ChatRequestFailedError(ChatClientError):
    pass


def error_for_status(status_code: int) -> ChatClientError:
    if status_code == 401:
        return NotAuthenticatedError("You need to sign in to use the assistant.", status_code)
    if status_code == 429:
        return RateLimitedError("Too many requests. Please wait a moment and try again.", status_code)
    if status_code == 402:
        return PaymentRequiredError("AI credits are exhausted. Please try again later.", status_code)
    return ChatRequestFailedError("The assistant could not answer. Please try again.", status_code)


class ChatSession:
    """
    Owner session: authenticated, persisted server side, with follow-up
    suggestions refreshed after every reply.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        token: str | None = None,
        conversation_id: UUID | None = None,
        target_user_id: UUID | None = None,
        progress: ProgressTracker | None = None,
        on_update: TranscriptListener | None = None,
        refresh_suggestions_after_reply: bool = True,
    ) -> None:
        self._client = client
        self._token = token
        self.conversation_id = conversation_id
        self.target_user_id = target_user_id
        self.progress = progress or ProgressTracker()
        self._on_update = on_update
        self._refresh_after_reply = refresh_suggestions_after_reply
        self.transcript: list[ChatTurn] = []
        self.suggestions: list[str] = []

    def _headers(self) -> dict[str, str]:
        if self._token:
            return {"Authorization": f"Bearer {self._token}"}
        return {}

    def _payload(self, text: str) -> dict[str, Any]:
        payload: dict[str, Any] = {"message": text}
        if self.conversation_id is not None:
            payload["conversationId"] = str(self.conversation_id)
        if self.target_user_id is not None:
            payload["targetUserId"] = str(self.target_user_id)
        return payload

    def _notify(self) -> None:
        if self._on_update is not None:
            self._on_update(list(self.transcript))

    def _show_reply(self, text: str, first: bool) -> None:
        if first:
            self.transcript.append(ChatTurn(role="assistant", content=text))
        else:
            self.transcript[-1] = ChatTurn(role="assistant", content=text)
        self._notify()

    async def send(self, text: str) -> str:
        """
        Send one message and return the full assistant reply.

        Raises a ChatClientError subclass on failure, after rolling the
        transcript back and clearing the progress indicator.
        """
        text = text.strip()
        if not text:
            raise ValueError("Message must not be empty")

        before = list(self.transcript)
        self.transcript.append(ChatTurn(role="user", content=text))
        self._notify()
        self.progress.start()

        try:
            reply = await self._stream(text)
        except ChatClientError:
            self._rollback(before)
            raise
        except httpx.HTTPError as exc:
            self._rollback(before)
            raise ChatRequestFailedError("The assistant could not answer. Please try again.") from exc

        self.progress.finish()
        if self._refresh_after_reply:
            spawn_detached(self.refresh_suggestions(), name="chat-suggestions")
        return reply

    def _rollback(self, before: list[ChatTurn]) -> None:
        self.transcript = before
        self.progress.clear()
        self._notify()

    async def _stream(self, text: str) -> str:
        self.progress.advance(Stage.SEARCHING)
        async with self._client.stream(
            "POST", "/chat/stream", json=self._payload(text), headers=self._headers()
        ) as response:
            if response.status_code != 200:
                await response.aread()
                raise error_for_status(response.status_code)

            conversation_id = response.headers.get("X-Conversation-Id")
            if conversation_id:
                self.conversation_id = UUID(conversation_id)
            self.progress.advance(Stage.DRAFTING)

            parser = SSEDeltaParser()
            buffer = ""
            received = False
            async for chunk in response.aiter_bytes():
                received = received or bool(chunk)
                for fragment in parser.feed(chunk):
                    if not buffer:
                        self.progress.advance(Stage.VERIFYING)
                    self._show_reply(buffer + fragment, first=not buffer)
                    buffer += fragment
            for fragment in parser.close():
                self._show_reply(buffer + fragment, first=not buffer)
                buffer += fragment

        if not received:
            raise ChatRequestFailedError("The assistant returned an empty response.", response.status_code)
        return buffer

    async def refresh_suggestions(self) -> list[str]:
        response = await self._client.post(
            "/chat/suggestions",
            json={
                "conversationContext": [turn.model_dump() for turn in self.transcript],
                "targetUserId": str(self.target_user_id) if self.target_user_id else None,
            },
            headers=self._headers(),
        )
        if response.status_code != 200:
            raise error_for_status(response.status_code)
        self.suggestions = list(response.json().get("suggestions") or [])
        return self.suggestions


class GuestChatSession(ChatSession):
    """
    Guest session over a share token: the transcript lives only here and
    is sent in full with every message.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        guest_token: str,
        patient_user_id: UUID,
        progress: ProgressTracker | None = None,
        on_update: TranscriptListener | None = None,
    ) -> None:
        super().__init__(
            client,
            target_user_id=patient_user_id,
            progress=progress,
            on_update=on_update,
            refresh_suggestions_after_reply=False,
        )
        self.guest_token = guest_token

    def _payload(self, text: str) -> dict[str, Any]:
        return {
            "messages": [turn.model_dump() for turn in self.transcript],
            "isGuestAccess": True,
            "guestToken": self.guest_token,
            "targetUserId": str(self.target_user_id),
        }

    async def refresh_suggestions(self) -> list[str]:
        return []
