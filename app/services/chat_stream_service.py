# app/services/chat_stream_service.py
"""
Relay a streamed completion to the caller while reassembling it for storage.

The gateway's event stream is teed: one branch goes byte-for-byte to the
HTTP response, the other is parsed with the same SSE parser the client
uses and stored as a single assistant row when it ends. The storing
branch keeps running if the client goes away mid-stream.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable
from uuid import UUID

from sqlalchemy.orm import Session

from app.background.tasks import spawn_detached
from app.services.ai_gateway import AIGateway, ChatMessages
from app.services.chat_service import derive_title, persist_assistant_reply, store_title
from app.utils.sse import SSEDeltaParser
from app.utils.stream_tee import tee_stream

logger = logging.getLogger(__name__)

ReplyHandler = Callable[[str], Awaitable[Any]]


async def accumulate_reply(stream: AsyncIterator[bytes]) -> str:
    parser = SSEDeltaParser()
    parts: list[str] = []
    async for chunk in stream:
        parts.extend(parser.feed(chunk))
    parts.extend(parser.close())
    return "".join(parts)


async def _store_when_complete(branch: AsyncIterator[bytes], on_complete: ReplyHandler) -> Any:
    text = await accumulate_reply(branch)
    return await on_complete(text)


async def _passthrough(source: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    async for chunk in source:
        yield chunk


async def _client_body(branch: AsyncIterator[bytes], store_task: asyncio.Task) -> AsyncIterator[bytes]:
    async for chunk in branch:
        yield chunk
    # The response only ends once the reply is stored, so a client that
    # reloads right after [DONE] sees it. A disconnect never reaches here.
    await asyncio.shield(store_task)


async def open_relay(
    gateway: AIGateway,
    messages: ChatMessages,
    *,
    on_complete: ReplyHandler | None = None,
) -> AsyncIterator[bytes]:
    """
    Open the upstream stream and return the body to send to the client.

    Raises AIGatewayError before any byte is produced when the gateway
    refuses the request. With on_complete, the reassembled reply text is
    handed to it once the stream ends.
    """
    source = await gateway.open_chat_stream(messages)
    if on_complete is None:
        return _passthrough(source)

    _tee, (client_branch, store_branch) = tee_stream(source, branches=2)
    store_task = spawn_detached(
        _store_when_complete(store_branch, on_complete),
        name="store-assistant-reply",
    )
    return _client_body(client_branch, store_task)


async def _title_job(
    gateway: AIGateway,
    session_factory: Callable[[], Session],
    conversation_id: UUID,
    first_message: str,
) -> None:
    title = await derive_title(gateway, first_message)
    stored = await asyncio.to_thread(
        store_title, session_factory, conversation_id=conversation_id, title=title
    )
    if stored:
        logger.info(f"Conversation {conversation_id} titled '{title}'")


def make_reply_store(
    *,
    session_factory: Callable[[], Session],
    gateway: AIGateway,
    conversation_id: UUID,
    user_id: UUID,
    first_message: str | None,
) -> ReplyHandler:
    """
    Handler persisting the assistant turn, then kicking off title
    generation when first_message is given (first exchange only).
    """

    async def store(text: str) -> UUID | None:
        if not text:
            logger.warning(f"Empty assistant reply for conversation {conversation_id}; nothing stored")
            return None

        message_id = await asyncio.to_thread(
            persist_assistant_reply,
            session_factory,
            conversation_id=conversation_id,
            user_id=user_id,
            content=text,
        )
        logger.info(f"Stored assistant reply {message_id} ({len(text)} chars)")

        if first_message:
            spawn_detached(
                _title_job(gateway, session_factory, conversation_id, first_message),
                name=f"title-{conversation_id}",
            )
        return message_id

    return store
