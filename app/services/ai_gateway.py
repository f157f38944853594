# app/services/ai_gateway.py
"""
Client for the OpenAI-compatible AI completion gateway.

Two call shapes are used:
- open_chat_stream(): streaming chat completion. The upstream status is
  checked before any byte is handed out, so callers can still answer with
  a proper error status instead of a broken event stream.
- complete(): one-shot completion returning the message text (titles,
  suggestions, document extraction).
"""

import json
import logging
from typing import Any, AsyncIterator

import httpx

from app.core.config import get_settings

logger = logging.getLogger(__name__)

ChatMessages = list[dict[str, Any]]


class AIGatewayError(Exception):
    """
    Upstream failure. status_code is what the API should answer with:
    429 and 402 are passed through, everything else maps to 502.
    """

    def __init__(self, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _error_for_status(status: int, body: bytes) -> AIGatewayError:
    detail = body[:300].decode("utf-8", errors="replace")
    if status == 429:
        return AIGatewayError("Rate limit exceeded. Please try again later.", 429)
    if status == 402:
        return AIGatewayError("AI credits exhausted. Payment required.", 402)
    logger.error(f"AI gateway error {status}: {detail}")
    return AIGatewayError("AI gateway error", 502)


async def _iter_response(client: httpx.AsyncClient, response: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    finally:
        await response.aclose()
        await client.aclose()


class AIGateway:
    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        chat_model: str,
        fast_model: str,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.chat_model = chat_model
        self.fast_model = fast_model
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        if not self.api_key:
            raise AIGatewayError("AI gateway is not configured", 500)
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

    async def open_chat_stream(
        self,
        messages: ChatMessages,
        model: str | None = None,
    ) -> AsyncIterator[bytes]:
        client = self._client()
        request = client.build_request(
            "POST",
            "/chat/completions",
            json={"model": model or self.chat_model, "messages": messages, "stream": True},
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            await client.aclose()
            logger.error(f"AI gateway unreachable: {exc}")
            raise AIGatewayError("AI gateway unreachable", 502) from exc

        if response.status_code != 200:
            body = await response.aread()
            await response.aclose()
            await client.aclose()
            raise _error_for_status(response.status_code, body)

        return _iter_response(client, response)

    async def complete(
        self,
        messages: ChatMessages,
        model: str | None = None,
        json_mode: bool = False,
    ) -> str:
        body: dict[str, Any] = {"model": model or self.fast_model, "messages": messages}
        if json_mode:
            body["response_format"] = {"type": "json_object"}

        async with self._client() as client:
            try:
                response = await client.post("/chat/completions", json=body)
            except httpx.HTTPError as exc:
                logger.error(f"AI gateway unreachable: {exc}")
                raise AIGatewayError("AI gateway unreachable", 502) from exc

        if response.status_code != 200:
            raise _error_for_status(response.status_code, response.content)

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise AIGatewayError("AI gateway returned an unexpected body", 502) from exc
        return content or ""


def extract_json_object(text: str) -> Any:
    """
    Parse the first {...} block in a model reply, which may be wrapped in
    prose or a markdown fence. Returns None when nothing parses.
    """
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        return json.loads(text[start : end + 1])
    except ValueError:
        return None


def get_ai_gateway() -> AIGateway:
    settings = get_settings()
    return AIGateway(
        base_url=settings.ai_gateway_url,
        api_key=settings.ai_gateway_api_key,
        chat_model=settings.ai_chat_model,
        fast_model=settings.ai_fast_model,
        timeout=settings.ai_timeout_seconds,
    )
