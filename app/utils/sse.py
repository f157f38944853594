# app/utils/sse.py
"""
Incremental parser for OpenAI-style server-sent event streams.

Each event line looks like

    data: {"choices":[{"delta":{"content":"<fragment>"}}]}

and the stream ends with `data: [DONE]` (or simply closes). Network chunks
do not respect line boundaries, so bytes are buffered until a full line is
available. The same parser reassembles the assistant reply on the server
and renders it on the client, which keeps both views byte-identical.
"""

import codecs
import json
import logging
from typing import Any, Iterator

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
DATA_PREFIX = "data:"


def format_delta_event(content: str) -> bytes:
    """Encode a single content fragment as one SSE event."""
    payload = {"choices": [{"delta": {"content": content}, "finish_reason": None}]}
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def format_done_event() -> bytes:
    return f"data: {DONE_SENTINEL}\n\n".encode("utf-8")


def extract_delta(payload: Any) -> str | None:
    """Pull choices[0].delta.content out of a decoded event, if present."""
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) else None


class SSEDeltaParser:
    """
    Feed raw bytes, get content fragments back in order.

    After `[DONE]` has been seen, `done` is True and further input is ignored.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, chunk: bytes) -> list[str]:
        if self.done:
            return []
        self._buffer += self._decoder.decode(chunk)
        return list(self._drain())

    def close(self) -> list[str]:
        """Flush whatever is left once the underlying stream has ended."""
        if self.done:
            return []
        self._buffer += self._decoder.decode(b"", final=True)
        if self._buffer and not self._buffer.endswith("\n"):
            self._buffer += "\n"
        fragments = list(self._drain(final=True))
        self._buffer = ""
        return fragments

    def _drain(self, final: bool = False) -> Iterator[str]:
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            line = line.rstrip("\r")

            if not line.strip() or line.startswith(":"):
                continue
            if not line.startswith(DATA_PREFIX):
                continue

            data = line[len(DATA_PREFIX):].strip()
            if data == DONE_SENTINEL:
                self.done = True
                self._buffer = ""
                return

            try:
                payload = json.loads(data)
            except ValueError:
                if "\n" in self._buffer or final:
                    # A later line already arrived, so this one will never complete.
                    logger.warning(f"Skipping malformed SSE line: {data[:200]!r}")
                    continue
                self._buffer = line + "\n" + self._buffer
                return

            fragment = extract_delta(payload)
            if fragment:
                yield fragment
