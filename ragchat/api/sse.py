"""
Server-Sent Events encoding for chat streams.

Each event is one `data: {json}` frame with a `type` discriminator:
    meta  {"type": "meta", "sessionId": ..., "sources": [...]}
    token {"type": "token", "content": <base64 utf-8>, "encoding": "base64"}
    error {"type": "error", "error": ...}   (sent before done when the run failed)
    done  {"type": "done"}
Token text is base64-encoded so embedded newlines cannot break SSE framing.
"""

import base64
import json
import logging
from typing import Any, AsyncIterator

from ragchat.core.models import AgentEvent, Done, Meta, Token
from ragchat.services.chat_service import ChatStream

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _frame(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


def encode_token(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def decode_token(payload: dict[str, Any]) -> str:
    """Inverse of the token encoding, for clients and tests."""
    content = payload.get("content", "")
    if payload.get("encoding") == "base64":
        return base64.b64decode(content).decode("utf-8")
    return content


def encode_event(event: AgentEvent, session_id: str | None) -> list[str]:
    if isinstance(event, Meta):
        return [_frame({"type": "meta", "sessionId": session_id, "sources": [s.to_dict() for s in event.sources]})]
    if isinstance(event, Token):
        return [_frame({"type": "token", "content": encode_token(event.text), "encoding": "base64"})]
    if isinstance(event, Done):
        frames = []
        if event.error:
            frames.append(_frame({"type": "error", "error": event.error}))
        frames.append(_frame({"type": "done"}))
        return frames
    raise TypeError(f"Unknown event type: {type(event).__name__}")


async def sse_frames(stream: ChatStream) -> AsyncIterator[str]:
    """Encode every event of the stream. Iterating to the end lets the pump persist the turn pair."""
    async for event in stream.events:
        for frame in encode_event(event, stream.session_id):
            yield frame
    logger.info("[sse] stream finished session_id=%s", (stream.session_id or "")[:16])
