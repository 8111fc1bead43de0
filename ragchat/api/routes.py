"""
API routes: chat (retrieval-only) and agent (tool-calling), one-shot and SSE, plus
session listing. Handlers only delegate to ChatService and map errors to HTTP.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from ragchat.api.deps import get_chat_service
from ragchat.api.sse import SSE_HEADERS, sse_frames
from ragchat.core.errors import ServiceUnavailableError, UpstreamError, ValidationError
from ragchat.schemas.chat import ChatRequest, ChatResponse, SessionHistory, SessionSummary, TurnOut
from ragchat.services.chat_service import ChatService, ChatStream

logger = logging.getLogger(__name__)
router = APIRouter()


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=e.message)
    if isinstance(e, ServiceUnavailableError):
        return HTTPException(status_code=503, detail=e.message)
    if isinstance(e, UpstreamError):
        return HTTPException(status_code=502, detail=e.message)
    return HTTPException(status_code=500, detail="Failed to generate answer")


def _sse_response(stream: ChatStream) -> StreamingResponse:
    return StreamingResponse(sse_frames(stream), media_type="text/event-stream", headers=SSE_HEADERS)


# --- System ---

@router.get("/", tags=["system"])
def root():
    return {"status": "ragchat backend running"}


@router.get("/health", tags=["system"])
def health():
    return {"ok": True}


# --- Chat (retrieval-only) ---

@router.post(
    "/chat",
    response_model=ChatResponse,
    tags=["chat"],
    summary="Answer from the knowledge base (sync)",
    description="Retrieval-grounded answer. Weak retrieval returns a fixed low-confidence message. 400 on empty message, 502/503 on upstream failure.",
)
async def post_chat(body: ChatRequest, service: ChatService = Depends(get_chat_service)) -> ChatResponse:
    logger.info("[api:post_chat] IN  message=%r session_id=%s", body.message[:200], body.session_id)
    try:
        result = await service.generate_answer(body.message, body.session_id)
    except (ValidationError, UpstreamError) as e:
        raise _http_error(e) from e
    return ChatResponse.from_result(result)


@router.post(
    "/chat/stream",
    tags=["chat"],
    summary="Answer from the knowledge base (SSE stream)",
    description="Events: meta, token (base64), error, done.",
)
async def post_chat_stream(body: ChatRequest, service: ChatService = Depends(get_chat_service)) -> StreamingResponse:
    logger.info("[api:post_chat_stream] IN  message=%r session_id=%s", body.message[:200], body.session_id)
    return _sse_response(await service.generate_answer_stream(body.message, body.session_id))


# --- Agent (tool-calling) ---

@router.post(
    "/agent/chat",
    response_model=ChatResponse,
    tags=["agent"],
    summary="Answer with tools (sync)",
    description="Plan → tool calls (rag_query, web_search) → final answer with aggregated sources.",
)
async def post_agent_chat(body: ChatRequest, service: ChatService = Depends(get_chat_service)) -> ChatResponse:
    logger.info("[api:post_agent_chat] IN  message=%r session_id=%s", body.message[:200], body.session_id)
    try:
        result = await service.run_agent(body.message, body.session_id)
    except (ValidationError, UpstreamError) as e:
        raise _http_error(e) from e
    return ChatResponse.from_result(result)


@router.post(
    "/agent/chat/stream",
    tags=["agent"],
    summary="Answer with tools (SSE stream)",
    description="meta is sent once tools have run; the final answer follows as token events.",
)
async def post_agent_chat_stream(body: ChatRequest, service: ChatService = Depends(get_chat_service)) -> StreamingResponse:
    logger.info("[api:post_agent_chat_stream] IN  message=%r session_id=%s", body.message[:200], body.session_id)
    return _sse_response(await service.run_agent_stream(body.message, body.session_id))


# --- Sessions ---

@router.get("/chat/sessions", response_model=list[SessionSummary], tags=["sessions"], summary="List chat sessions")
async def list_sessions(service: ChatService = Depends(get_chat_service)) -> list[SessionSummary]:
    sessions = await service.store.list_sessions()
    return [SessionSummary.from_session(s) for s in sessions]


@router.get("/chat/session/{session_id}", response_model=SessionHistory, tags=["sessions"], summary="Session history")
async def get_session_history(session_id: str, service: ChatService = Depends(get_chat_service)) -> SessionHistory:
    session = await service.store.get(session_id)
    if session is None:
        return SessionHistory(session_id=session_id, turns=[])
    return SessionHistory(session_id=session.id, turns=[TurnOut.from_turn(t) for t in session.turns])
