"""Schemas for the chat and agent endpoints. Field names on the wire are camelCase."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ragchat.core.models import ChatResult, Session, Source, Turn


class ChatRequest(BaseModel):
    """Request body for POST /chat, /chat/stream, /agent/chat, /agent/chat/stream."""

    model_config = ConfigDict(populate_by_name=True)

    # Emptiness is checked by the service so every path reports it the same way.
    message: str = Field("", description="User message.")
    session_id: str | None = Field(
        None, alias="sessionId", description="Existing session id; a new session is created when missing or unknown."
    )


class SourceOut(BaseModel):
    id: str
    score: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_source(cls, source: Source) -> "SourceOut":
        return cls(id=source.id, score=source.score, metadata=dict(source.metadata or {}))


class ChatResponse(BaseModel):
    """Response for POST /chat and /agent/chat."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    answer: str = Field(..., description="Final answer (may be the fixed low-confidence message).")
    sources: list[SourceOut] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: ChatResult) -> "ChatResponse":
        return cls(
            session_id=result.session_id,
            answer=result.answer,
            sources=[SourceOut.from_source(s) for s in result.sources],
        )


class TurnOut(BaseModel):
    role: str
    content: str
    sources: list[SourceOut] = Field(default_factory=list)

    @classmethod
    def from_turn(cls, turn: Turn) -> "TurnOut":
        return cls(role=turn.role, content=turn.content, sources=[SourceOut.from_source(s) for s in turn.sources])


class SessionSummary(BaseModel):
    id: str
    title: str

    @classmethod
    def from_session(cls, session: Session) -> "SessionSummary":
        first = session.turns[0].content if session.turns else ""
        return cls(id=session.id, title=first[:40] or "New Chat")


class SessionHistory(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    turns: list[TurnOut] = Field(default_factory=list)


class ToolCallBody(BaseModel):
    """Request body for POST /mcp/tools/{name}."""

    arguments: dict[str, Any] = Field(default_factory=dict)
