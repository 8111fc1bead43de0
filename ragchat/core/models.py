"""
Domain types shared by the session store, retrieval, tools, and the agent loop.

Values are immutable once created: a turn is never edited after it is appended,
and sources are never mutated after retrieval or tool execution.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Union

Role = Literal["user", "assistant"]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Source:
    """A retrieved passage or tool-surfaced reference."""

    id: str
    score: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id}
        if self.score is not None:
            out["score"] = self.score
        if self.metadata:
            out["metadata"] = dict(self.metadata)
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Source":
        score = data.get("score")
        return cls(
            id=str(data.get("id", "")),
            score=float(score) if score is not None else None,
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class Turn:
    role: Role
    content: str
    sources: tuple[Source, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.sources:
            out["sources"] = [s.to_dict() for s in self.sources]
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Turn":
        return cls(
            role=data.get("role", "user"),
            content=data.get("content") or "",
            sources=tuple(Source.from_dict(s) for s in data.get("sources") or []),
        )


@dataclass(frozen=True)
class Session:
    """Ordered turns of one conversation. Only ever grows by appending turns."""

    id: str
    turns: tuple[Turn, ...] = ()
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "turns": [t.to_dict() for t in self.turns],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


def get_recent_turns(session: Session, n: int) -> list[Turn]:
    """Return the last n turns of the session in chronological order (all turns if fewer)."""
    turns = list(session.turns)
    if n <= 0:
        return []
    if len(turns) <= n:
        return turns
    return turns[-n:]


# --- Tools / model protocol ---

@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    parameters: dict[str, Any]

    def as_openai_tool(self) -> dict[str, Any]:
        """OpenAI function-calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(frozen=True)
class ToolCallRequest:
    """A tool call requested by the model. raw_arguments is untrusted text."""

    id: str
    tool_name: str
    raw_arguments: str = "{}"


@dataclass(frozen=True)
class ModelReply:
    content: str = ""
    tool_calls: tuple[ToolCallRequest, ...] = ()

    def as_message(self) -> dict[str, Any]:
        """Assistant message to fold back into the follow-up call."""
        msg: dict[str, Any] = {"role": "assistant", "content": self.content or ""}
        if self.tool_calls:
            msg["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.tool_name, "arguments": tc.raw_arguments},
                }
                for tc in self.tool_calls
            ]
        return msg


# --- Results and stream events ---

@dataclass(frozen=True)
class RetrievalOutcome:
    sources: tuple[Source, ...]
    confident: bool


@dataclass(frozen=True)
class ChatResult:
    session_id: str
    answer: str
    sources: tuple[Source, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "answer": self.answer,
            "sources": [s.to_dict() for s in self.sources],
        }


@dataclass(frozen=True)
class Meta:
    sources: tuple[Source, ...] = ()


@dataclass(frozen=True)
class Token:
    text: str


@dataclass(frozen=True)
class Done:
    """Terminal event. error is a human-readable message when the run failed."""

    error: str | None = None


AgentEvent = Union[Meta, Token, Done]


def dumps_sources(sources: tuple[Source, ...] | list[Source]) -> str:
    return json.dumps([s.to_dict() for s in sources], default=str)


def loads_sources(raw: str | None) -> tuple[Source, ...]:
    if not raw:
        return ()
    return tuple(Source.from_dict(s) for s in json.loads(raw))
