"""
Chat orchestration: sessions, the retrieval-only answer path, and the agentic path,
each available as one-shot or streamed.

Responsibility: Load or create the session, take the recent-turn window of the
stored session (never the in-flight pair), produce the answer, then append the
user turn and the assistant turn in that order. No HTTP here.
"""

import logging
from dataclasses import dataclass
from typing import AsyncIterator

from ragchat.agent.graph import AgentLoop
from ragchat.agent.llm import ChatModel
from ragchat.core.errors import ValidationError
from ragchat.core.models import (
    AgentEvent,
    ChatResult,
    Meta,
    Session,
    Source,
    Token,
    Turn,
    get_recent_turns,
)
from ragchat.core.session_store import SessionStore
from ragchat.services.context import build_answer_messages, render_context
from ragchat.services.retrieval_service import FALLBACK_ANSWER, RetrievalGate
from ragchat.services.stream import StreamPump

logger = logging.getLogger(__name__)

MESSAGE_REQUIRED = "Message is required"


@dataclass
class ChatStream:
    """Events of one streamed answer. session_id is None only when the request was rejected."""

    session_id: str | None
    events: AsyncIterator[AgentEvent]


def validate_message(message: str | None) -> str:
    if not message or not str(message).strip():
        raise ValidationError(MESSAGE_REQUIRED)
    return str(message)


async def _rejected(error: ValidationError) -> AsyncIterator[Meta | Token]:
    raise error
    yield


class ChatService:
    def __init__(
        self,
        store: SessionStore,
        gate: RetrievalGate,
        model: ChatModel,
        agent: AgentLoop,
        pump: StreamPump | None = None,
        history_window: int = 6,
        temperature: float | None = 0.2,
    ) -> None:
        self._store = store
        self._gate = gate
        self._model = model
        self._agent = agent
        self._pump = pump or StreamPump(store)
        self._history_window = history_window
        self._temperature = temperature

    @property
    def store(self) -> SessionStore:
        return self._store

    async def _load_session(self, session_id: str | None) -> Session:
        session = await self._store.get(session_id) if session_id else None
        if session is None:
            session = await self._store.create()
            logger.info("[chat:session] created session_id=%s (requested=%r)", session.id[:16], session_id)
        return session

    async def _persist(self, session: Session, message: str, answer: str, sources: tuple[Source, ...]) -> Session:
        session = await self._store.append_turn(session, Turn(role="user", content=message))
        return await self._store.append_turn(
            session, Turn(role="assistant", content=answer, sources=tuple(sources))
        )

    # --- retrieval-only path ---

    async def _retrieval_answer(self, message: str, history: list[Turn]) -> tuple[str, tuple[Source, ...]]:
        outcome = await self._gate.retrieve(message, history)
        if not outcome.confident:
            logger.info("[chat:answer] low-confidence retrieval; returning fallback answer")
            return FALLBACK_ANSWER, ()
        messages = build_answer_messages(message, history, render_context(outcome.sources))
        reply = await self._model.complete(messages, temperature=self._temperature)
        return reply.content, outcome.sources

    async def _retrieval_events(self, message: str, history: list[Turn]) -> AsyncIterator[Meta | Token]:
        outcome = await self._gate.retrieve(message, history)
        if not outcome.confident:
            yield Meta(())
            yield Token(FALLBACK_ANSWER)
            return
        yield Meta(outcome.sources)
        messages = build_answer_messages(message, history, render_context(outcome.sources))
        async for fragment in self._model.stream(messages, temperature=self._temperature):
            yield Token(fragment)

    async def generate_answer(self, message: str | None, session_id: str | None = None) -> ChatResult:
        message = validate_message(message)
        session = await self._load_session(session_id)
        history = get_recent_turns(session, self._history_window)
        logger.info("[chat:answer] IN  message=%r session_id=%s history_len=%d", message[:200], session.id[:16], len(history))
        answer, sources = await self._retrieval_answer(message, history)
        session = await self._persist(session, message, answer, sources)
        logger.info("[chat:answer] OUT answer_len=%d sources=%d", len(answer), len(sources))
        return ChatResult(session_id=session.id, answer=answer, sources=tuple(sources))

    async def generate_answer_stream(self, message: str | None, session_id: str | None = None) -> ChatStream:
        try:
            message = validate_message(message)
        except ValidationError as e:
            return ChatStream(session_id=None, events=self._pump.pump(None, "", _rejected(e)))
        session = await self._load_session(session_id)
        history = get_recent_turns(session, self._history_window)
        events = self._pump.pump(session, message, self._retrieval_events(message, history))
        return ChatStream(session_id=session.id, events=events)

    # --- agentic path ---

    async def run_agent(self, message: str | None, session_id: str | None = None) -> ChatResult:
        message = validate_message(message)
        session = await self._load_session(session_id)
        history = get_recent_turns(session, self._history_window)
        result = await self._agent.run(message, history)
        session = await self._persist(session, message, result.answer, result.sources)
        return ChatResult(session_id=session.id, answer=result.answer, sources=result.sources)

    async def run_agent_stream(self, message: str | None, session_id: str | None = None) -> ChatStream:
        try:
            message = validate_message(message)
        except ValidationError as e:
            return ChatStream(session_id=None, events=self._pump.pump(None, "", _rejected(e)))
        session = await self._load_session(session_id)
        history = get_recent_turns(session, self._history_window)
        events = self._pump.pump(session, message, self._agent.stream(message, history))
        return ChatStream(session_id=session.id, events=events)
