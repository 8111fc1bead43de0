"""
Stream pump: turns one orchestration run into an ordered, terminating event stream.

Guarantees for every stream that is consumed to the end:
    exactly one Meta, then zero or more Token in production order, then exactly one Done.
A failure inside the run becomes one Token carrying a user-facing error message
followed by Done(error=...), since nothing can be retracted once tokens are out.
After Done is consumed the user turn and the assistant turn are persisted, in
that order; the stored answer is the model text only, without the error token.
If the consumer stops early nothing is persisted.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator

from ragchat.core.errors import ValidationError
from ragchat.core.models import AgentEvent, Done, Meta, Session, Source, Token, Turn
from ragchat.core.session_store import SessionStore

logger = logging.getLogger(__name__)

STREAM_ERROR_MESSAGE = "Sorry, something went wrong while generating the answer. Please try again."
FAILED_TO_GENERATE = "Failed to generate answer"


@dataclass
class _RunOutcome:
    """What the run itself produced; the error token is not part of the answer."""

    parts: list[str] = field(default_factory=list)
    sources: tuple[Source, ...] = ()
    failure: Exception | None = None

    @property
    def answer(self) -> str:
        return "".join(self.parts)


class StreamPump:
    def __init__(
        self,
        store: SessionStore,
        error_message: str = STREAM_ERROR_MESSAGE,
        queue_size: int = 64,
    ) -> None:
        self._store = store
        self._error_message = error_message
        self._queue_size = queue_size

    async def _produce(
        self, events: AsyncIterator[Meta | Token], queue: "asyncio.Queue[AgentEvent]"
    ) -> _RunOutcome:
        """Relay inner events into the channel, enforcing Meta-first and a final Done."""
        outcome = _RunOutcome()
        meta_sent = False
        try:
            async with contextlib.aclosing(events):
                async for event in events:
                    if isinstance(event, Meta):
                        if meta_sent:
                            logger.warning("[stream:produce] dropping duplicate meta event")
                            continue
                        meta_sent = True
                        outcome.sources = event.sources
                    else:
                        if not meta_sent:
                            await queue.put(Meta(()))
                            meta_sent = True
                        outcome.parts.append(event.text)
                    await queue.put(event)
        except ValidationError as e:
            outcome.failure = e
        except Exception as e:
            logger.exception("[stream:produce] run failed")
            outcome.failure = e

        if not meta_sent:
            await queue.put(Meta(()))
        if isinstance(outcome.failure, ValidationError):
            await queue.put(Token(outcome.failure.message))
            await queue.put(Done(error=outcome.failure.message))
        elif outcome.failure is not None:
            await queue.put(Token(self._error_message))
            await queue.put(Done(error=FAILED_TO_GENERATE))
        else:
            await queue.put(Done())
        return outcome

    async def pump(
        self, session: Session | None, message: str, events: AsyncIterator[Meta | Token]
    ) -> AsyncIterator[AgentEvent]:
        """Yield the run's events through a bounded channel; persist the turn pair once drained."""
        queue: asyncio.Queue[AgentEvent] = asyncio.Queue(maxsize=self._queue_size)
        producer = asyncio.create_task(self._produce(events, queue))
        try:
            while True:
                event = await queue.get()
                yield event
                if isinstance(event, Done):
                    break
            outcome = await producer
        finally:
            if not producer.done():
                logger.info("[stream:pump] consumer stopped early; cancelling producer")
                producer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await producer

        if session is None or isinstance(outcome.failure, ValidationError):
            return
        await self._persist(session, message, outcome.answer, outcome.sources)

    async def _persist(self, session: Session, message: str, answer: str, sources: tuple[Source, ...]) -> None:
        """Append user then assistant turn. Failures are logged: the client already has its answer."""
        try:
            session = await self._store.append_turn(session, Turn(role="user", content=message))
            await self._store.append_turn(session, Turn(role="assistant", content=answer, sources=tuple(sources)))
        except Exception:
            logger.exception("Failed to persist session turns after stream (session_id=%s)", session.id[:16])
