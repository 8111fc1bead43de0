"""
ChatService end to end over fakes: the retrieval path, the agentic path, and
the streamed variants with their ordering and persistence guarantees.
"""

import logging

import pytest

from conftest import make_source, tool_call
from ragchat.core.errors import ValidationError
from ragchat.core.models import Done, Meta, ModelReply, Token, Turn
from ragchat.core.session_store import InMemorySessionStore
from ragchat.services.chat_service import MESSAGE_REQUIRED
from ragchat.services.retrieval_service import FALLBACK_ANSWER
from ragchat.services.stream import FAILED_TO_GENERATE, STREAM_ERROR_MESSAGE


async def collect(stream) -> list:
    return [event async for event in stream.events]


def check_stream_shape(events: list) -> None:
    assert isinstance(events[0], Meta)
    assert isinstance(events[-1], Done)
    assert all(isinstance(e, Token) for e in events[1:-1])


class TestGenerateAnswer:
    @pytest.mark.asyncio
    async def test_confident_retrieval_answers_from_context(self, chat_service, index, model, store) -> None:
        index.sources = [make_source(1, 0.42, source_path="policy.pdf", text="Refunds are accepted within 30 days.")]
        model.replies = [ModelReply(content="Refunds are accepted within 30 days (Source 1).")]

        result = await chat_service.generate_answer("What is the refund policy?")

        assert result.session_id
        assert "Source 1" in result.answer
        assert [s.id for s in result.sources] == ["chunk-1"]
        call = model.complete_calls[0]
        assert call["tools"] is None
        assert call["temperature"] == 0.2
        prompt = call["messages"][-1]["content"]
        assert "Source 1: policy.pdf (pages 1-2)" in prompt
        assert "Refunds are accepted within 30 days." in prompt

        session = await store.get(result.session_id)
        assert [t.role for t in session.turns] == ["user", "assistant"]
        assert session.turns[0].content == "What is the refund policy?"
        assert session.turns[1].sources == result.sources

    @pytest.mark.asyncio
    async def test_low_confidence_returns_fallback_without_model_call(self, chat_service, index, model, store) -> None:
        index.sources = []
        result = await chat_service.generate_answer("asdkj qwe zzz")
        assert result.answer == FALLBACK_ANSWER
        assert result.sources == ()
        assert model.complete_calls == []
        session = await store.get(result.session_id)
        assert [t.content for t in session.turns] == ["asdkj qwe zzz", FALLBACK_ANSWER]

    @pytest.mark.asyncio
    async def test_unknown_session_id_starts_new_session(self, chat_service, index) -> None:
        result = await chat_service.generate_answer("hello", session_id="no-such-session")
        assert result.session_id != "no-such-session"

    @pytest.mark.asyncio
    async def test_existing_session_is_continued(self, chat_service, index, model, store) -> None:
        first = await chat_service.generate_answer("first")
        second = await chat_service.generate_answer("second", session_id=first.session_id)
        assert second.session_id == first.session_id
        session = await store.get(first.session_id)
        assert [t.content for t in session.turns if t.role == "user"] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_history_window_excludes_in_flight_pair(self, chat_service, index, model, store) -> None:
        session = await store.create()
        for i in range(8):
            session = await store.append_turn(session, Turn(role="user" if i % 2 == 0 else "assistant", content=f"t{i}"))
        index.sources = [make_source(1, 0.9)]
        model.replies = [ModelReply(content="ok")]

        await chat_service.generate_answer("new question", session_id=session.id)

        messages = model.complete_calls[0]["messages"]
        assert [m["content"] for m in messages[1:-1]] == ["t2", "t3", "t4", "t5", "t6", "t7"]
        assert "new question" not in "".join(m["content"] for m in messages[:-1])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message", ["", "   ", None])
    async def test_empty_message_rejected_before_remote_calls(self, chat_service, embedder, store, message) -> None:
        with pytest.raises(ValidationError) as exc:
            await chat_service.generate_answer(message)
        assert exc.value.message == MESSAGE_REQUIRED
        assert embedder.texts == []
        assert await store.list_sessions() == []


class TestGenerateAnswerStream:
    @pytest.mark.asyncio
    async def test_stream_concatenation_matches_one_shot_answer(self, chat_service, index, model, store) -> None:
        index.sources = [make_source(1, 0.42)]
        model.replies = [ModelReply(content="Refunds take 30 days (Source 1).")]
        model.fragments = [["Refunds take ", "30 days ", "(Source 1)."]]

        one_shot = await chat_service.generate_answer("refunds?")
        stream = await chat_service.generate_answer_stream("refunds?")
        events = await collect(stream)

        check_stream_shape(events)
        assert sum(isinstance(e, Meta) for e in events) == 1
        assert sum(isinstance(e, Done) for e in events) == 1
        assert events[0].sources == one_shot.sources
        assert "".join(e.text for e in events if isinstance(e, Token)) == one_shot.answer
        assert events[-1] == Done()

        session = await store.get(stream.session_id)
        assert session.turns[-1].content == one_shot.answer
        assert session.turns[-1].sources == one_shot.sources

    @pytest.mark.asyncio
    async def test_low_confidence_streams_fallback(self, chat_service, index, model) -> None:
        index.sources = [make_source(1, 0.01)]
        events = await collect(await chat_service.generate_answer_stream("unrelated"))
        assert events == [Meta(()), Token(FALLBACK_ANSWER), Done()]
        assert model.stream_calls == []

    @pytest.mark.asyncio
    async def test_failure_after_meta_ends_with_error_token_and_done(self, chat_service, index, model, store) -> None:
        index.sources = [make_source(1, 0.5)]
        model.fragments = [["Partial ", "answer"]]
        model.fail_stream_after = 1

        stream = await chat_service.generate_answer_stream("q")
        events = await collect(stream)

        assert events == [
            Meta((index.sources[0],)),
            Token("Partial "),
            Token(STREAM_ERROR_MESSAGE),
            Done(error=FAILED_TO_GENERATE),
        ]
        session = await store.get(stream.session_id)
        assert session.turns[-1].content == "Partial "
        assert session.turns[-1].sources == (index.sources[0],)

    @pytest.mark.asyncio
    async def test_error_token_never_reaches_next_history(self, chat_service, index, model) -> None:
        index.sources = [make_source(1, 0.5)]
        model.fragments = [["Partial ", "more"]]
        model.fail_stream_after = 1
        stream = await chat_service.generate_answer_stream("first question")
        await collect(stream)

        model.replies = [ModelReply(content="Follow-up answer.")]
        await chat_service.generate_answer("follow up", session_id=stream.session_id)

        history = [m["content"] for m in model.complete_calls[0]["messages"][1:-1]]
        assert history == ["first question", "Partial "]
        assert not any(STREAM_ERROR_MESSAGE in text for text in history)

    @pytest.mark.asyncio
    async def test_failure_before_first_token(self, chat_service, index, model) -> None:
        index.sources = [make_source(1, 0.5)]
        model.fragments = []  # stream() raises on first pull
        events = await collect(await chat_service.generate_answer_stream("q"))
        check_stream_shape(events)
        assert events[-1] == Done(error=FAILED_TO_GENERATE)

    @pytest.mark.asyncio
    async def test_empty_message_streams_validation_error(self, chat_service, store) -> None:
        stream = await chat_service.generate_answer_stream("  ")
        assert stream.session_id is None
        events = await collect(stream)
        assert events == [Meta(()), Token(MESSAGE_REQUIRED), Done(error=MESSAGE_REQUIRED)]
        assert await store.list_sessions() == []

    @pytest.mark.asyncio
    async def test_early_abort_persists_nothing(self, chat_service, index, model, store) -> None:
        index.sources = [make_source(1, 0.5)]
        model.fragments = [["a", "b", "c", "d", "e", "f", "g", "h"]]
        stream = await chat_service.generate_answer_stream("q")
        async for event in stream.events:
            if isinstance(event, Token):
                break
        await stream.events.aclose()
        session = await store.get(stream.session_id)
        assert session.turns == ()

    @pytest.mark.asyncio
    async def test_persistence_failure_is_logged_not_raised(self, gate, model, agent, index, caplog) -> None:
        from ragchat.services.chat_service import ChatService
        from ragchat.services.stream import StreamPump

        class BrokenStore(InMemorySessionStore):
            async def append_turn(self, session, turn):
                raise RuntimeError("disk full")

        store = BrokenStore()
        service = ChatService(store, gate, model, agent, pump=StreamPump(store))
        index.sources = [make_source(1, 0.5)]
        model.fragments = [["fine"]]

        with caplog.at_level(logging.ERROR, logger="ragchat.services.stream"):
            events = await collect(await service.generate_answer_stream("q"))

        assert events[-1] == Done()
        assert "".join(e.text for e in events if isinstance(e, Token)) == "fine"
        assert "Failed to persist session turns" in caplog.text


class TestRunAgent:
    @pytest.mark.asyncio
    async def test_agent_answer_is_persisted_with_tool_sources(self, chat_service, index, model, store) -> None:
        index.sources = [make_source(1, 0.05)]
        model.replies = [
            ModelReply(tool_calls=(tool_call("c1", "rag_query", '{"query": "refund policy"}'),)),
            ModelReply(content="Refunds take 30 days (Result 1)."),
        ]
        result = await chat_service.run_agent("What is the refund policy?")
        assert result.answer == "Refunds take 30 days (Result 1)."
        assert [s.id for s in result.sources] == ["chunk-1"]
        session = await store.get(result.session_id)
        assert session.turns[-1].sources == result.sources

    @pytest.mark.asyncio
    async def test_agent_stream_persists_concatenated_answer(self, chat_service, model, store) -> None:
        model.replies = [ModelReply(content="Hi! How can I help?")]
        stream = await chat_service.run_agent_stream("hello")
        events = await collect(stream)
        assert events == [Meta(()), Token("Hi! How can I help?"), Done()]
        session = await store.get(stream.session_id)
        assert [t.content for t in session.turns] == ["hello", "Hi! How can I help?"]

    @pytest.mark.asyncio
    async def test_agent_rejects_empty_message(self, chat_service, model) -> None:
        with pytest.raises(ValidationError):
            await chat_service.run_agent("")
        assert model.complete_calls == []
