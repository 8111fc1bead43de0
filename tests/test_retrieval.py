"""
Unit tests for the retrieval gate and the context assembler.
"""

import pytest

from conftest import FakeEmbedder, FakeIndex, make_source
from ragchat.core.models import Source, Turn
from ragchat.services.context import SEPARATOR, build_answer_messages, render_context
from ragchat.services.retrieval_service import RetrievalGate, build_retrieval_query


class TestBuildRetrievalQuery:
    def test_includes_history_and_question(self) -> None:
        history = [Turn(role="user", content="Tell me about refunds"), Turn(role="assistant", content="Refunds take 30 days.")]
        query = build_retrieval_query("And for digital goods?", history)
        assert "User: Tell me about refunds" in query
        assert "Assistant: Refunds take 30 days." in query
        assert query.index("Conversation history:") < query.index("Current question:")
        assert query.endswith("And for digital goods?")

    def test_uses_only_the_window(self) -> None:
        history = [Turn(role="user", content=f"q{i}") for i in range(8)]
        query = build_retrieval_query("now", history, max_turns=6)
        assert "q0" not in query and "q1" not in query
        assert "q2" in query and "q7" in query


class TestRetrievalGate:
    @pytest.mark.asyncio
    async def test_confident_when_best_score_meets_threshold(self) -> None:
        index = FakeIndex([make_source(1, 0.42), make_source(2, 0.10)])
        gate = RetrievalGate(FakeEmbedder(), index, namespace="v1", top_k=5, threshold=0.15)
        outcome = await gate.retrieve("What is the refund policy?", [])
        assert outcome.confident is True
        assert [s.id for s in outcome.sources] == ["chunk-1", "chunk-2"]
        assert index.calls == [{"vector": [0.1, 0.2, 0.3], "top_k": 5, "namespace": "v1", "include_metadata": True}]

    @pytest.mark.asyncio
    async def test_threshold_is_inclusive(self) -> None:
        gate = RetrievalGate(FakeEmbedder(), FakeIndex([make_source(1, 0.15)]), threshold=0.15)
        assert (await gate.retrieve("q", [])).confident is True

    @pytest.mark.asyncio
    async def test_not_confident_below_threshold(self) -> None:
        gate = RetrievalGate(FakeEmbedder(), FakeIndex([make_source(1, 0.149)]), threshold=0.15)
        outcome = await gate.retrieve("q", [])
        assert outcome.confident is False

    @pytest.mark.asyncio
    async def test_not_confident_without_matches(self) -> None:
        gate = RetrievalGate(FakeEmbedder(), FakeIndex([]))
        outcome = await gate.retrieve("asdkj", [])
        assert outcome.confident is False
        assert outcome.sources == ()

    @pytest.mark.asyncio
    async def test_embeds_one_composite_query(self) -> None:
        embedder = FakeEmbedder()
        gate = RetrievalGate(embedder, FakeIndex([]))
        await gate.retrieve("follow up?", [Turn(role="user", content="earlier question")])
        assert len(embedder.texts) == 1
        assert "earlier question" in embedder.texts[0]
        assert "follow up?" in embedder.texts[0]

    @pytest.mark.asyncio
    async def test_search_is_not_gated(self) -> None:
        gate = RetrievalGate(FakeEmbedder(), FakeIndex([make_source(1, 0.01)]), threshold=0.15)
        sources = await gate.search("raw query", top_k=3)
        assert [s.id for s in sources] == ["chunk-1"]


class TestRenderContext:
    def test_one_block_per_source_in_rank_order(self) -> None:
        sources = [make_source(1, 0.9), make_source(2, 0.5), make_source(3, 0.2)]
        context = render_context(sources)
        blocks = context.split(SEPARATOR)
        assert len(blocks) == 3
        for i, block in enumerate(blocks, 1):
            assert block.startswith(f"Source {i}: docs/doc{i}.pdf (pages {i}-{i + 1})\n")
            assert block.endswith(f"Passage {i}.")

    def test_title_fallback_chain(self) -> None:
        sources = [
            Source(id="a", metadata={"doc_id": "doc-42", "text": "x"}),
            Source(id="b", metadata={"text": "y"}),
        ]
        blocks = render_context(sources).split(SEPARATOR)
        assert blocks[0].splitlines()[0] == "Source 1: doc-42"
        assert blocks[1].splitlines()[0] == "Source 2: Unknown document"

    def test_zero_pages_are_rendered(self) -> None:
        src = Source(id="a", metadata={"source_path": "intro.pdf", "page_from": 0, "page_to": 0, "text": "t"})
        assert render_context([src]).startswith("Source 1: intro.pdf (pages 0-0)\n")

    def test_page_suffix_needs_both_bounds(self) -> None:
        src = Source(id="a", metadata={"source_path": "intro.pdf", "page_from": 3, "text": "t"})
        assert render_context([src]).startswith("Source 1: intro.pdf\n")

    def test_missing_text_placeholder(self) -> None:
        src = Source(id="a", metadata={"source_path": "intro.pdf"})
        assert render_context([src]) == "Source 1: intro.pdf\n[no text stored in metadata]"

    def test_no_truncation(self) -> None:
        long_text = "word " * 5000
        src = Source(id="a", metadata={"source_path": "big.pdf", "text": long_text})
        assert long_text in render_context([src])

    def test_empty(self) -> None:
        assert render_context([]) == ""


def test_build_answer_messages_orders_system_history_user() -> None:
    history = [Turn(role="user", content="hi"), Turn(role="assistant", content="hello")]
    messages = build_answer_messages("What is the refund policy?", history, "Source 1: policy.pdf\n...")
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
    assert "What is the refund policy?" in messages[-1]["content"]
    assert "Source 1: policy.pdf" in messages[-1]["content"]
