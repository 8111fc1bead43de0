"""
Shared fakes for the embedding service, vector index, reasoning model and web search,
so tests never need OpenAI, Hugging Face or Milvus.
"""

from typing import Any, AsyncIterator

import pytest

from ragchat.agent.graph import AgentLoop
from ragchat.agent.llm import WebSearchResult
from ragchat.agent.tools import build_default_registry
from ragchat.core.errors import UpstreamError
from ragchat.core.models import ModelReply, Source, ToolCallRequest
from ragchat.core.session_store import InMemorySessionStore
from ragchat.services.chat_service import ChatService
from ragchat.services.retrieval_service import RetrievalGate
from ragchat.services.stream import StreamPump


class FakeEmbedder:
    def __init__(self) -> None:
        self.texts: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.texts.append(text)
        return [0.1, 0.2, 0.3]


class FakeIndex:
    def __init__(self, sources: list[Source] | None = None) -> None:
        self.sources = list(sources or [])
        self.calls: list[dict[str, Any]] = []

    async def query(self, vector, top_k, namespace=None, include_metadata=True) -> list[Source]:
        self.calls.append({"vector": vector, "top_k": top_k, "namespace": namespace, "include_metadata": include_metadata})
        return self.sources[:top_k]


class FakeModel:
    """
    Deterministic model stub. complete() returns the scripted replies in order;
    stream() yields the fragments of the next scripted reply's content.
    """

    def __init__(self, replies: list[ModelReply] | None = None, fragments: list[list[str]] | None = None) -> None:
        self.replies = list(replies or [])
        self.fragments = list(fragments or [])
        self.complete_calls: list[dict[str, Any]] = []
        self.stream_calls: list[list[dict[str, Any]]] = []
        self.fail_stream_after: int | None = None

    async def complete(self, messages, tools=None, temperature=None) -> ModelReply:
        self.complete_calls.append({"messages": messages, "tools": tools, "temperature": temperature})
        if not self.replies:
            raise UpstreamError("Model call failed: no scripted reply")
        return self.replies.pop(0)

    async def stream(self, messages, temperature=None) -> AsyncIterator[str]:
        self.stream_calls.append(messages)
        if not self.fragments:
            raise UpstreamError("Model call failed: no scripted stream")
        for i, fragment in enumerate(self.fragments.pop(0)):
            if self.fail_stream_after is not None and i >= self.fail_stream_after:
                raise UpstreamError("Model call failed: connection reset")
            yield fragment


class FakeWebSearch:
    def __init__(self, result: WebSearchResult | None = None) -> None:
        self.result = result or WebSearchResult(answer_text="No results found.")
        self.queries: list[str] = []

    async def search(self, query: str) -> WebSearchResult:
        self.queries.append(query)
        return self.result


def make_source(i: int, score: float, **metadata: Any) -> Source:
    meta = {"source_path": f"docs/doc{i}.pdf", "page_from": i, "page_to": i + 1, "text": f"Passage {i}."}
    meta.update(metadata)
    return Source(id=f"chunk-{i}", score=score, metadata=meta)


def tool_call(call_id: str, name: str, arguments: str) -> ToolCallRequest:
    return ToolCallRequest(id=call_id, tool_name=name, raw_arguments=arguments)


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def index() -> FakeIndex:
    return FakeIndex()


@pytest.fixture
def model() -> FakeModel:
    return FakeModel()


@pytest.fixture
def web() -> FakeWebSearch:
    return FakeWebSearch()


@pytest.fixture
def gate(embedder: FakeEmbedder, index: FakeIndex) -> RetrievalGate:
    return RetrievalGate(embedder, index, namespace="v1", top_k=5, threshold=0.15, history_window=6)


@pytest.fixture
def registry(gate: RetrievalGate, web: FakeWebSearch):
    return build_default_registry(gate, web)


@pytest.fixture
def agent(model: FakeModel, registry) -> AgentLoop:
    return AgentLoop(model, registry)


@pytest.fixture
def chat_service(store, gate, model, agent) -> ChatService:
    return ChatService(store, gate, model, agent, pump=StreamPump(store, queue_size=4), history_window=6)
