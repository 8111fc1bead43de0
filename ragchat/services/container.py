"""
Service wiring: config → clients → retrieval gate → tools → agent → session store → ChatService.

Built once at startup (FastAPI lifespan). Missing credentials raise
ConfigurationError here, so a misconfigured process never starts serving.
"""

import logging
from dataclasses import dataclass

from openai import AsyncOpenAI

from ragchat.agent.graph import AgentLoop
from ragchat.agent.llm import DdgsWebSearch, OpenAIWebSearch, ReasoningModel, WebSearch
from ragchat.agent.tools import ToolRegistry, build_default_registry
from ragchat.core import config
from ragchat.core.session_store import InMemorySessionStore, SessionStore, SqliteSessionStore
from ragchat.services.chat_service import ChatService
from ragchat.services.retrieval_service import RetrievalGate
from ragchat.services.stream import StreamPump
from ragchat.services.vector_store import Embedder, HuggingFaceEmbedder, MilvusIndex, OpenAIEmbedder

logger = logging.getLogger(__name__)


@dataclass
class Services:
    chat: ChatService
    registry: ToolRegistry


def build_session_store() -> SessionStore:
    if config.SESSION_STORE == "sqlite":
        logger.info("Session store: sqlite (%s)", config.SESSION_DB_PATH)
        return SqliteSessionStore(config.SESSION_DB_PATH)
    logger.info("Session store: in-memory")
    return InMemorySessionStore()


def build_services() -> Services:
    config.require(*config.required_credentials())

    client = AsyncOpenAI(api_key=config.OPENAI_API_KEY, timeout=config.LLM_API_TIMEOUT)

    embedder: Embedder
    if config.EMBEDDING_PROVIDER == "hf":
        embedder = HuggingFaceEmbedder(config.HF_API_KEY, config.HF_EMBED_MODEL, timeout=config.EMBED_API_TIMEOUT)
    else:
        embedder = OpenAIEmbedder(client, config.OPENAI_EMBED_MODEL)

    index = MilvusIndex(config.MILVUS_URI, config.MILVUS_TOKEN, config.COLLECTION_NAME)
    gate = RetrievalGate(
        embedder,
        index,
        namespace=config.VECTOR_NAMESPACE,
        top_k=config.RETRIEVAL_TOP_K,
        threshold=config.CONFIDENCE_THRESHOLD,
        history_window=config.HISTORY_WINDOW,
    )

    model = ReasoningModel(client, config.OPENAI_LLM_MODEL)
    web: WebSearch
    if config.WEB_SEARCH_PROVIDER == "ddgs":
        web = DdgsWebSearch(max_results=config.WEB_SEARCH_MAX_RESULTS, timeout=config.TOOLS_HTTP_TIMEOUT)
    else:
        web = OpenAIWebSearch(client, config.WEB_SEARCH_MODEL)
    registry = build_default_registry(gate, web, top_k=config.RETRIEVAL_TOP_K)
    agent = AgentLoop(model, registry)

    store = build_session_store()
    chat = ChatService(
        store,
        gate,
        model,
        agent,
        pump=StreamPump(store, queue_size=config.STREAM_QUEUE_SIZE),
        history_window=config.HISTORY_WINDOW,
        temperature=config.ANSWER_TEMPERATURE,
    )
    logger.info(
        "Services ready: embeddings=%s web_search=%s tools=%s",
        config.EMBEDDING_PROVIDER, config.WEB_SEARCH_PROVIDER, [d.name for d in registry.definitions()],
    )
    return Services(chat=chat, registry=registry)
