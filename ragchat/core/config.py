"""
Application configuration (env, settings, constants).

Responsibility: Centralize config loading, environment variables, and app-wide
policy constants. Keeps the rest of the app decoupled from how config is sourced.
"""

import os

from dotenv import load_dotenv

from ragchat.core.errors import ConfigurationError

load_dotenv()


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name, default) or "").strip() or default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


# OpenAI (reasoning model, embeddings, web-search-augmented completion)
OPENAI_API_KEY: str = _env("OPENAI_API_KEY")
OPENAI_LLM_MODEL: str = _env("OPENAI_LLM_MODEL", "gpt-4.1-mini")
OPENAI_EMBED_MODEL: str = _env("OPENAI_EMBED_MODEL", "text-embedding-3-small")
WEB_SEARCH_MODEL: str = _env("WEB_SEARCH_MODEL", "gpt-4.1")

# Hugging Face (alternative embedding backend)
HF_API_KEY: str = _env("HF_API_KEY")
HF_EMBED_MODEL: str = _env("HF_EMBED_MODEL", "sentence-transformers/all-MiniLM-L6-v2")

# Milvus Cloud (vector index)
MILVUS_URI: str = _env("MILVUS_URI")
MILVUS_TOKEN: str = _env("MILVUS_TOKEN")
COLLECTION_NAME: str = _env("COLLECTION_NAME", "documents")
# Milvus partition that plays the role of the index namespace
VECTOR_NAMESPACE: str = _env("VECTOR_NAMESPACE", "v1")

# Providers: "openai" | "hf" for embeddings, "openai" | "ddgs" for web search
EMBEDDING_PROVIDER: str = _env("EMBEDDING_PROVIDER", "openai").lower()
WEB_SEARCH_PROVIDER: str = _env("WEB_SEARCH_PROVIDER", "openai").lower()

# Session store: "memory" | "sqlite"
SESSION_STORE: str = _env("SESSION_STORE", "memory").lower()
SESSION_DB_PATH: str = _env("SESSION_DB_PATH", "data/sessions.db")

# Retrieval policy (no documented derivation; kept configurable)
RETRIEVAL_TOP_K: int = _env_int("RETRIEVAL_TOP_K", 5)
CONFIDENCE_THRESHOLD: float = _env_float("CONFIDENCE_THRESHOLD", 0.15)
HISTORY_WINDOW: int = _env_int("HISTORY_WINDOW", 6)

# Answer generation
ANSWER_TEMPERATURE: float = _env_float("ANSWER_TEMPERATURE", 0.2)
WEB_SEARCH_MAX_RESULTS: int = 5

# Streaming channel capacity (events buffered between producer and transport)
STREAM_QUEUE_SIZE: int = _env_int("STREAM_QUEUE_SIZE", 64)

# API timeouts (seconds)
EMBED_API_TIMEOUT: float = 30.0
LLM_API_TIMEOUT: float = 60.0
TOOLS_HTTP_TIMEOUT: float = 15.0


def require(*names: str) -> None:
    """
    Fail fast when required settings are empty. Called once while wiring services
    at startup; never per request.
    """
    missing = [n for n in names if not globals().get(n)]
    if missing:
        raise ConfigurationError(f"Missing required configuration: {', '.join(missing)} (set them in .env)")


def required_credentials() -> list[str]:
    """Credentials the configured providers need."""
    names = ["OPENAI_API_KEY", "MILVUS_URI", "MILVUS_TOKEN"]
    if EMBEDDING_PROVIDER == "hf":
        names.append("HF_API_KEY")
    return names
