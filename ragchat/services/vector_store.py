"""
Vector store clients: query embeddings (OpenAI or Hugging Face Inference API) and
the Milvus Cloud index that holds the ingested passages.

Responsibility: Turn a query text into one vector and return the top-K nearest
passages with their metadata as Source values. Ingestion lives elsewhere.
"""

import asyncio
import logging
from typing import Any, Protocol

import httpx
import openai
from openai import AsyncOpenAI

from ragchat.core.errors import InvalidInputError, ServiceUnavailableError, UpstreamError
from ragchat.core.models import Source

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...


class VectorIndex(Protocol):
    async def query(
        self,
        vector: list[float],
        top_k: int,
        namespace: str | None = None,
        include_metadata: bool = True,
    ) -> list[Source]: ...


class OpenAIEmbedder:
    """Embeddings via the OpenAI embeddings endpoint (deterministic per model version)."""

    def __init__(self, client: AsyncOpenAI, model: str) -> None:
        self._client = client
        self._model = model

    async def embed(self, text: str) -> list[float]:
        if not text or not text.strip():
            raise InvalidInputError("Cannot embed empty text")
        try:
            res = await self._client.embeddings.create(model=self._model, input=text)
        except (openai.APIConnectionError, openai.APITimeoutError) as e:
            raise ServiceUnavailableError(f"Embedding service unreachable: {e}") from e
        except openai.BadRequestError as e:
            raise InvalidInputError(f"Embedding service rejected input: {e}") from e
        except openai.OpenAIError as e:
            raise UpstreamError(f"Embedding request failed: {e}") from e
        if not res.data:
            raise UpstreamError("Embedding service returned no vectors")
        vector = list(res.data[0].embedding)
        logger.info("[vector_store:openai_embed] OUT dim=%d", len(vector))
        return vector


class HuggingFaceEmbedder:
    """
    Embeddings via the Hugging Face Inference API (feature-extraction pipeline).
    Tries the router first, then the standard inference URL. Vectors are
    normalized for cosine similarity (Milvus COSINE).
    """

    def __init__(self, api_key: str, model: str, timeout: float = 30.0) -> None:
        self._api_key = api_key
        self._timeout = timeout
        self._urls = [
            f"https://router.huggingface.co/hf-inference/models/{model}/pipeline/feature-extraction",
            f"https://api-inference.huggingface.co/models/{model}",
        ]

    async def embed(self, text: str) -> list[float]:
        if not text or not text.strip():
            raise InvalidInputError("Cannot embed empty text")
        if not self._api_key:
            raise ServiceUnavailableError("HF_API_KEY must be set in .env")

        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        payload = {"inputs": [text], "options": {"wait_for_model": True}}
        response: httpx.Response | None = None
        last_error: str | None = None

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            for api_url in self._urls:
                try:
                    response = await client.post(api_url, json=payload, headers=headers)
                except httpx.HTTPError as e:
                    last_error = str(e)
                    continue
                if response.status_code == 403 and api_url == self._urls[0]:
                    last_error = response.text
                    continue
                break

        if response is None:
            raise ServiceUnavailableError(f"HF embedding API unreachable: {last_error}")
        if response.status_code == 503:
            raise ServiceUnavailableError(f"HF model is loading. Retry later. {response.text[:200]}")
        if response.status_code in (400, 413, 422):
            raise InvalidInputError(f"HF embedding API rejected input: {response.text[:200]}")
        if response.status_code != 200:
            raise UpstreamError(f"HF API error {response.status_code}: {response.text[:200]}")

        result = response.json()
        vec = result[0] if isinstance(result, list) and result and isinstance(result[0], list) else result
        if not isinstance(vec, list) or not vec:
            raise UpstreamError("HF embedding API returned an unexpected payload")
        norm = sum(x * x for x in vec) ** 0.5 or 1.0
        return [x / norm for x in vec]


class MilvusIndex:
    """
    Milvus Cloud collection queried by vector. The namespace maps to a Milvus
    partition; metadata comes back from the collection's dynamic fields.
    """

    def __init__(self, uri: str, token: str, collection_name: str) -> None:
        self._uri = uri
        self._token = token
        self._collection_name = collection_name
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            if not self._uri or not self._token:
                raise ServiceUnavailableError("MILVUS_URI and MILVUS_TOKEN must be set in .env")
            from pymilvus import MilvusClient

            self._client = MilvusClient(uri=self._uri, token=self._token)
            logger.info("Milvus connection established")
        return self._client

    def _search_sync(
        self, vector: list[float], top_k: int, namespace: str | None, include_metadata: bool
    ) -> list[dict]:
        from pymilvus.exceptions import MilvusException

        try:
            client = self._get_client()
        except MilvusException as e:
            raise ServiceUnavailableError(f"Vector index unreachable: {e}") from e
        kwargs: dict[str, Any] = {
            "collection_name": self._collection_name,
            "data": [vector],
            "limit": top_k,
            "output_fields": ["*"] if include_metadata else [],
        }
        if namespace:
            kwargs["partition_names"] = [namespace]
        try:
            results = client.search(**kwargs)
        except MilvusException as e:
            raise UpstreamError(f"Vector index query failed: {e}") from e
        return list(results[0]) if results else []

    async def query(
        self,
        vector: list[float],
        top_k: int,
        namespace: str | None = None,
        include_metadata: bool = True,
    ) -> list[Source]:
        hits = await asyncio.to_thread(self._search_sync, vector, top_k, namespace, include_metadata)
        sources = []
        for h in hits:
            # Milvus returns dict with "distance", "id", and "entity" (output_fields)
            score = float(h.get("distance", h.get("score", 0.0)))
            entity = dict(h.get("entity") or {})
            entity.pop("vector", None)
            pk = h.get("id", entity.pop("id", ""))
            sources.append(Source(id=str(pk), score=score, metadata=entity if include_metadata else {}))
        logger.info(
            "[vector_store:milvus_query] OUT hits=%d top_scores=%s",
            len(sources), [round(s.score or 0.0, 4) for s in sources[:5]],
        )
        return sources
