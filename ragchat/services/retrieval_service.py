"""
Retrieval: history-aware query embedding, vector search, and the confidence gate.

Responsibility: Decide whether retrieved passages are trustworthy enough to ground
an answer. When they are not, callers answer with FALLBACK_ANSWER and never ask
the model.
"""

import logging

from ragchat.core.models import RetrievalOutcome, Source, Turn
from ragchat.services.vector_store import Embedder, VectorIndex

logger = logging.getLogger(__name__)

FALLBACK_ANSWER = (
    "I'm not confident I can answer that from the loaded documents. "
    "Try rephrasing the question or adding more relevant documents."
)


def build_retrieval_query(message: str, history: list[Turn], max_turns: int = 6) -> str:
    """Recent conversation plus the current question; history improves recall for follow-ups."""
    recent = history[-max_turns:] if max_turns > 0 else []
    history_text = "\n".join(
        f"User: {t.content}" if t.role == "user" else f"Assistant: {t.content}" for t in recent
    )
    return f"Conversation history:\n{history_text}\n\nCurrent question:\n{message}".strip()


class RetrievalGate:
    def __init__(
        self,
        embedder: Embedder,
        index: VectorIndex,
        namespace: str | None = None,
        top_k: int = 5,
        threshold: float = 0.15,
        history_window: int = 6,
    ) -> None:
        self._embedder = embedder
        self._index = index
        self._namespace = namespace
        self.top_k = top_k
        self.threshold = threshold
        self.history_window = history_window

    async def search(self, query: str, top_k: int | None = None) -> list[Source]:
        """Embed query and return the nearest passages with metadata. No confidence gate."""
        k = top_k or self.top_k
        logger.info("[retrieval:search] IN  query=%r top_k=%d", query[:200], k)
        vector = await self._embedder.embed(query)
        sources = await self._index.query(vector, k, namespace=self._namespace, include_metadata=True)
        logger.info("[retrieval:search] OUT sources=%d", len(sources))
        return sources

    async def retrieve(self, message: str, history: list[Turn]) -> RetrievalOutcome:
        """
        Composite query (recent history + message) → one embedding → top-K.
        confident = sources non-empty and best score >= threshold.
        """
        query = build_retrieval_query(message, history, self.history_window)
        sources = await self.search(query, self.top_k)
        best = max((s.score or 0.0 for s in sources), default=0.0)
        confident = bool(sources) and best >= self.threshold
        logger.info(
            "[retrieval:retrieve] OUT sources=%d best_score=%.4f threshold=%.2f confident=%s",
            len(sources), best, self.threshold, confident,
        )
        return RetrievalOutcome(sources=tuple(sources), confident=confident)
