"""
Reasoning model and web-search-augmented completion, both on the OpenAI API.

Transport failures surface as UpstreamError; retry policy belongs to the client
below this layer, so nothing here retries.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

import openai
from ddgs import DDGS
from ddgs.exceptions import DDGSException
from openai import AsyncOpenAI

from ragchat.core.errors import ServiceUnavailableError, UpstreamError
from ragchat.core.models import ModelReply, ToolCallRequest

logger = logging.getLogger(__name__)


class ChatModel(Protocol):
    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
    ) -> ModelReply: ...

    def stream(
        self,
        messages: list[dict[str, Any]],
        temperature: float | None = None,
    ) -> AsyncIterator[str]: ...


def _upstream(e: openai.OpenAIError) -> UpstreamError:
    if isinstance(e, (openai.APIConnectionError, openai.APITimeoutError)):
        return ServiceUnavailableError(f"Model service unreachable: {e}")
    return UpstreamError(f"Model call failed: {e}")


class ReasoningModel:
    """OpenAI chat completions, with optional tools (tool_choice=auto) or token streaming."""

    def __init__(self, client: AsyncOpenAI, model: str) -> None:
        self._client = client
        self.model = model

    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
    ) -> ModelReply:
        kwargs: dict[str, Any] = {"model": self.model, "messages": messages}
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if temperature is not None:
            kwargs["temperature"] = temperature
        logger.info("[llm:complete] IN  messages=%d tools=%d", len(messages), len(tools or []))
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            raise _upstream(e) from e

        msg = response.choices[0].message if response.choices else None
        if msg is None:
            return ModelReply()
        tool_calls = []
        for tc in getattr(msg, "tool_calls", None) or []:
            fn = getattr(tc, "function", None)
            if getattr(tc, "type", "function") != "function" or fn is None:
                continue
            tool_calls.append(
                ToolCallRequest(
                    id=getattr(tc, "id", None) or "",
                    tool_name=getattr(fn, "name", None) or "",
                    raw_arguments=getattr(fn, "arguments", None) or "{}",
                )
            )
        reply = ModelReply(content=msg.content or "", tool_calls=tuple(tool_calls))
        logger.info(
            "[llm:complete] OUT content_len=%d tool_calls=%s",
            len(reply.content), [t.tool_name for t in reply.tool_calls],
        )
        return reply

    async def stream(
        self,
        messages: list[dict[str, Any]],
        temperature: float | None = None,
    ) -> AsyncIterator[str]:
        """Yield text fragments of the answer in production order."""
        kwargs: dict[str, Any] = {"model": self.model, "messages": messages, "stream": True}
        if temperature is not None:
            kwargs["temperature"] = temperature
        logger.info("[llm:stream] IN  messages=%d", len(messages))
        total = 0
        try:
            stream = await self._client.chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            raise _upstream(e) from e
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = getattr(chunk.choices[0].delta, "content", None)
                if not delta:
                    continue
                total += len(delta)
                yield delta
        except openai.OpenAIError as e:
            raise _upstream(e) from e
        finally:
            # releases the HTTP response when the consumer stops early
            await stream.close()
        logger.info("[llm:stream] OUT content_len=%d", total)


# --- Web search ---

@dataclass(frozen=True)
class WebSearchResult:
    answer_text: str
    sources: list[dict[str, str]] = field(default_factory=list)  # {title, url, snippet}


class WebSearch(Protocol):
    async def search(self, query: str) -> WebSearchResult: ...


NO_WEB_ANSWER = "I tried to use web search but couldn't get a usable answer."


class OpenAIWebSearch:
    """Search-augmented completion via the Responses API web search tool."""

    def __init__(self, client: AsyncOpenAI, model: str) -> None:
        self._client = client
        self._model = model

    async def search(self, query: str) -> WebSearchResult:
        logger.info("[llm:web_search] IN  query=%r", query)
        try:
            resp = await self._client.responses.create(
                model=self._model,
                tools=[{"type": "web_search_preview"}],
                input=query,
            )
        except openai.OpenAIError as e:
            raise _upstream(e) from e

        text = (getattr(resp, "output_text", None) or "").strip()
        sources: list[dict[str, str]] = []
        for item in getattr(resp, "output", None) or []:
            for part in getattr(item, "content", None) or []:
                if getattr(part, "type", "") not in ("output_text", "text"):
                    continue
                part_text = getattr(part, "text", "") or ""
                if not text and part_text.strip():
                    text = part_text.strip()
                for ann in getattr(part, "annotations", None) or []:
                    if getattr(ann, "type", "") != "url_citation":
                        continue
                    start = getattr(ann, "start_index", None)
                    end = getattr(ann, "end_index", None)
                    snippet = part_text[start:end] if start is not None and end is not None else ""
                    sources.append({
                        "title": getattr(ann, "title", "") or "",
                        "url": getattr(ann, "url", "") or "",
                        "snippet": snippet,
                    })
        logger.info("[llm:web_search] OUT answer_len=%d sources=%d", len(text), len(sources))
        return WebSearchResult(answer_text=text or NO_WEB_ANSWER, sources=sources)


class DdgsWebSearch:
    """Plain web search via ddgs; the answer text is the formatted result list."""

    def __init__(self, max_results: int = 5, timeout: float = 15.0) -> None:
        self._max_results = max_results
        self._timeout = timeout

    def _search_sync(self, query: str) -> list[dict]:
        with DDGS(timeout=self._timeout) as ddgs:
            return list(ddgs.text(query, max_results=self._max_results))

    async def search(self, query: str) -> WebSearchResult:
        logger.info("[llm:ddgs_search] IN  query=%r", query)
        try:
            results = await asyncio.to_thread(self._search_sync, query)
        except DDGSException as e:
            raise UpstreamError(f"Web search failed: {e}") from e
        if not results:
            return WebSearchResult(answer_text="No results found.")
        sources = []
        lines = []
        for i, r in enumerate(results[: self._max_results], 1):
            title = (r.get("title") or "").strip()
            body = (r.get("body") or "").strip()
            href = (r.get("href") or "").strip()
            sources.append({"title": title, "url": href, "snippet": body})
            lines.append(f"{i}. {title}\n{body}\nURL: {href}")
        return WebSearchResult(answer_text="\n\n".join(lines), sources=sources)
