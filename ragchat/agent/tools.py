"""
Agent tools: definitions, registry, and execution for tool-calling (agentic) mode.

Every tool returns a result envelope, serialized as JSON text:
    {"kind": "rag_result" | "web_result", "sources": [...], "content": "..."}
so the agent loop can unpack content and sources without per-tool special cases.

Tools: rag_query (knowledge base, no confidence gate), web_search.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, ClassVar, Iterable, Mapping, Union

from ragchat.agent.llm import WebSearch
from ragchat.core.errors import ToolArgumentError, ToolEnvelopeError, UnknownToolError
from ragchat.core.models import Source, ToolDefinition
from ragchat.services.retrieval_service import RetrievalGate

logger = logging.getLogger(__name__)


# --- Envelopes ---

@dataclass(frozen=True)
class RagResult:
    content: str
    sources: tuple[Source, ...] = ()
    kind: ClassVar[str] = "rag_result"

    def to_json(self) -> str:
        return _envelope_json(self)


@dataclass(frozen=True)
class WebResult:
    content: str
    sources: tuple[Source, ...] = ()
    kind: ClassVar[str] = "web_result"

    def to_json(self) -> str:
        return _envelope_json(self)


ToolEnvelope = Union[RagResult, WebResult]
ENVELOPE_TYPES: dict[str, type] = {RagResult.kind: RagResult, WebResult.kind: WebResult}


def _envelope_json(envelope: ToolEnvelope) -> str:
    return json.dumps(
        {
            "kind": envelope.kind,
            "sources": [s.to_dict() for s in envelope.sources],
            "content": envelope.content,
        },
        default=str,
    )


def parse_envelope(text: str) -> ToolEnvelope:
    """Parse tool output text into its envelope. Raises ToolEnvelopeError if it is not one."""
    try:
        data = json.loads(text)
    except (TypeError, json.JSONDecodeError) as e:
        raise ToolEnvelopeError(f"Tool output is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise ToolEnvelopeError("Tool output is not a JSON object")
    envelope_type = ENVELOPE_TYPES.get(data.get("kind"))
    if envelope_type is None:
        raise ToolEnvelopeError(f"Unknown envelope kind: {data.get('kind')!r}")
    content = data.get("content")
    raw_sources = data.get("sources") or []
    if not isinstance(content, str) or not isinstance(raw_sources, list):
        raise ToolEnvelopeError("Envelope content must be a string and sources a list")
    try:
        sources = tuple(Source.from_dict(s) for s in raw_sources)
    except (AttributeError, TypeError, ValueError) as e:
        raise ToolEnvelopeError(f"Malformed envelope sources: {e}") from e
    return envelope_type(content=content, sources=sources)


def unpack_tool_output(text: str) -> tuple[str, list[Source]]:
    """(content, sources) of a tool result. Non-envelope output is used verbatim with no sources."""
    try:
        envelope = parse_envelope(text)
    except ToolEnvelopeError as e:
        logger.warning("[tools] non-envelope tool output (%s); using raw text", e.message)
        return text, []
    return envelope.content, list(envelope.sources)


# --- Registry ---

@dataclass(frozen=True)
class Tool:
    definition: ToolDefinition
    run: Callable[[dict[str, Any]], Awaitable[ToolEnvelope]]

    @property
    def name(self) -> str:
        return self.definition.name


def parse_tool_arguments(raw: str | Mapping[str, Any] | None) -> dict[str, Any]:
    """Parse model-supplied arguments. Raises ToolArgumentError unless they form a JSON object."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    try:
        args = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise ToolArgumentError(f"Tool arguments are not valid JSON: {e}") from e
    if not isinstance(args, dict):
        raise ToolArgumentError(f"Tool arguments must be a JSON object, got {type(args).__name__}")
    return args


class ToolRegistry:
    """Ordered set of tools keyed by name. Read-only once the app has started."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def definitions(self) -> list[ToolDefinition]:
        return [t.definition for t in self._tools.values()]

    def openai_tools(self) -> list[dict[str, Any]]:
        return [d.as_openai_tool() for d in self.definitions()]

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    async def execute(self, name: str, arguments: str | Mapping[str, Any] | None = None) -> str:
        """
        Run a tool by name and return its envelope as text. Unparsable arguments
        run the tool with an empty argument set rather than failing the turn.
        """
        tool = self.get(name)
        if tool is None:
            raise UnknownToolError(name)
        try:
            args = parse_tool_arguments(arguments)
        except ToolArgumentError as e:
            logger.warning("[tools] %s: %s; running with no arguments", name, e.message)
            args = {}
        logger.info("[tools] execute_tool name=%r arguments=%r", name, args)
        envelope = await tool.run(args)
        logger.info("[tools] execute_tool name=%r OUT kind=%s sources=%d", name, envelope.kind, len(envelope.sources))
        return envelope.to_json()


# --- Built-in tools ---

RAG_QUERY_DEFINITION = ToolDefinition(
    name="rag_query",
    description=(
        "Retrieve relevant passages from the local knowledge base (indexed documents). "
        "Use this instead of web_search for questions about documents, PDFs, or internal knowledge."
    ),
    parameters={
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "The semantic search query. Include as much context from the user question as needed.",
            }
        },
        "required": ["query"],
    },
)

WEB_SEARCH_DEFINITION = ToolDefinition(
    name="web_search",
    description=(
        "Search the web for up-to-date information. Use this for current events, recent changes, "
        "weather, or facts not covered by local documents."
    ),
    parameters={
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "The search query. Include any important context from the conversation.",
            }
        },
        "required": ["query"],
    },
)

RAG_GUIDANCE = (
    "\n\nGuidance for using these results:\n"
    "- Prefer these passages when they clearly relate to the user's question.\n"
    "- If they seem unrelated or only weakly relevant, you may ignore them and answer from your general knowledge instead.\n"
    "- Only cite these results as \"Sources\" if they actually support or inform your answer.\n"
)


def format_source_for_llm(source: Source, index: int) -> str:
    """Header (id, title, pages, score) plus snippet for one knowledge-base result."""
    meta = source.metadata or {}
    title = meta.get("title") or meta.get("filename") or meta.get("source_path") or source.id
    page = meta.get("page", meta.get("pages"))
    if page is None and meta.get("page_from") is not None and meta.get("page_to") is not None:
        page = f"{meta['page_from']}-{meta['page_to']}"
    parts = [
        f"Result {index}",
        f"ID: {source.id}",
        f"Title: {title}" if title else None,
        f"Page(s): {page}" if page is not None else None,
        f"Score: {source.score:.3f}" if source.score is not None else None,
    ]
    snippet = (
        meta.get("text") or meta.get("content") or meta.get("chunk")
        or "[No text snippet available in metadata]"
    )
    return " | ".join(p for p in parts if p) + f"\n\n{snippet}\n"


def create_rag_query_tool(gate: RetrievalGate, top_k: int = 5) -> Tool:
    """Knowledge-base search. Calls the index directly: a tool call is an explicit request, not gated."""

    async def run(args: dict[str, Any]) -> ToolEnvelope:
        query = str(args.get("query") or "").strip()
        if not query:
            return RagResult(content="Error: query is required.")
        sources = await gate.search(query, top_k=top_k)
        if not sources:
            return RagResult(content=f'No relevant RAG results found for query: "{query}".')
        formatted = "\n-------------------------\n\n".join(
            format_source_for_llm(s, i) for i, s in enumerate(sources, 1)
        )
        content = f'RAG query results for: "{query}"\n\n{formatted}{RAG_GUIDANCE}'
        return RagResult(content=content, sources=tuple(sources))

    return Tool(definition=RAG_QUERY_DEFINITION, run=run)


def create_web_search_tool(web: WebSearch) -> Tool:
    async def run(args: dict[str, Any]) -> ToolEnvelope:
        query = str(args.get("query") or "").strip()
        if not query:
            return WebResult(content="Error: query is required.")
        result = await web.search(query)
        sources = tuple(
            Source(
                id=s.get("url") or f"web-{i}",
                metadata={"title": s.get("title", ""), "url": s.get("url", ""), "snippet": s.get("snippet", "")},
            )
            for i, s in enumerate(result.sources, 1)
        )
        return WebResult(content=result.answer_text, sources=sources)

    return Tool(definition=WEB_SEARCH_DEFINITION, run=run)


def build_default_registry(gate: RetrievalGate, web: WebSearch, top_k: int = 5) -> ToolRegistry:
    return ToolRegistry([create_rag_query_tool(gate, top_k=top_k), create_web_search_tool(web)])
