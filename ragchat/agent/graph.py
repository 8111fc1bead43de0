"""
LangGraph agent: plan → (act → finalize) with tool calling.

plan:     system prompt + history + user message, with tool definitions (tool_choice=auto).
          No tool calls → the reply text is the answer, with no sources.
act:      run every requested tool concurrently, re-associate results by call id,
          unpack result envelopes and collect their sources in call order.
finalize: resend everything plus the tool results without tools to force a
          natural-language answer.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal, TypedDict

from langgraph.graph import END, StateGraph

from ragchat.agent.llm import ChatModel
from ragchat.agent.tools import ToolRegistry, unpack_tool_output
from ragchat.core.errors import ToolError, UpstreamError
from ragchat.core.models import Meta, ModelReply, Source, Token, ToolCallRequest, Turn
from ragchat.services.context import history_messages

logger = logging.getLogger(__name__)

AGENT_SYSTEM_PROMPT = (
    "You are an assistant with access to function tools.\n"
    "- Use `rag_query` to look up information in the local knowledge base (PDFs, documents, internal content, lab sheets, etc).\n"
    "- Use `web_search` ONLY for up-to-date or web-based information (news, weather, very recent events, things not in the local docs).\n"
    "- Prefer `rag_query` when the user asks about known documents or material that could plausibly be in the indexed knowledge base.\n"
    "- Do NOT guess when you can use a tool; call the tool, inspect the results, then answer.\n"
)


class AgentState(TypedDict, total=False):
    messages: list  # system + history + user message
    first_reply: ModelReply
    tool_messages: list  # one {"role": "tool", ...} per call, in call order
    sources: list  # Source values accumulated across tool calls (duplicates kept)
    tools_used: list
    answer: str


@dataclass(frozen=True)
class AgentResult:
    answer: str
    sources: tuple[Source, ...] = ()
    tools_used: tuple[str, ...] = ()


@dataclass
class _ToolOutcome:
    content: str
    sources: list[Source] = field(default_factory=list)


def finalize_messages(state: AgentState) -> list[dict[str, Any]]:
    return [*state["messages"], state["first_reply"].as_message(), *state.get("tool_messages", [])]


class AgentLoop:
    def __init__(self, model: ChatModel, registry: ToolRegistry, system_prompt: str = AGENT_SYSTEM_PROMPT) -> None:
        self._model = model
        self._registry = registry
        self._system_prompt = system_prompt
        self._graph = self.build_graph(include_finalize=True)
        self._plan_act_graph = self.build_graph(include_finalize=False)

    # --- nodes ---

    async def _plan(self, state: AgentState) -> dict:
        reply = await self._model.complete(state["messages"], tools=self._registry.openai_tools())
        logger.info("[graph:plan] OUT tool_calls=%s", [tc.tool_name for tc in reply.tool_calls])
        return {"first_reply": reply, "answer": reply.content or ""}

    async def _run_call(self, call: ToolCallRequest) -> _ToolOutcome:
        try:
            output = await self._registry.execute(call.tool_name, call.raw_arguments)
        except (ToolError, UpstreamError) as e:
            logger.warning("[graph:act] tool %r failed: %s", call.tool_name, e.message)
            return _ToolOutcome(content=f"Tool {call.tool_name} failed: {e.message}")
        except Exception as e:
            logger.exception("[graph:act] tool %r raised", call.tool_name)
            return _ToolOutcome(content=f"Tool {call.tool_name} failed: {e}")
        content, sources = unpack_tool_output(output)
        return _ToolOutcome(content=content, sources=sources)

    async def _act(self, state: AgentState) -> dict:
        calls = state["first_reply"].tool_calls
        outcomes = await asyncio.gather(*(self._run_call(tc) for tc in calls))
        tool_messages = []
        sources: list[Source] = []
        for call, outcome in zip(calls, outcomes):
            tool_messages.append({"role": "tool", "tool_call_id": call.id, "content": outcome.content})
            sources.extend(outcome.sources)
        logger.info("[graph:act] OUT calls=%d sources=%d", len(calls), len(sources))
        return {
            "tool_messages": tool_messages,
            "sources": sources,
            "tools_used": [tc.tool_name for tc in calls],
        }

    async def _finalize(self, state: AgentState) -> dict:
        reply = await self._model.complete(finalize_messages(state))
        logger.info("[graph:finalize] OUT answer_len=%d", len(reply.content))
        return {"answer": reply.content or ""}

    def _route_after_plan(self, state: AgentState) -> Literal["act", "__end__"]:
        return "act" if state["first_reply"].tool_calls else END

    def build_graph(self, include_finalize: bool = True):
        """plan → (act → finalize) → END. Without finalize the graph stops after act (used for streaming)."""
        graph = StateGraph(AgentState)
        graph.add_node("plan", self._plan)
        graph.add_node("act", self._act)
        graph.set_entry_point("plan")
        graph.add_conditional_edges("plan", self._route_after_plan)
        if include_finalize:
            graph.add_node("finalize", self._finalize)
            graph.add_edge("act", "finalize")
            graph.add_edge("finalize", END)
        else:
            graph.add_edge("act", END)
        return graph.compile()

    # --- entry points ---

    def initial_state(self, message: str, history: list[Turn]) -> AgentState:
        messages = [
            {"role": "system", "content": self._system_prompt},
            *history_messages(history),
            {"role": "user", "content": message},
        ]
        return {"messages": messages, "tool_messages": [], "sources": [], "tools_used": [], "answer": ""}

    async def run(self, message: str, history: list[Turn]) -> AgentResult:
        logger.info("[run_agent] START message=%r history_len=%d", message[:200], len(history))
        final = await self._graph.ainvoke(self.initial_state(message, history))
        result = AgentResult(
            answer=final.get("answer") or "",
            sources=tuple(final.get("sources") or []),
            tools_used=tuple(final.get("tools_used") or []),
        )
        logger.info(
            "[run_agent] END tools_used=%s sources=%d answer_len=%d",
            list(result.tools_used), len(result.sources), len(result.answer),
        )
        return result

    async def stream(self, message: str, history: list[Turn]) -> AsyncIterator[Meta | Token]:
        """
        Meta(sources) once tools have run, then the finalize answer as Token fragments.
        Without tool calls the plan reply is emitted as a single Token.
        """
        logger.info("[run_agent_stream] START message=%r history_len=%d", message[:200], len(history))
        state = await self._plan_act_graph.ainvoke(self.initial_state(message, history))
        if not state["first_reply"].tool_calls:
            yield Meta(())
            if state.get("answer"):
                yield Token(state["answer"])
            return
        yield Meta(tuple(state.get("sources") or []))
        async for fragment in self._model.stream(finalize_messages(state)):
            yield Token(fragment)
        logger.info("[run_agent_stream] END tools_used=%s", state.get("tools_used"))
