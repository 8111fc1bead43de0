"""
Minimal MCP-style tool server: exposes the agent's tool registry (rag_query,
web_search) through a standardized HTTP interface so external agents can list
and call the same tools the agent loop uses.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from ragchat.agent.tools import ToolRegistry, parse_envelope
from ragchat.api.deps import get_tool_registry
from ragchat.core.errors import ToolEnvelopeError, UnknownToolError, UpstreamError
from ragchat.schemas.chat import ToolCallBody

logger = logging.getLogger(__name__)

mcp_router = APIRouter(tags=["mcp"])


@mcp_router.get(
    "/tools",
    summary="MCP tool discovery",
    description="List tool definitions (name, description, JSON schema of the input) in registration order.",
)
def mcp_list_tools(registry: ToolRegistry = Depends(get_tool_registry)) -> dict[str, list[dict[str, Any]]]:
    return {
        "tools": [
            {"name": d.name, "description": d.description, "input_schema": d.parameters}
            for d in registry.definitions()
        ]
    }


@mcp_router.post(
    "/tools/{name}",
    summary="MCP tool call",
    description="Execute a registered tool. Returns its result envelope: kind, content, sources.",
)
async def mcp_call_tool(
    name: str, body: ToolCallBody, registry: ToolRegistry = Depends(get_tool_registry)
) -> dict[str, Any]:
    logger.info("MCP tool called: %s", name)
    try:
        output = await registry.execute(name, body.arguments)
    except UnknownToolError as e:
        raise HTTPException(status_code=404, detail=e.message) from e
    except UpstreamError as e:
        raise HTTPException(status_code=502, detail=e.message) from e
    try:
        envelope = parse_envelope(output)
    except ToolEnvelopeError:
        return {"kind": None, "content": output, "sources": []}
    return {
        "kind": envelope.kind,
        "content": envelope.content,
        "sources": [s.to_dict() for s in envelope.sources],
    }
