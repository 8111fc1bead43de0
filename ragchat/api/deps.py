"""FastAPI dependencies: hand the startup-built services to route handlers."""

from fastapi import Request

from ragchat.agent.tools import ToolRegistry
from ragchat.services.chat_service import ChatService


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.services.chat


def get_tool_registry(request: Request) -> ToolRegistry:
    return request.app.state.services.registry
