"""
Application errors for clean API error handling.

ValidationError and ConfigurationError fail fast. UpstreamError covers transport
failures of the embedding service, vector index, and reasoning model so the API
can map them to 502/503. Tool errors are recovered locally by the agent loop.
"""


class ChatError(Exception):
    """Base class for ragchat errors. Carries a user-facing message."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(ChatError):
    """Raised when a request is rejected before any remote call (e.g. empty message)."""


class ConfigurationError(ChatError):
    """Raised at startup when required credentials or settings are missing."""


class UpstreamError(ChatError):
    """Raised when the embedding service, vector index, or reasoning model call fails."""


class ServiceUnavailableError(UpstreamError):
    """Raised when a required service is unreachable or misconfigured."""


class InvalidInputError(UpstreamError):
    """Raised when the embedding service rejects its input."""


class ToolError(ChatError):
    """Base class for tool dispatch and tool output problems."""


class UnknownToolError(ToolError):
    """Raised when a tool name is not registered."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown tool: {name}")


class ToolArgumentError(ToolError):
    """Tool-call arguments are not a JSON object. Recovered by running with no arguments."""


class ToolEnvelopeError(ToolError):
    """Tool output is not a result envelope. Recovered by using the raw text with no sources."""
