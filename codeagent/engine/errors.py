"""Exception hierarchy for the session engine.

Raised exceptions are for control flow between components. Failures that
end a model turn are stored on the assistant message as a MessageError
(see codeagent.shared.models.message) instead of propagating.
"""
from __future__ import annotations


class CodeAgentError(Exception):
    """Base exception for all engine errors."""


class SessionNotFoundError(CodeAgentError):
    """Session, message or part does not exist in the store."""
    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class SessionBusyError(CodeAgentError):
    """Session already has a turn in flight."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} is busy")


class ModelNotFoundError(CodeAgentError):
    """Requested provider/model pair is not configured."""
    def __init__(self, provider_id: str, model_id: str):
        self.provider_id = provider_id
        self.model_id = model_id
        super().__init__(f"Model not found: {provider_id}/{model_id}")


class ProviderNotAvailableError(CodeAgentError):
    """Provider is configured but cannot be used (missing key, bad type)."""
    def __init__(self, provider_id: str, reason: str):
        self.provider_id = provider_id
        self.reason = reason
        super().__init__(f"Provider {provider_id} unavailable: {reason}")


class ProviderAuthError(ProviderNotAvailableError):
    """Provider credentials could not be loaded."""
    def __init__(self, provider_id: str, reason: str = "missing API key"):
        super().__init__(provider_id, reason)


class ProviderAPIError(CodeAgentError):
    """Provider endpoint returned an error response."""
    def __init__(self, provider_id: str, status: int, body: str):
        self.provider_id = provider_id
        self.status = status
        self.body = body
        super().__init__(f"{provider_id} API error {status}: {body[:500]}")


class OutputLengthError(CodeAgentError):
    """Model stopped because it hit its output token limit."""


class AgentNotFoundError(CodeAgentError):
    """Named agent does not exist."""
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Agent not found: {name}")


class CommandNotFoundError(CodeAgentError):
    """Named command template does not exist."""
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Command not found: {name}")


class PermissionRejectedError(CodeAgentError):
    """User or policy rejected a tool permission request."""
    def __init__(
        self,
        session_id: str,
        permission_type: str,
        call_id: str | None = None,
        metadata: dict | None = None,
    ):
        self.session_id = session_id
        self.permission_type = permission_type
        self.call_id = call_id
        self.metadata = metadata or {}
        super().__init__(
            "The user rejected permission to use this specific tool call. "
            "You may try again with different parameters."
        )


class ToolNotFoundError(CodeAgentError):
    """Tool id is not registered."""
    def __init__(self, tool_id: str):
        self.tool_id = tool_id
        super().__init__(f"Tool not found: {tool_id}")


class HttpToolError(CodeAgentError):
    """HTTP tool callback returned a non-success status."""
    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        super().__init__(f"HTTP tool callback failed: {status} {body}")


class ConfigError(CodeAgentError):
    """Configuration file is malformed."""
