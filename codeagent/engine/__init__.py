"""Session engine: prompt loop, step processing, compaction, revert and locks."""
from .config import EngineConfig
from .errors import (
    AgentNotFoundError,
    CodeAgentError,
    CommandNotFoundError,
    ConfigError,
    HttpToolError,
    ModelNotFoundError,
    OutputLengthError,
    PermissionRejectedError,
    ProviderAPIError,
    ProviderAuthError,
    ProviderNotAvailableError,
    SessionBusyError,
    SessionNotFoundError,
    ToolNotFoundError,
)

__all__ = [
    "AgentNotFoundError",
    "CodeAgentError",
    "CommandNotFoundError",
    "ConfigError",
    "EngineConfig",
    "HttpToolError",
    "ModelNotFoundError",
    "OutputLengthError",
    "PermissionRejectedError",
    "ProviderAPIError",
    "ProviderAuthError",
    "ProviderNotAvailableError",
    "SessionBusyError",
    "SessionNotFoundError",
    "ToolNotFoundError",
]
