"""HTTP + SSE server."""
from .server import CodeAgentServer

__all__ = ["CodeAgentServer"]
