"""codeagent: coding-agent session engine with an HTTP + SSE control API."""

__version__ = "0.1.0"
