"""Tool contracts, registry and built-in tools."""
