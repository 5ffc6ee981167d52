"""Relay inline review comments from the reviewer UI to coding-agent MCP clients."""

__version__ = "0.1.0"
