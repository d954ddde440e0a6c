"""markgate: OAuth 2.1 gateway between MCP clients and a bookmark provider."""

__version__ = "0.1.0"
