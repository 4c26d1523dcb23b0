"""MCP package initialization."""

from gateway_service.mcp.client import BackendConnectionLost, MCPClient, MCPError

__all__ = ["BackendConnectionLost", "MCPClient", "MCPError"]
