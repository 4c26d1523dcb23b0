#!/usr/bin/env python3
"""Echo MCP server: a minimal backend for local catalogs and integration tests.

Uses the official FastMCP SDK for standard MCP protocol handling.

Tools:
    echo          - Return the given text
    sleep         - Wait for a number of seconds, then answer
    secret_probe  - Report whether an environment variable is set (never its value)
"""

import asyncio
import os

from mcp.server.fastmcp import FastMCP

mcp = FastMCP("echo")


@mcp.tool()
def echo(text: str) -> str:
    """Return the given text unchanged."""
    return text


@mcp.tool()
async def sleep(seconds: float) -> str:
    """Sleep for the given number of seconds."""
    await asyncio.sleep(seconds)
    return f"slept {seconds}s"


@mcp.tool()
def secret_probe(variable: str) -> dict:
    """Report whether an environment variable is present and its length."""
    value = os.environ.get(variable)
    return {"variable": variable, "present": value is not None, "length": len(value or "")}


if __name__ == "__main__":
    mcp.run()
