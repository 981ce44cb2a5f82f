"""A tiny MCP server over stdio, launched by the MCP integration tests."""

import asyncio

from mcp.server.fastmcp import FastMCP

server = FastMCP("calc")


@server.tool()
def add(a: int, b: int) -> int:
    """Add two integers."""
    return a + b


@server.tool()
def explode() -> str:
    """Always fails."""
    raise ValueError("division by zero")


@server.tool()
async def stall(seconds: float) -> str:
    """Answer after ``seconds``."""
    await asyncio.sleep(seconds)
    return "done"


if __name__ == "__main__":
    server.run()
