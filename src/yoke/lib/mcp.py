"""External tool providers over MCP.

Connects to MCP servers launched as subprocesses (stdio transport), lists
their tools and calls them. Tool names are namespaced by server as
``mcp.<server>.<tool>`` so they can never collide with built-ins.

Each server gets its own ``AsyncExitStack``, handed to the hub's stack only
once the server is up, so a failed start is torn down on its own. Use the
hub as an async context manager so servers are shut down with the session.

Examples:
    Connect, list and call::

        >>> specs = [ProviderSpec(name="calc", command="calc-server")]
        >>> async with McpHub() as hub:
        ...     await hub.connect_all(specs)
        ...     [t.qualified_name for t in hub.tools()]
        ['mcp.calc.add', 'mcp.calc.multiply']
        ...     result = await hub.call_tool("mcp.calc.add", {"a": 2, "b": 3})
        ...     result.text
        '5'
"""

import asyncio
import logging
from contextlib import AsyncExitStack
from pathlib import Path
from types import TracebackType
from typing import Any, Self

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from mcp.types import TextContent
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from yoke.lib.errors import ExecutionTimeoutError, NotFoundError, ToolExecutionError

logger = logging.getLogger(__name__)

NAMESPACE = "mcp"


def qualified_name(server: str, tool: str) -> str:
    return f"{NAMESPACE}.{server}.{tool}"


def split_qualified_name(name: str) -> tuple[str, str]:
    """``mcp.server.tool`` -> (server, tool). Tool names may contain dots."""
    prefix, _, rest = name.partition(".")
    server, _, tool = rest.partition(".")
    if prefix != NAMESPACE or not server or not tool:
        raise NotFoundError(f"'{name}' is not an external tool name")
    return server, tool


class ProviderSpec(BaseModel):
    """How to launch one stdio MCP server."""

    model_config = ConfigDict(frozen=True)

    name: str
    command: str
    args: tuple[str, ...] = ()
    env: dict[str, str] = Field(default_factory=dict)
    cwd: Path | None = None
    timeout_seconds: float = 30.0


class RemoteTool(BaseModel):
    """A tool advertised by an external server."""

    model_config = ConfigDict(frozen=True)

    server: str
    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object"})

    @property
    def qualified_name(self) -> str:
        return qualified_name(self.server, self.name)


class ProviderResult(BaseModel):
    """Text content of a tool call and the server's error flag."""

    text: str
    is_error: bool = False


class ProviderHandle(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    spec: ProviderSpec
    session: ClientSession
    tools: list[RemoteTool] = Field(default_factory=list)


class McpHub(BaseModel):
    """Connections to every configured external tool server."""

    _stack: AsyncExitStack = PrivateAttr(default_factory=AsyncExitStack)
    _handles: dict[str, ProviderHandle] = PrivateAttr(default_factory=dict)

    async def __aenter__(self) -> Self:
        await self._stack.__aenter__()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.disconnect()

    async def connect(self, spec: ProviderSpec) -> ProviderHandle:
        """Launch a server, initialize the session and list its tools.

        On failure the server's own resources are released before the
        error propagates; nothing is left on the hub.
        """
        stack = AsyncExitStack()
        try:
            handle = await self.open(spec, stack)
        except BaseException:
            await stack.aclose()
            raise
        await self._stack.enter_async_context(stack)
        self._handles[spec.name] = handle
        logger.info("Connected to MCP server %s (%d tools)", spec.name, len(handle.tools))
        return handle

    async def open(self, spec: ProviderSpec, stack: AsyncExitStack) -> ProviderHandle:
        params = StdioServerParameters(
            command=spec.command,
            args=list(spec.args),
            env=spec.env or None,
            cwd=spec.cwd,
        )
        read, write = await stack.enter_async_context(stdio_client(params))
        session = await stack.enter_async_context(ClientSession(read, write))
        await asyncio.wait_for(session.initialize(), timeout=spec.timeout_seconds)
        listed = await asyncio.wait_for(session.list_tools(), timeout=spec.timeout_seconds)
        return ProviderHandle(
            spec=spec,
            session=session,
            tools=[
                RemoteTool(
                    server=spec.name,
                    name=t.name,
                    description=t.description or "",
                    input_schema=t.inputSchema or {"type": "object"},
                )
                for t in listed.tools
            ],
        )

    async def connect_all(self, specs: list[ProviderSpec]) -> list[str]:
        """Connect every server; a server that fails to start is logged and skipped.

        Returns:
            Names of servers that failed to connect.
        """
        failed: list[str] = []
        for spec in specs:
            try:
                await self.connect(spec)
            except Exception as e:
                logger.warning("MCP server %s failed to start: %s", spec.name, e)
                failed.append(spec.name)
        return failed

    def tools(self) -> list[RemoteTool]:
        return [t for h in self._handles.values() for t in h.tools]

    def servers(self) -> list[str]:
        return sorted(self._handles)

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ProviderResult:
        """Call ``mcp.<server>.<tool>`` and collect its text content.

        Raises:
            NotFoundError: Unknown server.
            ExecutionTimeoutError: The server didn't answer within its timeout.
            ToolExecutionError: Any other failure of the call.
        """
        server, tool = split_qualified_name(name)
        handle = self._handles.get(server)
        if handle is None:
            raise NotFoundError(f"MCP server '{server}' is not connected")
        try:
            result = await asyncio.wait_for(
                handle.session.call_tool(tool, arguments),
                timeout=handle.spec.timeout_seconds,
            )
        except TimeoutError:
            raise ExecutionTimeoutError(f"MCP tool {name}", handle.spec.timeout_seconds) from None
        except McpError as e:
            raise ToolExecutionError(f"MCP tool {name} failed: {e.error.message}") from e
        except Exception as e:
            logger.warning("MCP tool %s raised %s", name, type(e).__name__)
            raise ToolExecutionError(f"MCP tool {name} failed: {e}") from e

        text = "\n".join(
            block.text for block in result.content if isinstance(block, TextContent)
        )
        return ProviderResult(text=text, is_error=bool(result.isError))

    async def disconnect(self) -> None:
        """Shut down every server."""
        self._handles.clear()
        await self._stack.aclose()
