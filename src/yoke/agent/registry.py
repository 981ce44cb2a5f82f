"""Tool registry and capability-scoped dispatch.

The registry holds the built-in tools and, through an ``McpHub``, the
tools of external servers. ``dispatch`` is the single path from a model's
tool call to a result. Each step short-circuits on failure:

1. recursion guard - a loop that may not delegate gets ``recursion_denied``
   for the delegation tool
2. capability - the tool must be in the loop's effective tool set
3. input - arguments must decode and validate
4. sandbox - every path argument must resolve inside the project root,
   under every permission mode
5. PreToolUse hooks - may block the call or rewrite its arguments, which
   then go through the input and sandbox checks again
6. policy - deny, allow, or ask the approver, on the final arguments
7. execution - under the tool's own resource limits

PostToolUse hooks see every result. Every failure along the way, including
an unexpected exception from a tool or an external server, becomes an
error ``ToolResult``; only an ``InvariantError`` escapes.
"""

import logging
import time
from collections.abc import Collection
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from yoke.agent.models import Decision, LoopStatus, ToolCallRequest, ToolResult
from yoke.agent.policy import Invocation, evaluate
from yoke.lib.client import ToolSchema
from yoke.lib.errors import (
    CapabilityDeniedError,
    HookBlockedError,
    InvalidInputError,
    InvariantError,
    NotFoundError,
    PolicyAskRejectedError,
    PolicyDeniedError,
    RecursionDeniedError,
    ToolExecutionError,
    YokeError,
)
from yoke.lib.hooks import HookEvent
from yoke.lib.mcp import McpHub, RemoteTool
from yoke.lib.tools import ToolCategory, YokeTool
from yoke.lib.transcript import EventKind

if TYPE_CHECKING:
    from yoke.agent.context import ToolContext

logger = logging.getLogger(__name__)

DELEGATION_TOOL = "Task"


class ToolRegistry(BaseModel):
    """Built-in tools plus external server tools."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    tools: dict[str, YokeTool] = Field(default_factory=dict)
    hub: McpHub | None = None

    def register(self, *tools: YokeTool) -> None:
        for tool in tools:
            if tool.name in self.tools:
                raise ValueError(f"Tool '{tool.name}' is already registered")
            self.tools[tool.name] = tool

    def remote_tools(self) -> dict[str, RemoteTool]:
        if self.hub is None:
            return {}
        return {t.qualified_name: t for t in self.hub.tools()}

    def names(self) -> frozenset[str]:
        return frozenset(self.tools) | frozenset(self.remote_tools())

    def category_of(self, name: str) -> ToolCategory:
        """Built-ins declare a category; everything else is execution."""
        tool = self.tools.get(name)
        return tool.category if tool is not None else ToolCategory.SHELL

    def schemas(self, names: Collection[str]) -> list[ToolSchema]:
        """Schemas for ``names``: built-ins in registration order, then external tools by name."""
        schemas = [
            ToolSchema(name=t.name, description=t.description, parameters=t.parameters)
            for t in self.tools.values()
            if t.name in names
        ]
        remote = self.remote_tools()
        schemas.extend(
            ToolSchema(
                name=name,
                description=remote[name].description,
                parameters=remote[name].input_schema,
            )
            for name in sorted(remote)
            if name in names
        )
        return schemas

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def dispatch(self, request: ToolCallRequest, ctx: "ToolContext") -> ToolResult:
        """Run one tool call through every guard and return exactly one result.

        Raises:
            InvariantError: Only on an internal guard failure.
        """
        ctx.transcript.append(
            EventKind.TOOL_CALL,
            id=request.id,
            name=request.name,
            arguments=request.arguments,
        )
        start = time.perf_counter()
        with ctx.metrics.track(request.name) as call:
            try:
                content = await self._dispatch(request, ctx)
                result = ToolResult.success(request, content)
            except InvariantError:
                raise
            except YokeError as e:
                logger.info("%s failed [%s]: %s", request.name, e.code, e.message)
                result = ToolResult.failure(request, e.code, e.message)
            except Exception as e:
                logger.exception("Tool %s raised", request.name)
                error = ToolExecutionError(f"{request.name} failed: {e}")
                result = ToolResult.failure(request, error.code, error.message)
            call.is_error = result.is_error

        ctx.transcript.append(
            EventKind.TOOL_RESULT,
            id=result.id,
            name=result.name,
            is_error=result.is_error,
            content=result.content,
        )
        await ctx.loop.run_hooks(
            HookEvent.POST_TOOL_USE,
            {
                "tool_name": request.name,
                "tool_input": request.arguments,
                "tool_response": result.content,
                "is_error": result.is_error,
                "duration_ms": round((time.perf_counter() - start) * 1000),
            },
            tool=request.name,
        )
        return result

    async def _dispatch(self, request: ToolCallRequest, ctx: "ToolContext") -> str:
        if request.name == DELEGATION_TOOL and not ctx.state.may_delegate:
            raise RecursionDeniedError()
        if request.name not in ctx.effective_tools:
            raise CapabilityDeniedError(request.name)
        if request.arguments_error:
            raise InvalidInputError(f"Invalid input for {request.name}: {request.arguments_error}")

        tool = self.tools.get(request.name)
        if tool is None:
            return await self._call_remote(request, ctx)

        params = tool.parse(request.arguments)
        for path in tool.path_arguments(params):
            ctx.sandbox.resolve(path)

        arguments = await self.pre_tool_use(request.name, request.arguments, ctx)
        if arguments is not request.arguments:
            params = tool.parse(arguments)
            for path in tool.path_arguments(params):
                ctx.sandbox.resolve(path)
        await self.authorize(Invocation.of(tool.name, arguments, tool.category), ctx)
        return await tool.run(params, ctx)

    async def _call_remote(self, request: ToolCallRequest, ctx: "ToolContext") -> str:
        if self.hub is None or request.name not in self.remote_tools():
            raise NotFoundError(f"Unknown tool '{request.name}'")
        arguments = await self.pre_tool_use(request.name, request.arguments, ctx)
        await self.authorize(Invocation.of(request.name, arguments, ToolCategory.SHELL), ctx)
        result = await self.hub.call_tool(request.name, arguments)
        if result.is_error:
            raise ToolExecutionError(result.text or f"{request.name} reported an error")
        return result.text

    async def pre_tool_use(
        self, name: str, arguments: dict[str, Any], ctx: "ToolContext"
    ) -> dict[str, Any]:
        """Run PreToolUse hooks. Returns ``arguments`` itself unless a hook rewrote them.

        Raises:
            HookBlockedError: A hook refused the call.
        """
        run = await ctx.loop.run_hooks(
            HookEvent.PRE_TOOL_USE, {"tool_name": name, "tool_input": arguments}, tool=name
        )
        if run.blocked:
            raise HookBlockedError(name, run.reason)
        updated = run.updated_input
        if updated is None:
            return arguments
        logger.info("Hook rewrote the input of %s", name)
        return updated

    async def authorize(self, invocation: Invocation, ctx: "ToolContext") -> None:
        """Apply the policy verdict, asking the approver when needed.

        Raises:
            PolicyDeniedError: A deny rule or the network floor matched.
            PolicyAskRejectedError: The approver declined an Ask.
        """
        verdict = evaluate(ctx.state.mode, ctx.loop.rules, invocation)
        resolution: str | None = None
        approver: str | None = None

        match verdict.decision:
            case Decision.ASK:
                ctx.state.status = LoopStatus.AWAITING_APPROVAL
                try:
                    approved = await ctx.loop.approver.approve(invocation)
                finally:
                    ctx.state.status = LoopStatus.RUNNING
                approver = ctx.loop.approver.name
                resolution = "approved" if approved else "rejected"
            case Decision.ALLOW | Decision.DENY:
                approved = verdict.decision == Decision.ALLOW

        ctx.transcript.append(
            EventKind.PERMISSION_DECISION,
            tool=invocation.tool,
            argument=invocation.argument,
            category=invocation.category.value,
            mode=ctx.state.mode.value,
            decision=verdict.decision.value,
            rule=verdict.rule,
            resolution=resolution,
            approver=approver,
        )

        if verdict.decision == Decision.DENY:
            raise PolicyDeniedError(invocation.tool, verdict.rule)
        if not approved:
            raise PolicyAskRejectedError(invocation.tool)
