"""Library utilities for the orchestration engine.

This package contains reusable, **parametric** abstractions that work
out of the box and are configured through function arguments, never
by modifying the source. Engine-specific code belongs in yoke.agent.

Modules:
- client: OpenAI-compatible chat backends (OpenAIChatBackend, BackendRegistry)
- errors: Error taxonomy with stable result codes
- hooks: User-configured hook commands (HookRunner)
- mcp: External tool providers over MCP (McpHub)
- metrics: Tool call and token usage tracking
- paths: Project and user directory layout
- responses: Tool result formatting
- retry: Retry decorator for backend calls
- sandbox: Path confinement and bounded shell execution
- tools: Tool definitions (@yoke_tool)
- trace: Console rendering of transcript events
- transcript: Append-only session transcript
"""

from yoke.lib.client import (
    BackendRegistry,
    ChatBackend,
    Completion,
    OpenAIChatBackend,
    ToolSchema,
    WireToolCall,
    from_wire_name,
    parse_completion,
    to_wire_name,
)
from yoke.lib.errors import (
    BackendError,
    CapabilityDeniedError,
    ConfigError,
    ExecutionTimeoutError,
    HookBlockedError,
    InvalidInputError,
    InvariantError,
    NotFoundError,
    PathEscapeError,
    PolicyAskRejectedError,
    PolicyDeniedError,
    RecursionDeniedError,
    ToolError,
    ToolExecutionError,
    YokeError,
)
from yoke.lib.hooks import (
    HookEvent,
    HookMatcher,
    HookResult,
    HookRun,
    HookRunner,
)
from yoke.lib.mcp import (
    McpHub,
    ProviderResult,
    ProviderSpec,
    RemoteTool,
    qualified_name,
    split_qualified_name,
)
from yoke.lib.metrics import CallRecord, MetricsCollector, TokenUsage, ToolMetrics
from yoke.lib.responses import error_code, tool_error, tool_success, truncation_notice
from yoke.lib.retry import is_transient, is_transient_status, with_retry
from yoke.lib.sandbox import PathSandbox, ShellResult, ShellRunner
from yoke.lib.tools import ToolCategory, YokeTool, yoke_tool
from yoke.lib.trace import ConsoleRenderer, format_tool_result, truncate_str
from yoke.lib.transcript import EventKind, Listener, Transcript, TranscriptEvent

__all__ = [
    # Client
    "BackendRegistry",
    "ChatBackend",
    "Completion",
    "OpenAIChatBackend",
    "ToolSchema",
    "WireToolCall",
    "from_wire_name",
    "parse_completion",
    "to_wire_name",
    # Errors
    "BackendError",
    "CapabilityDeniedError",
    "ConfigError",
    "ExecutionTimeoutError",
    "HookBlockedError",
    "InvalidInputError",
    "InvariantError",
    "NotFoundError",
    "PathEscapeError",
    "PolicyAskRejectedError",
    "PolicyDeniedError",
    "RecursionDeniedError",
    "ToolError",
    "ToolExecutionError",
    "YokeError",
    # Hooks
    "HookEvent",
    "HookMatcher",
    "HookResult",
    "HookRun",
    "HookRunner",
    # MCP
    "McpHub",
    "ProviderResult",
    "ProviderSpec",
    "RemoteTool",
    "qualified_name",
    "split_qualified_name",
    # Metrics
    "CallRecord",
    "MetricsCollector",
    "TokenUsage",
    "ToolMetrics",
    # Responses
    "error_code",
    "tool_error",
    "tool_success",
    "truncation_notice",
    # Retry
    "is_transient",
    "is_transient_status",
    "with_retry",
    # Sandbox
    "PathSandbox",
    "ShellResult",
    "ShellRunner",
    # Tools
    "ToolCategory",
    "YokeTool",
    "yoke_tool",
    # Trace
    "ConsoleRenderer",
    "format_tool_result",
    "truncate_str",
    # Transcript
    "EventKind",
    "Listener",
    "Transcript",
    "TranscriptEvent",
]
