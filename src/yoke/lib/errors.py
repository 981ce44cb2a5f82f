"""Error taxonomy for tool dispatch and the conversation loop.

Every error carries a stable snake_case ``code`` that is surfaced to the
model inside an error tool result, so the model can tell a sandbox
violation from a human rejection from a plain tool failure.

Per-call errors (everything except ``BackendError`` and ``InvariantError``)
are caught at the dispatch boundary and converted into error results;
they never abort a conversation.

Examples:
    Raise and inspect a sandbox violation::

        >>> err = PathEscapeError("../../etc/passwd", root=Path("/work"))
        >>> err.code
        'path_escape'
        >>> err.to_payload()
        {'error': {'code': 'path_escape', 'message': "Path '../../etc/passwd' escapes project root /work"}}
"""

from pathlib import Path
from typing import Any


class YokeError(Exception):
    """Base class for all engine errors."""

    code: str = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, Any]:
        """Render as the ``{"error": {...}}`` shape the model sees."""
        return {"error": {"code": self.code, "message": self.message}}


# -----------------------------------------------------------------------------
# Per-call errors
# -----------------------------------------------------------------------------


class PathEscapeError(YokeError):
    """A filesystem argument resolved outside the project root."""

    code = "path_escape"

    def __init__(self, path: str | Path, *, root: Path) -> None:
        super().__init__(f"Path '{path}' escapes project root {root}")
        self.path = str(path)
        self.root = root


class CapabilityDeniedError(YokeError):
    """The tool is not in the caller's effective tool set."""

    code = "capability_denied"

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Tool '{tool_name}' is not available in this context")
        self.tool_name = tool_name


class PolicyDeniedError(YokeError):
    """A deny rule (or the mode) refused the invocation."""

    code = "permission_denied"

    def __init__(self, tool_name: str, rule: str | None = None) -> None:
        suffix = f" (rule: {rule})" if rule else ""
        super().__init__(f"{tool_name} denied by policy{suffix}")
        self.tool_name = tool_name
        self.rule = rule


class PolicyAskRejectedError(YokeError):
    """A human (or the non-interactive approver) declined an Ask."""

    code = "permission_rejected"

    def __init__(self, tool_name: str) -> None:
        super().__init__(
            f"{tool_name} requires approval and the request was declined"
        )
        self.tool_name = tool_name


class RecursionDeniedError(YokeError):
    """A subagent tried to delegate further."""

    code = "recursion_denied"

    def __init__(self) -> None:
        super().__init__("Subagents cannot delegate to other subagents")


class ToolExecutionError(YokeError):
    """The tool itself failed; the model may retry with other arguments."""

    code = "tool_error"


class ToolError(ToolExecutionError):
    """Raise in a tool handler to return an error result."""


class InvalidInputError(ToolExecutionError):
    """Tool arguments failed validation."""

    code = "invalid_input"


class HookBlockedError(YokeError):
    """A configured hook refused the invocation."""

    code = "hook_blocked"

    def __init__(self, tool_name: str, reason: str | None = None) -> None:
        super().__init__(f"{tool_name} blocked by hook: {reason or 'no reason given'}")
        self.tool_name = tool_name
        self.reason = reason


class ExecutionTimeoutError(YokeError):
    """Execution exceeded its wall-clock budget and was killed."""

    code = "timeout"

    def __init__(self, what: str, seconds: float) -> None:
        super().__init__(f"{what} timed out after {seconds:g}s and was terminated")
        self.seconds = seconds


class NotFoundError(YokeError):
    """A named skill, agent, tool or backend does not exist."""

    code = "not_found"


# -----------------------------------------------------------------------------
# Loop-level errors
# -----------------------------------------------------------------------------


class BackendError(YokeError):
    """The model backend failed.

    ``transient`` errors (network, rate limit, 5xx) are retried with backoff;
    permanent ones (auth, invalid request) surface immediately.
    """

    code = "backend_error"

    def __init__(
        self,
        message: str,
        *,
        transient: bool,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


class InvariantError(YokeError):
    """An internal guard failed; fatal to the whole turn."""

    code = "invariant_violation"


class ConfigError(YokeError):
    """Configuration failed validation.

    Carries every ``(field, message)`` problem, not just the first.
    """

    code = "config_error"

    def __init__(self, problems: list[tuple[str, str]]) -> None:
        lines = "\n".join(f"  {field}: {message}" for field, message in problems)
        super().__init__(f"Invalid configuration:\n{lines}")
        self.problems = problems
