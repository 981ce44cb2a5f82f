"""Domain models for the conversation engine.

Messages and tool calls are frozen once built: history is append-only and a
message never changes after it is appended. Agent and skill specs are loaded
once and never mutated.

The key types:
1. Message / ToolCallRequest / ToolResult - the conversation history
2. PermissionMode / Decision - policy vocabulary
3. Target - which model on which backend serves a turn
4. AgentSpec / SkillSpec - loaded definitions
5. LoopStatus / SubagentResult / SessionResult - terminal outcomes
"""

import json
from enum import StrEnum
from pathlib import Path
from typing import Annotated, Any, Literal, Self

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from yoke.lib.responses import tool_error, tool_success


# =============================================================================
# PERMISSIONS
# =============================================================================


class PermissionMode(StrEnum):
    """Default classification for tool categories with no matching rule.

    Totally ordered: DEFAULT < ACCEPT_EDITS < BYPASS_PERMISSIONS.
    """

    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS_PERMISSIONS = "bypassPermissions"

    @property
    def rank(self) -> int:
        return MODE_RANK[self]

    @classmethod
    def parse(cls, value: str) -> "PermissionMode":
        """Parse a mode name, accepting the usual spelling variants.

        Raises:
            ValueError: If the name is not a known mode.
        """
        key = value.strip().lower().replace("-", "").replace("_", "")
        try:
            return MODE_ALIASES[key]
        except KeyError:
            raise ValueError(
                f"Unknown permission mode '{value}' "
                f"(expected one of: {', '.join(m.value for m in cls)})"
            ) from None


MODE_RANK: dict[PermissionMode, int] = {
    PermissionMode.DEFAULT: 0,
    PermissionMode.ACCEPT_EDITS: 1,
    PermissionMode.BYPASS_PERMISSIONS: 2,
}

MODE_ALIASES: dict[str, PermissionMode] = {
    "default": PermissionMode.DEFAULT,
    "acceptedits": PermissionMode.ACCEPT_EDITS,
    "bypasspermissions": PermissionMode.BYPASS_PERMISSIONS,
    "bypass": PermissionMode.BYPASS_PERMISSIONS,
}


def min_mode(a: PermissionMode, b: PermissionMode) -> PermissionMode:
    """The less permissive of two modes."""
    return a if a.rank <= b.rank else b


def coerce_mode(value: object) -> object:
    if isinstance(value, str) and not isinstance(value, PermissionMode):
        return PermissionMode.parse(value)
    return value


ModeValue = Annotated[PermissionMode, BeforeValidator(coerce_mode)]


class Decision(StrEnum):
    """Outcome of a policy decision."""

    ALLOW = "allow"
    ASK = "ask"
    DENY = "deny"


# =============================================================================
# CONVERSATION
# =============================================================================


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolCallRequest(BaseModel):
    """A tool invocation requested by the model."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Backend-assigned call id, echoed by the result")
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    arguments_error: str | None = Field(
        default=None, description="Decoding problem with the raw arguments, if any"
    )


class Message(BaseModel):
    """One entry of the conversation history."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str = ""
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_call_id: str | None = Field(
        default=None, description="For tool messages: the request this answers"
    )
    name: str | None = Field(default=None, description="For tool messages: the tool name")

    @property
    def char_count(self) -> int:
        """Size used for the context budget."""
        size = len(self.content)
        for call in self.tool_calls:
            size += len(call.name) + len(json.dumps(call.arguments, default=str))
        return size

    @classmethod
    def system(cls, content: str) -> Self:
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> Self:
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(
        cls, content: str = "", tool_calls: tuple[ToolCallRequest, ...] = ()
    ) -> Self:
        return cls(role=Role.ASSISTANT, content=content, tool_calls=tool_calls)


class ToolResult(BaseModel):
    """Result of one tool call, matched to its request by ``id``."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    content: str
    is_error: bool = False

    @classmethod
    def success(cls, request: ToolCallRequest, content: str) -> Self:
        return cls(id=request.id, name=request.name, content=content)

    @classmethod
    def failure(cls, request: ToolCallRequest, code: str, message: str) -> Self:
        return cls(
            id=request.id,
            name=request.name,
            content=tool_error(code, message),
            is_error=True,
        )

    def to_message(self) -> Message:
        return Message(
            role=Role.TOOL,
            content=self.content,
            tool_call_id=self.id,
            name=self.name,
        )


# =============================================================================
# TARGETS
# =============================================================================


class Target(BaseModel):
    """A model served by a named backend, written ``model@backend``."""

    model_config = ConfigDict(frozen=True)

    model: str
    backend: str

    @classmethod
    def parse(cls, value: str) -> Self:
        """Split ``model@backend`` on the last ``@``.

        Raises:
            ValueError: If either half is empty or there is no ``@``.
        """
        model, sep, backend = value.strip().rpartition("@")
        if not sep or not model or not backend:
            raise ValueError(f"Invalid target '{value}' (expected model@backend)")
        return cls(model=model, backend=backend)

    def __str__(self) -> str:
        return f"{self.model}@{self.backend}"


def coerce_target(value: object) -> object:
    if isinstance(value, str):
        return Target.parse(value)
    return value


TargetValue = Annotated[Target, BeforeValidator(coerce_target)]


# =============================================================================
# AGENTS AND SKILLS
# =============================================================================

DEFAULT_AGENT_TOOLS: frozenset[str] = frozenset({"Read", "Grep", "Glob"})


class AgentSpec(BaseModel):
    """A delegatable subagent definition."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    allowed_tools: frozenset[str] = DEFAULT_AGENT_TOOLS
    permission_mode: ModeValue = PermissionMode.DEFAULT
    max_turns: int = Field(default=8, ge=1)
    system_prompt: str | None = None
    target: TargetValue | None = Field(default=None, description="Explicit model override")
    skills: tuple[str, ...] = Field(default=(), description="Skills activated in the child")
    source: Path | None = None


class SkillSpec(BaseModel):
    """An indexed skill pack. ``allowed_tools=None`` means unrestricted."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    allowed_tools: frozenset[str] | None = None
    instructions: str = ""
    provenance: Literal["project", "user"] = "project"
    path: Path | None = None


# =============================================================================
# OUTCOMES
# =============================================================================


class LoopStatus(StrEnum):
    """Conversation loop states. All but RUNNING/AWAITING_APPROVAL are terminal."""

    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    TURN_LIMIT_EXCEEDED = "turn_limit_exceeded"
    FATAL = "fatal"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {LoopStatus.COMPLETED, LoopStatus.TURN_LIMIT_EXCEEDED, LoopStatus.FATAL}
)


class LoopOutcome(BaseModel):
    """Terminal state of one conversation loop run."""

    status: LoopStatus
    text: str = Field(default="", description="Final assistant text (last one seen)")
    turns: int = 0
    error: str | None = None
    messages: tuple[Message, ...] = ()


class SubagentResult(BaseModel):
    """The only view a parent ever gets of a child run."""

    agent: str
    text: str
    turns: int
    terminal_reason: LoopStatus
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.terminal_reason == LoopStatus.COMPLETED

    def to_content(self) -> str:
        """Tool result content returned to the parent model."""
        return tool_success(
            {
                "agent": self.agent,
                "ok": self.ok,
                "output": {
                    "text": self.text,
                    "turns": self.turns,
                    "terminal_reason": self.terminal_reason.value,
                },
                "error": (
                    {"code": "subagent_error", "message": self.error}
                    if self.error
                    else None
                ),
            }
        )


class SessionResult(BaseModel):
    """Complete result of a top-level run, including metrics."""

    session_id: str
    status: LoopStatus
    text: str = ""
    turns: int = 0
    error: str | None = None
    target: str | None = None
    transcript_path: Path | None = None
    metrics: dict[str, Any] | None = None
