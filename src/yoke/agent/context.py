"""Execution context for the conversation loop and tool dispatch.

All mutable process-wide state lives in explicitly owned objects passed
down the call chain, never in module globals:

1. ``Session`` - owned by the top-level loop: configuration, sandbox, tool
   registry, backends, discovered agents, skills and custom commands,
   hooks, transcript, metrics and the Ask approver.
2. ``LoopContext`` - what one conversation loop runs with. The top-level
   context shares the session's rules and skills; a subagent's context is
   a clamped snapshot taken at spawn time.
3. ``ConversationState`` - messages, size, turn counter, status, mode and
   target of one loop.
4. ``ToolContext`` - handed to dispatch and tool handlers for one call.
"""

import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from yoke.agent.commands import CommandIndex
from yoke.agent.config import YokeConfig
from yoke.agent.models import (
    AgentSpec,
    LoopStatus,
    Message,
    PermissionMode,
    Role,
    Target,
    ToolCallRequest,
    ToolResult,
)
from yoke.agent.policy import Approver, AutoApprover, RuleSet
from yoke.agent.registry import ToolRegistry
from yoke.agent.routing import AgentIdentity, Resolution, resolve
from yoke.agent.skills import ActiveSkillSet, SkillIndex
from yoke.lib.client import BackendRegistry
from yoke.lib.errors import InvariantError, NotFoundError
from yoke.lib.hooks import HookEvent, HookRun, HookRunner
from yoke.lib.metrics import MetricsCollector
from yoke.lib.sandbox import PathSandbox, ShellRunner
from yoke.lib.transcript import EventKind, Transcript

logger = logging.getLogger(__name__)


# =============================================================================
# CONVERSATION STATE
# =============================================================================


class ConversationState(BaseModel):
    """Mutable state of one conversation loop.

    ``messages`` only grows, except when compaction replaces a span with a
    summary. ``may_delegate`` is fixed at construction.
    """

    messages: list[Message] = Field(default_factory=list)
    char_total: int = 0
    turns: int = 0
    status: LoopStatus = LoopStatus.RUNNING
    mode: PermissionMode = PermissionMode.DEFAULT
    target: Target | None = None
    may_delegate: bool = Field(default=True, frozen=True)
    prompt_tools: frozenset[str] | None = Field(
        default=None, description="Tool restriction for the current run only (custom commands)"
    )

    def append(self, message: Message) -> None:
        self.messages.append(message)
        self.char_total += message.char_count

    def replace_span(self, start: int, end: int, replacement: Message) -> None:
        """Replace ``messages[start:end]`` with one message.

        Raises:
            InvariantError: If the span is empty or out of range.
        """
        if not 0 <= start < end <= len(self.messages):
            raise InvariantError(
                f"Invalid span [{start}, {end}) over {len(self.messages)} messages"
            )
        self.messages[start:end] = [replacement]
        self.char_total = sum(m.char_count for m in self.messages)

    def unanswered_calls(self) -> list[ToolCallRequest]:
        """Tool calls that have no result message yet, in emission order."""
        answered = {m.tool_call_id for m in self.messages if m.role == Role.TOOL}
        return [
            call
            for m in self.messages
            if m.role == Role.ASSISTANT
            for call in m.tool_calls
            if call.id not in answered
        ]

    def close_unanswered(self, code: str, message: str) -> int:
        """Give every unanswered call exactly one error result.

        Used after an interrupted step so the history stays well-formed for
        the next request. Returns the number of results appended.
        """
        pending = self.unanswered_calls()
        for call in pending:
            self.append(ToolResult.failure(call, code, message).to_message())
        return len(pending)

    def last_assistant_text(self) -> str:
        for message in reversed(self.messages):
            if message.role == Role.ASSISTANT and message.content:
                return message.content
        return ""

    def clear(self) -> None:
        """Forget the conversation; mode, target and delegation flag stay."""
        self.messages = []
        self.char_total = 0
        self.turns = 0
        self.status = LoopStatus.RUNNING


# =============================================================================
# SESSION
# =============================================================================


class Session(BaseModel):
    """Process-wide state. Mutated only by the top-level loop and the REPL."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    session_id: str
    config: YokeConfig
    sandbox: PathSandbox
    registry: ToolRegistry
    backends: BackendRegistry
    agents: dict[str, AgentSpec] = Field(default_factory=dict)
    skill_index: SkillIndex = Field(default_factory=SkillIndex)
    transcript: Transcript
    metrics: MetricsCollector = Field(default_factory=MetricsCollector)
    approver: Approver
    rules: RuleSet = Field(default_factory=RuleSet)
    hooks: HookRunner = Field(default_factory=HookRunner)
    commands: CommandIndex = Field(default_factory=CommandIndex)
    target_override: Target | None = Field(
        default=None, description="Explicit target from --target or /target"
    )

    @property
    def project_root(self) -> Path:
        return self.sandbox.root

    @property
    def auto_approve(self) -> bool:
        return isinstance(self.approver, AutoApprover)

    def get_agent(self, name: str) -> AgentSpec:
        """Look up a subagent spec.

        Raises:
            NotFoundError: Listing the available agents.
        """
        try:
            return self.agents[name]
        except KeyError:
            available = ", ".join(sorted(self.agents)) or "none"
            raise NotFoundError(
                f"Agent '{name}' not found (available agents: {available})"
            ) from None

    async def run_hooks(
        self,
        event: HookEvent,
        payload: dict[str, Any],
        transcript: Transcript,
        *,
        tool: str | None = None,
    ) -> HookRun:
        """Run the hooks for ``event`` and record each one that ran."""
        if not self.hooks.has(event):
            return HookRun(event=event)
        run = await self.hooks.run(event, payload, tool=tool)
        for result in run.results:
            transcript.append(
                EventKind.HOOK,
                event=event.value,
                hook=result.hook,
                exit_code=result.exit_code,
                blocked=result.blocked,
                reason=result.reason,
                error=result.error,
            )
        return run

    def shell(self) -> ShellRunner:
        """A shell runner bounded by the configured limits."""
        return ShellRunner(
            cwd=self.sandbox.root,
            timeout_seconds=self.config.bash.timeout_ms / 1000,
            max_output_bytes=self.config.bash.max_output_bytes,
        )


# =============================================================================
# LOOP CONTEXT
# =============================================================================


class LoopContext(BaseModel):
    """Everything one conversation loop runs with."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    session: Session
    skills: ActiveSkillSet
    transcript: Transcript
    metrics: MetricsCollector
    approver: Approver
    rules: RuleSet
    max_turns: int = Field(ge=1)
    system_prompt: str
    agent: AgentSpec | None = Field(default=None, description="Set for subagent loops")
    tool_restriction: frozenset[str] | None = Field(
        default=None, description="Subagent tool set; None = no restriction"
    )
    fallback_target: Target | None = Field(
        default=None, description="Parent's current target, used as a subagent's default"
    )

    @property
    def config(self) -> YokeConfig:
        return self.session.config

    @property
    def is_subagent(self) -> bool:
        return self.agent is not None

    @property
    def identity(self) -> AgentIdentity | None:
        if self.agent is None:
            return None
        return AgentIdentity(name=self.agent.name, description=self.agent.description)

    def resolve_target(self) -> Resolution:
        """Target for the next turn: explicit > route > builtin > default."""
        explicit = self.agent.target if self.agent else self.session.target_override
        return resolve(
            explicit,
            self.identity,
            self.config.routes,
            self.fallback_target or self.config.default_target,
        )

    def full_system_prompt(self) -> str:
        """Base prompt plus the instructions of active skills."""
        sections = self.skills.format_for_prompt()
        if not sections:
            return self.system_prompt
        return f"{self.system_prompt}\n\n---\n\n{sections}"

    async def run_hooks(
        self, event: HookEvent, payload: dict[str, Any], *, tool: str | None = None
    ) -> HookRun:
        """Run the session's hooks for ``event`` into this loop's transcript."""
        if self.agent is not None:
            payload = {"agent": self.agent.name, **payload}
        return await self.session.run_hooks(event, payload, self.transcript, tool=tool)


class ToolContext(BaseModel):
    """Context for dispatching one tool call."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    loop: LoopContext
    state: ConversationState
    effective_tools: frozenset[str]

    @property
    def session(self) -> Session:
        return self.loop.session

    @property
    def sandbox(self) -> PathSandbox:
        return self.loop.session.sandbox

    @property
    def transcript(self) -> Transcript:
        return self.loop.transcript

    @property
    def metrics(self) -> MetricsCollector:
        return self.loop.metrics

    @property
    def skills(self) -> ActiveSkillSet:
        return self.loop.skills
