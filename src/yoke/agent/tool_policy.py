"""Per-turn tool availability.

The effective tool set of a turn is the intersection of these sources:

1. the registry (built-ins plus connected external tools)
2. the active skills' allowed-tools intersection, if any skill restricts
3. the subagent restriction, for child loops
4. the allowed-tools of the custom command that produced the current
   prompt, for that run only

Orchestration tools (Task, ActivateSkill) are not capabilities and are
never removed by skill restrictions. The delegation tool is removed from
every loop that may not delegate.

Usage:
    from yoke.agent.tool_policy import ToolPolicy

    policy = ToolPolicy.for_loop(ctx, state)
    schemas = registry.schemas(policy.effective_tools)
"""

from typing import TYPE_CHECKING, Self

from pydantic import BaseModel, ConfigDict, PrivateAttr, model_validator

from yoke.agent.registry import DELEGATION_TOOL

if TYPE_CHECKING:
    from yoke.agent.context import ConversationState, LoopContext


# =============================================================================
# TOOL SETS
# =============================================================================

FILE_TOOLS: frozenset[str] = frozenset({"Read", "Write", "Edit", "Glob", "Grep"})

ORCHESTRATION_TOOLS: frozenset[str] = frozenset({DELEGATION_TOOL, "ActivateSkill"})

BUILTIN_TOOLS: frozenset[str] = FILE_TOOLS | {"Bash"} | ORCHESTRATION_TOOLS


class ToolPolicy(BaseModel):
    """Computes the effective tool set for one turn."""

    model_config = ConfigDict(frozen=True)

    available: frozenset[str]
    skill_allowed: frozenset[str] | None = None
    restriction: frozenset[str] | None = None
    prompt_allowed: frozenset[str] | None = None
    may_delegate: bool = True

    _effective: frozenset[str] = PrivateAttr(default_factory=frozenset)

    @model_validator(mode="after")
    def compute_effective_tools(self) -> Self:
        tools = set(self.available)
        if self.skill_allowed is not None:
            tools &= self.skill_allowed | ORCHESTRATION_TOOLS
        if self.restriction is not None:
            tools &= self.restriction
        if self.prompt_allowed is not None:
            tools &= self.prompt_allowed
        if not self.may_delegate:
            tools.discard(DELEGATION_TOOL)
        self._effective = frozenset(tools)
        return self

    @classmethod
    def for_loop(cls, ctx: "LoopContext", state: "ConversationState") -> Self:
        """Policy for the next turn of the loop described by ``ctx``."""
        return cls(
            available=ctx.session.registry.names(),
            skill_allowed=ctx.skills.effective_allowed_tools(),
            restriction=ctx.tool_restriction,
            prompt_allowed=state.prompt_tools,
            may_delegate=state.may_delegate,
        )

    @property
    def effective_tools(self) -> frozenset[str]:
        return self._effective

    def get_allowed_tools(self) -> list[str]:
        """Sorted list of tool names that are allowed."""
        return sorted(self._effective)

    def is_tool_available(self, tool_name: str) -> bool:
        return tool_name in self._effective
