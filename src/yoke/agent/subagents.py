"""Subagent definitions and the delegation runtime.

Agents are TOML files in the agent discovery roots (project first, then
user; the first definition of a name wins)::

    # .yoke/agents/reviewer.toml
    name = "reviewer"
    description = "Reviews diffs for bugs and style issues"
    allowed_tools = ["Read", "Grep", "Glob", "Bash"]
    permission_mode = "default"
    max_turns = 6
    system_prompt = "You are a careful code reviewer..."
    target = "claude-sonnet-4-5@claude"
    skills = ["python-style"]

A child loop is a clamped snapshot of its parent:

- mode = min(spec mode, parent mode), so delegation never escalates
- tools = spec tools ∩ parent's effective tools, never including Task
- rules, approver and skill index are the parent's, fixed at spawn time
- its own skill set, seeded from the agent spec; the parent's is untouched
- may_delegate = False, so delegation depth is at most one
- its own turn ceiling (the agent spec's ``max_turns``)

The parent blocks until the child is terminal and only ever sees the
condensed ``SubagentResult``.
"""

import logging
import tomllib
from collections.abc import Iterable
from pathlib import Path

from pydantic import ValidationError

from yoke.agent.context import ConversationState, LoopContext, ToolContext
from yoke.agent.core import ConversationLoop
from yoke.agent.models import AgentSpec, PermissionMode, SubagentResult, min_mode
from yoke.agent.policy import AutoApprover, RejectingApprover
from yoke.agent.prompts import get_subagent_prompt
from yoke.agent.registry import DELEGATION_TOOL
from yoke.agent.skills import ActiveSkillSet
from yoke.lib.errors import ConfigError, InvariantError, RecursionDeniedError
from yoke.lib.metrics import MetricsCollector
from yoke.lib.transcript import EventKind

logger = logging.getLogger(__name__)


# =============================================================================
# DEFINITIONS
# =============================================================================


def parse_agent_file(path: Path) -> AgentSpec:
    """Parse one agent TOML file. The file stem is the fallback name.

    Raises:
        ConfigError: If the file is not valid TOML or has invalid fields.
    """
    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError([(str(path), str(e))]) from e
    data.setdefault("name", path.stem)
    try:
        return AgentSpec.model_validate({**data, "source": path})
    except ValidationError as e:
        raise ConfigError(
            [(f"{path}: {'.'.join(str(p) for p in err['loc'])}", err["msg"]) for err in e.errors()]
        ) from e


def load_agents(roots: Iterable[Path]) -> dict[str, AgentSpec]:
    """Discover ``*.toml`` agent specs. Earlier roots win on name collisions.

    Raises:
        ConfigError: Listing every invalid agent file.
    """
    agents: dict[str, AgentSpec] = {}
    problems: list[tuple[str, str]] = []
    for root in roots:
        if not root.is_dir():
            continue
        for path in sorted(root.glob("*.toml")):
            try:
                spec = parse_agent_file(path)
            except ConfigError as e:
                problems.extend(e.problems)
                continue
            if spec.name in agents:
                logger.debug("Agent %s shadowed by %s", path, agents[spec.name].source)
                continue
            agents[spec.name] = spec
    if problems:
        raise ConfigError(problems)
    logger.debug("Loaded %d agents", len(agents))
    return agents


# =============================================================================
# RUNTIME
# =============================================================================


def clamp_mode(requested: PermissionMode, parent: PermissionMode) -> PermissionMode:
    """A child never runs more permissively than its parent."""
    return min_mode(requested, parent)


def child_tools(spec: AgentSpec, parent_tools: frozenset[str]) -> frozenset[str]:
    """Spec tools ∩ parent's effective tools, minus delegation."""
    return (spec.allowed_tools & parent_tools) - {DELEGATION_TOOL}


def build_task_prompt(
    prompt: str, *, notes: str | None = None, files: Iterable[str] = ()
) -> str:
    text = prompt
    if notes:
        text += f"\n\nNotes: {notes}"
    file_list = list(files)
    if file_list:
        text += "\n\nRelevant files:" + "".join(f"\n- {f}" for f in file_list)
    return text


def spawn(spec: AgentSpec, parent: ToolContext) -> ConversationLoop:
    """Build the child loop for ``spec`` from the parent's current state.

    Raises:
        RecursionDeniedError: If the parent may not delegate.
        NotFoundError: If the agent spec names an unknown skill.
        InvariantError: If the child would exceed the parent's capabilities.
    """
    if not parent.state.may_delegate:
        raise RecursionDeniedError()

    session = parent.session
    mode = clamp_mode(spec.permission_mode, parent.state.mode)
    tools = child_tools(spec, parent.effective_tools)
    if mode.rank > parent.state.mode.rank or not tools <= parent.effective_tools:
        raise InvariantError(f"Subagent {spec.name} would escalate beyond its parent")

    transcript = parent.transcript.scoped(spec.name)
    skills = ActiveSkillSet(index=session.skill_index, transcript=transcript)
    for name in spec.skills:
        skills.activate(name)

    approver = AutoApprover() if isinstance(parent.loop.approver, AutoApprover) else RejectingApprover()
    ctx = LoopContext(
        session=session,
        skills=skills,
        transcript=transcript,
        metrics=MetricsCollector(),
        approver=approver,
        rules=parent.loop.rules,
        max_turns=spec.max_turns,
        system_prompt=get_subagent_prompt(spec),
        agent=spec,
        tool_restriction=tools,
        fallback_target=parent.state.target,
    )
    state = ConversationState(mode=mode, may_delegate=False)
    return ConversationLoop(ctx=ctx, state=state)


async def run_subagent(spec: AgentSpec, prompt: str, parent: ToolContext) -> SubagentResult:
    """Run ``spec`` on ``prompt`` to a terminal state and condense the outcome."""
    loop = spawn(spec, parent)
    ctx = loop.ctx
    logger.info(
        "[%s] start: mode=%s (requested %s, parent %s), %d tools",
        spec.name,
        loop.state.mode,
        spec.permission_mode,
        parent.state.mode,
        len(ctx.tool_restriction or ()),
    )
    ctx.transcript.append(
        EventKind.SUBAGENT_START,
        name=spec.name,
        mode=loop.state.mode.value,
        tools=sorted(ctx.tool_restriction or ()),
        max_turns=spec.max_turns,
    )
    try:
        outcome = await loop.run(prompt)
    finally:
        parent.metrics.merge(ctx.metrics)

    result = SubagentResult(
        agent=spec.name,
        text=outcome.text,
        turns=outcome.turns,
        terminal_reason=outcome.status,
        error=outcome.error,
    )
    ctx.transcript.append(
        EventKind.SUBAGENT_END,
        name=spec.name,
        terminal_reason=outcome.status.value,
        turns=outcome.turns,
    )
    logger.info("[%s] end: %s after %d turns", spec.name, outcome.status, outcome.turns)
    return result
