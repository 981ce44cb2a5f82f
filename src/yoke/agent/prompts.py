"""System prompts for the top-level agent and subagents.

Key patterns:
1. ``{date}`` and ``{project_root}`` placeholders are filled per session
2. Tools self-document via their descriptions; listing them here would
   create a second source of truth that drifts as tools change
3. Agents and skills are listed by name and description, since the model
   needs the names to call Task and ActivateSkill
"""

from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from yoke.agent.models import AgentSpec, SkillSpec

_SYSTEM_PROMPT_TEMPLATE = """\
You are an agentic coding assistant working in a local project. Today's date is {date}.
The project root is {project_root}; every file path you use is relative to it.

## Guidelines

1. Read before you write: inspect the relevant files before changing them
2. Prefer small, targeted edits over rewriting whole files
3. Run the project's own commands (tests, linters, builds) to check your work
4. Never use curl or wget; network fetches are blocked
5. A tool result of the form {{"error": {{"code": ...}}}} means the call failed;
   `permission_denied` and `permission_rejected` mean the operation is not
   allowed, so change approach instead of retrying it
6. When the task is done, reply with a short summary and no tool calls
"""

SUBAGENT_DEFAULT_PROMPT = (
    "You are a specialized subagent. Complete the assigned task using only your available tools."
)

_SUBAGENT_SUFFIX = """

Your final reply (the one without tool calls) is the only thing returned to
the agent that delegated this task, so make it self-contained."""


def format_agents(agents: Iterable[AgentSpec]) -> str:
    lines = [f"- **{a.name}**: {a.description}" if a.description else f"- **{a.name}**" for a in agents]
    if not lines:
        return ""
    return "## Subagents\n\nDelegate focused work with the Task tool:\n\n" + "\n".join(lines)


def format_skills(skills: Iterable[SkillSpec]) -> str:
    lines = [f"- **{s.name}**: {s.description}" if s.description else f"- **{s.name}**" for s in skills]
    if not lines:
        return ""
    return "## Skills\n\nActivate a skill with the ActivateSkill tool when it fits the task:\n\n" + "\n".join(lines)


def get_system_prompt(
    *,
    project_root: Path,
    date: datetime | None = None,
    agents: Iterable[AgentSpec] = (),
    skills: Iterable[SkillSpec] = (),
) -> str:
    """Generate the top-level system prompt.

    Args:
        project_root: Root the agent works in.
        date: Date to use as "today". If None, uses current date.
        agents: Delegatable subagents.
        skills: Indexed skills.

    Returns:
        The formatted system prompt.
    """
    effective_date = date or datetime.now()
    prompt = _SYSTEM_PROMPT_TEMPLATE.format(
        date=effective_date.strftime("%Y-%m-%d"),
        project_root=project_root,
    )
    sections = [s for s in (format_agents(agents), format_skills(skills)) if s]
    if sections:
        prompt += "\n" + "\n\n".join(sections) + "\n"
    return prompt


def get_subagent_prompt(spec: AgentSpec) -> str:
    """System prompt of a subagent: its own prompt or the default."""
    return (spec.system_prompt or SUBAGENT_DEFAULT_PROMPT) + _SUBAGENT_SUFFIX
