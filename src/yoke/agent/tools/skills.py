"""ActivateSkill tool: the model turns on a skill pack by name."""

from pydantic import BaseModel, Field

from yoke.agent.context import ToolContext
from yoke.lib.tools import ToolCategory, yoke_tool


class ActivateSkillInput(BaseModel):
    name: str = Field(description="Skill name as listed in the system prompt")


class ActivateSkillOutput(BaseModel):
    name: str
    activated: bool = Field(description="False if the skill was already active")
    allowed_tools: list[str] | None = None
    instructions: str


@yoke_tool(
    (
        "Activate a skill pack for the rest of this conversation. "
        "Use this when a listed skill matches the task; its instructions apply from the next turn, "
        "and if it declares allowed tools, only those stay available. "
        "Returns {name, activated, allowed_tools, instructions}."
    ),
    category=ToolCategory.READ,
)
async def ActivateSkill(params: ActivateSkillInput, ctx: ToolContext) -> ActivateSkillOutput:
    activated = ctx.skills.activate(params.name)
    skill = ctx.skills.index.get(params.name)
    return ActivateSkillOutput(
        name=skill.name,
        activated=activated,
        allowed_tools=sorted(skill.allowed_tools) if skill.allowed_tools is not None else None,
        instructions=skill.instructions,
    )
