"""Task tool: delegate work to a subagent."""

from pydantic import BaseModel, Field

from yoke.agent.context import ToolContext
from yoke.agent.subagents import build_task_prompt, run_subagent
from yoke.lib.tools import ToolCategory, yoke_tool


class FileHint(BaseModel):
    path: str = Field(description="File the subagent should look at")


class InputContext(BaseModel):
    files: list[FileHint] = Field(default_factory=list)
    notes: str | None = Field(default=None, description="Extra context for the subagent")


class TaskInput(BaseModel):
    agent: str = Field(description="Name of the subagent to delegate to")
    prompt: str = Field(min_length=1, description="Self-contained task description")
    input_context: InputContext | None = None


@yoke_tool(
    (
        "Delegate a focused task to a specialized subagent and wait for its answer. "
        "Use this for self-contained work that matches an agent's description "
        "(exploring, reviewing, testing...). The subagent sees only the prompt and "
        "input_context you give it, works with a restricted tool set, and cannot delegate further. "
        "Returns {agent, ok, output: {text, turns, terminal_reason}, error}."
    ),
    category=ToolCategory.READ,
)
async def Task(params: TaskInput, ctx: ToolContext) -> str:
    spec = ctx.session.get_agent(params.agent)
    context = params.input_context or InputContext()
    prompt = build_task_prompt(
        params.prompt, notes=context.notes, files=[f.path for f in context.files]
    )
    result = await run_subagent(spec, prompt, ctx)
    return result.to_content()
