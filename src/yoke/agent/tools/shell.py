"""Bash tool: bounded shell execution in the project root."""

import logging

from pydantic import BaseModel, Field

from yoke.agent.context import ToolContext
from yoke.lib.errors import ToolError
from yoke.lib.responses import truncation_notice
from yoke.lib.tools import ToolCategory, yoke_tool

logger = logging.getLogger(__name__)


class BashInput(BaseModel):
    command: str = Field(min_length=1, description="Command line, run with /bin/sh -c")


class BashOutput(BaseModel):
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    truncated: bool = False


@yoke_tool(
    (
        "Run a shell command in the project root. "
        "Use this for builds, tests, git and other command-line work. "
        "Commands are killed after the configured timeout and output past the byte cap is cut off "
        "(marked in the output). Network fetchers like curl and wget are blocked. "
        "A non-zero exit is reported as an error. "
        "Returns {exit_code, stdout, stderr, duration_ms, truncated}."
    ),
    category=ToolCategory.SHELL,
)
async def Bash(params: BashInput, ctx: ToolContext) -> BashOutput:
    result = await ctx.session.shell().run(params.command)
    stdout, stderr = result["stdout"], result["stderr"]
    if result["truncated"]:
        notice = truncation_notice(result["omitted_bytes"])
        if stderr:
            stderr += notice
        else:
            stdout += notice

    if result["exit_code"] != 0:
        details = "\n".join(part for part in (stdout.strip(), stderr.strip()) if part)
        raise ToolError(
            f"Command exited with status {result['exit_code']}"
            + (f":\n{details}" if details else "")
        )
    return BashOutput(
        exit_code=result["exit_code"],
        stdout=stdout,
        stderr=stderr,
        duration_ms=result["duration_ms"],
        truncated=result["truncated"],
    )
