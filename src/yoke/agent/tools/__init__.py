"""Built-in tools.

- files.py: Read, Write, Edit, Glob, Grep
- shell.py: Bash
- skills.py: ActivateSkill
- task.py: Task (delegation)

``build_registry`` assembles them, plus any connected external tools.
"""

from yoke.agent.registry import ToolRegistry
from yoke.agent.tools.files import FILE_TOOLS, Edit, Glob, Grep, Read, Write
from yoke.agent.tools.shell import Bash
from yoke.agent.tools.skills import ActivateSkill
from yoke.agent.tools.task import Task
from yoke.lib.mcp import McpHub

BUILTIN = [*FILE_TOOLS, Bash, Task, ActivateSkill]


def build_registry(hub: McpHub | None = None) -> ToolRegistry:
    """A registry with every built-in tool and ``hub``'s external tools."""
    registry = ToolRegistry(hub=hub)
    registry.register(*BUILTIN)
    return registry


__all__ = [
    "ActivateSkill",
    "BUILTIN",
    "Bash",
    "Edit",
    "Glob",
    "Grep",
    "Read",
    "Task",
    "Write",
    "build_registry",
]
