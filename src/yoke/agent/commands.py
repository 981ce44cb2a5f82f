"""Custom slash commands.

A custom command is a markdown file ``<name>.md`` under
``.yoke/commands/`` (project) or ``~/.config/yoke/commands/`` (user); the
project file wins on a name collision. Typing ``/<name> some arguments``
in the REPL sends the body as the next prompt, with every ``$ARGUMENTS``
replaced by ``some arguments``.

Optional front matter, in the same format as skills::

    ---
    description: Review a file for bugs
    allowed-tools: Read, Grep
    ---
    Review $ARGUMENTS and list every bug you find.

``allowed-tools`` restricts the tools for that one prompt only.
"""

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Literal, Self

from pydantic import BaseModel, ConfigDict, Field

from yoke.agent.skills import parse_tool_list, split_front_matter
from yoke.lib.errors import NotFoundError

logger = logging.getLogger(__name__)

ARGUMENTS_PLACEHOLDER = "$ARGUMENTS"


class CustomCommand(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    allowed_tools: frozenset[str] | None = None
    body: str
    provenance: Literal["project", "user"] = "project"
    path: Path | None = None

    def expand(self, arguments: str) -> str:
        return self.body.replace(ARGUMENTS_PLACEHOLDER, arguments.strip())


def parse_command(path: Path, provenance: Literal["project", "user"]) -> CustomCommand:
    """Parse one command file; the file stem is the command name."""
    meta, body = split_front_matter(path.read_text(encoding="utf-8"))
    tools = meta.get("allowed-tools") or meta.get("allowed_tools")
    return CustomCommand(
        name=path.stem,
        description=meta.get("description", ""),
        allowed_tools=parse_tool_list(tools) if tools else None,
        body=body,
        provenance=provenance,
        path=path,
    )


class CommandIndex(BaseModel):
    """All custom commands by name, plus the files that failed to load."""

    model_config = ConfigDict(frozen=True)

    commands: dict[str, CustomCommand] = Field(default_factory=dict)
    errors: tuple[tuple[Path, str], ...] = ()

    @classmethod
    def discover(cls, roots: Iterable[Path]) -> Self:
        """Index ``<root>/<name>.md`` files, highest precedence root first."""
        found: dict[str, CustomCommand] = {}
        errors: list[tuple[Path, str]] = []
        for i, root in enumerate(roots):
            if not root.is_dir():
                continue
            provenance: Literal["project", "user"] = "project" if i == 0 else "user"
            for path in sorted(root.glob("*.md")):
                if path.stem in found:
                    logger.debug("Command %s shadowed by %s", path, found[path.stem].path)
                    continue
                try:
                    found[path.stem] = parse_command(path, provenance)
                except (OSError, UnicodeDecodeError) as e:
                    logger.warning("Skipping unreadable command %s: %s", path, e)
                    errors.append((path, str(e)))
        logger.debug("Indexed %d custom commands", len(found))
        return cls(commands=found, errors=tuple(errors))

    def get(self, name: str) -> CustomCommand:
        """Look up a command.

        Raises:
            NotFoundError: If no such command is indexed.
        """
        try:
            return self.commands[name]
        except KeyError:
            available = ", ".join(sorted(self.commands)) or "none"
            raise NotFoundError(f"Command '/{name}' not found (available: {available})") from None

    def __contains__(self, name: object) -> bool:
        return name in self.commands
