"""Skill packs: discovery, activation and tool restriction.

A skill is a directory holding ``SKILL.md``: ``---`` fenced front matter
(``name``, ``description``, ``allowed-tools``) followed by instructions
that are appended to the system prompt while the skill is active.

A skill that declares ``allowed-tools`` restricts the session to those
tools. With several restricting skills active the allowed set is their
intersection: adding a skill can only shrink it, and removing one restores
exactly what was there before.

Examples:
    Activate two restricting skills::

        >>> skills = ActiveSkillSet(index=SkillIndex.from_specs([a, b]))
        >>> skills.activate("a")   # allows Read, Grep
        >>> skills.activate("b")   # allows Read, Write
        >>> skills.effective_allowed_tools()
        frozenset({'Read'})
        >>> skills.deactivate("b")
        >>> sorted(skills.effective_allowed_tools())
        ['Grep', 'Read']
"""

import logging
import re
from collections.abc import Iterable
from pathlib import Path
from typing import Literal, Self

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from yoke.agent.models import SkillSpec
from yoke.lib.errors import NotFoundError
from yoke.lib.transcript import EventKind, Transcript

logger = logging.getLogger(__name__)

SKILL_FILE = "SKILL.md"
MENTION_RE = re.compile(r"(?<![\w$])\$([A-Za-z0-9][\w-]*)")


# -----------------------------------------------------------------------------
# Parsing and discovery
# -----------------------------------------------------------------------------


def split_front_matter(text: str) -> tuple[dict[str, str], str]:
    """Split ``---`` fenced ``key: value`` front matter from the body."""
    lines = text.splitlines()
    if not lines or lines[0].strip() != "---":
        return {}, text
    meta: dict[str, str] = {}
    for i, line in enumerate(lines[1:], start=1):
        if line.strip() == "---":
            return meta, "\n".join(lines[i + 1 :]).strip()
        key, sep, value = line.partition(":")
        if sep:
            meta[key.strip().lower()] = value.strip().strip("\"'")
    return {}, text


def parse_tool_list(value: str) -> frozenset[str]:
    """Parse ``Read, Grep`` or ``[Read, Grep]`` into a set of tool names."""
    items = value.strip().strip("[]")
    return frozenset(t.strip().strip("\"'") for t in items.split(",") if t.strip())


def parse_skill(path: Path, provenance: Literal["project", "user"]) -> SkillSpec:
    """Parse one ``SKILL.md``. The directory name is the fallback skill name."""
    meta, body = split_front_matter(path.read_text(encoding="utf-8"))
    tools = meta.get("allowed-tools") or meta.get("allowed_tools")
    return SkillSpec(
        name=meta.get("name") or path.parent.name,
        description=meta.get("description", ""),
        allowed_tools=parse_tool_list(tools) if tools else None,
        instructions=body,
        provenance=provenance,
        path=path,
    )


class SkillIndex(BaseModel):
    """All known skills by name."""

    model_config = ConfigDict(frozen=True)

    skills: dict[str, SkillSpec] = Field(default_factory=dict)

    @classmethod
    def from_specs(cls, specs: Iterable[SkillSpec]) -> Self:
        return cls(skills={s.name: s for s in specs})

    @classmethod
    def discover(cls, roots: Iterable[Path]) -> Self:
        """Index ``<root>/<name>/SKILL.md`` files.

        Roots are given highest precedence first; the first root is the
        project scope, the rest are user scope. An earlier root wins on a
        name collision.
        """
        found: dict[str, SkillSpec] = {}
        for i, root in enumerate(roots):
            if not root.is_dir():
                continue
            provenance: Literal["project", "user"] = "project" if i == 0 else "user"
            for skill_file in sorted(root.glob(f"*/{SKILL_FILE}")):
                try:
                    spec = parse_skill(skill_file, provenance)
                except (OSError, UnicodeDecodeError) as e:
                    logger.warning("Skipping unreadable skill %s: %s", skill_file, e)
                    continue
                if spec.name in found:
                    logger.debug("Skill %s shadowed by %s", skill_file, found[spec.name].path)
                    continue
                found[spec.name] = spec
        logger.debug("Indexed %d skills", len(found))
        return cls(skills=found)

    def get(self, name: str) -> SkillSpec:
        """Look up a skill.

        Raises:
            NotFoundError: If no such skill is indexed.
        """
        try:
            return self.skills[name]
        except KeyError:
            available = ", ".join(sorted(self.skills)) or "none"
            raise NotFoundError(f"Skill '{name}' not found (available: {available})") from None

    def __contains__(self, name: object) -> bool:
        return name in self.skills


# -----------------------------------------------------------------------------
# Activation
# -----------------------------------------------------------------------------


class ActiveSkillSet(BaseModel):
    """The set of active skills for one loop.

    The top-level loop owns one; each subagent gets a fresh one seeded from
    its agent spec, so a child never changes the parent's skills.
    """

    index: SkillIndex = Field(default_factory=SkillIndex)
    transcript: Transcript | None = None

    _active: list[str] = PrivateAttr(default_factory=list)

    def activate(self, name: str) -> bool:
        """Activate a skill. Returns False if it was already active.

        Raises:
            NotFoundError: If no such skill is indexed.
        """
        self.index.get(name)
        if name in self._active:
            return False
        self._active.append(name)
        logger.info("Activated skill %s", name)
        if self.transcript is not None:
            self.transcript.append(EventKind.SKILL_ACTIVATE, name=name)
        return True

    def deactivate(self, name: str) -> bool:
        """Deactivate a skill. Returns False if it wasn't active."""
        if name not in self._active:
            return False
        self._active.remove(name)
        logger.info("Deactivated skill %s", name)
        if self.transcript is not None:
            self.transcript.append(EventKind.SKILL_DEACTIVATE, name=name)
        return True

    def list_active(self) -> list[SkillSpec]:
        """Active skills in activation order."""
        return [self.index.skills[name] for name in self._active]

    def effective_allowed_tools(self) -> frozenset[str] | None:
        """Intersection of the active restricting skills; None = unrestricted."""
        allowed: frozenset[str] | None = None
        for skill in self.list_active():
            if skill.allowed_tools is None:
                continue
            allowed = skill.allowed_tools if allowed is None else allowed & skill.allowed_tools
        return allowed

    def activate_mentions(self, text: str) -> list[str]:
        """Activate every known ``$skill-name`` mentioned in ``text``."""
        activated: list[str] = []
        for name in MENTION_RE.findall(text):
            if name in self.index and self.activate(name):
                activated.append(name)
        return activated

    def format_for_prompt(self) -> str:
        """Active skills' instructions as system prompt sections."""
        sections = [
            f"## Active Skill: {skill.name}\n\n{skill.instructions}"
            for skill in self.list_active()
        ]
        return "\n\n---\n\n".join(sections)
