"""Target resolution: which model serves a turn.

Precedence, strictly:

1. an explicit override (CLI ``--target``, ``/target``, or an agent spec's
   ``target``)
2. the configured route for the agent's inferred category
3. the built-in default for that category
4. the global default target

Categories are inferred by walking ``CATEGORY_TABLE`` in order and taking
the first whose keywords occur (case-insensitively) in the agent's name or
description. Categories overlap ("security review" is both review and
security work), so the order is part of the contract. ``default`` is never
keyword-matched.

Examples:
    >>> infer_category("test-writer", "Writes failing tests first")
    'testing'
    >>> resolve(None, AgentIdentity(name="code-reviewer"), {"review": r}, default)
    Resolution(target=r, source='route', category='review')
"""

import logging
from typing import Literal

from pydantic import BaseModel, ConfigDict

from yoke.agent.models import Target

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "default"

# Ordered: first match wins.
CATEGORY_TABLE: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("security", ("security", "vulnerab", "audit", "secret")),
    ("review", ("review", "critic", "inspect", "lint")),
    ("planning", ("plan", "architect", "design", "roadmap")),
    ("testing", ("test", "qa", "coverage", "tdd")),
    ("documentation", ("doc", "readme", "changelog", "comment")),
    ("exploration", ("explore", "search", "find", "scan", "map", "locate")),
    ("coding", ("code", "implement", "refactor", "fix", "debug", "build")),
)

CATEGORY_NAMES: tuple[str, ...] = (*(name for name, _ in CATEGORY_TABLE), DEFAULT_CATEGORY)

# Built-in per-category targets, used when no route is configured.
BUILTIN_ROUTES: dict[str, Target] = {
    "exploration": Target(model="gpt-4o-mini", backend="chatgpt"),
    "documentation": Target(model="gpt-4o-mini", backend="chatgpt"),
}


class AgentIdentity(BaseModel):
    """What the resolver knows about the agent a turn runs for."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""


class Resolution(BaseModel):
    """The chosen target and why."""

    model_config = ConfigDict(frozen=True)

    target: Target
    source: Literal["explicit", "route", "builtin", "default"]
    category: str = DEFAULT_CATEGORY


def infer_category(name: str, description: str = "") -> str:
    """First category in table order whose keywords appear in name/description."""
    haystack = f"{name} {description}".lower()
    for category, keywords in CATEGORY_TABLE:
        if any(keyword in haystack for keyword in keywords):
            return category
    return DEFAULT_CATEGORY


def resolve(
    explicit: Target | None,
    agent: AgentIdentity | None,
    routes: dict[str, Target],
    default: Target,
    builtin_routes: dict[str, Target] = BUILTIN_ROUTES,
) -> Resolution:
    """Pick the target for a turn.

    Args:
        explicit: Override that beats everything else.
        agent: Identity used for category inference; None for the top level.
        routes: Configured category routes.
        default: Global default target.
        builtin_routes: Built-in category targets.

    Returns:
        The resolution, including which precedence level supplied it.
    """
    if explicit is not None:
        return Resolution(target=explicit, source="explicit")

    category = infer_category(agent.name, agent.description) if agent else DEFAULT_CATEGORY
    if category != DEFAULT_CATEGORY:
        if category in routes:
            return Resolution(target=routes[category], source="route", category=category)
        if category in builtin_routes:
            return Resolution(
                target=builtin_routes[category], source="builtin", category=category
            )
    return Resolution(target=routes.get(DEFAULT_CATEGORY, default), source="default", category=category)
