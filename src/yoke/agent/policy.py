"""Permission policy: rules, mode defaults and Ask resolution.

``decide(mode, rules, invocation)`` is pure and total. Precedence:

1. any matching deny rule (including the network floor) -> DENY, in every mode
2. any matching allow rule -> ALLOW
3. any matching ask rule -> ASK
4. the mode's default for the tool's category

Rule patterns are parsed once, when configuration loads, into tagged
variants; matching never re-parses strings.

Pattern forms:
    Write                 every Write call
    Bash(git status)      Bash whose command is exactly ``git status``
    Bash(git diff:*)      Bash whose command starts with ``git diff``
    Edit(src/*)           Edit of a path starting with ``src/``
    mcp.*                 every external tool
    mcp.github.*          every tool of the ``github`` server

Examples:
    Decide a shell call under the default mode::

        >>> rules = RuleSet.from_patterns(allow=["Bash(git status)"])
        >>> decide(PermissionMode.DEFAULT, rules, Invocation.of("Bash", {"command": "git status"}))
        <Decision.ALLOW: 'allow'>
        >>> decide(PermissionMode.BYPASS_PERMISSIONS, rules, Invocation.of("Bash", {"command": "curl x.io"}))
        <Decision.DENY: 'deny'>
"""

import logging
import posixpath
from collections.abc import Iterable
from typing import Annotated, Any, Literal, Protocol, Self, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from yoke.agent.models import Decision, PermissionMode
from yoke.lib.tools import ToolCategory

logger = logging.getLogger(__name__)


# =============================================================================
# TOOL VOCABULARY
# =============================================================================

MCP_PREFIX = "mcp."

# Category for tools the registry doesn't describe (external tools land here).
BUILTIN_CATEGORIES: dict[str, ToolCategory] = {
    "Read": ToolCategory.READ,
    "Grep": ToolCategory.READ,
    "Glob": ToolCategory.READ,
    "Task": ToolCategory.READ,
    "ActivateSkill": ToolCategory.READ,
    "Write": ToolCategory.MUTATE,
    "Edit": ToolCategory.MUTATE,
    "Bash": ToolCategory.SHELL,
}

PRIMARY_ARGUMENT: dict[str, str] = {
    "Bash": "command",
    "Read": "path",
    "Write": "path",
    "Edit": "path",
    "Grep": "pattern",
    "Glob": "pattern",
}

PATH_TOOLS = frozenset({"Read", "Write", "Edit"})

# Network-fetch floor, enforced even under bypassPermissions.
NETWORK_FLOOR_PATTERNS: tuple[str, ...] = ("Bash(curl:*)", "Bash(wget:*)")


def canonical_argument(tool: str, arguments: dict[str, Any]) -> str | None:
    """Canonical string form of a call's primary argument, or None."""
    key = PRIMARY_ARGUMENT.get(tool)
    if key is None:
        return None
    value = arguments.get(key)
    if not isinstance(value, str):
        return None
    if tool in PATH_TOOLS:
        return posixpath.normpath(value.replace("\\", "/"))
    return value.strip()


class Invocation(BaseModel):
    """A tool call as the policy sees it."""

    model_config = ConfigDict(frozen=True)

    tool: str
    category: ToolCategory
    argument: str | None = Field(default=None, description="Canonical primary argument")
    arguments: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def of(
        cls,
        tool: str,
        arguments: dict[str, Any] | None = None,
        category: ToolCategory | None = None,
    ) -> Self:
        args = arguments or {}
        return cls(
            tool=tool,
            category=category or BUILTIN_CATEGORIES.get(tool, ToolCategory.SHELL),
            argument=canonical_argument(tool, args),
            arguments=args,
        )

    def describe(self) -> str:
        return f"{self.tool}({self.argument})" if self.argument is not None else self.tool


# =============================================================================
# RULES
# =============================================================================


class ToolRule(BaseModel):
    """Matches every call of one tool."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["tool"] = "tool"
    source: str
    tool: str


class ArgumentRule(BaseModel):
    """Matches one tool whose canonical argument equals or starts with ``value``."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["argument"] = "argument"
    source: str
    tool: str
    value: str
    prefix: bool = False


class NamespaceRule(BaseModel):
    """Matches external tools under a dotted namespace (``mcp`` or ``mcp.server``)."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["namespace"] = "namespace"
    source: str
    namespace: str


Rule = Annotated[ToolRule | ArgumentRule | NamespaceRule, Field(discriminator="kind")]


def parse_rule(pattern: str) -> Rule:
    """Parse a rule pattern into its tagged form.

    Raises:
        ValueError: If the pattern is empty or malformed.
    """
    text = pattern.strip()
    if not text:
        raise ValueError("Empty permission rule")

    if "(" in text:
        tool, _, rest = text.partition("(")
        if not rest.endswith(")") or not tool:
            raise ValueError(f"Malformed permission rule '{pattern}' (expected Tool(arg))")
        value = rest[:-1]
        if value.endswith(":*"):
            return ArgumentRule(source=text, tool=tool, value=value[:-2], prefix=True)
        if value.endswith("*"):
            return ArgumentRule(source=text, tool=tool, value=value[:-1], prefix=True)
        return ArgumentRule(source=text, tool=tool, value=value)

    if text.endswith(".*") and text.startswith(MCP_PREFIX[:-1]):
        return NamespaceRule(source=text, namespace=text[:-2])

    if any(c in text for c in "*)"):
        raise ValueError(f"Malformed permission rule '{pattern}'")
    return ToolRule(source=text, tool=text)


def rule_matches(rule: Rule, invocation: Invocation) -> bool:
    """True if ``rule`` applies to ``invocation``."""
    match rule:
        case ToolRule(tool=tool):
            return tool == invocation.tool
        case ArgumentRule(tool=tool, value=value, prefix=prefix):
            if tool != invocation.tool or invocation.argument is None:
                return False
            if prefix:
                return invocation.argument.startswith(value)
            return invocation.argument == value
        case NamespaceRule(namespace=namespace):
            if not invocation.tool.startswith(MCP_PREFIX):
                return False
            rest = invocation.tool.removeprefix(namespace)
            return rest != invocation.tool and (rest == "" or rest.startswith("."))
        case _:
            return False


class RuleSet(BaseModel):
    """Three ordered rule lists, one per action."""

    model_config = ConfigDict(frozen=True)

    allow: tuple[Rule, ...] = ()
    ask: tuple[Rule, ...] = ()
    deny: tuple[Rule, ...] = ()
    floor: int = Field(default=0, ge=0, description="Leading deny rules that are the network floor")

    @classmethod
    def from_patterns(
        cls,
        allow: Iterable[str] = (),
        ask: Iterable[str] = (),
        deny: Iterable[str] = (),
        *,
        network_floor: bool = True,
    ) -> Self:
        """Parse pattern strings. The network floor is prepended to deny.

        Raises:
            ValueError: On the first malformed pattern.
        """
        floor = NETWORK_FLOOR_PATTERNS if network_floor else ()
        return cls(
            allow=tuple(parse_rule(p) for p in allow),
            ask=tuple(parse_rule(p) for p in ask),
            deny=tuple(parse_rule(p) for p in (*floor, *deny)),
            floor=len(floor),
        )

    def with_rule(self, decision: Decision, pattern: str) -> Self:
        """A new rule set with ``pattern`` appended to the list for ``decision``."""
        rule = parse_rule(pattern)
        field = decision.value
        return self.model_copy(update={field: (*getattr(self, field), rule)})

    def without_rule(self, decision: Decision, index: int) -> Self:
        """A new rule set without the rule at ``index`` in the list for ``decision``.

        Raises:
            ValueError: If the index is out of range or names a network floor rule.
        """
        field = decision.value
        rules = getattr(self, field)
        if not 0 <= index < len(rules):
            raise ValueError(f"No {field} rule at index {index}")
        if decision == Decision.DENY and index < self.floor:
            raise ValueError(f"{rules[index].source} is part of the network floor")
        return self.model_copy(update={field: (*rules[:index], *rules[index + 1 :])})

    def patterns(self) -> dict[str, list[str]]:
        return {
            "allow": [r.source for r in self.allow],
            "ask": [r.source for r in self.ask],
            "deny": [r.source for r in self.deny],
        }

    def user_patterns(self) -> dict[str, list[str]]:
        """Like ``patterns`` but without the network floor, which config re-adds on load."""
        patterns = self.patterns()
        patterns["deny"] = patterns["deny"][self.floor :]
        return patterns


# =============================================================================
# DECISION
# =============================================================================

MODE_DEFAULTS: dict[PermissionMode, dict[ToolCategory, Decision]] = {
    PermissionMode.DEFAULT: {
        ToolCategory.READ: Decision.ALLOW,
        ToolCategory.MUTATE: Decision.ASK,
        ToolCategory.SHELL: Decision.ASK,
    },
    PermissionMode.ACCEPT_EDITS: {
        ToolCategory.READ: Decision.ALLOW,
        ToolCategory.MUTATE: Decision.ALLOW,
        ToolCategory.SHELL: Decision.ASK,
    },
    PermissionMode.BYPASS_PERMISSIONS: {
        ToolCategory.READ: Decision.ALLOW,
        ToolCategory.MUTATE: Decision.ALLOW,
        ToolCategory.SHELL: Decision.ALLOW,
    },
}


class Verdict(BaseModel):
    """A decision plus the rule that produced it (None = mode default)."""

    model_config = ConfigDict(frozen=True)

    decision: Decision
    rule: str | None = None


def first_match(rules: Iterable[Rule], invocation: Invocation) -> Rule | None:
    return next((r for r in rules if rule_matches(r, invocation)), None)


def evaluate(mode: PermissionMode, rules: RuleSet, invocation: Invocation) -> Verdict:
    """Decide and report which rule matched."""
    for decision, rule_list in (
        (Decision.DENY, rules.deny),
        (Decision.ALLOW, rules.allow),
        (Decision.ASK, rules.ask),
    ):
        if (rule := first_match(rule_list, invocation)) is not None:
            return Verdict(decision=decision, rule=rule.source)
    return Verdict(decision=MODE_DEFAULTS[mode][invocation.category])


def decide(mode: PermissionMode, rules: RuleSet, invocation: Invocation) -> Decision:
    """Pure policy decision for one invocation."""
    return evaluate(mode, rules, invocation).decision


# =============================================================================
# ASK RESOLUTION
# =============================================================================


@runtime_checkable
class Approver(Protocol):
    """Resolves an ASK verdict into approve/reject."""

    name: str

    async def approve(self, invocation: Invocation) -> bool: ...


class AutoApprover:
    """Unattended mode: every ASK is approved (and logged as such)."""

    name = "auto_approved"

    async def approve(self, invocation: Invocation) -> bool:
        logger.info("Auto-approved %s", invocation.describe())
        return True


class RejectingApprover:
    """Non-interactive mode without auto-approve: every ASK is rejected."""

    name = "non_interactive"

    async def approve(self, invocation: Invocation) -> bool:
        logger.info("Rejected %s (no interactive approval available)", invocation.describe())
        return False
