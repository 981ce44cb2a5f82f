"""Console rendering of transcript events.

Tool calls and their results are paired by colour: a call's id is assigned
the next colour from a rotating palette, and the matching result reuses it,
so interleaved subagent output stays readable.

Attach a renderer to a transcript to get live output::

    renderer = ConsoleRenderer()
    transcript.subscribe(renderer)

Examples:
    Truncate long JSON fields before display::

        >>> format_tool_result('{"stdout": "' + "x" * 600 + '"}', max_len=10)
        '{\\n  "stdout": "xxxxxxxxxx..."\\n}'
"""

from __future__ import annotations

import itertools
import json
import logging
from collections.abc import Iterator

from rich.console import Console
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from yoke.lib.responses import error_code
from yoke.lib.transcript import EventKind, TranscriptEvent

logger = logging.getLogger(__name__)

# JSON-like recursive type for truncation functions
type JsonValue = (
    str | int | float | bool | None | list[JsonValue] | dict[str, JsonValue]
)

TOOL_COLORS = [
    "cyan",
    "green",
    "yellow",
    "magenta",
    "blue",
    "bright_cyan",
    "bright_green",
    "bright_yellow",
    "bright_magenta",
    "bright_blue",
]


# ---------------------------------------------------------------------------
# Truncation
# ---------------------------------------------------------------------------


def truncate_str(value: str, max_len: int = 500) -> str:
    """Truncate a string to max_len, appending '...' if trimmed."""
    if len(value) > max_len:
        return value[:max_len] + "..."
    return value


def truncate_str_fields(
    obj: JsonValue, max_len: int = 500, max_len_list: int = 10
) -> JsonValue:
    """Recursively truncate string values in a JSON-like structure."""
    match obj:
        case dict() as d:
            return {k: truncate_str_fields(v, max_len) for k, v in d.items()}
        case list() as items:
            return [truncate_str_fields(item, max_len) for item in items][:max_len_list]
        case str() as s:
            return truncate_str(s, max_len)
        case _:
            return obj


def format_tool_result(content: str, max_len: int = 500) -> str:
    """Pretty-print JSON results with long strings cut; plain text is truncated."""
    try:
        parsed = json.loads(content)
    except (json.JSONDecodeError, TypeError):
        return truncate_str(content, max_len)
    return json.dumps(truncate_str_fields(parsed, max_len), indent=2)


# ---------------------------------------------------------------------------
# Renderer
# ---------------------------------------------------------------------------


class ConsoleRenderer(BaseModel):
    """Transcript listener that prints events to a rich console."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    console: Console = Field(default_factory=lambda: Console(highlight=False))
    show_messages: bool = Field(default=True, description="Print assistant text")
    max_result_len: int = 500

    _colors: Iterator[str] = PrivateAttr(
        default_factory=lambda: itertools.cycle(TOOL_COLORS)
    )
    _id_to_color: dict[str, str] = PrivateAttr(default_factory=dict)

    def __call__(self, event: TranscriptEvent) -> None:
        prefix = f"  [{event.agent}] " if event.agent else ""
        data = event.data
        match event.kind:
            case EventKind.MESSAGE if data.get("role") == "assistant" and self.show_messages:
                if text := data.get("content"):
                    self.console.print(f"{prefix}💬 {text}", markup=False)
            case EventKind.TOOL_CALL:
                color = next(self._colors)
                self._id_to_color[data["id"]] = color
                args = json.dumps(data.get("arguments") or {})
                self.console.print(
                    f"{prefix}🔧 {data['name']} ", end="", markup=False
                )
                self.console.print(f"[{data['id']}]", style=color, markup=False)
                self.console.print(truncate_str(args, 200), style="dim", markup=False)
            case EventKind.TOOL_RESULT:
                color = self._id_to_color.pop(data["id"], "default")
                marker = "❌" if data.get("is_error") else "📋"
                self.console.print(f"{prefix}{marker} ", end="", markup=False)
                self.console.print(f"[{data['id']}]", style=color, markup=False)
                content = str(data.get("content", ""))
                code = error_code(content)
                shown = code if code else format_tool_result(content, self.max_result_len)
                self.console.print(shown, style="dim", markup=False)
            case EventKind.PERMISSION_DECISION if data.get("decision") != "allow":
                self.console.print(
                    f"{prefix}🔒 {data.get('tool')}: {data.get('decision')}"
                    f" ({data.get('resolution') or data.get('rule') or 'mode default'})",
                    style="yellow",
                    markup=False,
                )
            case EventKind.SUBAGENT_START:
                self.console.print(
                    f"{prefix}↳ subagent {data.get('name')} (mode={data.get('mode')})",
                    style="bold",
                    markup=False,
                )
            case EventKind.SUBAGENT_END:
                self.console.print(
                    f"{prefix}↲ subagent {data.get('name')}: {data.get('terminal_reason')}"
                    f" after {data.get('turns')} turns",
                    style="bold",
                    markup=False,
                )
            case EventKind.COMPACTION:
                self.console.print(
                    f"{prefix}🗜  compacted {data.get('messages')} messages"
                    f" ({data.get('before_chars')} → {data.get('after_chars')} chars)",
                    style="dim",
                    markup=False,
                )
            case EventKind.HOOK if data.get("blocked") or data.get("error"):
                outcome = "blocked" if data.get("blocked") else data.get("error")
                self.console.print(
                    f"{prefix}🪝 {data.get('event')} hook {data.get('hook')}: {outcome}",
                    style="yellow",
                    markup=False,
                )
            case EventKind.ERROR:
                self.console.print(f"{prefix}⚠ {data.get('message')}", style="red", markup=False)
            case _:
                logger.debug("%s%s: %s", prefix, event.kind.value, data)
