"""Context compaction.

When a loop's running character total passes the configured threshold,
the oldest unpinned span of history is replaced with one summary message.
The system prompt and the last ``keep_last_messages`` messages are pinned.
Relative order is preserved, and compaction only happens if it strictly
shrinks the history.

The summary is extractive: every replaced message contributes one clipped
line, so compaction is deterministic and needs no backend call.

A kept tail never starts with a tool result: the boundary moves back to
the assistant message that requested it, so a call and its results are
always summarized or kept together.
"""

import logging

from yoke.agent.config import ContextConfig
from yoke.agent.models import Message, Role
from yoke.lib.responses import error_code

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = (
    "[Conversation summary]\n"
    "Earlier messages were compacted to save context; details may be missing.\n"
)
LINE_CHARS = 240


def clip_middle(text: str, max_chars: int) -> str:
    """Clip ``text`` to ``max_chars``, keeping both ends."""
    if len(text) <= max_chars:
        return text
    if max_chars <= 50:
        return text[: max_chars - 3] + "..."
    head = max_chars // 3
    tail = max_chars - head - 5
    return text[:head] + " ... " + text[-tail:]


def summarize_message(message: Message) -> str:
    content = " ".join(message.content.split())
    match message.role:
        case Role.TOOL:
            code = error_code(message.content)
            status = f"error {code}" if code else "ok"
            return f"- tool {message.name} ({status}): {clip_middle(content, LINE_CHARS)}"
        case Role.ASSISTANT if message.tool_calls:
            calls = ", ".join(call.name for call in message.tool_calls)
            text = f" {clip_middle(content, LINE_CHARS)}" if content else ""
            return f"- assistant [called {calls}]{text}"
        case _:
            return f"- {message.role.value}: {clip_middle(content, LINE_CHARS)}"


def summarize(messages: list[Message]) -> str:
    return SUMMARY_PREFIX + "\n".join(summarize_message(m) for m in messages)


def compaction_span(messages: list[Message], keep_last: int) -> tuple[int, int] | None:
    """The ``[start, end)`` span to summarize, or None if nothing is eligible."""
    start = 1 if messages and messages[0].role == Role.SYSTEM else 0
    end = len(messages) - keep_last
    while start < end < len(messages) and messages[end].role == Role.TOOL:
        end -= 1
    if end - start < 1:
        return None
    return start, end


def compact(messages: list[Message], config: ContextConfig) -> tuple[Message, int, int] | None:
    """Plan a compaction.

    Returns:
        ``(summary, start, end)`` if replacing ``messages[start:end]`` with
        ``summary`` would shrink the history, else None.
    """
    span = compaction_span(messages, config.keep_last_messages)
    if span is None:
        return None
    start, end = span
    summary = Message.user(summarize(messages[start:end]))
    replaced = sum(m.char_count for m in messages[start:end])
    if summary.char_count >= replaced:
        logger.debug("Compaction skipped: summary would not shrink %d chars", replaced)
        return None
    return summary, start, end
