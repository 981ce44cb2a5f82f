"""Centralized backend construction and message conversion.

All backend traffic goes through this module:
- build_backends(config) - one OpenAI-compatible client per configured backend
- to_wire(messages) - history as chat-completions message dicts
- to_message(completion) - a completion as an assistant ``Message``
- send(...) - one request for one turn
"""

import json
import logging
from typing import Any

from yoke.agent.config import YokeConfig, settings
from yoke.agent.models import Message, Role, Target, ToolCallRequest
from yoke.lib.client import (
    BackendRegistry,
    Completion,
    OpenAIChatBackend,
    ToolSchema,
    to_wire_name,
)

logger = logging.getLogger(__name__)


def build_backends(config: YokeConfig) -> BackendRegistry:
    """Construct a client for every backend in the configuration."""
    registry = BackendRegistry()
    for name, backend in config.backends.items():
        registry.register(
            OpenAIChatBackend(
                name=name,
                base_url=backend.base_url,
                api_key=backend.api_key(),
                headers=dict(backend.headers),
                timeout_seconds=settings.http_timeout_seconds,
                max_attempts=settings.backend_max_attempts,
            )
        )
    return registry


def message_to_wire(message: Message) -> dict[str, Any]:
    match message.role:
        case Role.ASSISTANT if message.tool_calls:
            return {
                "role": "assistant",
                "content": message.content or None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {
                            "name": to_wire_name(call.name),
                            "arguments": json.dumps(call.arguments),
                        },
                    }
                    for call in message.tool_calls
                ],
            }
        case Role.TOOL:
            return {
                "role": "tool",
                "tool_call_id": message.tool_call_id,
                "content": message.content,
            }
        case _:
            return {"role": message.role.value, "content": message.content}


def to_wire(messages: list[Message]) -> list[dict[str, Any]]:
    return [message_to_wire(m) for m in messages]


def to_message(completion: Completion) -> Message:
    """The assistant message for a completion; tool calls keep emission order."""
    return Message.assistant(
        completion.text,
        tuple(
            ToolCallRequest(
                id=call.id,
                name=call.name,
                arguments=call.arguments,
                arguments_error=call.arguments_error,
            )
            for call in completion.tool_calls
        ),
    )


async def send(
    backends: BackendRegistry,
    target: Target,
    messages: list[Message],
    tools: list[ToolSchema],
) -> Completion:
    """Send one turn to the target's backend.

    Raises:
        NotFoundError: If the target's backend is not configured.
        BackendError: After retries for transient failures, or immediately
            for permanent ones.
    """
    backend = backends.get(target.backend)
    logger.debug("Sending %d messages, %d tools to %s", len(messages), len(tools), target)
    return await backend.complete(model=target.model, messages=to_wire(messages), tools=tools)
