"""Model backend clients.

Every backend speaks the OpenAI chat-completions protocol (OpenAI itself,
Anthropic's and Venice's compatible endpoints, a local Ollama). Requests
carry plain wire dicts; callers convert their own message types.

Failures are classified:
- transient (timeouts, connection errors, 408/409/425/429, 5xx): retried
  with exponential backoff up to ``max_attempts``
- permanent (401/403/400/404...): raised immediately

Both surface as ``BackendError`` once retries are exhausted.

Exports:
- ToolSchema / WireToolCall / Completion - wire types
- ChatBackend - the protocol the conversation loop depends on
- OpenAIChatBackend - httpx implementation
- BackendRegistry - backends by name

Examples:
    Send one request::

        >>> backend = OpenAIChatBackend(name="chatgpt", base_url="https://api.openai.com/v1", api_key=key)
        >>> completion = await backend.complete(
        ...     model="gpt-4o-mini",
        ...     messages=[{"role": "user", "content": "hi"}],
        ...     tools=[],
        ... )
        >>> completion.text
        'Hello! How can I help?'
"""

import json
import logging
import uuid
from typing import Any, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from yoke.lib.errors import BackendError, NotFoundError
from yoke.lib.retry import is_transient, is_transient_status, with_retry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Wire types
# ---------------------------------------------------------------------------


def to_wire_name(name: str) -> str:
    """Function names must match ``[A-Za-z0-9_-]+``; dots become ``__``."""
    return name.replace(".", "__")


def from_wire_name(name: str) -> str:
    return name.replace("__", ".")


class ToolSchema(BaseModel):
    """A tool as advertised to the model."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    parameters: dict[str, Any]

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": to_wire_name(self.name),
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class WireToolCall(BaseModel):
    """A tool call as parsed from a completion."""

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    arguments_error: str | None = Field(
        default=None, description="Set when the model's arguments were not a JSON object"
    )


class Completion(BaseModel):
    """One assistant turn returned by a backend."""

    text: str = ""
    tool_calls: list[WireToolCall] = Field(default_factory=list)
    finish_reason: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def truncated(self) -> bool:
        return self.finish_reason == "length"


def parse_arguments(raw: object) -> tuple[dict[str, Any], str | None]:
    """Decode function arguments; returns (arguments, error)."""
    match raw:
        case dict():
            return raw, None
        case None | "":
            return {}, None
        case str():
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError as e:
                return {}, f"Arguments are not valid JSON: {e}"
            if not isinstance(parsed, dict):
                return {}, "Arguments must be a JSON object"
            return parsed, None
        case _:
            return {}, f"Unsupported arguments type: {type(raw).__name__}"


def parse_completion(data: dict[str, Any], names: dict[str, str] | None = None) -> Completion:
    """Parse a chat-completions response body.

    ``names`` maps advertised wire names back to tool names; a name not in
    it falls back to ``from_wire_name``.

    Raises:
        BackendError: (permanent) if the body has no choices or is not
            shaped like a chat completion.
    """
    try:
        return read_completion(data, names or {})
    except (AttributeError, TypeError, ValueError, KeyError) as e:
        raise BackendError(f"Malformed backend response: {e}", transient=False) from e


def read_completion(data: dict[str, Any], names: dict[str, str]) -> Completion:
    choices = data.get("choices") or []
    if not choices:
        raise BackendError("Backend response has no choices", transient=False)
    choice = choices[0]
    message = choice.get("message") or {}
    calls: list[WireToolCall] = []
    for i, raw_call in enumerate(message.get("tool_calls") or []):
        function = raw_call.get("function") or {}
        arguments, error = parse_arguments(function.get("arguments"))
        wire_name = function.get("name") or ""
        calls.append(
            WireToolCall(
                id=raw_call.get("id") or f"call_{i}_{uuid.uuid4().hex[:8]}",
                name=names.get(wire_name) or from_wire_name(wire_name),
                arguments=arguments,
                arguments_error=error,
            )
        )
    usage = data.get("usage") or {}
    return Completion(
        text=message.get("content") or "",
        tool_calls=calls,
        finish_reason=choice.get("finish_reason"),
        prompt_tokens=int(usage.get("prompt_tokens") or 0),
        completion_tokens=int(usage.get("completion_tokens") or 0),
    )


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


@runtime_checkable
class ChatBackend(Protocol):
    """Anything that can turn a conversation into the next assistant turn."""

    name: str

    async def complete(
        self,
        *,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[ToolSchema],
    ) -> Completion: ...


class OpenAIChatBackend(BaseModel):
    """OpenAI-compatible ``/chat/completions`` client over httpx."""

    name: str
    base_url: str
    api_key: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = 120
    max_attempts: int = 3
    min_wait: float = 2
    max_wait: float = 10

    _transport: httpx.AsyncBaseTransport | None = PrivateAttr(default=None)

    def with_transport(self, transport: httpx.AsyncBaseTransport) -> "OpenAIChatBackend":
        """Route requests through ``transport`` (e.g. ``httpx.MockTransport``)."""
        self._transport = transport
        return self

    def request_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", **self.headers}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def post(self, payload: dict[str, Any]) -> dict[str, Any]:
        """One HTTP attempt; non-2xx statuses become classified ``BackendError``."""
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self._transport,
        ) as client:
            response = await client.post(
                "/chat/completions", json=payload, headers=self.request_headers()
            )
        if response.status_code >= 400:
            raise BackendError(
                f"{self.name} returned HTTP {response.status_code}: {response.text[:500]}",
                transient=is_transient_status(response.status_code),
                status_code=response.status_code,
            )
        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise BackendError(f"{self.name} returned invalid JSON", transient=False) from e

    async def complete(
        self,
        *,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[ToolSchema],
    ) -> Completion:
        payload: dict[str, Any] = {"model": model, "messages": messages}
        if tools:
            payload["tools"] = [t.to_wire() for t in tools]
            payload["tool_choice"] = "auto"

        send = with_retry(
            max_attempts=self.max_attempts, min_wait=self.min_wait, max_wait=self.max_wait
        )(self.post)
        try:
            data = await send(payload)
        except httpx.HTTPError as e:
            raise BackendError(f"{self.name}: {e}", transient=is_transient(e)) from e
        return parse_completion(data, {to_wire_name(t.name): t.name for t in tools})


class BackendRegistry(BaseModel):
    """Backends by name."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    backends: dict[str, ChatBackend] = Field(default_factory=dict)

    def register(self, backend: ChatBackend) -> None:
        self.backends[backend.name] = backend

    def get(self, name: str) -> ChatBackend:
        """Look up a backend.

        Raises:
            NotFoundError: If no backend has that name.
        """
        try:
            return self.backends[name]
        except KeyError:
            raise NotFoundError(
                f"Backend '{name}' is not configured (known: {', '.join(sorted(self.backends))})"
            ) from None

    def names(self) -> list[str]:
        return sorted(self.backends)
