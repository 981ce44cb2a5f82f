"""Tests for the OpenAI-compatible backend client."""

import json

import httpx
import pytest

from yoke.agent.client import to_message, to_wire
from yoke.agent.models import Message, ToolCallRequest, ToolResult
from yoke.lib.client import (
    BackendRegistry,
    OpenAIChatBackend,
    ToolSchema,
    from_wire_name,
    parse_completion,
    to_wire_name,
)
from yoke.lib.errors import BackendError, NotFoundError

OK_BODY = {
    "choices": [
        {
            "message": {
                "content": None,
                "tool_calls": [
                    {
                        "id": "call_a",
                        "type": "function",
                        "function": {"name": "Read", "arguments": '{"path": "a.py"}'},
                    },
                    {
                        "id": "call_b",
                        "type": "function",
                        "function": {"name": "mcp__github__list", "arguments": "{}"},
                    },
                ],
            },
            "finish_reason": "tool_calls",
        }
    ],
    "usage": {"prompt_tokens": 12, "completion_tokens": 3},
}


def backend_with(handler: httpx.MockTransport, **kwargs: object) -> OpenAIChatBackend:
    backend = OpenAIChatBackend(
        name="test",
        base_url="http://backend.invalid/v1",
        api_key="sk-test",
        min_wait=0,
        max_wait=0,
        **kwargs,
    )
    return backend.with_transport(handler)


class TestParseCompletion:
    """Tests for response parsing."""

    def test_tool_calls_in_order(self) -> None:
        completion = parse_completion(OK_BODY)

        assert [c.id for c in completion.tool_calls] == ["call_a", "call_b"]
        assert completion.tool_calls[0].arguments == {"path": "a.py"}
        assert completion.tool_calls[1].name == "mcp.github.list"
        assert completion.finish_reason == "tool_calls"
        assert completion.prompt_tokens == 12
        assert completion.text == ""

    def test_bad_arguments_are_flagged(self) -> None:
        """Undecodable arguments don't fail the turn; the call carries the problem."""
        body = {
            "choices": [
                {
                    "message": {
                        "tool_calls": [
                            {"id": "c1", "function": {"name": "Bash", "arguments": "{not json"}}
                        ]
                    },
                    "finish_reason": "tool_calls",
                }
            ]
        }

        call = parse_completion(body).tool_calls[0]

        assert call.arguments == {}
        assert call.arguments_error is not None

    def test_missing_ids_are_generated(self) -> None:
        body = {"choices": [{"message": {"tool_calls": [{"function": {"name": "Read"}}]}}]}

        assert parse_completion(body).tool_calls[0].id.startswith("call_0_")

    def test_no_choices(self) -> None:
        with pytest.raises(BackendError) as exc_info:
            parse_completion({"choices": []})

        assert not exc_info.value.transient

    def test_truncated(self) -> None:
        body = {"choices": [{"message": {"content": "partial"}, "finish_reason": "length"}]}

        assert parse_completion(body).truncated

    @pytest.mark.parametrize(
        "body",
        [
            {"choices": "x"},
            {"choices": [None]},
            {"choices": [{"message": "hello"}]},
            {"choices": [{"message": {"tool_calls": "Read"}}]},
            {"choices": [{"message": {"tool_calls": [{"function": {"name": 7}}]}}]},
            {"choices": [{"message": {"content": "ok"}}], "usage": {"prompt_tokens": "many"}},
            ["not", "an", "object"],
        ],
    )
    def test_malformed_body_is_permanent_backend_error(self, body: object) -> None:
        with pytest.raises(BackendError) as exc_info:
            parse_completion(body)  # type: ignore[arg-type]

        assert not exc_info.value.transient


class TestWireNames:
    def test_dots_round_trip(self) -> None:
        assert to_wire_name("mcp.github.list") == "mcp__github__list"
        assert from_wire_name("mcp__github__list") == "mcp.github.list"

    def test_advertised_names_win_over_decoding(self) -> None:
        """A tool whose own name holds a double underscore maps back exactly."""
        name = "mcp.db.run__query"
        body = {
            "choices": [
                {
                    "message": {
                        "tool_calls": [
                            {"id": "c1", "function": {"name": to_wire_name(name)}},
                            {"id": "c2", "function": {"name": "mcp__other__tool"}},
                        ]
                    }
                }
            ]
        }

        completion = parse_completion(body, {to_wire_name(name): name})

        assert [c.name for c in completion.tool_calls] == [name, "mcp.other.tool"]

    @pytest.mark.asyncio
    async def test_complete_maps_names_of_the_tools_it_sent(self) -> None:
        name = "mcp.db.run__query"
        wire_call = {"id": "c1", "function": {"name": "mcp__db__run__query"}}
        body = {"choices": [{"message": {"tool_calls": [wire_call]}}]}

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=body)

        backend = backend_with(httpx.MockTransport(handler))
        tools = [ToolSchema(name=name, description="Run", parameters={"type": "object"})]

        completion = await backend.complete(model="m", messages=[], tools=tools)

        assert completion.tool_calls[0].name == name


class TestOpenAIChatBackend:
    """Tests for HTTP behaviour and retry classification."""

    @pytest.mark.asyncio
    async def test_request_payload(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=OK_BODY)

        backend = backend_with(httpx.MockTransport(handler))
        tools = [ToolSchema(name="mcp.github.list", description="List", parameters={"type": "object"})]

        await backend.complete(model="m", messages=[{"role": "user", "content": "hi"}], tools=tools)

        payload = json.loads(seen[0].content)
        assert seen[0].url.path == "/v1/chat/completions"
        assert seen[0].headers["Authorization"] == "Bearer sk-test"
        assert payload["model"] == "m"
        assert payload["tool_choice"] == "auto"
        assert payload["tools"][0]["function"]["name"] == "mcp__github__list"

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self) -> None:
        statuses = iter([503, 429, 200])

        def handler(request: httpx.Request) -> httpx.Response:
            status = next(statuses)
            return httpx.Response(status, json=OK_BODY if status == 200 else {"error": "busy"})

        backend = backend_with(httpx.MockTransport(handler), max_attempts=3)

        completion = await backend.complete(model="m", messages=[], tools=[])

        assert len(completion.tool_calls) == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self) -> None:
        attempts: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            return httpx.Response(502, text="bad gateway")

        backend = backend_with(httpx.MockTransport(handler), max_attempts=2)

        with pytest.raises(BackendError) as exc_info:
            await backend.complete(model="m", messages=[], tools=[])

        assert exc_info.value.transient
        assert exc_info.value.status_code == 502
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self) -> None:
        attempts: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            return httpx.Response(401, json={"error": "bad key"})

        backend = backend_with(httpx.MockTransport(handler), max_attempts=3)

        with pytest.raises(BackendError) as exc_info:
            await backend.complete(model="m", messages=[], tools=[])

        assert not exc_info.value.transient
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        backend = backend_with(httpx.MockTransport(handler), max_attempts=2)

        with pytest.raises(BackendError) as exc_info:
            await backend.complete(model="m", messages=[], tools=[])

        assert exc_info.value.transient


    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError, httpx.ReadTimeout],
    )
    async def test_dropped_connection_is_retried(self, error: type[httpx.TransportError]) -> None:
        attempts: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            if len(attempts) == 1:
                raise error("connection dropped", request=request)
            return httpx.Response(200, json=OK_BODY)

        backend = backend_with(httpx.MockTransport(handler), max_attempts=2)

        completion = await backend.complete(model="m", messages=[], tools=[])

        assert len(attempts) == 2
        assert completion.finish_reason == "tool_calls"

    @pytest.mark.asyncio
    async def test_unsupported_protocol_is_permanent(self) -> None:
        attempts: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            raise httpx.UnsupportedProtocol("no such scheme", request=request)

        backend = backend_with(httpx.MockTransport(handler), max_attempts=3)

        with pytest.raises(BackendError) as exc_info:
            await backend.complete(model="m", messages=[], tools=[])

        assert not exc_info.value.transient
        assert len(attempts) == 1


class TestBackendRegistry:
    def test_unknown_backend(self) -> None:
        registry = BackendRegistry()
        registry.register(OpenAIChatBackend(name="chatgpt", base_url="http://x.invalid"))

        with pytest.raises(NotFoundError, match="chatgpt"):
            registry.get("nowhere")


class TestMessageConversion:
    """Tests for history <-> wire conversion."""

    def test_assistant_tool_calls_and_results(self) -> None:
        request = ToolCallRequest(id="c1", name="mcp.github.list", arguments={"state": "open"})
        history = [
            Message.user("list issues"),
            Message.assistant("", (request,)),
            ToolResult(id="c1", name="mcp.github.list", content="[]").to_message(),
        ]

        wire = to_wire(history)

        assert wire[0] == {"role": "user", "content": "list issues"}
        assert wire[1]["content"] is None
        assert wire[1]["tool_calls"][0]["function"] == {
            "name": "mcp__github__list",
            "arguments": '{"state": "open"}',
        }
        assert wire[2] == {"role": "tool", "tool_call_id": "c1", "content": "[]"}

    def test_to_message_keeps_order(self) -> None:
        message = to_message(parse_completion(OK_BODY))

        assert [c.id for c in message.tool_calls] == ["call_a", "call_b"]
