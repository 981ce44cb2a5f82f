"""Tests for data models."""

import json

import pytest

from yoke.agent.models import (
    AgentSpec,
    LoopStatus,
    Message,
    PermissionMode,
    SubagentResult,
    Target,
    ToolCallRequest,
    ToolResult,
    min_mode,
)


class TestPermissionMode:
    """Tests for mode parsing and ordering."""

    @pytest.mark.parametrize(
        ("alias", "expected"),
        [
            ("default", PermissionMode.DEFAULT),
            ("acceptEdits", PermissionMode.ACCEPT_EDITS),
            ("accept-edits", PermissionMode.ACCEPT_EDITS),
            ("accept_edits", PermissionMode.ACCEPT_EDITS),
            ("acceptedits", PermissionMode.ACCEPT_EDITS),
            ("bypassPermissions", PermissionMode.BYPASS_PERMISSIONS),
            ("bypass-permissions", PermissionMode.BYPASS_PERMISSIONS),
            ("bypass_permissions", PermissionMode.BYPASS_PERMISSIONS),
            ("bypass", PermissionMode.BYPASS_PERMISSIONS),
        ],
    )
    def test_aliases(self, alias: str, expected: PermissionMode) -> None:
        """Every documented spelling should parse."""
        assert PermissionMode.parse(alias) == expected

    def test_unknown_mode(self) -> None:
        """Unknown names should be rejected with the valid choices."""
        with pytest.raises(ValueError, match="acceptEdits"):
            PermissionMode.parse("yolo")

    def test_total_order(self) -> None:
        """DEFAULT < ACCEPT_EDITS < BYPASS_PERMISSIONS."""
        assert (
            PermissionMode.DEFAULT.rank
            < PermissionMode.ACCEPT_EDITS.rank
            < PermissionMode.BYPASS_PERMISSIONS.rank
        )

    def test_min_mode(self) -> None:
        """min_mode should pick the less permissive mode in either order."""
        assert (
            min_mode(PermissionMode.BYPASS_PERMISSIONS, PermissionMode.ACCEPT_EDITS)
            == PermissionMode.ACCEPT_EDITS
        )
        assert (
            min_mode(PermissionMode.DEFAULT, PermissionMode.BYPASS_PERMISSIONS)
            == PermissionMode.DEFAULT
        )


class TestTarget:
    """Tests for model@backend targets."""

    def test_parse(self) -> None:
        target = Target.parse("gpt-4o-mini@chatgpt")

        assert target.model == "gpt-4o-mini"
        assert target.backend == "chatgpt"
        assert str(target) == "gpt-4o-mini@chatgpt"

    def test_splits_on_last_at(self) -> None:
        """Model names may contain '@'."""
        target = Target.parse("org/model@v2@ollama")

        assert target.model == "org/model@v2"
        assert target.backend == "ollama"

    @pytest.mark.parametrize("value", ["gpt-4o", "@chatgpt", "gpt-4o@", ""])
    def test_invalid(self, value: str) -> None:
        with pytest.raises(ValueError):
            Target.parse(value)


class TestAgentSpec:
    """Tests for agent definitions."""

    def test_defaults(self) -> None:
        """Agents default to read-only tools, default mode and 8 turns."""
        spec = AgentSpec(name="explorer")

        assert spec.allowed_tools == frozenset({"Read", "Grep", "Glob"})
        assert spec.permission_mode == PermissionMode.DEFAULT
        assert spec.max_turns == 8
        assert spec.target is None

    def test_coerces_strings(self) -> None:
        """Mode aliases and target strings are accepted as in TOML files."""
        spec = AgentSpec.model_validate(
            {"name": "fixer", "permission_mode": "accept-edits", "target": "m@ollama"}
        )

        assert spec.permission_mode == PermissionMode.ACCEPT_EDITS
        assert spec.target == Target(model="m", backend="ollama")


class TestToolResult:
    """Tests for tool results."""

    def test_failure_is_error_object(self) -> None:
        """Failures carry the {"error": {code, message}} JSON object."""
        result = ToolResult.failure(
            ToolCallRequest(id="c1", name="Read"), "not_found", "No such file: a.txt"
        )

        assert result.is_error
        assert result.id == "c1"
        assert json.loads(result.content) == {
            "error": {"code": "not_found", "message": "No such file: a.txt"}
        }

    def test_to_message_echoes_id(self) -> None:
        message = ToolResult(id="c7", name="Bash", content="ok").to_message()

        assert message.tool_call_id == "c7"
        assert message.name == "Bash"


class TestMessage:
    """Tests for history messages."""

    def test_char_count_includes_tool_calls(self) -> None:
        """Tool call names and arguments count toward the context budget."""
        plain = Message.assistant("hi")
        with_call = Message.assistant(
            "hi", (ToolCallRequest(id="c1", name="Read", arguments={"path": "a.py"}),)
        )

        assert plain.char_count == 2
        assert with_call.char_count > plain.char_count


class TestSubagentResult:
    """Tests for the condensed child result."""

    def test_to_content_shape(self) -> None:
        result = SubagentResult(
            agent="reviewer",
            text="Looks good",
            turns=2,
            terminal_reason=LoopStatus.COMPLETED,
        )

        payload = json.loads(result.to_content())

        assert payload == {
            "agent": "reviewer",
            "ok": True,
            "output": {"text": "Looks good", "turns": 2, "terminal_reason": "completed"},
            "error": None,
        }

    def test_not_ok_when_turn_limited(self) -> None:
        result = SubagentResult(
            agent="a", text="", turns=3, terminal_reason=LoopStatus.TURN_LIMIT_EXCEEDED
        )

        assert not result.ok
