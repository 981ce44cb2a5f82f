"""Tests for subagent definitions and delegation."""

import json
from collections.abc import Callable
from pathlib import Path

import pytest

from tests.conftest import ScriptedBackend, call, calls, make_loop, make_tool_context, reply
from yoke.agent.context import Session
from yoke.agent.models import AgentSpec, LoopStatus, PermissionMode, Role, SkillSpec
from yoke.agent.policy import AutoApprover, RejectingApprover
from yoke.agent.subagents import build_task_prompt, child_tools, clamp_mode, load_agents, spawn
from yoke.lib.errors import ConfigError, NotFoundError, RecursionDeniedError
from yoke.lib.responses import error_code
from yoke.lib.transcript import EventKind

SessionFactory = Callable[..., Session]

HELPER = AgentSpec(
    name="helper",
    description="Answers questions about the project",
    allowed_tools=frozenset({"Read", "Grep", "Bash", "Task"}),
    permission_mode=PermissionMode.BYPASS_PERMISSIONS,
    max_turns=3,
)


class TestClamping:
    """A child never exceeds its parent."""

    @pytest.mark.parametrize(
        ("requested", "parent", "expected"),
        [
            (PermissionMode.BYPASS_PERMISSIONS, PermissionMode.DEFAULT, PermissionMode.DEFAULT),
            (PermissionMode.DEFAULT, PermissionMode.BYPASS_PERMISSIONS, PermissionMode.DEFAULT),
            (
                PermissionMode.ACCEPT_EDITS,
                PermissionMode.BYPASS_PERMISSIONS,
                PermissionMode.ACCEPT_EDITS,
            ),
        ],
    )
    def test_clamp_mode(
        self, requested: PermissionMode, parent: PermissionMode, expected: PermissionMode
    ) -> None:
        assert clamp_mode(requested, parent) == expected

    def test_child_tools_never_include_task(self) -> None:
        parent = frozenset({"Read", "Write", "Task", "Bash"})

        assert child_tools(HELPER, parent) == {"Read", "Bash"}

    def test_spawn_snapshot(self, session_factory: SessionFactory) -> None:
        session = session_factory(approver=AutoApprover())
        parent = make_tool_context(session, mode=PermissionMode.ACCEPT_EDITS)

        child = spawn(HELPER, parent)

        assert child.state.mode == PermissionMode.ACCEPT_EDITS
        assert child.state.may_delegate is False
        assert child.ctx.tool_restriction == {"Read", "Grep", "Bash"}
        assert child.ctx.max_turns == 3
        assert isinstance(child.ctx.approver, AutoApprover)
        assert child.ctx.rules is parent.loop.rules
        assert child.ctx.skills is not parent.skills

    def test_interactive_parent_gives_rejecting_child(self, session_factory: SessionFactory) -> None:
        parent = make_tool_context(session_factory())

        assert isinstance(spawn(HELPER, parent).ctx.approver, RejectingApprover)

    def test_no_spawn_without_delegation(self, session_factory: SessionFactory) -> None:
        parent = make_tool_context(session_factory(), may_delegate=False)

        with pytest.raises(RecursionDeniedError):
            spawn(HELPER, parent)

    def test_spec_skills_activated_in_child_only(self, session_factory: SessionFactory) -> None:
        skill = SkillSpec(name="terse", instructions="Answer briefly.")
        spec = HELPER.model_copy(update={"skills": ("terse",)})
        parent = make_tool_context(session_factory(skills=[skill]))

        child = spawn(spec, parent)

        assert [s.name for s in child.ctx.skills.list_active()] == ["terse"]
        assert parent.skills.list_active() == []

    def test_unknown_spec_skill(self, session_factory: SessionFactory) -> None:
        spec = HELPER.model_copy(update={"skills": ("missing",)})
        parent = make_tool_context(session_factory())

        with pytest.raises(NotFoundError):
            spawn(spec, parent)


class TestTaskTool:
    """Delegation end to end through the parent loop."""

    @pytest.mark.asyncio
    async def test_child_result_returned(self, session_factory: SessionFactory) -> None:
        backend = ScriptedBackend(
            [
                calls(call("Task", "t1", agent="helper", prompt="What does app.py do?")),
                calls(call("Read", "r1", path="src/app.py")),
                reply("It returns 'hello'."),
                reply("The app says hello."),
            ]
        )
        session = session_factory(backend, agents=[HELPER])
        loop = make_loop(session)

        outcome = await loop.run("explain the app")

        assert outcome.status == LoopStatus.COMPLETED
        [task_result] = [m for m in loop.state.messages if m.role == Role.TOOL]
        content = json.loads(task_result.content)
        assert content["agent"] == "helper"
        assert content["ok"] is True
        assert content["output"] == {
            "text": "It returns 'hello'.",
            "turns": 2,
            "terminal_reason": "completed",
        }
        assert content["error"] is None
        # The child never sees the parent's history and never gets Task.
        child_request = backend.requests[1]
        assert child_request["messages"][1]["content"] == "What does app.py do?"
        assert "Task" not in child_request["tools"]

    @pytest.mark.asyncio
    async def test_child_events_scoped(self, session_factory: SessionFactory) -> None:
        backend = ScriptedBackend(
            [
                calls(call("Task", "t1", agent="helper", prompt="Look around")),
                reply("Nothing to see."),
                reply("ok"),
            ]
        )
        session = session_factory(backend, agents=[HELPER])

        await make_loop(session).run("delegate")

        [start] = session.transcript.of_kind(EventKind.SUBAGENT_START)
        [end] = session.transcript.of_kind(EventKind.SUBAGENT_END)
        assert start.agent == "helper"
        assert start.data["mode"] == "default"
        assert end.data["terminal_reason"] == "completed"
        child_messages = [
            e for e in session.transcript.of_kind(EventKind.MESSAGE) if e.agent == "helper"
        ]
        assert [e.data["role"] for e in child_messages] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_child_cannot_delegate(self, session_factory: SessionFactory) -> None:
        backend = ScriptedBackend(
            [
                calls(call("Task", "t1", agent="helper", prompt="Recurse")),
                calls(call("Task", "t2", agent="helper", prompt="Recurse again")),
                reply("Could not delegate."),
                reply("ok"),
            ]
        )
        session = session_factory(backend, agents=[HELPER])

        await make_loop(session).run("go")

        child_results = [
            e for e in session.transcript.of_kind(EventKind.TOOL_RESULT) if e.agent == "helper"
        ]
        assert [error_code(e.data["content"]) for e in child_results] == ["recursion_denied"]
        assert len(session.transcript.of_kind(EventKind.SUBAGENT_START)) == 1

    @pytest.mark.asyncio
    async def test_unknown_agent(self, session_factory: SessionFactory) -> None:
        backend = ScriptedBackend(
            [calls(call("Task", "t1", agent="ghost", prompt="Boo")), reply("ok")]
        )
        loop = make_loop(session_factory(backend, agents=[HELPER]))

        await loop.run("go")

        [result] = [m for m in loop.state.messages if m.role == Role.TOOL]
        assert error_code(result.content) == "not_found"
        assert "helper" in result.content

    @pytest.mark.asyncio
    async def test_child_failure_is_a_result(self, session_factory: SessionFactory) -> None:
        """A child hitting its turn limit is reported, not raised."""
        spec = HELPER.model_copy(update={"max_turns": 1})
        backend = ScriptedBackend(
            [
                calls(call("Task", "t1", agent="helper", prompt="Dig")),
                calls(call("Read", "r1", path="README.md")),
                calls(call("Read", "r2", path="README.md")),
                reply("The helper ran out of turns."),
            ]
        )
        loop = make_loop(session_factory(backend, agents=[spec]))

        outcome = await loop.run("go")

        assert outcome.status == LoopStatus.COMPLETED
        [result] = [m for m in loop.state.messages if m.role == Role.TOOL]
        content = json.loads(result.content)
        assert content["ok"] is False
        assert content["output"]["terminal_reason"] == "turn_limit_exceeded"

    @pytest.mark.asyncio
    async def test_metrics_merged_into_parent(self, session_factory: SessionFactory) -> None:
        backend = ScriptedBackend(
            [
                calls(call("Task", "t1", agent="helper", prompt="Read it")),
                calls(call("Read", "r1", path="README.md")),
                reply("Read."),
                reply("ok"),
            ]
        )
        session = session_factory(backend, agents=[HELPER])

        await make_loop(session).run("go")

        assert session.metrics.usage.requests == 4
        assert session.metrics.tool_calls == 2


class TestLoadAgents:
    """Tests for agent discovery."""

    def test_first_root_wins(self, tmp_path: Path) -> None:
        project = tmp_path / "project"
        user = tmp_path / "user"
        project.mkdir()
        user.mkdir()
        (project / "reviewer.toml").write_text('description = "project reviewer"\n')
        (user / "reviewer.toml").write_text('description = "user reviewer"\n')
        (user / "explorer.toml").write_text(
            'name = "explorer"\nallowed_tools = ["Read"]\npermission_mode = "accept-edits"\n'
        )

        agents = load_agents([project, user, tmp_path / "missing"])

        assert set(agents) == {"reviewer", "explorer"}
        assert agents["reviewer"].description == "project reviewer"
        assert agents["explorer"].allowed_tools == {"Read"}
        assert agents["explorer"].permission_mode == PermissionMode.ACCEPT_EDITS

    def test_all_problems_reported(self, tmp_path: Path) -> None:
        (tmp_path / "bad.toml").write_text("max_turns = = 1\n")
        (tmp_path / "worse.toml").write_text("max_turns = 0\n")

        with pytest.raises(ConfigError) as exc_info:
            load_agents([tmp_path])

        assert len(exc_info.value.problems) == 2


class TestBuildTaskPrompt:
    def test_notes_and_files(self) -> None:
        prompt = build_task_prompt("Review", notes="Focus on errors", files=["a.py", "b.py"])

        assert prompt == "Review\n\nNotes: Focus on errors\n\nRelevant files:\n- a.py\n- b.py"

    def test_bare(self) -> None:
        assert build_task_prompt("Review") == "Review"
