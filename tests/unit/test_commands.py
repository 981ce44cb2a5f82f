"""Tests for custom slash commands and per-prompt tool restrictions."""

from collections.abc import Callable
from pathlib import Path

import pytest

from tests.conftest import ScriptedBackend, call, calls, make_loop, reply
from yoke.agent.commands import CommandIndex, parse_command
from yoke.agent.context import Session
from yoke.agent.models import LoopStatus, Role
from yoke.lib.errors import NotFoundError
from yoke.lib.responses import error_code

SessionFactory = Callable[..., Session]

REVIEW = """---
description: Review a file for bugs
allowed-tools: Read, Grep
---
Review $ARGUMENTS and list every bug you find.
"""


def write_command(root: Path, name: str, text: str) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    path = root / f"{name}.md"
    path.write_text(text)
    return path


class TestParseCommand:
    def test_front_matter(self, tmp_path: Path) -> None:
        command = parse_command(write_command(tmp_path, "review", REVIEW), "project")

        assert command.name == "review"
        assert command.description == "Review a file for bugs"
        assert command.allowed_tools == frozenset({"Read", "Grep"})
        assert command.body == "Review $ARGUMENTS and list every bug you find."

    def test_plain_body_is_unrestricted(self, tmp_path: Path) -> None:
        command = parse_command(write_command(tmp_path, "hi", "Say hello.\n"), "user")

        assert command.allowed_tools is None
        assert command.description == ""
        assert command.provenance == "user"

    def test_expand_arguments(self, tmp_path: Path) -> None:
        command = parse_command(write_command(tmp_path, "review", REVIEW), "project")

        assert command.expand("  src/app.py ") == "Review src/app.py and list every bug you find."
        assert command.expand("") == "Review  and list every bug you find."


class TestCommandIndex:
    """Discovery across project and user directories."""

    def test_project_wins(self, tmp_path: Path) -> None:
        project, user = tmp_path / "project", tmp_path / "user"
        write_command(project, "review", REVIEW)
        write_command(user, "review", "User review.")
        write_command(user, "deploy", "Deploy it.")

        index = CommandIndex.discover([project, user])

        assert sorted(index.commands) == ["deploy", "review"]
        assert index.get("review").provenance == "project"
        assert index.get("deploy").provenance == "user"
        assert "deploy" in index
        assert "missing" not in index

    def test_missing_directories_are_skipped(self, tmp_path: Path) -> None:
        index = CommandIndex.discover([tmp_path / "nope"])

        assert index.commands == {}
        assert index.errors == ()

    def test_unreadable_file_is_reported(self, tmp_path: Path) -> None:
        write_command(tmp_path, "ok", "Fine.")
        (tmp_path / "bad.md").write_bytes(b"\xff\xfe\x00 not utf-8")

        index = CommandIndex.discover([tmp_path])

        assert list(index.commands) == ["ok"]
        assert [path.name for path, _ in index.errors] == ["bad.md"]

    def test_unknown_command(self, tmp_path: Path) -> None:
        index = CommandIndex.discover([tmp_path])

        with pytest.raises(NotFoundError, match="available: none"):
            index.get("review")


class TestPromptRestriction:
    """``allowed_tools`` on a run narrows the tools for that run only."""

    @pytest.mark.asyncio
    async def test_restricts_advertised_tools(self, session_factory: SessionFactory) -> None:
        backend = ScriptedBackend([reply("Looks fine."), reply("Hello.")])
        loop = make_loop(session_factory(backend))

        await loop.run("review it", allowed_tools=frozenset({"Read", "Grep"}))
        await loop.run("hello")

        assert sorted(backend.requests[0]["tools"]) == ["Grep", "Read"]
        assert "Write" in backend.requests[1]["tools"]
        assert loop.state.prompt_tools is None

    @pytest.mark.asyncio
    async def test_restricted_call_is_refused(self, session_factory: SessionFactory) -> None:
        backend = ScriptedBackend(
            [calls(call("Write", "w1", path="x.txt", content="x")), reply("Could not write.")]
        )
        loop = make_loop(session_factory(backend))

        outcome = await loop.run("write it", allowed_tools=frozenset({"Read"}))

        assert outcome.status == LoopStatus.COMPLETED
        results = [m for m in loop.state.messages if m.role == Role.TOOL]
        assert error_code(results[0].content) == "capability_denied"
