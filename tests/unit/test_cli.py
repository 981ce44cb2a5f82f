"""Tests for the REPL's permission editing and custom command listing."""

from collections.abc import Callable
from pathlib import Path

import pytest

from tests.conftest import make_loop
from yoke.agent.context import Session
from yoke.agent.models import Decision
from yoke.agent.policy import Invocation, decide
from yoke.environment.cli.__main__ import BUILTIN_COMMANDS, handle_command, handle_permissions
from yoke.lib import paths

SessionFactory = Callable[..., Session]

GIT_STATUS = Invocation.of("Bash", {"command": "git status"})


class TestPermissionsCommand:
    """``/permissions add|rm`` edits the live rules and saves them."""

    def test_add_applies_and_persists(
        self, session_factory: SessionFactory, project: Path
    ) -> None:
        session = session_factory()
        loop = make_loop(session)

        handle_permissions("add allow Bash(git status)", loop)

        assert loop.ctx.rules is session.rules
        assert "Bash(git status)" in session.rules.patterns()["allow"]
        assert decide(loop.state.mode, loop.ctx.rules, GIT_STATUS) == Decision.ALLOW
        saved = paths.permissions_file(project).read_text()
        assert saved.startswith("[permissions]\n")
        assert 'allow = ["Bash(git status)"]' in saved
        assert "curl" not in saved

    def test_rm_removes_by_index(self, session_factory: SessionFactory) -> None:
        loop = make_loop(session_factory())
        handle_permissions("add ask Write(src/**)", loop)
        handle_permissions("add ask Edit(src/**)", loop)

        handle_permissions("rm ask 0", loop)

        assert loop.ctx.rules.patterns()["ask"] == ["Edit(src/**)"]

    @pytest.mark.parametrize(
        "arg",
        ["add allow Bash(", "add maybe Read(x)", "rm ask 7", "rm deny nope", "add allow"],
    )
    def test_bad_arguments_change_nothing(
        self, session_factory: SessionFactory, project: Path, arg: str
    ) -> None:
        session = session_factory()
        loop = make_loop(session)
        before = session.rules

        handle_permissions(arg, loop)

        assert session.rules is before
        assert loop.ctx.rules is before
        assert not paths.permissions_file(project).exists()

    def test_network_floor_cannot_be_removed(self, session_factory: SessionFactory) -> None:
        session = session_factory()
        loop = make_loop(session)
        before = session.rules
        assert before.floor > 0

        handle_permissions("rm deny 0", loop)

        assert loop.ctx.rules is before


class TestCommandNames:
    def test_builtins_known(self) -> None:
        assert {"/help", "/permissions", "/commands", "/exit", "/q"} <= BUILTIN_COMMANDS
        assert "/<command>" not in BUILTIN_COMMANDS

    def test_commands_listing_keeps_repl_open(self, session_factory: SessionFactory) -> None:
        loop = make_loop(session_factory())

        assert handle_command("/commands", loop) is True
        assert handle_command("/permissions", loop) is True
        assert handle_command("/exit", loop) is False
