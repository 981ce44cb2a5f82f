"""Shared test fixtures.

The conversation loop is tested against ``ScriptedBackend``, which replays
canned completions and records every request, so no test needs a network.
"""

import itertools
import sys
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

import pytest

from yoke.agent.config import YokeConfig, load_config
from yoke.agent.context import ConversationState, LoopContext, Session, ToolContext
from yoke.agent.core import ConversationLoop
from yoke.agent.models import AgentSpec, PermissionMode, SkillSpec, ToolCallRequest
from yoke.agent.policy import Approver, RejectingApprover
from yoke.agent.session import top_level_loop
from yoke.agent.skills import ActiveSkillSet, SkillIndex
from yoke.agent.registry import ToolRegistry
from yoke.agent.tools import build_registry
from yoke.lib.client import BackendRegistry, Completion, ToolSchema, WireToolCall
from yoke.lib.hooks import HookEvent, HookMatcher, HookRunner
from yoke.lib.sandbox import PathSandbox
from yoke.lib.transcript import Transcript

_call_ids = itertools.count(1)


# --- Scripted backend ---


class ScriptedBackend:
    """Replays completions in order; an exception in the script is raised instead."""

    def __init__(self, script: Iterable[Completion | Exception], name: str = "scripted") -> None:
        self.name = name
        self.script = list(script)
        self.requests: list[dict[str, Any]] = []

    async def complete(
        self,
        *,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[ToolSchema],
    ) -> Completion:
        self.requests.append(
            {"model": model, "messages": messages, "tools": [t.name for t in tools]}
        )
        if not self.script:
            raise AssertionError("ScriptedBackend ran out of completions")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def reply(text: str) -> Completion:
    """A final assistant answer with no tool calls."""
    return Completion(text=text, finish_reason="stop", prompt_tokens=10, completion_tokens=5)


def call(name: str, call_id: str | None = None, **arguments: Any) -> WireToolCall:
    return WireToolCall(id=call_id or f"call_{next(_call_ids)}", name=name, arguments=arguments)


def calls(*tool_calls: WireToolCall, text: str = "") -> Completion:
    """An assistant turn requesting ``tool_calls`` in order."""
    return Completion(
        text=text,
        tool_calls=list(tool_calls),
        finish_reason="tool_calls",
        prompt_tokens=10,
        completion_tokens=5,
    )


def request(name: str, call_id: str = "c1", **arguments: Any) -> ToolCallRequest:
    return ToolCallRequest(id=call_id, name=name, arguments=arguments)


# --- Project and configuration ---


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A small project tree."""
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "src" / "app.py").write_text("def main():\n    return 'hello'\n")
    (root / "README.md").write_text("# Demo\n\nA demo project.\n")
    (root / ".yoke").mkdir()
    return root


def make_config(root: Path, **overrides: Any) -> YokeConfig:
    """Config for ``root`` with only project-scoped discovery and a scripted backend."""
    base: dict[str, Any] = {
        "default_target": "test-model@scripted",
        "backends": {"scripted": {"base_url": "http://scripted.invalid/v1"}},
        "agent_dirs": [root / ".yoke" / "agents"],
        "skill_dirs": [root / ".yoke" / "skills"],
        "command_dirs": [root / ".yoke" / "commands"],
    }
    base.update(overrides)
    return load_config(root, overrides=base, files=[])


@pytest.fixture
def config(project: Path) -> YokeConfig:
    return make_config(project)


def make_session(
    config: YokeConfig,
    backend: ScriptedBackend | None = None,
    *,
    approver: Approver | None = None,
    agents: Iterable[AgentSpec] = (),
    skills: Iterable[SkillSpec] = (),
    hooks: Iterable[HookMatcher] | None = None,
    registry: ToolRegistry | None = None,
) -> Session:
    """A session without external tool servers. Hooks default to the config's."""
    backend = backend or ScriptedBackend([])
    return Session(
        session_id="test-session",
        config=config,
        sandbox=PathSandbox(root=config.project_root),
        registry=registry if registry is not None else build_registry(),
        backends=BackendRegistry(backends={backend.name: backend}),
        agents={a.name: a for a in agents},
        skill_index=SkillIndex.from_specs(skills),
        transcript=Transcript(session_id="test-session"),
        approver=approver or RejectingApprover(),
        rules=config.rules,
        hooks=HookRunner.from_matchers(
            config.hooks if hooks is None else hooks,
            cwd=config.project_root,
            session_id="test-session",
        ),
    )


@pytest.fixture
def session_factory(config: YokeConfig) -> Callable[..., Session]:
    def factory(backend: ScriptedBackend | None = None, **kwargs: Any) -> Session:
        return make_session(config, backend, **kwargs)

    return factory


def make_loop(
    session: Session, *, mode: PermissionMode | None = None, max_turns: int | None = None
) -> ConversationLoop:
    return top_level_loop(session, mode=mode, max_turns=max_turns)


def make_tool_context(
    session: Session,
    *,
    mode: PermissionMode = PermissionMode.DEFAULT,
    may_delegate: bool = True,
    effective_tools: Iterable[str] | None = None,
) -> ToolContext:
    """A tool context for dispatching calls directly, outside any loop."""
    loop = LoopContext(
        session=session,
        skills=ActiveSkillSet(index=session.skill_index, transcript=session.transcript),
        transcript=session.transcript,
        metrics=session.metrics,
        approver=session.approver,
        rules=session.rules,
        max_turns=5,
        system_prompt="test",
    )
    state = ConversationState(mode=mode, may_delegate=may_delegate)
    tools = session.registry.names() if effective_tools is None else frozenset(effective_tools)
    return ToolContext(loop=loop, state=state, effective_tools=tools)


# --- Hooks ---


def python_hook(
    event: HookEvent, code: str, *, matcher: str | None = None, timeout_ms: int = 10_000
) -> HookMatcher:
    """A hook that runs ``code`` with this interpreter; the payload is on stdin."""
    prelude = "import json, sys\npayload = json.load(sys.stdin)\n"
    return HookMatcher(
        event=event,
        command=(sys.executable, "-c", prelude + code),
        matcher=matcher,
        timeout_ms=timeout_ms,
    )
