"""Session lifecycle: build the context, run the top-level loop.

``open_session`` owns every external resource (tool server processes,
the transcript file) for the lifetime of one session. ``run_agent`` is
the one-shot entry point built on it; the REPL keeps a session open and
runs its loop once per prompt.

Usage:
    config = load_config(project_root)
    result = await run_agent("Fix the failing test", config, approver=AutoApprover())
    result.status   # LoopStatus.COMPLETED
"""

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager

from yoke.agent.client import build_backends
from yoke.agent.commands import CommandIndex
from yoke.agent.config import YokeConfig
from yoke.agent.context import ConversationState, LoopContext, Session
from yoke.agent.core import ConversationLoop
from yoke.agent.models import PermissionMode, SessionResult, Target
from yoke.agent.policy import Approver, RejectingApprover
from yoke.agent.prompts import get_system_prompt
from yoke.agent.skills import ActiveSkillSet, SkillIndex
from yoke.agent.subagents import load_agents
from yoke.agent.tools import build_registry
from yoke.lib import paths
from yoke.lib.client import BackendRegistry
from yoke.lib.hooks import HookEvent, HookRunner
from yoke.lib.mcp import McpHub, ProviderSpec
from yoke.lib.sandbox import PathSandbox
from yoke.lib.transcript import EventKind, Listener, Transcript

logger = logging.getLogger(__name__)


def provider_specs(config: YokeConfig) -> list[ProviderSpec]:
    return [
        ProviderSpec(
            name=name,
            command=server.command,
            args=server.args,
            env=dict(server.env),
            cwd=server.cwd or config.project_root,
            timeout_seconds=server.timeout_ms / 1000,
        )
        for name, server in sorted(config.mcp_servers.items())
        if server.enabled
    ]


@asynccontextmanager
async def open_session(
    config: YokeConfig,
    *,
    approver: Approver | None = None,
    target: Target | None = None,
    session_id: str | None = None,
    backends: BackendRegistry | None = None,
    listeners: Iterable[Listener] = (),
    persist_transcript: bool = True,
) -> AsyncIterator[Session]:
    """Connect tool servers, discover agents, skills and commands, and yield the session.

    SessionStart hooks run once the session is built.

    Args:
        config: Loaded configuration.
        approver: Resolves Ask verdicts. Defaults to rejecting them.
        target: Explicit target override for the top-level loop.
        session_id: Defaults to a fresh timestamped id.
        backends: Backend clients. Defaults to one per configured backend.
        listeners: Transcript listeners, subscribed before the first event.
        persist_transcript: Write the transcript to ``.yoke/transcripts``.

    Raises:
        ConfigError: If an agent definition is invalid.
    """
    session_id = session_id or paths.new_session_id()
    root = config.project_root
    transcript = Transcript(
        session_id=session_id,
        path=paths.transcripts_dir(root) / f"{session_id}.jsonl" if persist_transcript else None,
    )
    for listener in listeners:
        transcript.subscribe(listener)

    agents = load_agents(config.agent_dirs)
    skill_index = SkillIndex.discover(config.skill_dirs)
    commands = CommandIndex.discover(config.command_dirs)

    async with McpHub() as hub:
        for name in await hub.connect_all(provider_specs(config)):
            transcript.append(
                EventKind.ERROR,
                code="provider_unavailable",
                message=f"Tool server '{name}' failed to start",
            )
        session = Session(
            session_id=session_id,
            config=config,
            sandbox=PathSandbox(root=root),
            registry=build_registry(hub),
            backends=backends or build_backends(config),
            agents=agents,
            skill_index=skill_index,
            commands=commands,
            hooks=HookRunner.from_matchers(config.hooks, cwd=root, session_id=session_id),
            transcript=transcript,
            approver=approver or RejectingApprover(),
            rules=config.rules,
            target_override=target,
        )
        logger.info(
            "Session %s: %d tools, %d agents, %d skills, %d commands",
            session_id,
            len(session.registry.names()),
            len(agents),
            len(skill_index.skills),
            len(commands.commands),
        )
        await session.run_hooks(HookEvent.SESSION_START, {"source": "startup"}, transcript)
        try:
            yield session
        finally:
            session.metrics.log_summary()


def top_level_loop(
    session: Session,
    *,
    mode: PermissionMode | None = None,
    max_turns: int | None = None,
) -> ConversationLoop:
    """The session's delegating loop, with a fresh skill set."""
    config = session.config
    ctx = LoopContext(
        session=session,
        skills=ActiveSkillSet(index=session.skill_index, transcript=session.transcript),
        transcript=session.transcript,
        metrics=session.metrics,
        approver=session.approver,
        rules=session.rules,
        max_turns=max_turns or config.max_turns,
        system_prompt=get_system_prompt(
            project_root=session.project_root,
            agents=session.agents.values(),
            skills=session.skill_index.skills.values(),
        ),
    )
    state = ConversationState(mode=mode or config.mode, may_delegate=True)
    return ConversationLoop(ctx=ctx, state=state)


async def run_agent(
    prompt: str,
    config: YokeConfig,
    *,
    approver: Approver | None = None,
    target: Target | None = None,
    session_id: str | None = None,
    backends: BackendRegistry | None = None,
    listeners: Iterable[Listener] = (),
    persist_transcript: bool = True,
) -> SessionResult:
    """Run one prompt to a terminal status.

    ``$skill`` mentions in the prompt activate those skills first.

    Returns:
        SessionResult with the final text, status and metrics.
    """
    async with open_session(
        config,
        approver=approver,
        target=target,
        session_id=session_id,
        backends=backends,
        listeners=listeners,
        persist_transcript=persist_transcript,
    ) as session:
        loop = top_level_loop(session)
        loop.ctx.skills.activate_mentions(prompt)
        outcome = await loop.run(prompt)
        return SessionResult(
            session_id=session.session_id,
            status=outcome.status,
            text=outcome.text,
            turns=outcome.turns,
            error=outcome.error,
            target=str(loop.state.target) if loop.state.target else None,
            transcript_path=session.transcript.path,
            metrics=session.metrics.get_summary(),
        )
