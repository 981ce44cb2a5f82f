"""User-configured hook commands.

A hook is an external command run at a fixed point of a session. It gets
a JSON object on stdin describing the event and answers through its exit
status and, optionally, a JSON object on stdout:

- exit 0: proceed. Stdout may hold ``{"decision": "block", "reason": ...}``
  or, for PreToolUse, ``{"updated_input": {...}}`` to rewrite the arguments
- exit 2: block, with stderr as the reason
- anything else, a timeout, or a command that cannot start: logged and
  ignored, never fatal

Events:
- PreToolUse - before a tool runs; may block it or rewrite its arguments
- PostToolUse - after every tool result
- UserPromptSubmit - before a prompt joins the history; may block it
- Stop / SubagentStop - when a loop completes; blocking asks it to continue
  with ``reason`` as the next prompt
- SessionStart - once, after the session is set up

Tool events run only hooks whose ``matcher`` regex finds the tool name
(no matcher matches every tool). Hooks of one event run in configuration
order; the first block wins.

Examples:
    Block shell commands touching ``.env``::

        >>> runner = HookRunner.from_matchers(
        ...     [HookMatcher(event=HookEvent.PRE_TOOL_USE, matcher="^Bash$", command=("./check-env.sh",))],
        ...     cwd=Path("/work/repo"),
        ... )
        >>> run = await runner.run(HookEvent.PRE_TOOL_USE, {"tool_name": "Bash", "tool_input": {...}}, tool="Bash")
        >>> run.blocked, run.reason
        (True, 'touches .env')
"""

import asyncio
import json
import logging
import re
from collections.abc import Iterable
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

BLOCK_EXIT_CODE = 2


class HookEvent(StrEnum):
    PRE_TOOL_USE = "PreToolUse"
    POST_TOOL_USE = "PostToolUse"
    USER_PROMPT_SUBMIT = "UserPromptSubmit"
    STOP = "Stop"
    SUBAGENT_STOP = "SubagentStop"
    SESSION_START = "SessionStart"


class HookMatcher(BaseModel):
    """One configured hook command."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    event: HookEvent
    command: tuple[str, ...] = Field(min_length=1, description="argv; no shell involved")
    matcher: str | None = Field(default=None, description="Regex on the tool name")
    timeout_ms: int = Field(default=60_000, gt=0)

    @field_validator("command")
    @classmethod
    def check_command(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if not value[0].strip():
            raise ValueError("hook command must not be empty")
        return value

    @field_validator("matcher")
    @classmethod
    def check_matcher(cls, value: str | None) -> str | None:
        if value is not None:
            try:
                re.compile(value)
            except re.error as e:
                raise ValueError(f"invalid matcher regex: {e}") from e
        return value

    def matches(self, tool: str | None) -> bool:
        if self.matcher is None or tool is None:
            return True
        return re.search(self.matcher, tool) is not None

    def label(self) -> str:
        return " ".join(self.command)


type HooksConfig = dict[HookEvent, list[HookMatcher]]
"""Hooks grouped by event, in configuration order."""


def group_hooks(matchers: Iterable[HookMatcher]) -> HooksConfig:
    grouped: HooksConfig = {}
    for matcher in matchers:
        grouped.setdefault(matcher.event, []).append(matcher)
    return grouped


class HookOutput(BaseModel):
    """What a hook may print on stdout."""

    model_config = ConfigDict(extra="ignore")

    decision: Literal["allow", "block"] | None = None
    reason: str | None = None
    updated_input: dict[str, Any] | None = None


class HookResult(BaseModel):
    """Outcome of one hook command."""

    hook: str
    event: HookEvent
    exit_code: int | None = Field(default=None, description="None if it never finished")
    blocked: bool = False
    reason: str | None = None
    updated_input: dict[str, Any] | None = None
    error: str | None = Field(default=None, description="Why the hook was ignored")


class HookRun(BaseModel):
    """Outcome of every hook for one event."""

    event: HookEvent
    results: list[HookResult] = Field(default_factory=list)
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def blocked(self) -> bool:
        return any(r.blocked for r in self.results)

    @property
    def reason(self) -> str | None:
        return next((r.reason for r in self.results if r.blocked), None)

    @property
    def updated_input(self) -> dict[str, Any] | None:
        """Tool input after every rewrite, or None if no hook rewrote it."""
        if not any(r.updated_input is not None for r in self.results):
            return None
        return self.payload.get("tool_input")


class HookRunner(BaseModel):
    """Runs the configured hooks of a session."""

    hooks: HooksConfig = Field(default_factory=dict)
    cwd: Path | None = None
    session_id: str = ""

    @classmethod
    def from_matchers(
        cls, matchers: Iterable[HookMatcher], *, cwd: Path | None = None, session_id: str = ""
    ) -> Self:
        return cls(hooks=group_hooks(matchers), cwd=cwd, session_id=session_id)

    def has(self, event: HookEvent) -> bool:
        return bool(self.hooks.get(event))

    async def run(
        self, event: HookEvent, payload: dict[str, Any], *, tool: str | None = None
    ) -> HookRun:
        """Run every hook of ``event`` that matches ``tool``, in order.

        A PreToolUse rewrite is visible to the hooks after it. Stops at the
        first hook that blocks.
        """
        current = {
            "session_id": self.session_id,
            "hook_event_name": event.value,
            "cwd": str(self.cwd) if self.cwd else None,
            **payload,
        }
        run = HookRun(event=event, payload=current)
        for matcher in self.hooks.get(event, []):
            if not matcher.matches(tool):
                continue
            result = await self.run_one(matcher, current)
            run.results.append(result)
            if result.blocked:
                break
            if result.updated_input is not None and "tool_input" in current:
                current = {**current, "tool_input": result.updated_input}
                run.payload = current
        return run

    async def run_one(self, matcher: HookMatcher, payload: dict[str, Any]) -> HookResult:
        """Run one hook command. Never raises except on cancellation."""
        result = HookResult(hook=matcher.label(), event=matcher.event)
        timeout = matcher.timeout_ms / 1000
        try:
            process = await asyncio.create_subprocess_exec(
                *matcher.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
            )
        except OSError as e:
            logger.warning("Hook %s failed to start: %s", result.hook, e)
            result.error = f"failed to start: {e}"
            return result

        data = json.dumps(payload, default=str).encode("utf-8")
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(data), timeout=timeout)
        except TimeoutError:
            process.kill()
            await process.wait()
            logger.warning("Hook %s timed out after %gs", result.hook, timeout)
            result.error = f"timed out after {timeout:g}s"
            return result
        except asyncio.CancelledError:
            process.kill()
            raise

        result.exit_code = process.returncode
        if process.returncode == BLOCK_EXIT_CODE:
            result.blocked = True
            result.reason = stderr.decode("utf-8", errors="replace").strip() or None
            logger.info("Hook %s blocked %s", result.hook, matcher.event.value)
            return result
        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            logger.warning("Hook %s exited %d: %s", result.hook, process.returncode, message)
            result.error = f"exit {process.returncode}"
            return result

        text = stdout.decode("utf-8", errors="replace").strip()
        if not text.startswith("{"):
            return result
        try:
            output = HookOutput.model_validate_json(text)
        except ValidationError as e:
            logger.warning("Hook %s printed invalid output: %s", result.hook, e)
            result.error = "invalid output"
            return result
        result.blocked = output.decision == "block"
        result.reason = output.reason
        result.updated_input = output.updated_input
        return result
