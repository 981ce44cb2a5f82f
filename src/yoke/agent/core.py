"""The conversation loop.

One ``step`` is one turn:

1. compact history if it has grown past the context threshold
2. resolve the target (explicit > route > builtin > default)
3. compute the effective tool set and its schemas
4. send system prompt + history + schemas to the backend
5. no tool calls: COMPLETED. Otherwise dispatch every call sequentially,
   in emission order, appending exactly one result per call
6. count the turn; past ``max_turns`` the loop ends TURN_LIMIT_EXCEEDED

A UserPromptSubmit hook may refuse the prompt before it joins the history.
When the loop completes, a blocking Stop hook sends it back to work with
the hook's reason as the next user message.

Backend failures are retried inside the client when transient; whatever
reaches the loop (retry exhaustion, a permanent error, an unknown backend)
ends it FATAL. So does an internal invariant breach. Every other failure
is an error tool result the model sees and can react to.

Examples:
    Run a loop to completion::

        >>> loop = ConversationLoop(ctx=ctx, state=ConversationState(mode=PermissionMode.DEFAULT))
        >>> outcome = await loop.run("Add a docstring to utils.py")
        >>> outcome.status, outcome.turns
        (<LoopStatus.COMPLETED: 'completed'>, 3)
"""

import logging

from pydantic import BaseModel, ConfigDict

from yoke.agent.client import send, to_message
from yoke.agent.compaction import compact
from yoke.agent.context import ConversationState, LoopContext, ToolContext
from yoke.agent.models import LoopOutcome, LoopStatus, Message
from yoke.agent.tool_policy import ToolPolicy
from yoke.lib.errors import (
    BackendError,
    HookBlockedError,
    InvariantError,
    NotFoundError,
    YokeError,
)
from yoke.lib.hooks import HookEvent
from yoke.lib.transcript import EventKind

logger = logging.getLogger(__name__)


class ConversationLoop(BaseModel):
    """Drives one conversation: top-level or a subagent's."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    ctx: LoopContext
    state: ConversationState

    def add_user(self, content: str) -> None:
        message = Message.user(content)
        self.state.append(message)
        self.ctx.transcript.append(EventKind.MESSAGE, role="user", content=content)

    async def run(
        self, prompt: str | None = None, *, allowed_tools: frozenset[str] | None = None
    ) -> LoopOutcome:
        """Add ``prompt`` (if given) and step until a terminal status.

        The turn counter restarts for every run; ``max_turns`` bounds the
        work done for one user prompt, including continuations requested by
        Stop hooks. ``allowed_tools`` restricts the tools for this run only.
        """
        self.state.turns = 0
        self.state.status = LoopStatus.RUNNING
        self.state.prompt_tools = allowed_tools
        error: str | None = None

        if prompt is not None:
            error = await self.submit(prompt)

        stop_hook_active = False
        while not self.state.status.is_terminal:
            try:
                await self.step()
            except InvariantError as e:
                logger.error("Invariant violated: %s", e.message)
                error = self.fail(e)
            except (BackendError, NotFoundError) as e:
                logger.error("Backend failure on %s: %s", self.state.target, e.message)
                error = self.fail(e)
            if self.state.status == LoopStatus.COMPLETED and error is None:
                reason = await self.stop_reason(stop_hook_active)
                if reason is not None:
                    stop_hook_active = True
                    self.add_user(reason)
                    self.state.status = LoopStatus.RUNNING

        self.state.prompt_tools = None
        outcome = LoopOutcome(
            status=self.state.status,
            text=self.state.last_assistant_text(),
            turns=self.state.turns,
            error=error,
            messages=tuple(self.state.messages),
        )
        self.ctx.transcript.append(
            EventKind.STATUS, status=outcome.status.value, turns=outcome.turns, error=error
        )
        return outcome

    async def submit(self, prompt: str) -> str | None:
        """Add a prompt unless a UserPromptSubmit hook blocks it.

        Returns the block reason; a blocked prompt completes the run with
        no turns taken.
        """
        if not self.ctx.is_subagent:
            run = await self.ctx.run_hooks(HookEvent.USER_PROMPT_SUBMIT, {"prompt": prompt})
            if run.blocked:
                error = HookBlockedError("prompt", run.reason)
                self.ctx.transcript.append(EventKind.ERROR, code=error.code, message=error.message)
                self.state.status = LoopStatus.COMPLETED
                return error.message
        self.add_user(prompt)
        return None

    async def stop_reason(self, stop_hook_active: bool) -> str | None:
        """Ask the Stop (or SubagentStop) hooks whether the loop may end.

        Returns the prompt to continue with, or None to stop. A continuation
        is refused once the turn budget is spent.
        """
        event = HookEvent.SUBAGENT_STOP if self.ctx.is_subagent else HookEvent.STOP
        run = await self.ctx.run_hooks(
            event,
            {
                "last_message": self.state.last_assistant_text(),
                "stop_hook_active": stop_hook_active,
            },
        )
        if not run.blocked:
            return None
        if self.state.turns >= self.ctx.max_turns:
            logger.warning("%s hook asked to continue past the turn limit", event.value)
            return None
        return run.reason or "Continue."

    def interrupt(self) -> int:
        """Close out a step cut short by cancellation.

        Every tool call left without a result gets one ``cancelled`` error
        result so the next request is well-formed. Returns how many.
        """
        message = "Interrupted by the user"
        closed = self.state.close_unanswered("cancelled", message)
        self.ctx.transcript.append(
            EventKind.ERROR, code="cancelled", message=message, closed_calls=closed
        )
        return closed

    def fail(self, error: YokeError) -> str:
        self.state.status = LoopStatus.FATAL
        self.ctx.transcript.append(EventKind.ERROR, code=error.code, message=error.message)
        return error.message

    async def step(self) -> None:
        """Run one turn. Leaves ``state.status`` RUNNING or terminal."""
        self.maybe_compact()

        resolution = self.ctx.resolve_target()
        self.state.target = resolution.target
        self.ctx.transcript.append(
            EventKind.TARGET_RESOLUTION,
            target=str(resolution.target),
            source=resolution.source,
            category=resolution.category,
        )

        policy = ToolPolicy.for_loop(self.ctx, self.state)
        registry = self.ctx.session.registry
        schemas = registry.schemas(policy.effective_tools)
        messages = [Message.system(self.ctx.full_system_prompt()), *self.state.messages]

        completion = await send(self.ctx.session.backends, resolution.target, messages, schemas)
        self.ctx.metrics.record_usage(
            prompt_tokens=completion.prompt_tokens,
            completion_tokens=completion.completion_tokens,
        )
        if completion.truncated:
            logger.warning("Response truncated by the backend's token limit")

        assistant = to_message(completion)
        self.state.append(assistant)
        self.ctx.transcript.append(
            EventKind.MESSAGE,
            role="assistant",
            content=assistant.content,
            tool_calls=[{"id": c.id, "name": c.name} for c in assistant.tool_calls],
            finish_reason=completion.finish_reason,
        )

        if assistant.tool_calls:
            tool_ctx = ToolContext(
                loop=self.ctx, state=self.state, effective_tools=policy.effective_tools
            )
            for call in assistant.tool_calls:
                result = await registry.dispatch(call, tool_ctx)
                if result.id != call.id:
                    raise InvariantError(f"Result {result.id} does not answer call {call.id}")
                self.state.append(result.to_message())

        self.state.turns += 1
        if not assistant.tool_calls:
            self.state.status = LoopStatus.COMPLETED
        elif self.state.turns > self.ctx.max_turns:
            logger.warning("Turn limit reached (%d)", self.ctx.max_turns)
            self.state.status = LoopStatus.TURN_LIMIT_EXCEEDED

    def maybe_compact(self) -> None:
        """Replace the oldest unpinned span with a summary when over budget."""
        config = self.ctx.config.context
        if not config.auto_compact_enabled or self.state.char_total <= config.compact_at:
            return
        plan = compact(self.state.messages, config)
        if plan is None:
            return
        summary, start, end = plan
        before = self.state.char_total
        self.state.replace_span(start, end, summary)
        if self.state.char_total >= before:
            raise InvariantError("Compaction did not shrink the history")
        logger.info("Compacted %d messages (%d -> %d chars)", end - start, before, self.state.char_total)
        self.ctx.transcript.append(
            EventKind.COMPACTION,
            messages=end - start,
            before_chars=before,
            after_chars=self.state.char_total,
        )
