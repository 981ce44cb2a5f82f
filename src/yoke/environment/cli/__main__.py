"""``yoke`` command-line interface.

Usage:
    yoke run "fix the failing test"                 # one-shot, Ask -> rejected
    yoke run --yes --mode acceptEdits "refactor x"  # one-shot, Ask -> approved
    yoke run --target llama3.1@ollama "summarize README.md"
    yoke chat                                       # interactive REPL
    yoke agents | yoke skills | yoke commands | yoke check-config
"""

import asyncio
import logging
import signal
from collections.abc import Collection
from pathlib import Path
from typing import Annotated

import sh
import typer
from prompt_toolkit import PromptSession
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.history import FileHistory
from pydantic import BaseModel, ConfigDict, Field
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from yoke.agent.commands import CommandIndex
from yoke.agent.config import YokeConfig, load_config, save_local_permissions
from yoke.agent.core import ConversationLoop
from yoke.agent.models import (
    AgentSpec,
    Decision,
    LoopStatus,
    PermissionMode,
    SessionResult,
    Target,
)
from yoke.agent.policy import Approver, AutoApprover, Invocation, RejectingApprover
from yoke.agent.session import open_session, run_agent, top_level_loop
from yoke.agent.skills import SkillIndex
from yoke.agent.subagents import load_agents
from yoke.lib import paths
from yoke.lib.errors import ConfigError, NotFoundError
from yoke.lib.trace import ConsoleRenderer
from yoke.version import AGENT_VERSION

logger = logging.getLogger(__name__)

console = Console(highlight=False)

app = typer.Typer(
    name="yoke",
    help="Agent orchestration engine",
    no_args_is_help=True,
    add_completion=False,
)


@app.callback(invoke_without_command=True)
def callback(ctx: typer.Context) -> None:
    """Agent orchestration engine."""
    if ctx.invoked_subcommand is None:
        raise typer.Exit()


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )


def parse_mode(value: str | None) -> PermissionMode | None:
    if value is None:
        return None
    try:
        return PermissionMode.parse(value)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--mode") from None


def parse_target(value: str | None) -> Target | None:
    if value is None:
        return None
    try:
        return Target.parse(value)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--target") from None


def load_or_exit(
    *, mode: PermissionMode | None = None, max_turns: int | None = None
) -> YokeConfig:
    """Load the project's config, printing every problem on failure."""
    overrides: dict[str, object] = {}
    if mode is not None:
        overrides["permissions"] = {"mode": mode.value}
    if max_turns is not None:
        overrides["max_turns"] = max_turns
    try:
        return load_config(paths.find_project_root(), overrides=overrides)
    except ConfigError as e:
        print_problems(e)
        raise typer.Exit(1) from None


def print_problems(error: ConfigError) -> None:
    console.print("Configuration problems:", style="bold red")
    for field, message in error.problems:
        console.print(f"  {field}: {message}", markup=False)


def print_result(result: SessionResult) -> None:
    style = "red" if result.status == LoopStatus.FATAL else "dim"
    console.print(
        f"\n{result.status.value} after {result.turns} turns"
        f" · target {result.target or '-'} · session {result.session_id}",
        style=style,
        markup=False,
    )
    if result.error:
        console.print(f"error: {result.error}", style="red", markup=False)
    if result.transcript_path:
        console.print(f"transcript: {result.transcript_path}", style="dim", markup=False)


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


@app.command()
def run(
    prompt: Annotated[str, typer.Argument(help="The task for the agent")],
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Approve every Ask decision"),
    ] = False,
    mode: Annotated[
        str | None,
        typer.Option("--mode", "-m", help="Permission mode (default, acceptEdits, bypassPermissions)"),
    ] = None,
    target: Annotated[
        str | None,
        typer.Option("--target", "-t", help="Explicit target as model@backend"),
    ] = None,
    max_turns: Annotated[
        int | None,
        typer.Option("--max-turns", min=1, help="Turn ceiling for the top-level loop"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose logging"),
    ] = False,
) -> None:
    """Run one prompt to completion. Exits 1 on a fatal error."""
    setup_logging(verbose)
    config = load_or_exit(mode=parse_mode(mode), max_turns=max_turns)
    approver: Approver = AutoApprover() if yes else RejectingApprover()

    try:
        result = asyncio.run(
            run_agent(
                prompt,
                config,
                approver=approver,
                target=parse_target(target),
                listeners=[ConsoleRenderer(console=console)],
            )
        )
    except ConfigError as e:
        print_problems(e)
        raise typer.Exit(1) from None

    print_result(result)
    if result.status == LoopStatus.FATAL:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# chat
# ---------------------------------------------------------------------------


class PromptApprover(BaseModel):
    """Asks the user on the terminal."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = "interactive"
    console: Console
    prompt_session: PromptSession[str] = Field(default_factory=PromptSession)

    async def approve(self, invocation: Invocation) -> bool:
        self.console.print(
            f"🔒 {invocation.describe()} [{invocation.category.value}]",
            style="yellow",
            markup=False,
        )
        try:
            answer = await self.prompt_session.prompt_async("Allow? [y/N] ")
        except (EOFError, KeyboardInterrupt):
            return False
        return answer.strip().lower() in ("y", "yes")


SLASH_COMMANDS = {
    "/exit": "Leave the REPL",
    "/help": "Show this help",
    "/mode [m]": "Show or set the permission mode",
    "/permissions": "Show permission rules with their indices",
    "/permissions add": "Add a rule: add allow|ask|deny <pattern>",
    "/permissions rm": "Remove a rule: rm allow|ask|deny <index>",
    "/commands": "List custom commands",
    "/agents": "List available subagents",
    "/skills": "List skills (* = active)",
    "/skill <name>": "Activate a skill",
    "/unskill <name>": "Deactivate a skill",
    "/target [t]": "Show or set the explicit target (model@backend, 'auto' to clear)",
    "/context": "Show conversation size",
    "/clear": "Forget the conversation",
    "/diff": "Show git diff --stat",
    "/<command> [args]": "Run a custom command from .yoke/commands",
}

BUILTIN_COMMANDS = frozenset(
    {"/quit", "/q"}
    | {usage.split()[0] for usage in SLASH_COMMANDS if not usage.startswith("/<")}
)


def render_agents(agents: dict[str, AgentSpec]) -> None:
    if not agents:
        console.print("No agents found.", style="dim")
        return
    table = Table("name", "mode", "tools", "description", box=None)
    for spec in sorted(agents.values(), key=lambda s: s.name):
        table.add_row(
            spec.name,
            spec.permission_mode.value,
            ", ".join(sorted(spec.allowed_tools)),
            spec.description,
        )
    console.print(table)


def render_skills(index: SkillIndex, active: Collection[str] = ()) -> None:
    if not index.skills:
        console.print("No skills found.", style="dim")
        return
    table = Table("", "name", "source", "tools", "description", box=None)
    for skill in sorted(index.skills.values(), key=lambda s: s.name):
        tools = ", ".join(sorted(skill.allowed_tools)) if skill.allowed_tools is not None else "any"
        table.add_row(
            "*" if skill.name in active else "",
            skill.name,
            skill.provenance,
            tools,
            skill.description,
        )
    console.print(table)


def render_commands(index: CommandIndex) -> None:
    if not index.commands:
        console.print("No custom commands found.", style="dim")
    else:
        table = Table("name", "source", "tools", "description", box=None)
        for command in sorted(index.commands.values(), key=lambda c: c.name):
            tools = (
                ", ".join(sorted(command.allowed_tools))
                if command.allowed_tools is not None
                else "any"
            )
            table.add_row(f"/{command.name}", command.provenance, tools, command.description)
        console.print(table)
    for path, message in index.errors:
        console.print(f"  {path}: {message}", style="red", markup=False)


def git_diff_stat(root: Path) -> str:
    git = sh.Command("git")
    return str(git.diff("--stat", _cwd=str(root), _ok_code=[0, 1])).strip()


def handle_permissions(arg: str, loop: ConversationLoop) -> None:
    """``/permissions [add <decision> <pattern> | rm <decision> <index>]``.

    Changes apply to the running session and are saved to the project's
    local permissions file.
    """
    action, _, rest = arg.partition(" ")
    kind, _, value = rest.strip().partition(" ")
    value = value.strip()
    session = loop.ctx.session

    if not action:
        console.print(f"mode: {loop.state.mode.value}")
        for name, patterns in loop.ctx.rules.patterns().items():
            listed = ", ".join(f"[{i}] {p}" for i, p in enumerate(patterns)) or "-"
            console.print(f"{name}: {listed}", markup=False)
        return
    if action not in ("add", "rm") or not value:
        console.print(
            "usage: /permissions [add allow|ask|deny <pattern> | rm allow|ask|deny <index>]",
            style="red",
            markup=False,
        )
        return

    try:
        decision = Decision(kind)
        if action == "add":
            rules = loop.ctx.rules.with_rule(decision, value)
        else:
            rules = loop.ctx.rules.without_rule(decision, int(value))
    except ValueError as e:
        console.print(str(e), style="red", markup=False)
        return

    session.rules = loop.ctx.rules = rules
    saved = save_local_permissions(session.project_root, rules)
    listed = ", ".join(rules.patterns()[kind]) or "-"
    console.print(f"{kind}: {listed} (saved to {saved})", markup=False)


def handle_command(line: str, loop: ConversationLoop) -> bool:
    """Execute one slash command. Returns False to leave the REPL."""
    command, _, arg = line.partition(" ")
    arg = arg.strip()
    state = loop.state
    session = loop.ctx.session
    skills = loop.ctx.skills

    match command:
        case "/exit" | "/quit" | "/q":
            return False
        case "/help":
            for usage, text in SLASH_COMMANDS.items():
                console.print(f"  {usage:<18} {text}", markup=False)
        case "/mode" if arg:
            try:
                state.mode = PermissionMode.parse(arg)
            except ValueError as e:
                console.print(str(e), style="red", markup=False)
            else:
                console.print(f"mode: {state.mode.value}")
        case "/mode":
            console.print(f"mode: {state.mode.value}")
        case "/permissions":
            handle_permissions(arg, loop)
        case "/commands":
            render_commands(session.commands)
        case "/agents":
            render_agents(session.agents)
        case "/skills":
            render_skills(session.skill_index, {s.name for s in skills.list_active()})
        case "/skill" | "/unskill" if not arg:
            console.print(f"usage: {command} <name>", style="red", markup=False)
        case "/skill":
            try:
                changed = skills.activate(arg)
            except NotFoundError as e:
                console.print(e.message, style="red", markup=False)
            else:
                console.print(f"{arg}: {'activated' if changed else 'already active'}")
        case "/unskill":
            changed = skills.deactivate(arg)
            console.print(f"{arg}: {'deactivated' if changed else 'not active'}")
        case "/target" if arg == "auto":
            session.target_override = None
            console.print(f"target: {loop.ctx.resolve_target().target} (resolved)")
        case "/target" if arg:
            try:
                session.target_override = Target.parse(arg)
            except ValueError as e:
                console.print(str(e), style="red", markup=False)
            else:
                console.print(f"target: {session.target_override}")
        case "/target":
            resolution = loop.ctx.resolve_target()
            console.print(f"target: {resolution.target} ({resolution.source})")
        case "/context":
            context = loop.ctx.config.context
            console.print(
                f"{len(state.messages)} messages, {state.char_total:,} chars"
                f" (compacts at {context.compact_at:,}, max {context.max_chars:,})"
            )
        case "/clear":
            state.clear()
            console.print("conversation cleared", style="dim")
        case "/diff":
            try:
                console.print(git_diff_stat(session.project_root) or "no changes", markup=False)
            except (sh.ErrorReturnCode, sh.CommandNotFound) as e:
                console.print(f"git diff failed: {e}", style="red", markup=False)
        case _:
            console.print(f"Unknown command {command} (try /help)", style="red", markup=False)
    return True


async def run_prompt(
    loop: ConversationLoop, text: str, *, allowed_tools: frozenset[str] | None = None
) -> None:
    """Run one prompt; Ctrl-C cancels it and closes out pending tool calls."""
    loop.ctx.skills.activate_mentions(text)
    task = asyncio.create_task(loop.run(text, allowed_tools=allowed_tools))
    event_loop = asyncio.get_running_loop()
    event_loop.add_signal_handler(signal.SIGINT, task.cancel)
    try:
        outcome = await task
    except asyncio.CancelledError:
        if not task.cancelled():
            raise
        closed = loop.interrupt()
        console.print(f"  interrupted ({closed} pending calls closed)\n", style="dim")
        return
    finally:
        event_loop.remove_signal_handler(signal.SIGINT)

    parts = [outcome.status.value, f"{outcome.turns} turns"]
    if loop.state.target:
        parts.append(str(loop.state.target))
    console.print(f"  {' · '.join(parts)}\n", style="red" if outcome.error else "dim")


async def repl(config: YokeConfig, *, target: Target | None = None) -> None:
    """Run the interactive REPL loop."""
    approver = PromptApprover(console=console)
    async with open_session(
        config, approver=approver, target=target, listeners=[ConsoleRenderer(console=console)]
    ) as session:
        loop = top_level_loop(session)
        console.print()
        console.print(
            Panel(
                "\n".join(
                    [
                        f"[bold]yoke[/bold] {AGENT_VERSION}",
                        f"[dim]project:[/dim] {session.project_root}",
                        f"[dim]mode:[/dim] {loop.state.mode.value}",
                        f"[dim]target:[/dim] {loop.ctx.resolve_target().target}",
                        f"[dim]tools:[/dim] {len(session.registry.names())}"
                        f"  [dim]agents:[/dim] {len(session.agents)}"
                        f"  [dim]skills:[/dim] {len(session.skill_index.skills)}"
                        f"  [dim]commands:[/dim] {len(session.commands.commands)}",
                        "",
                        "[dim]/help · Ctrl-C stop · Ctrl-D exit[/dim]",
                    ]
                ),
                border_style="blue",
                width=60,
            )
        )
        console.print()

        history = paths.history_file(session.project_root)
        history.parent.mkdir(parents=True, exist_ok=True)
        prompt_session: PromptSession[str] = PromptSession(
            history=FileHistory(str(history)),
            completer=WordCompleter(
                sorted(BUILTIN_COMMANDS | {f"/{name}" for name in session.commands.commands}),
                sentence=True,
            ),
        )

        while True:
            try:
                line = await prompt_session.prompt_async("❯ ")
            except (EOFError, KeyboardInterrupt):
                console.print()
                break
            stripped = line.strip()
            if not stripped:
                continue
            if stripped.startswith("/"):
                name, _, arguments = stripped[1:].partition(" ")
                if f"/{name}" not in BUILTIN_COMMANDS and name in session.commands:
                    command = session.commands.get(name)
                    await run_prompt(
                        loop, command.expand(arguments), allowed_tools=command.allowed_tools
                    )
                    continue
                if not handle_command(stripped, loop):
                    break
                continue
            await run_prompt(loop, stripped)


@app.command()
def chat(
    mode: Annotated[
        str | None,
        typer.Option("--mode", "-m", help="Initial permission mode"),
    ] = None,
    target: Annotated[
        str | None,
        typer.Option("--target", "-t", help="Explicit target as model@backend"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose logging"),
    ] = False,
) -> None:
    """Interactive session with slash commands."""
    setup_logging(verbose)
    config = load_or_exit(mode=parse_mode(mode))
    try:
        asyncio.run(repl(config, target=parse_target(target)))
    except ConfigError as e:
        print_problems(e)
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        pass


# ---------------------------------------------------------------------------
# Inspection
# ---------------------------------------------------------------------------


@app.command()
def agents() -> None:
    """List discovered subagents."""
    config = load_or_exit()
    try:
        render_agents(load_agents(config.agent_dirs))
    except ConfigError as e:
        print_problems(e)
        raise typer.Exit(1) from None


@app.command()
def skills() -> None:
    """List discovered skills."""
    config = load_or_exit()
    render_skills(SkillIndex.discover(config.skill_dirs))


@app.command()
def commands() -> None:
    """List custom slash commands."""
    config = load_or_exit()
    render_commands(CommandIndex.discover(config.command_dirs))


@app.command("check-config")
def check_config() -> None:
    """Validate config files and agent definitions."""
    config = load_or_exit()
    try:
        agent_specs = load_agents(config.agent_dirs)
    except ConfigError as e:
        print_problems(e)
        raise typer.Exit(1) from None
    skill_index = SkillIndex.discover(config.skill_dirs)
    command_index = CommandIndex.discover(config.command_dirs)
    console.print(f"project: {config.project_root}", markup=False)
    console.print(f"mode: {config.mode.value}")
    console.print(f"default target: {config.default_target}", markup=False)
    console.print(f"backends: {', '.join(sorted(config.backends))}", markup=False)
    console.print(
        f"{len(agent_specs)} agents, {len(skill_index.skills)} skills,"
        f" {len(command_index.commands)} commands, {len(config.mcp_servers)} tool servers,"
        f" {len(config.hooks)} hooks"
    )
    if command_index.errors:
        render_commands(command_index)
        raise typer.Exit(1)
    console.print("OK", style="green")


if __name__ == "__main__":
    app()
