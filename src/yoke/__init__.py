"""Agent orchestration engine.

Drives a conversation between a language model and a set of tools,
enforcing permissions, sandboxing file and shell access, delegating work
to subagents and recording every step in a session transcript.

Structure:
- yoke/agent/: The engine
  - core.py: Conversation loop (one turn = one request + tool dispatch)
  - session.py: Session lifecycle (open_session, run_agent)
  - context.py: Session, loop and tool contexts, conversation state
  - config.py: Layered TOML configuration and env settings
  - models.py: Messages, specs, statuses and results
  - policy.py: Permission rules, modes and approvers
  - registry.py: Tool registry and dispatch pipeline
  - tool_policy.py: Effective tool set per turn
  - routing.py: Model target resolution
  - skills.py: Skill discovery and activation
  - subagents.py: Agent definitions and delegation
  - compaction.py: History compaction
  - prompts.py: System prompts
  - client.py: Message conversion and backend construction
  - tools/: Built-in tools (files, shell, skills, task)

- yoke/lib/: Reusable, domain-agnostic building blocks
  (errors, sandbox, transcript, metrics, retry, tool definitions,
  MCP providers, chat backends, console rendering)

- yoke/environment/: User-facing harness
  - cli/__main__.py: ``yoke`` command (run, chat, agents, skills, check-config)
"""
