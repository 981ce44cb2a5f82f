"""The orchestration engine.

This subpackage contains the conversation loop and everything it enforces:
- core.py: Conversation loop
- session.py: Session lifecycle
- context.py: Execution contexts and conversation state
- config.py: Configuration via TOML files and pydantic-settings
- models.py: Data models
- policy.py: Permission evaluation
- registry.py: Tool registry and dispatch
- tool_policy.py: Effective tool availability
- routing.py: Target resolution
- skills.py: Skills
- commands.py: Custom slash commands
- subagents.py: Delegation
- compaction.py: History compaction
- prompts.py: System prompts
- client.py: Backend glue
- tools/: Built-in tools
"""
