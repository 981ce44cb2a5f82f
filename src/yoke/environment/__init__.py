"""Environment harness for running the engine.

This package contains the user-facing scaffolding:
- Command-line entry points
- Interactive REPL and its slash commands
- Terminal approval prompts and console rendering

The engine itself lives in yoke.agent; this code only wires it to a terminal.

Structure:
- cli/__main__.py: ``yoke`` command
"""
