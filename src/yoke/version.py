"""Engine version tracking.

AGENT_VERSION tracks the engine's behavior: prompts, tools, policy and
loop semantics. Bump this when behavior changes, NOT for dependency
updates or infrastructure changes.

Bump rules:
- Patch (0.1.x): bug fixes, config tweaks, tool fixes
- Minor (0.x.0): prompt changes, new tools, policy changes
- Major (x.0.0): architecture changes (new loop, new wire protocol)
"""

AGENT_VERSION = "0.1.0"
