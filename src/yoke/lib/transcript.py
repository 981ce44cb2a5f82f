"""Append-only session transcript.

Every step of the conversation loop appends a timestamped, sequenced event.
Events are never edited or removed. A transcript may be backed by a JSONL
file (one JSON object per line, flushed per event) or kept in memory.

Subagents write into their parent's transcript through ``scoped(agent)``,
which shares the same store and sequence counter, so the log is one total
order across parent and children.

Listeners (e.g. the console renderer in ``yoke.lib.trace``) receive each
event after it is stored.

Examples:
    Record events in memory::

        >>> transcript = Transcript(session_id="s1")
        >>> transcript.append(EventKind.MESSAGE, role="user", content="hi")
        >>> [e.kind for e in transcript.events]
        [<EventKind.MESSAGE: 'message'>]

    Persist to disk::

        >>> transcript = Transcript(session_id="s1", path=Path(".yoke/transcripts/s1.jsonl"))
        >>> child = transcript.scoped("reviewer")
        >>> child.append(EventKind.SUBAGENT_START, mode="default")
"""

import json
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from enum import StrEnum
from pathlib import Path
from typing import Any, Self

from pydantic import BaseModel, Field, PrivateAttr

logger = logging.getLogger(__name__)


class EventKind(StrEnum):
    """Kinds of transcript events."""

    MESSAGE = "message"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    PERMISSION_DECISION = "permission_decision"
    SUBAGENT_START = "subagent_start"
    SUBAGENT_END = "subagent_end"
    SKILL_ACTIVATE = "skill_activate"
    SKILL_DEACTIVATE = "skill_deactivate"
    TARGET_RESOLUTION = "target_resolution"
    COMPACTION = "compaction"
    HOOK = "hook"
    STATUS = "status"
    ERROR = "error"


class TranscriptEvent(BaseModel):
    """A single transcript record."""

    ts: datetime = Field(description="UTC timestamp when the event was appended")
    session_id: str
    seq: int = Field(description="0-based position in the session's total order")
    kind: EventKind
    agent: str | None = Field(default=None, description="Subagent name, None for the top level")
    data: dict[str, Any] = Field(default_factory=dict)

    def to_json_line(self) -> str:
        record = {
            "ts": self.ts.isoformat(),
            "session_id": self.session_id,
            "seq": self.seq,
            "type": self.kind.value,
        }
        if self.agent:
            record["agent"] = self.agent
        record.update(self.data)
        return json.dumps(record, default=str)


type Listener = Callable[[TranscriptEvent], None]


class TranscriptStore(BaseModel):
    """Storage shared by a transcript and all of its scoped views."""

    path: Path | None = None
    events: list[TranscriptEvent] = Field(default_factory=list)
    listeners: list[Listener] = Field(default_factory=list)

    def write(self, event: TranscriptEvent) -> None:
        self.events.append(event)
        if self.path is not None:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(event.to_json_line() + "\n")
        for listener in self.listeners:
            listener(event)


class Transcript(BaseModel):
    """Append-only event sink for one session."""

    session_id: str
    agent: str | None = None
    path: Path | None = Field(default=None, description="JSONL file; None keeps events in memory only")

    _store: TranscriptStore = PrivateAttr()

    def model_post_init(self, _context: object) -> None:
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._store = TranscriptStore(path=self.path)

    @property
    def events(self) -> list[TranscriptEvent]:
        """All events in append order (shared with scoped views)."""
        return list(self._store.events)

    def subscribe(self, listener: Listener) -> None:
        """Call ``listener`` with every event appended from now on."""
        self._store.listeners.append(listener)

    def append(self, kind: EventKind, **data: Any) -> TranscriptEvent:
        """Append an event and return it."""
        event = TranscriptEvent(
            ts=datetime.now(timezone.utc),
            session_id=self.session_id,
            seq=len(self._store.events),
            kind=kind,
            agent=self.agent,
            data=data,
        )
        self._store.write(event)
        return event

    def scoped(self, agent: str) -> Self:
        """A view that tags events with ``agent`` and writes to the same store."""
        view = self.model_copy(update={"agent": agent})
        view._store = self._store
        return view

    def of_kind(self, kind: EventKind) -> list[TranscriptEvent]:
        return [e for e in self._store.events if e.kind == kind]
