"""Tool call and token usage metrics.

A ``MetricsCollector`` belongs to one session; dispatch records every tool
call through ``collector.track(name)`` and the loop records backend usage
after each request. Subagents get their own collector and the parent
merges the child's numbers when it finishes.

Usage:
    collector = MetricsCollector()

    with collector.track("Read") as call:
        result = await read_file(...)
        call.is_error = result.is_error

    collector.record_usage(prompt_tokens=1200, completion_tokens=80)
    summary = collector.get_summary()
"""

import logging
import time
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from pydantic import BaseModel, Field, PrivateAttr

logger = logging.getLogger(__name__)


class ToolMetrics(BaseModel):
    """Metrics for a single tool."""

    call_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    max_duration_ms: float = 0.0

    @property
    def avg_duration_ms(self) -> float:
        """Average duration per call in milliseconds."""
        if self.call_count == 0:
            return 0.0
        return self.total_duration_ms / self.call_count

    def record_call(self, duration_ms: float, is_error: bool = False) -> None:
        """Record a tool call."""
        self.call_count += 1
        self.total_duration_ms += duration_ms
        self.max_duration_ms = max(self.max_duration_ms, duration_ms)
        if is_error:
            self.error_count += 1

    def merge(self, other: "ToolMetrics") -> None:
        self.call_count += other.call_count
        self.error_count += other.error_count
        self.total_duration_ms += other.total_duration_ms
        self.max_duration_ms = max(self.max_duration_ms, other.max_duration_ms)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "call_count": self.call_count,
            "error_count": self.error_count,
            "avg_duration_ms": round(self.avg_duration_ms, 2),
            "max_duration_ms": round(self.max_duration_ms, 2),
        }


class TokenUsage(BaseModel):
    """Token counts reported by the backend."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    requests: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class CallRecord(BaseModel):
    """Mutable handle yielded by ``MetricsCollector.track``."""

    is_error: bool = False


class MetricsCollector(BaseModel):
    """Collects tool and token metrics for one session."""

    usage: TokenUsage = Field(default_factory=TokenUsage)

    _tools: dict[str, ToolMetrics] = PrivateAttr(
        default_factory=lambda: defaultdict(ToolMetrics)
    )
    _session_start: float = PrivateAttr(default_factory=time.time)

    def record(self, tool_name: str, duration_ms: float, is_error: bool = False) -> None:
        """Record a tool call."""
        self._tools[tool_name].record_call(duration_ms, is_error)

    @contextmanager
    def track(self, tool_name: str) -> Iterator[CallRecord]:
        """Time a block and record it under ``tool_name``.

        An exception escaping the block counts as an error.
        """
        call = CallRecord()
        start = time.perf_counter()
        try:
            yield call
        except Exception:
            call.is_error = True
            raise
        finally:
            self.record(tool_name, (time.perf_counter() - start) * 1000, call.is_error)

    def record_usage(self, *, prompt_tokens: int, completion_tokens: int) -> None:
        """Record one backend request's token usage."""
        self.usage.prompt_tokens += prompt_tokens
        self.usage.completion_tokens += completion_tokens
        self.usage.requests += 1

    def merge(self, other: "MetricsCollector") -> None:
        """Fold a finished subagent's metrics into this collector."""
        for name, metrics in other._tools.items():
            self._tools[name].merge(metrics)
        self.usage.prompt_tokens += other.usage.prompt_tokens
        self.usage.completion_tokens += other.usage.completion_tokens
        self.usage.requests += other.usage.requests

    @property
    def tool_calls(self) -> int:
        return sum(m.call_count for m in self._tools.values())

    def get_summary(self) -> dict[str, Any]:
        """Get a summary of all metrics."""
        total_errors = sum(m.error_count for m in self._tools.values())
        return {
            "session_duration_seconds": round(time.time() - self._session_start, 2),
            "total_tool_calls": self.tool_calls,
            "total_errors": total_errors,
            "backend_requests": self.usage.requests,
            "prompt_tokens": self.usage.prompt_tokens,
            "completion_tokens": self.usage.completion_tokens,
            "by_tool": {name: m.to_dict() for name, m in self._tools.items()},
        }

    def log_summary(self, level: int = logging.INFO) -> None:
        """Log a one-line summary."""
        summary = self.get_summary()
        logger.log(
            level,
            "Session metrics: %d tool calls, %d errors, %d requests, %d tokens, %.1fs",
            summary["total_tool_calls"],
            summary["total_errors"],
            summary["backend_requests"],
            self.usage.total_tokens,
            summary["session_duration_seconds"],
        )
