from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class TaskEvent:
    """Base class for events yielded by a streaming task."""


@dataclass
class AssistantText(TaskEvent):
    text: str


@dataclass
class Thinking(TaskEvent):
    text: str


@dataclass
class ToolInvocation(TaskEvent):
    tool_name: str
    tool_input: dict = field(default_factory=dict)
    detail: str = ""
    tool_use_id: str = ""


@dataclass
class ToolResult(TaskEvent):
    """Tool execution completed."""
    tool_use_id: str = ""
    success: bool = True
    output: str = ""  # truncated summary


@dataclass
class SessionIdAnnounced(TaskEvent):
    session_id: str


@dataclass
class ResultSummary(TaskEvent):
    """Final result line of a run."""
    cost_usd: float | None = None
    duration_ms: float | None = None
    text: str = ""
    session_id: str | None = None
    is_error: bool = False
    num_turns: int | None = None
