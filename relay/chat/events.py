from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ChatEvent:
    """Base class for relay notifications delivered alongside task events."""


@dataclass
class TaskStarted(ChatEvent):
    channel_key: str
    prompt: str
    model: str | None = None
    resumed: bool = False


@dataclass
class TaskNotice(ChatEvent):
    """Visible system notice (e.g. fallback retry)."""
    channel_key: str
    message: str


@dataclass
class TaskCompleted(ChatEvent):
    channel_key: str
    session_id: str | None
    model: str
    cost_usd: float | None = None
    duration_ms: float | None = None
    cwd: str = ""
    retried: bool = False
    text: str = ""


@dataclass
class TaskErrored(ChatEvent):
    channel_key: str
    kind: str  # "startup_timeout" | "activity_timeout" | "abnormal_exit" | "other"
    message: str
    diagnostics: str = ""
    retried: bool = False


@dataclass
class TaskCancelled(ChatEvent):
    channel_key: str
    reason: str = "cancelled"
