from .base import (
    AbnormalExit,
    ActivityTimeout,
    CancellationToken,
    StartupTimeout,
    TaskAborted,
    TaskClient,
    TaskError,
    TaskFailed,
    TaskOptions,
    TaskStream,
)
from .claude import ClaudeClient
from .events import (
    AssistantText,
    ResultSummary,
    SessionIdAnnounced,
    TaskEvent,
    Thinking,
    ToolInvocation,
    ToolResult,
)

__all__ = [
    "AbnormalExit",
    "ActivityTimeout",
    "AssistantText",
    "CancellationToken",
    "ClaudeClient",
    "ResultSummary",
    "SessionIdAnnounced",
    "StartupTimeout",
    "TaskAborted",
    "TaskClient",
    "TaskError",
    "TaskEvent",
    "TaskFailed",
    "TaskOptions",
    "TaskStream",
    "Thinking",
    "ToolInvocation",
    "ToolResult",
]
