from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone

from ..agents.events import (
    AssistantText,
    ResultSummary,
    SessionIdAnnounced,
    TaskEvent,
    Thinking,
    ToolInvocation,
    ToolResult,
)
from ..chat.events import (
    ChatEvent,
    TaskCancelled,
    TaskCompleted,
    TaskErrored,
    TaskNotice,
    TaskStarted,
)

# Tool names shown with a friendlier verb.
_TOOL_LABELS: dict[str, str] = {
    "Read": "Read", "Edit": "Update", "MultiEdit": "Update", "Write": "Write",
    "Bash": "Run", "Glob": "Search", "Grep": "Search", "WebFetch": "Fetch",
    "WebSearch": "Search", "NotebookEdit": "Update", "TodoWrite": "Plan",
}


def _ts() -> str:
    return datetime.now(timezone.utc).isoformat()


def tool_label(tool_name: str) -> str:
    return _TOOL_LABELS.get(tool_name, tool_name)


def event_to_dict(event: TaskEvent | ChatEvent) -> dict:
    match event:
        case AssistantText(text=text):
            return {"type": "assistant_text", "text": text}
        case Thinking(text=text):
            return {"type": "thinking", "text": text}
        case ToolInvocation(tool_name=name, tool_input=tinput, detail=detail, tool_use_id=tid):
            return {
                "type": "tool_invocation", "tool_name": name, "label": tool_label(name),
                "detail": detail, "tool_input": tinput, "tool_use_id": tid,
            }
        case ToolResult(tool_use_id=tid, success=success, output=output):
            return {"type": "tool_result", "tool_use_id": tid, "success": success, "output": output}
        case SessionIdAnnounced(session_id=sid):
            return {"type": "session_id", "session_id": sid}
        case ResultSummary(cost_usd=cost, duration_ms=duration, text=text, session_id=sid, is_error=is_error, num_turns=turns):
            return {
                "type": "result", "total_cost_usd": cost, "duration_ms": duration,
                "text": text, "session_id": sid, "is_error": is_error, "num_turns": turns,
            }
        case TaskStarted(prompt=prompt, model=model, resumed=resumed):
            return {"type": "task_started", "prompt": prompt, "model": model or "default", "resumed": resumed, "created_at": _ts()}
        case TaskNotice(message=msg):
            return {"type": "notice", "message": msg, "created_at": _ts()}
        case TaskCompleted(session_id=sid, model=model, cost_usd=cost, duration_ms=duration, cwd=cwd, retried=retried, text=text):
            return {
                "type": "completion",
                "session_id": sid,
                "model": model,
                "total_cost_usd": cost,
                "duration_ms": duration,
                "cwd": cwd,
                "retried": retried,
                "text": text,
                "created_at": _ts(),
            }
        case TaskErrored(kind=kind, message=msg, diagnostics=diagnostics, retried=retried):
            return {
                "type": "error", "kind": kind, "message": msg, "diagnostics": diagnostics,
                "retried": retried, "created_at": _ts(),
            }
        case TaskCancelled(reason=reason):
            return {"type": "cancelled", "reason": reason, "created_at": _ts()}
        case _:
            raise TypeError(f"unsupported event: {type(event).__name__}")


def batch_to_dict(channel_key: str, batch: Sequence[TaskEvent | ChatEvent]) -> dict:
    return {"type": "batch", "channel": channel_key, "events": [event_to_dict(e) for e in batch]}
