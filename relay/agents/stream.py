"""Claude stream-json decoder.

Wire format of ``claude -p ... --output-format stream-json --verbose``,
one JSON object per line:
    system   : init (session info), compact_boundary
    assistant: content blocks (text, thinking, tool_use); a message id may
                repeat with cumulative content
    user     : tool_result blocks for the previous tool_use
    result   : run summary (cost, duration, session id, final text)
"""
from __future__ import annotations

import json
import logging
import os
from typing import Any

from .events import (
    AssistantText,
    ResultSummary,
    SessionIdAnnounced,
    TaskEvent,
    Thinking,
    ToolInvocation,
    ToolResult,
)

log = logging.getLogger("relay")

_TOOL_OUTPUT_CHARS = 300


def _short_path(p: str) -> str:
    """Shorten an absolute file path or command for display."""
    if not p:
        return ""
    home = os.path.expanduser("~")
    if p.startswith(home):
        return "~" + p[len(home):]
    return p


def _extract_tool_detail(params: dict) -> str:
    """Extract and shorten the most relevant detail from tool parameters."""
    raw = (
        params.get("path")
        or params.get("file_path")
        or params.get("notebook_path")
        or params.get("command")
        or params.get("pattern")
        or params.get("url", "")
    )
    return _short_path(str(raw))


def _try_parse_json(line: str) -> Any | None:
    try:
        return json.loads(line)
    except (json.JSONDecodeError, ValueError):
        truncated = line[:200] + "..." if len(line) > 200 else line
        log.debug("[claude-stream] json parse failed: %s", truncated.rstrip())
        return None


def _tool_result_text(raw: Any) -> str:
    if isinstance(raw, str):
        return raw[:_TOOL_OUTPUT_CHARS]
    if isinstance(raw, list):
        return " ".join(
            p.get("text", "")[:100]
            for p in raw
            if isinstance(p, dict) and p.get("type") == "text"
        )[:_TOOL_OUTPUT_CHARS]
    return ""


def _delta(previous: str, cumulative: str) -> str:
    """New text since ``previous``; a non-extending block counts as fresh text."""
    if cumulative.startswith(previous):
        return cumulative[len(previous):]
    return cumulative


class ClaudeStreamDecoder:
    """Turns stream-json lines into TaskEvents. One instance per run."""

    def __init__(self) -> None:
        self.session_id: str | None = None
        self._last_message_id: str | None = None
        self._last_cumulative = ""
        self._last_thinking = ""
        self._seen_tool_ids: set[str] = set()

    def decode(self, line: str) -> list[TaskEvent]:
        if not line.strip():
            return []
        obj = _try_parse_json(line)
        if not isinstance(obj, dict):
            return []

        events: list[TaskEvent] = []
        sid = obj.get("session_id")
        if sid and sid != self.session_id:
            self.session_id = sid
            events.append(SessionIdAnnounced(session_id=sid))

        event_type = obj.get("type", "")
        if event_type == "system":
            subtype = obj.get("subtype", "")
            if subtype == "compact_boundary":
                log.info("[claude-stream] context compaction boundary")
            else:
                log.debug("[claude-stream] system event subtype=%s", subtype)
        elif event_type == "assistant":
            events.extend(self._decode_assistant(obj.get("message") or {}))
        elif event_type == "user":
            events.extend(self._decode_user(obj.get("message") or {}))
        elif event_type == "result":
            events.append(ResultSummary(
                cost_usd=obj.get("total_cost_usd"),
                duration_ms=obj.get("duration_ms"),
                text=obj.get("result") or "",
                session_id=sid,
                is_error=bool(obj.get("is_error", False)) or obj.get("subtype", "success") != "success",
                num_turns=obj.get("num_turns"),
            ))
        elif event_type != "stream_event":
            log.debug("[claude-stream] unhandled event type=%s keys=%s", event_type, sorted(obj.keys()))
        return events

    def _decode_assistant(self, msg: dict) -> list[TaskEvent]:
        content = msg.get("content") or []
        if not isinstance(content, list) or not content:
            return []

        # A new message id means the content array starts fresh.
        msg_id = msg.get("id")
        if msg_id and msg_id != self._last_message_id:
            self._last_message_id = msg_id
            self._last_cumulative = ""
            self._last_thinking = ""

        events: list[TaskEvent] = []

        thinking_parts = [p.get("thinking", "") for p in content if p.get("type") == "thinking"]
        if thinking_parts:
            cumulative_thinking = "".join(thinking_parts)
            delta = _delta(self._last_thinking, cumulative_thinking)
            self._last_thinking = cumulative_thinking
            if delta.strip():
                events.append(Thinking(text=delta))

        for t in content:
            if t.get("type") != "tool_use":
                continue
            tool_id = t.get("id") or f"{msg_id}:{t.get('name', '')}"
            if tool_id in self._seen_tool_ids:
                continue
            self._seen_tool_ids.add(tool_id)
            params = t.get("input") or {}
            events.append(ToolInvocation(
                tool_name=t.get("name", ""),
                tool_input=params,
                detail=_extract_tool_detail(params),
                tool_use_id=t.get("id", ""),
            ))

        texts = [p.get("text", "") for p in content if p.get("type") == "text"]
        if texts:
            cumulative = "".join(texts)
            delta = _delta(self._last_cumulative, cumulative)
            self._last_cumulative = cumulative
            if delta:
                events.append(AssistantText(text=delta))
        return events

    def _decode_user(self, msg: dict) -> list[TaskEvent]:
        content = msg.get("content")
        if not isinstance(content, list):
            return []
        return [
            ToolResult(
                tool_use_id=p.get("tool_use_id", ""),
                success=not p.get("is_error", False),
                output=_tool_result_text(p.get("content")),
            )
            for p in content
            if isinstance(p, dict) and p.get("type") == "tool_result"
        ]
