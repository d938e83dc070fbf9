import json
import os

from relay.agents.events import (
    AssistantText,
    ResultSummary,
    SessionIdAnnounced,
    Thinking,
    ToolInvocation,
    ToolResult,
)
from relay.agents.stream import ClaudeStreamDecoder


def _line(obj: dict) -> str:
    return json.dumps(obj) + "\n"


def _assistant(msg_id: str, *blocks: dict, session_id: str = "sid-1") -> str:
    return _line({
        "type": "assistant",
        "session_id": session_id,
        "message": {"id": msg_id, "content": list(blocks)},
    })


def test_session_id_announced_once():
    decoder = ClaudeStreamDecoder()
    first = decoder.decode(_line({"type": "system", "subtype": "init", "session_id": "sid-1"}))
    again = decoder.decode(_assistant("m1", {"type": "text", "text": "hi"}))

    assert first == [SessionIdAnnounced(session_id="sid-1")]
    assert not any(isinstance(e, SessionIdAnnounced) for e in again)
    assert decoder.session_id == "sid-1"


def test_cumulative_text_yields_deltas():
    decoder = ClaudeStreamDecoder()
    decoder.session_id = "sid-1"
    a = decoder.decode(_assistant("m1", {"type": "text", "text": "Hel"}))
    b = decoder.decode(_assistant("m1", {"type": "text", "text": "Hello"}))

    assert a == [AssistantText(text="Hel")]
    assert b == [AssistantText(text="lo")]


def test_one_block_per_line_keeps_all_text():
    decoder = ClaudeStreamDecoder()
    decoder.session_id = "sid-1"
    events = []
    events += decoder.decode(_assistant("m1", {"type": "text", "text": "Hello"}))
    events += decoder.decode(_assistant("m1", {"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "ls"}}))
    events += decoder.decode(_assistant("m1", {"type": "text", "text": "World"}))

    texts = [e.text for e in events if isinstance(e, AssistantText)]
    tools = [e for e in events if isinstance(e, ToolInvocation)]
    assert texts == ["Hello", "World"]
    assert len(tools) == 1
    assert tools[0].tool_name == "Bash"
    assert tools[0].detail == "ls"


def test_repeated_tool_use_is_not_duplicated():
    decoder = ClaudeStreamDecoder()
    decoder.session_id = "sid-1"
    tool = {"type": "tool_use", "id": "t1", "name": "Read", "input": {"file_path": "/tmp/x.py"}}
    first = decoder.decode(_assistant("m1", tool))
    second = decoder.decode(_assistant("m1", tool, {"type": "text", "text": "done"}))

    assert [type(e) for e in first] == [ToolInvocation]
    assert second == [AssistantText(text="done")]


def test_new_message_id_resets_text():
    decoder = ClaudeStreamDecoder()
    decoder.session_id = "sid-1"
    decoder.decode(_assistant("m1", {"type": "text", "text": "first"}))
    events = decoder.decode(_assistant("m2", {"type": "text", "text": "first again"}))

    assert events == [AssistantText(text="first again")]


def test_thinking_blocks():
    decoder = ClaudeStreamDecoder()
    decoder.session_id = "sid-1"
    events = decoder.decode(_assistant("m1", {"type": "thinking", "thinking": "let me see"}))
    assert events == [Thinking(text="let me see")]


def test_tool_path_is_shortened_under_home():
    decoder = ClaudeStreamDecoder()
    decoder.session_id = "sid-1"
    path = os.path.join(os.path.expanduser("~"), "project", "main.py")
    events = decoder.decode(_assistant("m1", {"type": "tool_use", "id": "t1", "name": "Edit", "input": {"file_path": path}}))

    assert events[0].detail == "~" + path[len(os.path.expanduser("~")):]


def test_tool_result_blocks():
    decoder = ClaudeStreamDecoder()
    events = decoder.decode(_line({
        "type": "user",
        "message": {"content": [
            {"type": "tool_result", "tool_use_id": "t1", "content": "ok"},
            {"type": "tool_result", "tool_use_id": "t2", "is_error": True,
             "content": [{"type": "text", "text": "no such file"}]},
        ]},
    }))

    assert events == [
        ToolResult(tool_use_id="t1", success=True, output="ok"),
        ToolResult(tool_use_id="t2", success=False, output="no such file"),
    ]


def test_result_line():
    decoder = ClaudeStreamDecoder()
    events = decoder.decode(_line({
        "type": "result",
        "subtype": "success",
        "session_id": "sid-7",
        "total_cost_usd": 0.042,
        "duration_ms": 1234,
        "num_turns": 3,
        "result": "All done",
    }))

    assert events[0] == SessionIdAnnounced(session_id="sid-7")
    summary = events[1]
    assert isinstance(summary, ResultSummary)
    assert summary.cost_usd == 0.042
    assert summary.duration_ms == 1234
    assert summary.text == "All done"
    assert summary.session_id == "sid-7"
    assert summary.is_error is False


def test_error_result_subtype_marks_error():
    decoder = ClaudeStreamDecoder()
    events = decoder.decode(_line({"type": "result", "subtype": "error_max_turns"}))
    assert events == [ResultSummary(is_error=True)]


def test_garbage_lines_are_ignored():
    decoder = ClaudeStreamDecoder()
    assert decoder.decode("") == []
    assert decoder.decode("not json\n") == []
    assert decoder.decode("[1, 2]\n") == []
