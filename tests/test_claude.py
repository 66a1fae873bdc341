from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import pytest

from headless_coders.errors import AbortError
from headless_coders.lifecycle.threads import RunOptions
from headless_coders.runners.claude import ClaudeCoder, message_to_event, normalize_claude_event
from headless_coders.runners.supervisor import SupervisorConfig


def _types(events):
    return [event.type for event in events]


INIT = {"type": "system", "subtype": "init", "session_id": "sess-1", "model": "claude-sonnet-4-5"}
RESULT = {
    "type": "result",
    "subtype": "success",
    "is_error": False,
    "session_id": "sess-1",
    "result": "done",
    "num_turns": 2,
    "duration_ms": 1500,
    "total_cost_usd": 0.01,
    "usage": {"input_tokens": 100, "output_tokens": 20},
}


# -- normalization -----------------------------------------------------------


def test_system_init_and_other_subtypes() -> None:
    [init] = normalize_claude_event(INIT)
    [other] = normalize_claude_event({"type": "system", "subtype": "compact_boundary"})
    assert (init.type, init.thread_id, init.model) == ("init", "sess-1", "claude-sonnet-4-5")
    assert (other.type, other.label) == ("progress", "system.compact_boundary")


def test_assistant_blocks_and_tool_result_name_lookup() -> None:
    tool_names: dict[str, str] = {}
    assistant = normalize_claude_event(
        {
            "type": "assistant",
            "message": {
                "content": [
                    {"type": "thinking", "thinking": "hmm"},
                    {"type": "text", "text": "Let me check."},
                    {"type": "tool_use", "id": "tu_1", "name": "Bash", "input": {"command": "ls"}},
                ]
            },
        },
        tool_names,
    )
    [result] = normalize_claude_event(
        {
            "type": "user",
            "message": {"content": [{"type": "tool_result", "tool_use_id": "tu_1", "content": "boom", "is_error": True}]},
        },
        tool_names,
    )
    assert _types(assistant) == ["progress", "message", "tool_use"]
    assert assistant[1].text == "Let me check."
    assert (result.name, result.call_id, result.exit_code) == ("Bash", "tu_1", 1)
    assert tool_names == {}


def test_todo_write_and_file_tools_add_semantic_events() -> None:
    events = normalize_claude_event(
        {
            "type": "assistant",
            "message": {
                "content": [
                    {
                        "type": "tool_use",
                        "id": "tu_2",
                        "name": "TodoWrite",
                        "input": {"todos": [{"content": "a", "status": "completed"}, {"content": "b", "status": "pending"}]},
                    },
                    {"type": "tool_use", "id": "tu_3", "name": "Write", "input": {"file_path": "/repo/x.py", "content": ""}},
                ]
            },
        }
    )
    assert _types(events) == ["tool_use", "plan_update", "tool_use", "file_change"]
    assert events[1].text == "[x] a\n[ ] b"
    assert (events[3].path, events[3].op) == ("/repo/x.py", "create")


def test_partial_text_is_delta_message() -> None:
    [event] = normalize_claude_event(
        {
            "type": "stream_event",
            "event": {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hel"}},
        }
    )
    assert (event.type, event.text, event.delta) == ("message", "Hel", True)


def test_result_success_is_permissions_usage_done() -> None:
    events = normalize_claude_event(
        {**RESULT, "permission_denials": [{"tool_name": "Bash", "tool_use_id": "tu_9"}]}
    )
    assert _types(events) == ["permission", "usage", "done"]
    assert events[0].decision == "denied"
    assert events[1].stats == {
        "input_tokens": 100,
        "output_tokens": 20,
        "total_cost_usd": 0.01,
        "num_turns": 2,
        "duration_ms": 1500,
    }


def test_result_error_is_error() -> None:
    [event] = normalize_claude_event({"type": "result", "subtype": "error_max_turns", "is_error": True})
    assert event.type == "error"
    assert event.message == "error_max_turns"


def test_message_to_event_converts_sdk_dataclasses() -> None:
    @dataclass
    class TextBlock:
        text: str

    @dataclass
    class ToolUseBlock:
        id: str
        name: str
        input: dict

    @dataclass
    class SystemMessage:
        subtype: str
        data: dict

    @dataclass
    class AssistantMessage:
        content: list
        model: str

    @dataclass
    class ResultMessage:
        subtype: str
        duration_ms: int
        is_error: bool
        num_turns: int
        session_id: str
        usage: dict = field(default_factory=dict)

    system = message_to_event(SystemMessage("init", {"type": "system", "subtype": "init", "session_id": "s"}))
    assistant = message_to_event(
        AssistantMessage([TextBlock("hi"), ToolUseBlock("tu", "Read", {"file_path": "a"})], "claude")
    )
    result = message_to_event(ResultMessage("success", 10, False, 1, "s"))

    assert system["session_id"] == "s"
    assert assistant["message"]["content"] == [
        {"type": "text", "text": "hi"},
        {"type": "tool_use", "id": "tu", "name": "Read", "input": {"file_path": "a"}},
    ]
    assert result["type"] == "result"
    assert result["session_id"] == "s"


# -- coder -------------------------------------------------------------------


class FakeQuery:
    """Stands in for claude_agent_sdk.query: records options, replays messages."""

    def __init__(self, *scripts: list[Any], block: bool = False):
        self.scripts = list(scripts)
        self.calls: list[dict[str, Any]] = []
        self.block = block

    def __call__(self, *, prompt: str, options: dict[str, Any]):
        self.calls.append({"prompt": prompt, "options": options})
        script = self.scripts.pop(0)

        async def stream():
            for message in script:
                yield message
            if self.block:
                await asyncio.Event().wait()

        return stream()


def test_claude_coder_runs_and_resumes_with_session_id() -> None:
    assistant = {"type": "assistant", "message": {"content": [{"type": "text", "text": "Hello!"}]}}
    query = FakeQuery([INIT, assistant, RESULT], [INIT, assistant, RESULT])
    coder = ClaudeCoder({"yolo": True, "allowed_tools": ["Read"]}, query_fn=query, config=SupervisorConfig())

    async def _go():
        thread = coder.start_thread()
        first = await thread.run("hi")
        second = await thread.run("again")
        return thread, first, second

    thread, first, second = asyncio.run(_go())

    assert first.text == "Hello!"
    assert first.usage["num_turns"] == 2
    assert thread.id == "sess-1"
    assert query.calls[0]["options"] == {"allowed_tools": ["Read"], "permission_mode": "bypassPermissions"}
    assert query.calls[1]["options"]["resume"] == "sess-1"
    assert second.thread_id == "sess-1"


def test_claude_coder_maps_thread_and_run_options() -> None:
    coder = ClaudeCoder(
        {
            "working_directory": "/repo",
            "model": "opus",
            "permission_mode": "acceptEdits",
            "fork_session": True,
            "continue_session": True,
        },
        query_fn=FakeQuery(),
        config=SupervisorConfig(),
    )
    thread = coder.resume_thread("sess-9")

    options = coder.build_options(thread, RunOptions(extra_env={"A": "1"}, stream_partial_messages=True))

    assert options == {
        "cwd": "/repo",
        "model": "opus",
        "continue_conversation": True,
        "resume": "sess-9",
        "fork_session": True,
        "permission_mode": "acceptEdits",
        "include_partial_messages": True,
        "env": {"A": "1"},
    }


def test_claude_stream_cancel_closes_sdk_stream() -> None:
    query = FakeQuery([INIT, {"type": "assistant", "message": {"content": [{"type": "text", "text": "thinking..."}]}}], block=True)
    coder = ClaudeCoder(query_fn=query, config=SupervisorConfig())
    thread = coder.start_thread()

    async def _go():
        events = []
        async for event in thread.run_streamed("long task"):
            events.append(event)
            if event.type == "message":
                thread.interrupt("enough")
        return events

    events = asyncio.run(_go())

    assert _types(events) == ["init", "message", "cancelled", "error"]
    assert events[-1].code == "interrupted"
    assert not thread.is_running


def test_claude_run_raises_abort_on_cancel() -> None:
    query = FakeQuery([INIT], block=True)
    coder = ClaudeCoder(query_fn=query, config=SupervisorConfig())
    thread = coder.start_thread()

    async def _go():
        task = asyncio.ensure_future(thread.run("long task"))
        while not thread.is_running:
            await asyncio.sleep(0)
        await asyncio.sleep(0.01)
        thread.interrupt("stop now")
        return await task

    with pytest.raises(AbortError) as excinfo:
        asyncio.run(_go())
    assert excinfo.value.reason == "stop now"


def test_claude_run_with_schema_injects_prompt_and_extracts_json() -> None:
    query = FakeQuery(
        [
            INIT,
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "Here you go: {\"n\": 3}"}]}},
            RESULT,
        ]
    )
    coder = ClaudeCoder(query_fn=query, config=SupervisorConfig())

    result = asyncio.run(coder.start_thread().run("count", output_schema={"type": "object"}))

    assert result.structured == {"n": 3}
    assert query.calls[0]["prompt"].startswith("count\n\n")


def test_tool_names_do_not_leak_between_runs() -> None:
    tool_use = {
        "type": "assistant",
        "message": {"content": [{"type": "tool_use", "id": "tu_1", "name": "Bash", "input": {"command": "sleep 99"}}]},
    }
    tool_result = {
        "type": "user",
        "message": {"content": [{"type": "tool_result", "tool_use_id": "tu_1", "content": "ok"}]},
    }
    coder = ClaudeCoder(query_fn=FakeQuery(), config=SupervisorConfig())

    first_run, second_run = coder.event_parser(), coder.event_parser()
    first_run(tool_use)
    [result] = second_run(tool_result)

    assert result.name == "tool"


def test_explicit_permission_mode_wins_over_yolo() -> None:
    coder = ClaudeCoder({"yolo": True, "permission_mode": "plan"}, query_fn=FakeQuery(), config=SupervisorConfig())

    options = coder.build_options(coder.start_thread(), RunOptions())

    assert options["permission_mode"] == "plan"
