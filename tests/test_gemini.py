from __future__ import annotations

import asyncio

from fakes import FakeProcess, FakeSpawner, collect, write_script

from headless_coders.runners.gemini import GeminiCoder, normalize_gemini_event
from headless_coders.runners.supervisor import SupervisorConfig


def test_init_and_streaming_message() -> None:
    [init] = normalize_gemini_event({"type": "init", "session_id": "g-1", "model": "gemini-2.5-pro"})
    [message] = normalize_gemini_event({"type": "message", "role": "assistant", "content": "Hi", "delta": True})
    assert (init.type, init.thread_id, init.model) == ("init", "g-1", "gemini-2.5-pro")
    assert (message.type, message.text, message.delta) == ("message", "Hi", True)


def test_tool_use_and_result() -> None:
    [use] = normalize_gemini_event(
        {"type": "tool_use", "tool_name": "run_shell_command", "tool_id": "t1", "parameters": {"command": "ls"}}
    )
    [result] = normalize_gemini_event(
        {"type": "tool_result", "tool_id": "t1", "status": "error", "output": "permission denied"}
    )
    assert (use.name, use.call_id, use.args) == ("run_shell_command", "t1", {"command": "ls"})
    assert (result.call_id, result.result, result.exit_code) == ("t1", "permission denied", 1)


def test_result_with_stats_is_usage_then_done() -> None:
    events = normalize_gemini_event(
        {"type": "result", "status": "success", "stats": {"input_tokens": 12, "output_tokens": 8}}
    )
    assert [e.type for e in events] == ["usage", "done"]
    assert events[0].stats == {"input_tokens": 12, "output_tokens": 8}


def test_result_without_stats_is_just_done() -> None:
    assert [e.type for e in normalize_gemini_event({"type": "result", "status": "success"})] == ["done"]


def test_error_status_result_is_error() -> None:
    [event] = normalize_gemini_event({"type": "result", "status": "error", "error": {"message": "quota"}})
    assert event.type == "error"
    assert event.message == "quota"


def test_warning_severity_error_is_progress() -> None:
    [warning] = normalize_gemini_event({"type": "error", "severity": "warning", "message": "loop detected"})
    [fatal] = normalize_gemini_event({"type": "error", "severity": "error", "message": "api down"})
    assert (warning.type, warning.label) == ("progress", "warning")
    assert (fatal.type, fatal.message) == ("error", "api down")


def test_unknown_is_progress() -> None:
    [event] = normalize_gemini_event({"type": "telemetry"})
    assert (event.type, event.label) == ("progress", "telemetry")


def test_build_command_options() -> None:
    coder = GeminiCoder(
        {"model": "gemini-2.5-flash", "include_directories": ["src", "docs"], "yolo": True},
        config=SupervisorConfig(),
    )
    thread = coder.resume_thread("g-7")
    assert coder.build_command(thread, "do it") == [
        "gemini", "--output-format", "stream-json", "--prompt", "do it",
        "--model", "gemini-2.5-flash",
        "--include-directories", "src,docs",
        "--yolo",
        "--resume", "g-7",
    ]


def test_binary_from_env(monkeypatch) -> None:
    monkeypatch.setenv("HEADLESS_CODERS_GEMINI_BIN", "/usr/local/bin/gemini")
    coder = GeminiCoder(config=SupervisorConfig())
    assert coder.build_command(coder.start_thread(), "x")[0] == "/usr/local/bin/gemini"


def test_gemini_coder_streams_and_injects_schema() -> None:
    schema = {"type": "object"}

    async def _go():
        proc = FakeProcess()
        spawner = FakeSpawner(proc)
        coder = GeminiCoder({"working_directory": "/repo"}, config=SupervisorConfig(), spawn=spawner)
        thread = coder.start_thread()
        proc.emit(
            {"type": "init", "session_id": "g-1", "model": "gemini-2.5-pro"},
            {"type": "message", "role": "assistant", "content": '{"ok": true}'},
            {"type": "result", "status": "success", "stats": {"total_tokens": 20}},
        )
        proc.finish(0)
        events = await collect(thread.run_streamed("check", output_schema=schema))
        return spawner, thread, events

    spawner, thread, events = asyncio.run(_go())

    assert [e.type for e in events] == ["init", "message", "usage", "done"]
    assert thread.id == "g-1"
    call = spawner.calls[0]
    assert call["cwd"] == "/repo"
    prompt = call["command"][call["command"].index("--prompt") + 1]
    assert prompt.startswith("check\n\n")
    assert "Schema:" in prompt


def test_gemini_cli_that_reads_piped_stdin_still_completes(tmp_path) -> None:
    gemini = write_script(
        tmp_path / "gemini",
        "import json, sys\n"
        "if not sys.stdin.isatty():\n"
        "    sys.stdin.read()\n"
        "for event in (\n"
        "    {'type': 'init', 'session_id': 'g-9', 'model': 'gemini-2.5-pro'},\n"
        "    {'type': 'message', 'role': 'assistant', 'content': 'hi back'},\n"
        "    {'type': 'result', 'status': 'success', 'stats': {'total_tokens': 3}},\n"
        "):\n"
        "    print(json.dumps(event), flush=True)\n",
    )
    coder = GeminiCoder({"executable_path": gemini}, config=SupervisorConfig())
    thread = coder.start_thread()

    result = asyncio.run(asyncio.wait_for(thread.run("hi"), 10))

    assert result.text == "hi back"
    assert result.usage == {"total_tokens": 3}
    assert thread.id == "g-9"
