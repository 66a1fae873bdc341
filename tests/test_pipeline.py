from __future__ import annotations

import asyncio
import logging

import pytest

from fakes import WAIT, ScriptedCoder, collect

from headless_coders.cancellation import CancellationToken
from headless_coders.errors import AbortError, ConcurrencyViolation, ExecutionFailure, UsageError
from headless_coders.events import ErrorEvent


def _types(events):
    return [event.type for event in events]


def test_incidental_session_id_becomes_first_init() -> None:
    coder = ScriptedCoder(
        [
            {"kind": "text", "text": "hello", "session_id": "abc"},
            {"kind": "usage", "stats": {"input_tokens": 3, "output_tokens": 5}},
        ]
    )
    thread = coder.start_thread()

    events = asyncio.run(collect(thread.run_streamed("hi")))

    assert _types(events) == ["init", "message", "usage", "done"]
    assert events[0].thread_id == "abc"
    assert thread.id == "abc"
    assert thread.resuming


def test_init_is_synthesized_from_known_thread_id() -> None:
    coder = ScriptedCoder([{"kind": "text", "text": "hello"}])
    thread = coder.resume_thread("existing")

    events = asyncio.run(collect(thread.run_streamed("hi")))

    assert _types(events) == ["init", "message", "done"]
    assert events[0].thread_id == "existing"


def test_later_init_degrades_to_progress() -> None:
    coder = ScriptedCoder(
        [
            {"kind": "session", "id": "s1"},
            {"kind": "session", "id": "s2"},
            {"kind": "usage", "stats": {}},
        ]
    )
    thread = coder.start_thread()

    events = asyncio.run(collect(thread.run_streamed("hi")))

    assert _types(events) == ["init", "progress", "usage", "done"]
    assert events[1].label == "init"
    assert events[1].detail == "s2"
    assert thread.id == "s2"


def test_unknown_native_shape_is_one_progress_event() -> None:
    coder = ScriptedCoder([{"kind": "mystery"}, {"kind": "usage", "stats": {}}])
    thread = coder.start_thread()

    events = asyncio.run(collect(thread.run_streamed("hi")))

    progress = [event for event in events if event.type == "progress"]
    assert len(progress) == 1
    assert progress[0].original_item == {"kind": "mystery"}


def test_nothing_is_forwarded_after_error() -> None:
    coder = ScriptedCoder(
        [
            {"kind": "text", "text": "partial"},
            {"kind": "error", "message": "rate limited"},
            {"kind": "text", "text": "never seen"},
        ]
    )
    thread = coder.start_thread()

    events = asyncio.run(collect(thread.run_streamed("hi")))

    assert _types(events) == ["init", "message", "error"]
    assert not thread.is_running


def test_clean_close_without_terminal_synthesizes_done() -> None:
    coder = ScriptedCoder([{"kind": "text", "text": "bye"}])
    thread = coder.start_thread()

    events = asyncio.run(collect(thread.run_streamed("hi")))

    assert _types(events)[-1] == "done"
    assert not any(event.type == "usage" for event in events)


def test_normalizer_failure_drops_only_that_event() -> None:
    coder = ScriptedCoder([{"kind": "boom"}, {"kind": "text", "text": "still here"}])
    thread = coder.start_thread()

    events = asyncio.run(collect(thread.run_streamed("hi")))

    assert _types(events) == ["init", "message", "done"]
    assert events[1].text == "still here"


def test_interrupt_mid_stream_ends_with_cancelled_then_interrupted_error() -> None:
    coder = ScriptedCoder([{"kind": "text", "text": "working"}, WAIT])
    thread = coder.start_thread()

    async def _go():
        events = []
        async for event in thread.run_streamed("hi"):
            events.append(event)
            if event.type == "message":
                assert thread.interrupt("user hit stop")
        return events

    events = asyncio.run(_go())

    assert _types(events) == ["init", "message", "cancelled", "error"]
    assert events[2].reason == "user hit stop"
    assert isinstance(events[3], ErrorEvent)
    assert events[3].code == "interrupted"
    assert "done" not in _types(events)
    assert not thread.is_running


def test_second_run_on_busy_thread_fails_before_launch() -> None:
    coder = ScriptedCoder([{"kind": "text", "text": "one"}, WAIT])
    thread = coder.start_thread()

    async def _go():
        stream = thread.run_streamed("first")
        first = await stream.__anext__()
        with pytest.raises(ConcurrencyViolation):
            thread.run_streamed("second")
        with pytest.raises(ConcurrencyViolation):
            await thread.run("third")
        spawned = coder.spawned
        await stream.aclose()
        return first, spawned

    first, spawned = asyncio.run(_go())

    assert first.type == "init"
    assert spawned == 1
    assert not thread.is_running
    assert thread.interrupt() is False


def test_run_streamed_takes_the_slot_before_iteration() -> None:
    coder = ScriptedCoder([{"kind": "usage", "stats": {}}])
    thread = coder.start_thread()

    stream = thread.run_streamed("a")
    assert thread.is_running
    with pytest.raises(ConcurrencyViolation):
        thread.run_streamed("b")

    events = asyncio.run(collect(stream))

    assert _types(events) == ["init", "usage", "done"]
    assert coder.spawned == 1
    assert not thread.is_running


def test_interrupt_before_iteration_cancels_without_launching() -> None:
    coder = ScriptedCoder([{"kind": "text", "text": "never"}])
    thread = coder.start_thread()

    stream = thread.run_streamed("a")
    assert thread.interrupt("not now")
    assert not thread.is_running

    events = asyncio.run(collect(stream))

    assert _types(events) == ["init", "cancelled", "error"]
    assert events[1].reason == "not now"
    assert coder.spawned == 0


def test_closing_an_unstarted_stream_frees_the_thread() -> None:
    coder = ScriptedCoder([{"kind": "usage", "stats": {}}])
    thread = coder.start_thread()

    async def _go():
        stream = thread.run_streamed("a")
        await stream.aclose()
        return await thread.run("b")

    result = asyncio.run(_go())

    assert result.usage == {}
    assert coder.spawned == 1


def test_run_returns_result_without_structured_payload_when_no_schema() -> None:
    coder = ScriptedCoder(
        [
            {"kind": "session", "id": "abc"},
            {"kind": "text", "text": "par", "delta": True},
            {"kind": "text", "text": 'Final: {"a": 1}'},
            {"kind": "usage", "stats": {"input_tokens": 1, "output_tokens": 2}},
        ]
    )
    thread = coder.start_thread()

    result = asyncio.run(thread.run("hi"))

    assert result.thread_id == "abc"
    assert result.text == 'Final: {"a": 1}'
    assert result.structured is None
    assert result.usage == {"input_tokens": 1, "output_tokens": 2}
    assert result.raw == {"kind": "usage", "stats": {"input_tokens": 1, "output_tokens": 2}}


def test_run_with_schema_injects_instruction_and_extracts_json() -> None:
    coder = ScriptedCoder([{"kind": "text", "text": 'Sure:\n```json\n{"a": 1}\n```'}])
    thread = coder.start_thread()
    schema = {"type": "object", "properties": {"a": {"type": "number"}}}

    result = asyncio.run(thread.run("give me a", output_schema=schema))

    assert result.structured == {"a": 1}
    assert coder.prompts[0].startswith("give me a\n\n")
    assert '"properties"' in coder.prompts[0]


def test_run_raises_execution_failure_on_error_event() -> None:
    coder = ScriptedCoder([{"kind": "error", "message": "model overloaded"}])
    thread = coder.start_thread()

    with pytest.raises(ExecutionFailure) as excinfo:
        asyncio.run(thread.run("hi"))

    assert excinfo.value.message == "model overloaded"
    assert not thread.is_running


def test_run_with_cancelled_token_raises_abort_without_spawning() -> None:
    coder = ScriptedCoder([{"kind": "text", "text": "never"}])
    thread = coder.start_thread()
    token = CancellationToken()
    token.cancel("shutting down")

    with pytest.raises(AbortError) as excinfo:
        asyncio.run(thread.run("hi", signal=token))

    assert excinfo.value.reason == "shutting down"
    assert coder.spawned == 0


def test_thread_from_another_provider_is_rejected() -> None:
    class OtherCoder(ScriptedCoder):
        provider = "other"

    thread = OtherCoder([]).start_thread()

    with pytest.raises(UsageError):
        ScriptedCoder([]).run_streamed(thread, "hi")


def test_transcript_records_prompt_text_and_errors(tmp_path) -> None:
    coder = ScriptedCoder(
        [{"kind": "text", "text": "all done"}, {"kind": "error", "message": "late failure"}],
        output_dir=tmp_path,
        session_name="demo",
    )
    thread = coder.start_thread()

    asyncio.run(collect(thread.run_streamed("do the thing")))

    transcript = (tmp_path / "demo.log").read_text()
    assert "Prompt: do the thing" in transcript
    assert "[TEXT]\nall done" in transcript
    assert "[ERROR] late failure" in transcript


def test_run_logs_outcome_with_tool_count(caplog) -> None:
    caplog.set_level(logging.INFO, logger="coder")
    coder = ScriptedCoder([{"kind": "text", "text": "done"}, {"kind": "usage", "stats": {}}])

    asyncio.run(coder.start_thread().run("hi"))

    [line] = [r.getMessage() for r in caplog.records if "run completed" in r.getMessage()]
    assert line.startswith("scripted run completed in ")
    assert line.endswith("(0 tool calls, result=yes)")
