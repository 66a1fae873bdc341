"""Shared runner pipeline.

Drives one run supervisor and turns its native events into unified events
under the ordering rules every backend shares:

- exactly one `init` comes first (synthesized from the thread id if the
  backend never sends one, or the moment an event reveals a session id);
- nothing is forwarded after a terminal event (`done`, `error`, `cancelled`);
- a source that closes cleanly without a terminal event yields a synthesized
  `done`;
- an event that fails to normalize is dropped, not fatal.

Engines supply:
- how to parse a native event into unified events
- how to extract the session ID from a native event
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable

from headless_coders.errors import AbortError, ExecutionFailure
from headless_coders.events import (
    CancelledEvent,
    CoderEvent,
    DoneEvent,
    ErrorEvent,
    InitEvent,
    ProgressEvent,
)
from headless_coders.runners.supervisor import RunSupervisor

if TYPE_CHECKING:
    from headless_coders.lifecycle.threads import Thread

log = logging.getLogger("pipeline")


@dataclass
class PipelineStats:
    init_emitted: bool = False
    native_events: int = 0
    dropped_events: int = 0
    terminal: CoderEvent | None = None


def cancellation_events(provider: str, reason: str | None) -> list[CoderEvent]:
    """`cancelled` plus an `interrupted` error for callers that only check errors."""
    return [
        CancelledEvent(provider=provider, reason=reason),
        ErrorEvent(provider=provider, message=reason or "Interrupted", code=AbortError.code),
    ]


def failure_event(provider: str, error: ExecutionFailure) -> ErrorEvent:
    return ErrorEvent(
        provider=provider,
        message=error.message,
        code="execution_failed",
        exit_code=error.exit_code,
        diagnostics=error.diagnostics,
    )


async def iter_run_pipeline(
    *,
    run: RunSupervisor,
    thread: "Thread",
    parse_event: Callable[[Any], list[CoderEvent]],
    extract_session_id: Callable[[Any], str | None],
    stats: PipelineStats | None = None,
) -> AsyncIterator[CoderEvent]:
    """Launch `run` and yield unified events until a terminal one."""

    stats = stats or PipelineStats()
    provider = thread.provider

    def init_event() -> list[CoderEvent]:
        if stats.init_emitted:
            return []
        stats.init_emitted = True
        return [InitEvent(provider=provider, thread_id=thread.id, model=thread.options.model)]

    def finish(events: list[CoderEvent]) -> list[CoderEvent]:
        stats.terminal = events[-1]
        return init_event() + events

    try:
        try:
            await run.launch()
        except AbortError as e:
            for event in finish(cancellation_events(provider, e.reason)):
                yield event
            return
        except ExecutionFailure as e:
            for event in finish([failure_event(provider, e)]):
                yield event
            return

        while True:
            try:
                native = await run.await_next()
            except AbortError as e:
                for event in finish(cancellation_events(provider, e.reason)):
                    yield event
                return
            except ExecutionFailure as e:
                log.warning(f"{provider} run failed: {e.message}")
                for event in finish([failure_event(provider, e)]):
                    yield event
                return

            if native is None:
                # Clean exit without a completion signal: success, no usage.
                for event in finish([DoneEvent(provider=provider)]):
                    yield event
                return

            stats.native_events += 1
            try:
                parsed = parse_event(native)
            except Exception:
                stats.dropped_events += 1
                log.exception(f"Dropping {provider} event that failed to normalize")
                continue

            thread.update_id(extract_session_id(native))
            for event in parsed:
                if isinstance(event, InitEvent):
                    thread.update_id(event.thread_id)

            for event in parsed:
                if isinstance(event, InitEvent):
                    if stats.init_emitted:
                        event = ProgressEvent(
                            provider=provider,
                            label="init",
                            detail=event.thread_id,
                            original_item=event.original_item,
                        )
                    else:
                        stats.init_emitted = True
                        event.thread_id = event.thread_id or thread.id
                else:
                    for init in init_event():
                        yield init

                yield event

                if event.is_terminal:
                    stats.terminal = event
                    if isinstance(event, ErrorEvent):
                        run.mark_failed()
                    else:
                        run.mark_completed()
                    return
    finally:
        await run.aclose()
