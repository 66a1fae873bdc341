"""Base coder: composes thread state, a run supervisor and a normalizer.

Concrete coders only decide how to build the supervised unit for a run and
how to read their backend's events; everything else (the single-run check,
stream policy, result accumulation, transcript logging) lives here.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Callable, ClassVar

from headless_coders.errors import AbortError, ExecutionFailure, UsageError
from headless_coders.events import (
    CancelledEvent,
    CoderEvent,
    DoneEvent,
    ErrorEvent,
    MessageEvent,
    ToolUseEvent,
    UsageEvent,
)
from headless_coders.lifecycle.threads import RunOptions, RunResult, Thread, ThreadOptions
from headless_coders.runners.pipeline import iter_run_pipeline
from headless_coders.runners.supervisor import RunSupervisor, Spawn, SupervisorConfig
from headless_coders.runners.tool_logging import format_tool_marker
from headless_coders.structured import (
    PromptInput,
    apply_output_schema_prompt,
    extract_json_payload,
    parse_native_payload,
    prompt_to_text,
)

log = logging.getLogger("coder")


@dataclass
class RunState:
    """Accumulates state during a run-to-completion call."""

    start_time: float = field(default_factory=time.monotonic)
    text: str | None = None
    usage: dict[str, Any] | None = None
    raw: Any = None
    tool_count: int = 0
    saw_result: bool = False
    error: ErrorEvent | None = None
    cancel_reason: str | None = None
    cancelled: bool = False

    @property
    def duration_s(self) -> float:
        return time.monotonic() - self.start_time


class RunStream:
    """Async iterator over one run's unified events.

    Holds the thread's run slot from creation. Iterate it to the end or call
    `aclose()`; closing an unstarted stream frees the slot without launching.
    """

    def __init__(self, run: RunSupervisor, events: AsyncIterator[CoderEvent]):
        self.run = run
        self._events = events

    def __aiter__(self) -> "RunStream":
        return self

    async def __anext__(self) -> CoderEvent:
        return await self._events.__anext__()

    async def aclose(self) -> None:
        await self._events.aclose()
        await self.run.aclose()


class BaseCoder:
    """Adapter base class. Subclasses set `provider` and the three hooks."""

    provider: ClassVar[str] = ""
    native_structured_output: ClassVar[bool] = False
    upper_case_roles: ClassVar[bool] = False

    def __init__(
        self,
        defaults: ThreadOptions | dict[str, Any] | None = None,
        *,
        config: SupervisorConfig | None = None,
        output_dir: Path | None = None,
        session_name: str | None = None,
        spawn: Spawn | None = None,
    ):
        self.defaults = ThreadOptions().merged(defaults)
        self.config = config or SupervisorConfig.from_env()
        # Process launcher for out-of-process backends; None means asyncio's.
        self.spawn = spawn
        self.output_dir = output_dir
        self.session_name = session_name
        self.output_file: Path | None = None

        if output_dir is not None and session_name:
            output_dir.mkdir(parents=True, exist_ok=True)
            self.output_file = output_dir / f"{session_name}.log"

    # -- transcript ----------------------------------------------------------

    def _log_to_file(self, content: str) -> None:
        """Append content to the transcript file."""
        if self.output_file:
            with open(self.output_file, "a", encoding="utf-8") as f:
                f.write(content)

    def _log_prompt(self, prompt: str) -> None:
        self._log_to_file(f"[{datetime.now().strftime('%H:%M:%S')}] Prompt: {prompt}\n")

    def _log_response(self, text: str) -> None:
        self._log_to_file(f"\n[TEXT]\n{text}\n")

    def _log_event(self, event: CoderEvent) -> None:
        if isinstance(event, MessageEvent) and not event.delta and event.text:
            self._log_response(event.text)
        elif isinstance(event, ToolUseEvent):
            self._log_to_file(f"{format_tool_marker(event.name, event.args)}\n")
        elif isinstance(event, ErrorEvent):
            self._log_to_file(f"[ERROR] {event.message}\n")

    # -- threads -------------------------------------------------------------

    def start_thread(self, options: ThreadOptions | dict[str, Any] | None = None) -> Thread:
        merged = self.defaults.merged(options)
        return Thread(self, thread_id=merged.resume, options=merged, resuming=merged.resume is not None)

    def resume_thread(
        self, thread_id: str, options: ThreadOptions | dict[str, Any] | None = None
    ) -> Thread:
        merged = self.defaults.merged(options)
        return Thread(self, thread_id=thread_id, options=merged, resuming=True)

    def get_thread_id(self, thread: Thread) -> str | None:
        return thread.id

    def _check_thread(self, thread: Thread) -> None:
        if thread.coder is not self and thread.provider != self.provider:
            raise UsageError(f"Thread belongs to {thread.provider}, not {self.provider}")
        thread.ensure_idle()

    # -- hooks ---------------------------------------------------------------

    def _create_run(self, thread: Thread, prompt: PromptInput, options: RunOptions) -> RunSupervisor:
        """Build (but do not launch) the supervised unit for one run."""
        raise NotImplementedError

    def parse_event(self, event: Any) -> list[CoderEvent]:
        """Map one native event to zero or more unified events."""
        raise NotImplementedError

    def extract_session_id(self, event: Any) -> str | None:
        return None

    def _prepare_prompt(self, prompt: PromptInput, options: RunOptions) -> str:
        if options.output_schema and not self.native_structured_output:
            prompt = apply_output_schema_prompt(prompt, options.output_schema)
        return prompt_to_text(prompt, upper_roles=self.upper_case_roles)

    def event_parser(self) -> Callable[[Any], list[CoderEvent]]:
        """Normalizer for one run. Backends that track per-run state override this."""
        return self.parse_event

    # -- runs ----------------------------------------------------------------

    def run_streamed(self, thread: Thread, prompt: PromptInput, **run_options: Any) -> "RunStream":
        """Run a prompt, yielding unified events as they arrive.

        The thread's run slot is taken here, at call time, so a second call
        raises ConcurrencyViolation and `thread.interrupt()` reaches this run
        even before it is iterated. Backend failures and cancellation arrive
        as terminal `error` / `cancelled` events.
        """
        return self._open_stream(thread, prompt, RunOptions(**run_options))

    def _open_stream(self, thread: Thread, prompt: PromptInput, options: RunOptions) -> "RunStream":
        self._check_thread(thread)
        run = self._create_run(thread, prompt, options)
        run.reserve()
        return RunStream(run, self._stream(run, thread, prompt))

    async def _stream(self, run: RunSupervisor, thread: Thread, prompt: PromptInput) -> AsyncIterator[CoderEvent]:
        text = prompt_to_text(prompt)
        log.info(f"{self.provider}: {text[:50]}...")
        self._log_prompt(text)

        events = iter_run_pipeline(
            run=run,
            thread=thread,
            parse_event=self.event_parser(),
            extract_session_id=self.extract_session_id,
        )
        try:
            async for event in events:
                self._log_event(event)
                yield event
        finally:
            # Tear the run down now if the consumer stopped early.
            await events.aclose()

    async def run(self, thread: Thread, prompt: PromptInput, **run_options: Any) -> RunResult:
        """Run a prompt to completion.

        Raises:
            ConcurrencyViolation: the thread already has an active run.
            ExecutionFailure: the backend failed or reported an error.
            AbortError: the run was cancelled.
        """
        options = RunOptions(**run_options)
        stream = self._open_stream(thread, prompt, options)
        state = RunState()

        try:
            async for event in stream:
                self._accumulate(event, state)
        finally:
            await stream.aclose()

        outcome = "cancelled" if state.cancelled else "failed" if state.error else "completed"
        log.info(
            f"{self.provider} run {outcome} in {state.duration_s:.1f}s "
            f"({state.tool_count} tool calls, result={'yes' if state.saw_result else 'no'})"
        )

        if state.cancelled:
            raise AbortError(state.cancel_reason)
        if state.error is not None:
            raise ExecutionFailure(
                state.error.message,
                exit_code=state.error.exit_code,
                diagnostics=state.error.diagnostics,
            )

        return RunResult(
            thread_id=thread.id,
            text=state.text,
            structured=self._structured_payload(state, options),
            usage=state.usage,
            raw=state.raw,
        )

    def _accumulate(self, event: CoderEvent, state: RunState) -> None:
        if isinstance(event, MessageEvent):
            if event.role == "assistant" and not event.delta and event.text:
                state.text = event.text
        elif isinstance(event, ToolUseEvent):
            state.tool_count += 1
        elif isinstance(event, UsageEvent):
            state.usage = event.stats
        elif isinstance(event, CancelledEvent):
            state.cancelled = True
            state.cancel_reason = event.reason
        elif isinstance(event, ErrorEvent):
            state.error = event
        elif isinstance(event, DoneEvent):
            state.saw_result = True
            state.raw = event.original_item

    def _structured_payload(self, state: RunState, options: RunOptions) -> Any | None:
        if not options.output_schema:
            return None
        if isinstance(state.raw, dict) and state.raw.get("structured_output") is not None:
            return state.raw["structured_output"]
        if self.native_structured_output:
            return parse_native_payload(state.text)
        return extract_json_payload(state.text)
