"""Gemini CLI coder.

Runs `gemini --output-format stream-json` as a supervised child process. Each
stdout line is one native event; SIGINT is the cooperative abort notice.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from headless_coders.events import (
    CoderEvent,
    DoneEvent,
    ErrorEvent,
    InitEvent,
    MessageEvent,
    ProgressEvent,
    ToolResultEvent,
    ToolUseEvent,
    UsageEvent,
)
from headless_coders.lifecycle.threads import RunOptions, Thread
from headless_coders.runners.base import BaseCoder
from headless_coders.runners.supervisor import OutOfProcessRun
from headless_coders.structured import PromptInput

log = logging.getLogger("gemini")

PROVIDER = "gemini"


def _first(event: dict, *keys: str) -> Any:
    for key in keys:
        if event.get(key) is not None:
            return event[key]
    return None


def _error_text(value: Any, default: str) -> str:
    if isinstance(value, dict):
        value = value.get("message")
    return str(value) if value else default


def normalize_gemini_event(event: Any) -> list[CoderEvent]:
    """Map one Gemini stream-json event to unified events."""
    if not isinstance(event, dict):
        return [ProgressEvent(provider=PROVIDER, label="gemini.event", original_item=event)]

    event_type = event.get("type")

    if event_type == "init":
        return [
            InitEvent(
                provider=PROVIDER,
                thread_id=event.get("session_id"),
                model=event.get("model"),
                original_item=event,
            )
        ]

    if event_type == "message":
        return [
            MessageEvent(
                provider=PROVIDER,
                role=event.get("role") or "assistant",
                text=event.get("content"),
                delta=bool(event.get("delta")),
                original_item=event,
            )
        ]

    if event_type == "tool_use":
        return [
            ToolUseEvent(
                provider=PROVIDER,
                name=event.get("tool_name") or "tool",
                call_id=_first(event, "call_id", "tool_id"),
                args=_first(event, "args", "parameters"),
                original_item=event,
            )
        ]

    if event_type == "tool_result":
        exit_code = event.get("exit_code")
        if exit_code is None and event.get("status") == "error":
            exit_code = 1
        return [
            ToolResultEvent(
                provider=PROVIDER,
                name=event.get("tool_name") or "tool",
                call_id=_first(event, "call_id", "tool_id"),
                result=_first(event, "result", "output", "error"),
                exit_code=exit_code,
                original_item=event,
            )
        ]

    if event_type == "error":
        if event.get("severity") == "warning":
            return [ProgressEvent(provider=PROVIDER, label="warning", detail=event.get("message"), original_item=event)]
        return [ErrorEvent(provider=PROVIDER, message=_error_text(event.get("message"), "gemini error"), original_item=event)]

    if event_type == "result":
        status = event.get("status")
        if isinstance(status, str) and status.startswith("error"):
            return [
                ErrorEvent(
                    provider=PROVIDER,
                    message=_error_text(event.get("error"), f"gemini run ended with status {status}"),
                    original_item=event,
                )
            ]
        out: list[CoderEvent] = []
        if isinstance(event.get("stats"), dict):
            out.append(UsageEvent(provider=PROVIDER, stats=event["stats"], original_item=event))
        out.append(DoneEvent(provider=PROVIDER, original_item=event))
        return out

    label = event_type if isinstance(event_type, str) else "gemini.event"
    return [ProgressEvent(provider=PROVIDER, label=label, original_item=event)]


class GeminiCliRun(OutOfProcessRun):
    """The CLI's own JSON lines are the native events."""


class GeminiCoder(BaseCoder):
    """Runs prompts through the Gemini CLI's headless mode."""

    provider = PROVIDER

    def build_command(self, thread: Thread, prompt: str) -> list[str]:
        opts = thread.options
        binary = opts.executable_path or os.getenv("HEADLESS_CODERS_GEMINI_BIN") or "gemini"
        cmd = [binary, "--output-format", "stream-json", "--prompt", prompt]
        if opts.model:
            cmd.extend(["--model", opts.model])
        if opts.include_directories:
            cmd.extend(["--include-directories", ",".join(opts.include_directories)])
        if opts.yolo:
            cmd.append("--yolo")
        if thread.resuming and thread.id:
            cmd.extend(["--resume", thread.id])
        return cmd

    def _create_run(self, thread: Thread, prompt: PromptInput, options: RunOptions) -> GeminiCliRun:
        env = dict(os.environ)
        if options.extra_env:
            env.update(options.extra_env)
        return GeminiCliRun(
            self.build_command(thread, self._prepare_prompt(prompt, options)),
            cwd=thread.options.working_directory,
            env=env,
            spawn=self.spawn,
            owner=thread,
            cancel_token=options.signal,
            config=self.config,
        )

    def parse_event(self, event: Any) -> list[CoderEvent]:
        return normalize_gemini_event(event)

    def extract_session_id(self, event: Any) -> str | None:
        if isinstance(event, dict) and isinstance(event.get("session_id"), str):
            return event["session_id"] or None
        return None
