"""Codex coder.

Each run is delegated to a worker process (`headless_coders.runners.codex.worker`)
which drives `codex exec --json` and relays its events over a JSON-lines
control channel. Aborts are sent on that channel first; the supervisor's
SIGTERM/SIGKILL escalation covers a worker that stops listening.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import asdict
from typing import Any

from headless_coders.events import CoderEvent
from headless_coders.lifecycle.threads import RunOptions, Thread
from headless_coders.runners.base import BaseCoder
from headless_coders.runners.codex.events import extract_session_id, normalize_codex_event
from headless_coders.runners.codex.models import (
    MSG_ABORT,
    MSG_CANCELLED,
    MSG_ERROR,
    MSG_STREAM,
    MSG_STREAM_DONE,
    MSG_STREAM_EVENT,
    WorkerRequest,
    encode_message,
)
from headless_coders.runners.supervisor import OutOfProcessRun
from headless_coders.structured import PromptInput

log = logging.getLogger("codex")

WORKER_MODULE = "headless_coders.runners.codex.worker"

# Thread options the worker understands.
_WORKER_OPTIONS = ("model", "sandbox_mode", "working_directory", "skip_git_repo_check")


class CodexWorkerRun(OutOfProcessRun):
    """Out-of-process run whose child speaks the worker protocol."""

    stdin_control = True

    def _decode_message(self, message: dict) -> Any | None:
        msg_type = message.get("type")
        if msg_type == MSG_STREAM_EVENT:
            return message.get("payload")
        if msg_type == MSG_STREAM_DONE:
            log.debug(f"Worker finished thread {message.get('threadId')}")
            return None
        if msg_type == MSG_CANCELLED:
            self._report_cancelled(message.get("reason"))
            return None
        if msg_type == MSG_ERROR:
            error = message.get("error")
            text = error.get("message") if isinstance(error, dict) else error
            self._report_error(str(text or "Codex worker failed"))
            return None
        log.debug(f"Ignoring worker message: {msg_type}")
        return None

    def _send_abort_notice(self, reason: str | None) -> None:
        if not self._write_stdin(encode_message({"type": MSG_ABORT, "reason": reason})):
            # Control channel is gone; fall back to the interactive signal.
            super()._send_abort_notice(reason)


class CodexCoder(BaseCoder):
    """Runs Codex turns through a supervised worker process."""

    provider = "codex"
    native_structured_output = True
    upper_case_roles = True

    def build_request(self, thread: Thread, prompt: PromptInput, options: RunOptions) -> WorkerRequest:
        thread_options = {
            name: value
            for name, value in asdict(thread.options).items()
            if name in _WORKER_OPTIONS and value is not None
        }
        return WorkerRequest(
            input=self._prepare_prompt(prompt, options),
            thread_id=thread.id if thread.resuming else None,
            options=thread_options,
            output_schema=options.output_schema,
            executable_path=thread.options.executable_path,
        )

    def _create_run(self, thread: Thread, prompt: PromptInput, options: RunOptions) -> CodexWorkerRun:
        request = self.build_request(thread, prompt, options)
        env = dict(os.environ)
        if options.extra_env:
            env.update(options.extra_env)
        return CodexWorkerRun(
            [sys.executable, "-m", WORKER_MODULE],
            env=env,
            stdin_payload=encode_message({"type": MSG_STREAM, "payload": request.to_payload()}),
            spawn=self.spawn,
            owner=thread,
            cancel_token=options.signal,
            config=self.config,
        )

    def parse_event(self, event: Any) -> list[CoderEvent]:
        return normalize_codex_event(event)

    def extract_session_id(self, event: Any) -> str | None:
        return extract_session_id(event)
