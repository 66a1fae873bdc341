"""Codex worker process.

Launched by `CodexWorkerRun` as `python -m headless_coders.runners.codex.worker`
so a misbehaving Codex run cannot take the caller's process down with it.

Protocol, one JSON object per line:
  stdin:  {"type": "stream", "payload": {...}}, later maybe {"type": "abort"}
  stdout: {"type": "streamEvent", "payload": <codex event>} ...
          {"type": "streamDone", "threadId": ...}                 exit 0
          {"type": "cancelled", "reason": ...}                    exit 0
          {"type": "error", "error": {"message": ...}}            exit 1
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
import tempfile
from collections import deque
from typing import Any

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
from headless_coders.runners.supervisor import STREAM_LIMIT

log = logging.getLogger("codex.worker")

CHILD_KILL_TIMEOUT_S = 2.0


def build_codex_command(request: WorkerRequest, schema_path: str | None = None) -> list[str]:
    """Build the `codex exec` command line. The prompt goes to stdin."""
    executable = request.executable_path or os.getenv("HEADLESS_CODERS_CODEX_BIN") or "codex"
    options = request.options
    cmd = [executable, "exec", "--json"]
    if options.get("model"):
        cmd.extend(["--model", options["model"]])
    if options.get("sandbox_mode"):
        cmd.extend(["--sandbox", options["sandbox_mode"]])
    if options.get("working_directory"):
        cmd.extend(["--cd", options["working_directory"]])
    if options.get("skip_git_repo_check"):
        cmd.append("--skip-git-repo-check")
    if schema_path:
        cmd.extend(["--output-schema", schema_path])
    if request.thread_id:
        cmd.extend(["resume", request.thread_id])
    return cmd


def emit(message: dict[str, Any]) -> None:
    sys.stdout.buffer.write(encode_message(message))
    sys.stdout.buffer.flush()


class CodexWorker:
    """Runs one Codex turn and reports it over stdout."""

    def __init__(self, request: WorkerRequest):
        self.request = request
        self.process: asyncio.subprocess.Process | None = None
        self.thread_id = request.thread_id
        self.abort_requested = False
        self.abort_reason: str | None = None
        self._stderr_tail: deque[str] = deque(maxlen=20)

    def abort(self, reason: str | None = None) -> None:
        if self.abort_requested:
            return
        self.abort_requested = True
        self.abort_reason = reason or "Operation was interrupted"
        if self.process and self.process.returncode is None:
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass

    async def _read_stderr(self) -> None:
        assert self.process is not None and self.process.stderr is not None
        async for raw in self.process.stderr:
            line = raw.decode(errors="replace").rstrip()
            if line:
                self._stderr_tail.append(line)

    async def _wait_child(self) -> int:
        assert self.process is not None
        try:
            return await asyncio.wait_for(self.process.wait(), CHILD_KILL_TIMEOUT_S)
        except asyncio.TimeoutError:
            self.process.kill()
            return await self.process.wait()

    async def run(self) -> int:
        schema_path: str | None = None
        if self.request.output_schema:
            with tempfile.NamedTemporaryFile("w", suffix=".json", delete=False) as f:
                json.dump(self.request.output_schema, f)
                schema_path = f.name

        try:
            return await self._run(build_codex_command(self.request, schema_path))
        finally:
            if schema_path:
                os.unlink(schema_path)

    async def _run(self, cmd: list[str]) -> int:
        if self.abort_requested:
            emit({"type": MSG_CANCELLED, "reason": self.abort_reason})
            return 0
        try:
            self.process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError:
            emit({"type": MSG_ERROR, "error": {"message": f"Codex executable not found: {cmd[0]}"}})
            return 1

        assert self.process.stdin is not None and self.process.stdout is not None
        try:
            self.process.stdin.write(self.request.input.encode("utf-8"))
            await self.process.stdin.drain()
            self.process.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as e:
            # Codex died before reading its prompt; the exit code tells the rest.
            log.warning(f"Could not send prompt to codex: {e}")

        if self.abort_requested and self.process.returncode is None:
            self.process.terminate()
        stderr_task = asyncio.ensure_future(self._read_stderr())
        failure: str | None = None

        async for raw_line in self.process.stdout:
            if self.abort_requested:
                break
            line = raw_line.decode(errors="replace").strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(event, dict):
                continue

            emit({"type": MSG_STREAM_EVENT, "payload": event})

            event_type = event.get("type")
            if event_type == "thread.started" and event.get("thread_id"):
                self.thread_id = event["thread_id"]
            elif event_type in ("turn.failed", "error"):
                error = event.get("error")
                message = error.get("message") if isinstance(error, dict) else event.get("message")
                failure = str(message or "Codex turn failed")

        if self.abort_requested and self.process.returncode is None:
            self.process.terminate()
        returncode = await self._wait_child()
        await asyncio.wait({stderr_task}, timeout=0.5)
        stderr_task.cancel()

        if self.abort_requested:
            emit({"type": MSG_CANCELLED, "reason": self.abort_reason})
            return 0
        if failure is None and returncode != 0:
            detail = "\n".join(self._stderr_tail)
            failure = f"codex exited with code {returncode}" + (f": {detail}" if detail else "")
        if failure is not None:
            emit({"type": MSG_ERROR, "error": {"message": failure}})
            return 1

        emit({"type": MSG_STREAM_DONE, "threadId": self.thread_id})
        return 0


async def _open_stdin() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=STREAM_LIMIT)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


async def _read_message(reader: asyncio.StreamReader) -> dict[str, Any] | None:
    """Next well-formed control message, or None at EOF. Junk lines are ignored."""
    while True:
        raw = await reader.readline()
        if not raw:
            return None
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            continue
        if isinstance(message, dict):
            return message


async def _watch_control(reader: asyncio.StreamReader, worker: CodexWorker) -> None:
    while True:
        message = await _read_message(reader)
        if message is None:
            return
        if message.get("type") == MSG_ABORT:
            worker.abort(message.get("reason"))
            return


async def main() -> int:
    reader = await _open_stdin()

    request: WorkerRequest | None = None
    while request is None:
        message = await _read_message(reader)
        if message is None:
            emit({"type": MSG_ERROR, "error": {"message": "No run request received"}})
            return 1
        if message.get("type") == MSG_STREAM and isinstance(message.get("payload"), dict):
            request = WorkerRequest.from_payload(message["payload"])
        elif message.get("type") == MSG_ABORT:
            emit({"type": MSG_CANCELLED, "reason": message.get("reason")})
            return 0

    worker = CodexWorker(request)
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGTERM, worker.abort, "Terminated")
    control = asyncio.ensure_future(_watch_control(reader, worker))
    try:
        return await worker.run()
    finally:
        control.cancel()


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING, stream=sys.stderr)
    raise SystemExit(asyncio.run(main()))
