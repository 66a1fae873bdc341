"""Run supervisors: own one backend invocation and make it cancellable.

Two shapes exist because backends differ in isolation granularity:

- `OutOfProcessRun` owns a child process speaking newline-delimited JSON on
  stdout. Cancellation sends a cooperative abort notice, then SIGTERM after a
  short grace window, then SIGKILL after a longer one.
- `InProcessRun` owns an async iterator (an SDK generator). Cancellation calls
  the source's own `interrupt()` when it has one and cancels the pending step.

Every exit path funnels into `_cleanup()`, which is idempotent: it detaches
the cancellation listener, clears both escalation timers, releases the handle
and frees the owning thread's active-run slot.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import os
import signal
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, ClassVar, Protocol

from headless_coders.cancellation import CancellationToken
from headless_coders.errors import AbortError, CoderError, ConcurrencyViolation, ExecutionFailure, UsageError

log = logging.getLogger("supervisor")

STREAM_LIMIT = 10 * 1024 * 1024  # large JSON lines (file diffs, tool output)


class RunPhase(str, Enum):
    IDLE = "idle"
    LAUNCHING = "launching"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"


TERMINAL_PHASES = frozenset({RunPhase.COMPLETED, RunPhase.FAILED, RunPhase.CANCELLED})

_TRANSITIONS: dict[RunPhase, frozenset[RunPhase]] = {
    RunPhase.IDLE: frozenset({RunPhase.LAUNCHING}),
    RunPhase.LAUNCHING: frozenset({RunPhase.STREAMING, RunPhase.FAILED, RunPhase.CANCELLING}),
    RunPhase.STREAMING: frozenset({RunPhase.COMPLETED, RunPhase.FAILED, RunPhase.CANCELLING}),
    RunPhase.CANCELLING: frozenset({RunPhase.CANCELLED}),
    RunPhase.COMPLETED: frozenset(),
    RunPhase.FAILED: frozenset(),
    RunPhase.CANCELLED: frozenset(),
}


def _env_ms(name: str, default_s: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default_s
    try:
        return max(0.0, float(raw) / 1000)
    except ValueError:
        log.warning(f"Ignoring non-numeric {name}={raw!r}")
        return default_s


@dataclass(frozen=True)
class SupervisorConfig:
    abort_grace_s: float = 0.25
    kill_after_s: float = 1.5
    # How long a backend that already reported its result may take to exit.
    exit_wait_s: float = 5.0
    stderr_tail_lines: int = 50
    non_json_limit: int = 5

    @classmethod
    def from_env(cls) -> "SupervisorConfig":
        return cls(
            abort_grace_s=_env_ms("HEADLESS_CODERS_ABORT_GRACE_MS", cls.abort_grace_s),
            kill_after_s=_env_ms("HEADLESS_CODERS_KILL_AFTER_MS", cls.kill_after_s),
            exit_wait_s=_env_ms("HEADLESS_CODERS_EXIT_WAIT_MS", cls.exit_wait_s),
        )


class RunSlot(Protocol):
    """Anything holding a single active-run slot (a Thread)."""

    id: str | None
    current_run: "RunSupervisor | None"


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


CallLater = Callable[[float, Callable[[], None]], TimerHandle]


class RunSupervisor:
    """Shared lifecycle for both supervisory shapes."""

    def __init__(
        self,
        *,
        owner: RunSlot | None = None,
        cancel_token: CancellationToken | None = None,
        config: SupervisorConfig | None = None,
    ):
        self.config = config or SupervisorConfig()
        self.phase = RunPhase.IDLE
        self.aborted = False
        self.abort_reason: str | None = None
        self._owner = owner
        self._cancel_token = cancel_token
        self._detach_token: Callable[[], None] | None = None
        self._cleaned_up = False

    # -- state ---------------------------------------------------------------

    @property
    def state(self) -> RunPhase:
        return self.phase

    @property
    def finished(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def cleaned_up(self) -> bool:
        return self._cleaned_up

    def _set_phase(self, phase: RunPhase) -> bool:
        if phase not in _TRANSITIONS[self.phase]:
            log.debug(f"Ignoring run transition {self.phase.value} -> {phase.value}")
            return False
        self.phase = phase
        return True

    def mark_completed(self) -> None:
        """Record a backend-signalled completion; cancel() becomes a no-op."""
        self._set_phase(RunPhase.COMPLETED)

    def mark_failed(self) -> None:
        """Record a backend-reported failure; the unit is torn down by aclose()."""
        self._set_phase(RunPhase.FAILED)

    # -- lifecycle -----------------------------------------------------------

    def _claim_slot(self) -> None:
        owner = self._owner
        if owner is None:
            return
        if owner.current_run is not None and owner.current_run is not self:
            raise ConcurrencyViolation(owner.id)
        owner.current_run = self

    def _release_slot(self) -> None:
        owner = self._owner
        if owner is not None and owner.current_run is self:
            owner.current_run = None

    def _attach_token(self) -> None:
        if self._cancel_token is not None and self._detach_token is None:
            self._detach_token = self._cancel_token.add_listener(self.cancel)

    def reserve(self) -> None:
        """Claim the owner's slot ahead of launch().

        Raises ConcurrencyViolation when another run holds it. Cancelling a
        reserved run before it launches frees the slot straight away.
        """
        if self.phase is not RunPhase.IDLE:
            raise UsageError(f"Run already launched (phase={self.phase.value})")
        self._claim_slot()
        self._attach_token()

    async def launch(self) -> None:
        """Claim the owner's slot (unless already reserved) and start the isolated unit."""
        if self.phase is not RunPhase.IDLE:
            raise UsageError(f"Run already launched (phase={self.phase.value})")
        if not self.aborted:
            self._claim_slot()
        self._set_phase(RunPhase.LAUNCHING)

        self._attach_token()
        if self.aborted:
            self._set_phase(RunPhase.CANCELLING)
            raise self._cancelled_error()

        try:
            await self._start()
        except Exception as e:
            self._set_phase(RunPhase.FAILED)
            self._cleanup()
            if isinstance(e, CoderError):
                raise
            raise ExecutionFailure(f"Failed to launch backend: {e}") from e

        if self.aborted:
            # Cancelled while the unit was starting: deliver the notice now.
            self._begin_abort()
        else:
            self._set_phase(RunPhase.STREAMING)

    def cancel(self, reason: str | None = None) -> None:
        """Request cancellation. Idempotent; a no-op once the run has finished."""
        if self.phase in TERMINAL_PHASES or self.phase is RunPhase.CANCELLING:
            return
        self.aborted = True
        self.abort_reason = reason or "Interrupted"
        if self.phase is RunPhase.IDLE:
            self._release_slot()
            return
        self._set_phase(RunPhase.CANCELLING)
        log.info(f"Cancelling run: {self.abort_reason}")
        self._begin_abort()

    async def await_next(self) -> Any | None:
        """Return the next native event, or None once the source ended cleanly."""
        raise NotImplementedError

    async def aclose(self) -> None:
        """Tear the unit down on any exit path. Safe to call repeatedly."""
        if self._cleaned_up:
            return
        if self.phase in (RunPhase.LAUNCHING, RunPhase.STREAMING):
            self.cancel("Run closed before completion")
        try:
            await self._reap()
        finally:
            if self.phase is RunPhase.CANCELLING:
                self._set_phase(RunPhase.CANCELLED)
            self._cleanup()

    def _finish(self, phase: RunPhase) -> None:
        self._set_phase(phase)
        self._cleanup()

    def _cancelled_error(self) -> AbortError:
        if self.phase is RunPhase.CANCELLING:
            self._set_phase(RunPhase.CANCELLED)
        self._cleanup()
        return AbortError(self.abort_reason)

    def _cleanup(self) -> None:
        if self._cleaned_up:
            return
        self._cleaned_up = True
        if self._detach_token is not None:
            self._detach_token()
            self._detach_token = None
        self._release()
        self._release_slot()

    # -- shape hooks ---------------------------------------------------------

    async def _start(self) -> None:
        raise NotImplementedError

    def _begin_abort(self) -> None:
        raise NotImplementedError

    async def _reap(self) -> None:
        raise NotImplementedError

    def _release(self) -> None:
        raise NotImplementedError


Spawn = Callable[..., Awaitable[Any]]


class OutOfProcessRun(RunSupervisor):
    """Supervises a child process that writes JSON lines on stdout.

    The child's stdin is /dev/null unless there is something to send: a
    `stdin_payload` is written and the pipe closed, while subclasses that set
    `stdin_control` keep it open for their abort notice.
    """

    stdin_control: ClassVar[bool] = False

    def __init__(
        self,
        command: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        stdin_payload: bytes | None = None,
        spawn: Spawn | None = None,
        call_later: CallLater | None = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.command = command
        self.cwd = cwd
        self.env = env
        self.stdin_payload = stdin_payload
        self.process: Any = None
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._call_later = call_later
        self._terminate_timer: TimerHandle | None = None
        self._kill_timer: TimerHandle | None = None
        self._abort_started = False
        self._stderr_task: asyncio.Task | None = None
        self._stderr_tail: deque[str] = deque(maxlen=self.config.stderr_tail_lines)
        self._non_json: list[str] = []
        self._reported_error: str | None = None
        self._reported_cancel = False

    @property
    def timers_armed(self) -> bool:
        return self._terminate_timer is not None or self._kill_timer is not None

    @property
    def diagnostics(self) -> str:
        lines = list(self._stderr_tail) or self._non_json
        return "\n".join(lines)

    async def _start(self) -> None:
        log.debug(f"Spawning: {self.command[0]} ({len(self.command) - 1} args)")
        wants_stdin = self.stdin_control or self.stdin_payload is not None
        try:
            self.process = await self._spawn(
                *self.command,
                stdin=asyncio.subprocess.PIPE if wants_stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=self.env,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as e:
            raise ExecutionFailure(f"Backend executable not found: {self.command[0]}") from e
        except OSError as e:
            raise ExecutionFailure(f"Backend failed to start: {e}") from e

        if self.process.stdout is None:
            raise ExecutionFailure("Backend process stdout missing")

        if self.process.stderr is not None:
            self._stderr_task = asyncio.ensure_future(self._read_stderr())

        if self.stdin_payload is not None:
            self._write_stdin(self.stdin_payload)
            if not self.stdin_control:
                self._close_stdin()

    async def _read_stderr(self) -> None:
        async for raw in self.process.stderr:
            line = raw.decode(errors="replace").rstrip()
            if line:
                self._stderr_tail.append(line)

    def _write_stdin(self, data: bytes) -> bool:
        stdin = getattr(self.process, "stdin", None)
        if stdin is None:
            return False
        try:
            stdin.write(data)
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            log.debug(f"Control channel closed: {e}")
            return False
        return True

    def _close_stdin(self) -> None:
        stdin = getattr(self.process, "stdin", None)
        if stdin is None:
            return
        try:
            stdin.close()
        except (BrokenPipeError, ConnectionResetError, RuntimeError):
            pass

    # -- messages ------------------------------------------------------------

    def _decode_message(self, message: dict) -> Any | None:
        """Map one decoded stdout object to a native event, or None to skip it."""
        return message

    def _report_error(self, message: str) -> None:
        """Backend announced a failure on its control channel."""
        self._reported_error = message

    def _report_cancelled(self, reason: str | None) -> None:
        """Backend acknowledged (or initiated) an abort."""
        self._reported_cancel = True
        if not self.aborted:
            self.aborted = True
            self.abort_reason = reason or "Interrupted"
            self._set_phase(RunPhase.CANCELLING)

    async def await_next(self) -> Any | None:
        if self._cleaned_up:
            return None
        stdout = self.process.stdout
        while True:
            try:
                raw = await stdout.readline()
            except ValueError:
                log.warning("Skipping oversized backend output line")
                continue
            if not raw:
                return await self._on_exit()
            if self.aborted:
                continue

            line = raw.decode(errors="replace").strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                if len(self._non_json) < self.config.non_json_limit:
                    self._non_json.append(line)
                continue
            if not isinstance(message, dict):
                continue

            event = self._decode_message(message)
            if event is not None and not self.aborted:
                return event

    async def _on_exit(self) -> None:
        returncode = await self.process.wait()
        if self._stderr_task is not None and not self._stderr_task.done():
            await asyncio.wait({self._stderr_task}, timeout=0.5)

        if self.aborted:
            raise self._cancelled_error()

        if self._reported_error is not None or returncode:
            message = self._reported_error or f"{self.command[0]} exited with code {returncode}"
            self._finish(RunPhase.FAILED)
            raise ExecutionFailure(message, exit_code=returncode, diagnostics=self.diagnostics or None)

        self._finish(RunPhase.COMPLETED)
        return None

    # -- cancellation --------------------------------------------------------

    def _send_abort_notice(self, reason: str | None) -> None:
        """Cooperative step. Default: SIGINT, the interactive cancel."""
        self._signal(signal.SIGINT)

    def _signal(self, sig: int) -> None:
        process = self.process
        if process is None or process.returncode is not None:
            return
        try:
            if sig == signal.SIGTERM:
                process.terminate()
            elif sig == signal.SIGKILL:
                process.kill()
            else:
                process.send_signal(sig)
        except ProcessLookupError:
            pass

    def _begin_abort(self) -> None:
        if self.process is None or self._abort_started:
            return
        self._abort_started = True
        self._send_abort_notice(self.abort_reason)
        call_later = self._call_later or asyncio.get_running_loop().call_later
        self._terminate_timer = call_later(self.config.abort_grace_s, self._on_terminate_timer)
        self._kill_timer = call_later(self.config.kill_after_s, self._on_kill_timer)

    def _on_terminate_timer(self) -> None:
        self._terminate_timer = None
        if self.process is not None and self.process.returncode is None:
            log.warning("Backend ignored abort notice; sending SIGTERM")
            self._signal(signal.SIGTERM)

    def _on_kill_timer(self) -> None:
        self._kill_timer = None
        if self.process is not None and self.process.returncode is None:
            log.warning("Backend still alive after SIGTERM; sending SIGKILL")
            self._signal(signal.SIGKILL)

    # -- teardown ------------------------------------------------------------

    async def _reap(self) -> None:
        process = self.process
        if process is None:
            return
        if process.returncode is None and not self._abort_started:
            # After a final event the backend may still be writing session state.
            if self.phase in (RunPhase.COMPLETED, RunPhase.FAILED):
                wait_s = self.config.exit_wait_s
            else:
                wait_s = self.config.abort_grace_s
            try:
                await asyncio.wait_for(process.wait(), wait_s)
            except asyncio.TimeoutError:
                log.warning(f"Backend still running {wait_s}s after its run ended; stopping it")
                self._begin_abort()
        await process.wait()

    def _release(self) -> None:
        for timer in (self._terminate_timer, self._kill_timer):
            if timer is not None:
                timer.cancel()
        self._terminate_timer = None
        self._kill_timer = None
        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()
        self._stderr_task = None
        self._close_stdin()


class InProcessRun(RunSupervisor):
    """Supervises an async iterator produced by an in-process SDK call."""

    def __init__(
        self,
        factory: Callable[[], AsyncIterator[Any]],
        *,
        interrupt: Callable[[], Any] | None = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self._factory = factory
        self._interrupt = interrupt
        self._source: AsyncIterator[Any] | None = None
        self._step: asyncio.Future | None = None
        self._cancel_event = asyncio.Event()
        self._interrupt_task: asyncio.Future | None = None
        self._interrupted = False

    async def _start(self) -> None:
        source = self._factory()
        if inspect.isawaitable(source):
            source = await source
        self._source = source

    def _begin_abort(self) -> None:
        self._cancel_event.set()
        if self._interrupted:
            return
        interrupt = self._interrupt or getattr(self._source, "interrupt", None)
        if interrupt is None:
            return
        self._interrupted = True
        try:
            result = interrupt()
        except Exception:
            log.exception("Backend interrupt() failed")
            return
        if inspect.isawaitable(result):
            self._interrupt_task = asyncio.ensure_future(result)
            self._interrupt_task.add_done_callback(_log_task_failure)

    async def await_next(self) -> Any | None:
        if self._cleaned_up:
            return None
        if self.aborted:
            await self._close_source()
            raise self._cancelled_error()

        step = asyncio.ensure_future(self._source.__anext__())
        self._step = step
        waiter = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait({step, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            step.cancel()
            raise
        finally:
            waiter.cancel()

        if step not in done:
            step.cancel()
            await asyncio.gather(step, return_exceptions=True)
            self._step = None
            await self._close_source()
            raise self._cancelled_error()

        self._step = None
        try:
            return step.result()
        except StopAsyncIteration:
            await self._close_source()
            if self.aborted:
                raise self._cancelled_error()
            self._finish(RunPhase.COMPLETED)
            return None
        except (Exception, asyncio.CancelledError) as e:
            # Once an abort was requested, whatever the SDK raises is the abort.
            await self._close_source()
            if self.aborted:
                raise self._cancelled_error() from None
            self._finish(RunPhase.FAILED)
            raise ExecutionFailure(str(e) or type(e).__name__) from e

    async def _close_source(self) -> None:
        source, self._source = self._source, None
        aclose = getattr(source, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            log.debug(f"Ignoring error while closing backend stream: {e}")

    async def _reap(self) -> None:
        if self._step is not None and not self._step.done():
            self._step.cancel()
            await asyncio.gather(self._step, return_exceptions=True)
        self._step = None
        await self._close_source()

    def _release(self) -> None:
        self._cancel_event.set()
        self._source = None


def _log_task_failure(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.warning(f"Backend interrupt failed: {exc}")
