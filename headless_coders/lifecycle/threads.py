"""Thread state: identity, merged options, and the single-active-run slot.

A thread has at most one active run. The slot (`current_run`) is written only
by the run supervisor's launch and cleanup steps; everything else reads it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from typing import TYPE_CHECKING, Any, AsyncIterator

from headless_coders.cancellation import CancellationToken
from headless_coders.errors import ConcurrencyViolation

if TYPE_CHECKING:
    from headless_coders.events import CoderEvent
    from headless_coders.runners.base import BaseCoder
    from headless_coders.runners.supervisor import RunSupervisor
    from headless_coders.structured import PromptInput

log = logging.getLogger("threads")

SANDBOX_MODES = ("read-only", "workspace-write", "danger-full-access")


@dataclass(frozen=True)
class ThreadOptions:
    """Options for starting or resuming a thread. None means "not set"."""

    model: str | None = None
    working_directory: str | None = None
    sandbox_mode: str | None = None
    skip_git_repo_check: bool | None = None
    allowed_tools: tuple[str, ...] | None = None
    mcp_servers: dict[str, Any] | None = None
    continue_session: bool | None = None
    resume: str | None = None
    fork_session: bool | None = None
    include_directories: tuple[str, ...] | None = None
    yolo: bool | None = None
    permission_mode: str | None = None
    permission_prompt_tool_name: str | None = None
    executable_path: str | None = None

    def __post_init__(self) -> None:
        if self.sandbox_mode is not None and self.sandbox_mode not in SANDBOX_MODES:
            raise ValueError(f"Unknown sandbox mode: {self.sandbox_mode}")
        # Lists are accepted; stored as tuples.
        for name in ("allowed_tools", "include_directories"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, tuple):
                object.__setattr__(self, name, tuple(value))

    def merged(self, overrides: "ThreadOptions | dict[str, Any] | None") -> "ThreadOptions":
        """Return a copy where every non-None override field wins."""
        if overrides is None:
            return self
        if isinstance(overrides, dict):
            overrides = ThreadOptions(**overrides)
        changes = {
            f.name: getattr(overrides, f.name)
            for f in fields(overrides)
            if getattr(overrides, f.name) is not None
        }
        return replace(self, **changes)


@dataclass
class RunOptions:
    """Run-time modifiers for a single run."""

    output_schema: dict[str, Any] | None = None
    extra_env: dict[str, str] | None = None
    signal: CancellationToken | None = None
    stream_partial_messages: bool = False


@dataclass
class RunResult:
    """Outcome of a run-to-completion call."""

    thread_id: str | None
    text: str | None = None
    structured: Any = None
    usage: dict[str, Any] | None = None
    raw: Any = None


class Thread:
    """A conversation against one backend, with at most one in-flight run."""

    def __init__(
        self,
        coder: "BaseCoder",
        *,
        thread_id: str | None = None,
        options: ThreadOptions | None = None,
        resuming: bool = False,
    ):
        self.coder = coder
        self.provider = coder.provider
        self.id = thread_id
        self.options = options or ThreadOptions()
        self.resuming = resuming
        # Owned by RunSupervisor.launch()/_cleanup(); read-only elsewhere.
        self.current_run: RunSupervisor | None = None

    def __repr__(self) -> str:
        return f"Thread(provider={self.provider!r}, id={self.id!r}, running={self.is_running})"

    @property
    def is_running(self) -> bool:
        return self.current_run is not None

    def ensure_idle(self) -> None:
        if self.current_run is not None:
            raise ConcurrencyViolation(self.id)

    def update_id(self, thread_id: str | None) -> bool:
        """Adopt a backend-assigned or rotated session id. Returns True if it changed."""
        if not thread_id or thread_id == self.id:
            return False
        if self.id:
            log.info(f"{self.provider} session rotated: {self.id} -> {thread_id}")
        self.id = thread_id
        # Later runs must continue this session rather than start a new one.
        self.resuming = True
        return True

    async def run(self, prompt: "PromptInput", **run_options: Any) -> RunResult:
        return await self.coder.run(self, prompt, **run_options)

    def run_streamed(self, prompt: "PromptInput", **run_options: Any) -> AsyncIterator["CoderEvent"]:
        return self.coder.run_streamed(self, prompt, **run_options)

    def interrupt(self, reason: str | None = None) -> bool:
        """Cancel whatever run is active. Returns False when idle."""
        run = self.current_run
        if run is None:
            return False
        run.cancel(reason or "Interrupted by caller")
        return True
