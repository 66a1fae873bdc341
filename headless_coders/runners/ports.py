"""Ports (interfaces) for coder implementations.

Callers (the HTTP glue, scripts, tests) should depend on this contract
rather than on concrete coders.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, AsyncIterator, Protocol, runtime_checkable

if TYPE_CHECKING:
    from headless_coders.events import CoderEvent
    from headless_coders.lifecycle.threads import RunResult, Thread
    from headless_coders.structured import PromptInput


@runtime_checkable
class HeadlessCoder(Protocol):
    """One coding-agent backend."""

    provider: str

    def start_thread(self, options: Any = None) -> "Thread":
        ...

    def resume_thread(self, thread_id: str, options: Any = None) -> "Thread":
        ...

    def get_thread_id(self, thread: "Thread") -> str | None:
        ...

    async def run(self, thread: "Thread", prompt: "PromptInput", **run_options: Any) -> "RunResult":
        ...

    def run_streamed(self, thread: "Thread", prompt: "PromptInput", **run_options: Any) -> AsyncIterator["CoderEvent"]:
        ...
