"""One interface over headless coding-agent backends (Codex, Claude, Gemini)."""

from headless_coders.cancellation import CancellationToken
from headless_coders.errors import AbortError, CoderError, ConcurrencyViolation, ExecutionFailure, UsageError
from headless_coders.lifecycle.threads import RunOptions, RunResult, Thread, ThreadOptions
from headless_coders.runners.registry import create_coder, ensure_builtin_coders, register_coder, registered_coders

__all__ = [
    "AbortError",
    "CancellationToken",
    "CoderError",
    "ConcurrencyViolation",
    "ExecutionFailure",
    "RunOptions",
    "RunResult",
    "Thread",
    "ThreadOptions",
    "UsageError",
    "create_coder",
    "ensure_builtin_coders",
    "register_coder",
    "registered_coders",
]
