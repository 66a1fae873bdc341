"""Errors surfaced to callers of the coder adapters."""

from __future__ import annotations


class CoderError(Exception):
    """Base class for all headless-coder errors."""


class UsageError(CoderError):
    """The caller violated an invariant; raised before anything is launched."""


class ConcurrencyViolation(UsageError):
    """A second run was issued on a thread that already has an active run."""

    def __init__(self, thread_id: str | None = None) -> None:
        label = thread_id or "<unassigned>"
        super().__init__(f"Thread {label} already has an active run")
        self.thread_id = thread_id


class ExecutionFailure(CoderError):
    """The backend process or operation reported or exhibited a failure."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        diagnostics: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code
        self.diagnostics = diagnostics


class AbortError(CoderError):
    """The run was cancelled before it could finish."""

    code = "interrupted"

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason or "Operation was interrupted"
        super().__init__(self.reason)
