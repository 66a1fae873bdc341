"""Per-run external cancellation signal."""

from __future__ import annotations

import logging
from typing import Callable

log = logging.getLogger("cancellation")

Listener = Callable[[str | None], None]


class CancellationToken:
    """A one-shot cancellation flag that run supervisors subscribe to.

    The first `cancel()` wins; its reason is what listeners receive. Listeners
    added after cancellation fire immediately.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None
        self._listeners: list[Listener] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener(reason)
            except Exception:
                log.exception("Cancellation listener failed")

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Subscribe to cancellation; returns a function that unsubscribes."""
        if self._cancelled:
            listener(self._reason)
            return lambda: None

        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove
