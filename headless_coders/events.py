"""Unified event taxonomy.

Every backend's native events are normalized into these variants. Each event
carries the backend identifier, a millisecond timestamp and the untranslated
native event so callers can always audit what the backend actually said.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field, fields
from typing import Any, ClassVar


def now_ms() -> int:
    return int(time.time() * 1000)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass(kw_only=True)
class CoderEvent:
    """Base class for unified events."""

    type: ClassVar[str] = "event"
    terminal: ClassVar[bool] = False

    provider: str
    ts: int = field(default_factory=now_ms)
    original_item: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.terminal

    def to_wire(self) -> dict[str, Any]:
        """Return the NDJSON wire shape: type, provider, ts, variant fields, originalItem."""
        wire: dict[str, Any] = {"type": self.type, "provider": self.provider, "ts": self.ts}
        for f in fields(self):
            if f.name in ("provider", "ts", "original_item"):
                continue
            value = getattr(self, f.name)
            if value is not None:
                wire[_camel(f.name)] = value
        if self.original_item is not None:
            wire["originalItem"] = self.original_item
        return wire


@dataclass(kw_only=True)
class InitEvent(CoderEvent):
    type: ClassVar[str] = "init"

    thread_id: str | None = None
    model: str | None = None


@dataclass(kw_only=True)
class MessageEvent(CoderEvent):
    type: ClassVar[str] = "message"

    role: str = "assistant"
    text: str | None = None
    delta: bool = False


@dataclass(kw_only=True)
class ToolUseEvent(CoderEvent):
    type: ClassVar[str] = "tool_use"

    name: str
    call_id: str | None = None
    args: Any = None


@dataclass(kw_only=True)
class ToolResultEvent(CoderEvent):
    type: ClassVar[str] = "tool_result"

    name: str
    call_id: str | None = None
    result: Any = None
    exit_code: int | None = None


@dataclass(kw_only=True)
class ProgressEvent(CoderEvent):
    type: ClassVar[str] = "progress"

    label: str | None = None
    detail: str | None = None


@dataclass(kw_only=True)
class PermissionEvent(CoderEvent):
    type: ClassVar[str] = "permission"

    request: Any = None
    decision: str | None = None  # granted | denied | auto


@dataclass(kw_only=True)
class FileChangeEvent(CoderEvent):
    type: ClassVar[str] = "file_change"

    path: str | None = None
    op: str | None = None  # create | modify | delete | rename
    patch: str | None = None


@dataclass(kw_only=True)
class PlanUpdateEvent(CoderEvent):
    type: ClassVar[str] = "plan_update"

    text: str | None = None


@dataclass(kw_only=True)
class UsageEvent(CoderEvent):
    type: ClassVar[str] = "usage"

    stats: dict[str, Any] | None = None


@dataclass(kw_only=True)
class ErrorEvent(CoderEvent):
    type: ClassVar[str] = "error"
    terminal: ClassVar[bool] = True

    message: str
    code: str | None = None
    exit_code: int | None = None
    diagnostics: str | None = None


@dataclass(kw_only=True)
class CancelledEvent(CoderEvent):
    type: ClassVar[str] = "cancelled"
    terminal: ClassVar[bool] = True

    reason: str | None = None


@dataclass(kw_only=True)
class DoneEvent(CoderEvent):
    type: ClassVar[str] = "done"
    terminal: ClassVar[bool] = True


EVENT_TYPES: dict[str, type[CoderEvent]] = {
    cls.type: cls
    for cls in (
        InitEvent,
        MessageEvent,
        ToolUseEvent,
        ToolResultEvent,
        ProgressEvent,
        PermissionEvent,
        FileChangeEvent,
        PlanUpdateEvent,
        UsageEvent,
        ErrorEvent,
        CancelledEvent,
        DoneEvent,
    )
}


def to_ndjson_line(event: CoderEvent | dict[str, Any]) -> bytes:
    """Encode one event (or a raw frame) as a newline-terminated JSON line."""
    payload = event.to_wire() if isinstance(event, CoderEvent) else event
    return (json.dumps(payload, ensure_ascii=False, default=str) + "\n").encode("utf-8")
