"""Codex worker protocol: messages exchanged over the worker's stdin/stdout."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

# Parent -> worker
MSG_STREAM = "stream"
MSG_ABORT = "abort"

# Worker -> parent
MSG_STREAM_EVENT = "streamEvent"
MSG_STREAM_DONE = "streamDone"
MSG_CANCELLED = "cancelled"
MSG_ERROR = "error"


@dataclass
class WorkerRequest:
    """Everything the worker needs to run one Codex turn."""

    input: str
    thread_id: str | None = None
    options: dict[str, Any] = field(default_factory=dict)
    output_schema: dict[str, Any] | None = None
    executable_path: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "input": self.input,
            "outputSchema": self.output_schema,
            "thread": {"id": self.thread_id, "options": self.options},
            "settings": {"codexExecutablePath": self.executable_path},
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "WorkerRequest":
        thread = payload.get("thread") or {}
        settings = payload.get("settings") or {}
        return cls(
            input=str(payload.get("input", "")),
            thread_id=thread.get("id"),
            options=dict(thread.get("options") or {}),
            output_schema=payload.get("outputSchema"),
            executable_path=settings.get("codexExecutablePath"),
        )


def encode_message(message: dict[str, Any]) -> bytes:
    return (json.dumps(message, ensure_ascii=False, default=str) + "\n").encode("utf-8")
