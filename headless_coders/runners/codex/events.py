"""Codex event normalization.

Maps `codex exec --json` events (thread.started, turn.*, item.*, error) into
unified events. Item payloads are keyed by `item.type`.
"""

from __future__ import annotations

from typing import Any

from headless_coders.events import (
    CoderEvent,
    DoneEvent,
    ErrorEvent,
    FileChangeEvent,
    InitEvent,
    MessageEvent,
    PlanUpdateEvent,
    ProgressEvent,
    ToolResultEvent,
    ToolUseEvent,
    UsageEvent,
)

PROVIDER = "codex"

_FILE_OPS = {"add": "create", "update": "modify", "delete": "delete", "rename": "rename"}


def extract_session_id(event: Any) -> str | None:
    if not isinstance(event, dict):
        return None
    for key in ("thread_id", "threadId", "session_id"):
        value = event.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _progress(event: dict, label: str | None = None, detail: str | None = None) -> ProgressEvent:
    return ProgressEvent(
        provider=PROVIDER,
        label=label or (event.get("type") if isinstance(event.get("type"), str) else "codex.event"),
        detail=detail,
        original_item=event,
    )


def _usage_stats(usage: dict) -> dict[str, Any]:
    stats = dict(usage)
    stats.setdefault("input_tokens", 0)
    stats.setdefault("output_tokens", 0)
    return stats


def _handle_agent_message(phase: str, item: dict, event: dict) -> list[CoderEvent]:
    text = item.get("text")
    if not isinstance(text, str):
        return [_progress(event)]
    return [
        MessageEvent(
            provider=PROVIDER,
            role="assistant",
            text=text,
            delta=phase != "completed",
            original_item=event,
        )
    ]


def _handle_reasoning(phase: str, item: dict, event: dict) -> list[CoderEvent]:
    text = item.get("text")
    return [_progress(event, label="reasoning", detail=text if isinstance(text, str) else None)]


def _handle_command(phase: str, item: dict, event: dict) -> list[CoderEvent]:
    call_id = item.get("id")
    if phase == "started":
        return [
            ToolUseEvent(
                provider=PROVIDER,
                name="command",
                call_id=call_id,
                args={"command": item.get("command")},
                original_item=event,
            )
        ]
    if phase == "completed":
        exit_code = item.get("exit_code")
        return [
            ToolResultEvent(
                provider=PROVIDER,
                name="command",
                call_id=call_id,
                result=item.get("aggregated_output"),
                exit_code=exit_code if isinstance(exit_code, int) else None,
                original_item=event,
            )
        ]
    return [_progress(event, label="command", detail=item.get("aggregated_output"))]


def _handle_file_change(phase: str, item: dict, event: dict) -> list[CoderEvent]:
    changes = item.get("changes")
    if phase != "completed" or not isinstance(changes, list) or not changes:
        return [_progress(event, label="file_change")]
    out: list[CoderEvent] = []
    for change in changes:
        if not isinstance(change, dict):
            continue
        out.append(
            FileChangeEvent(
                provider=PROVIDER,
                path=change.get("path"),
                op=_FILE_OPS.get(str(change.get("kind")), "modify"),
                original_item=event,
            )
        )
    return out or [_progress(event, label="file_change")]


def _handle_mcp_tool_call(phase: str, item: dict, event: dict) -> list[CoderEvent]:
    server = item.get("server")
    tool = item.get("tool") or "tool"
    name = f"{server}.{tool}" if server else str(tool)
    if phase == "started":
        return [
            ToolUseEvent(
                provider=PROVIDER,
                name=name,
                call_id=item.get("id"),
                args=item.get("arguments"),
                original_item=event,
            )
        ]
    if phase == "completed":
        failed = item.get("status") == "failed" or item.get("error") is not None
        return [
            ToolResultEvent(
                provider=PROVIDER,
                name=name,
                call_id=item.get("id"),
                result=item.get("error") if failed else item.get("result"),
                exit_code=1 if failed else None,
                original_item=event,
            )
        ]
    return [_progress(event, label=name)]


def _handle_web_search(phase: str, item: dict, event: dict) -> list[CoderEvent]:
    if phase == "started":
        return [
            ToolUseEvent(
                provider=PROVIDER,
                name="web_search",
                call_id=item.get("id"),
                args={"query": item.get("query")},
                original_item=event,
            )
        ]
    if phase == "completed":
        return [
            ToolResultEvent(
                provider=PROVIDER,
                name="web_search",
                call_id=item.get("id"),
                result=item.get("query"),
                original_item=event,
            )
        ]
    return [_progress(event, label="web_search")]


def _handle_todo_list(phase: str, item: dict, event: dict) -> list[CoderEvent]:
    entries = item.get("items")
    if not isinstance(entries, list):
        return [_progress(event, label="todo_list")]
    lines = []
    for entry in entries:
        if isinstance(entry, dict):
            mark = "x" if entry.get("completed") else " "
            lines.append(f"[{mark}] {entry.get('text', '')}")
    return [PlanUpdateEvent(provider=PROVIDER, text="\n".join(lines), original_item=event)]


def _handle_item_error(phase: str, item: dict, event: dict) -> list[CoderEvent]:
    # Item-level errors are non-fatal warnings; the turn keeps going.
    return [_progress(event, label="warning", detail=item.get("message"))]


_ITEM_HANDLERS = {
    "agent_message": _handle_agent_message,
    "reasoning": _handle_reasoning,
    "command_execution": _handle_command,
    "file_change": _handle_file_change,
    "mcp_tool_call": _handle_mcp_tool_call,
    "web_search": _handle_web_search,
    "todo_list": _handle_todo_list,
    "error": _handle_item_error,
}


def _handle_item(event: dict) -> list[CoderEvent]:
    phase = event["type"].split(".", 1)[1]
    item = event.get("item")
    if not isinstance(item, dict):
        return [_progress(event)]
    handler = _ITEM_HANDLERS.get(item.get("type"))
    if handler is None:
        return [_progress(event, label=f"item.{item.get('type')}")]
    return handler(phase, item, event)


def _error_message(event: dict, default: str) -> str:
    error = event.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if message:
            return str(message)
    message = event.get("message") or error
    return str(message) if message else default


def normalize_codex_event(event: Any) -> list[CoderEvent]:
    """Map one Codex event to unified events."""
    if not isinstance(event, dict):
        return [ProgressEvent(provider=PROVIDER, label="codex.event", original_item=event)]

    event_type = event.get("type")

    if event_type == "thread.started":
        return [InitEvent(provider=PROVIDER, thread_id=event.get("thread_id"), original_item=event)]

    if event_type in ("item.started", "item.updated", "item.completed"):
        return _handle_item(event)

    if event_type == "turn.completed":
        out: list[CoderEvent] = []
        usage = event.get("usage")
        if isinstance(usage, dict):
            out.append(UsageEvent(provider=PROVIDER, stats=_usage_stats(usage), original_item=event))
        out.append(DoneEvent(provider=PROVIDER, original_item=event))
        return out

    if event_type == "turn.failed":
        return [ErrorEvent(provider=PROVIDER, message=_error_message(event, "Codex turn failed"), original_item=event)]

    if event_type == "error":
        return [ErrorEvent(provider=PROVIDER, message=_error_message(event, "Codex error"), original_item=event)]

    return [_progress(event)]
