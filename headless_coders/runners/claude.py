"""Claude coder.

Runs in-process through `claude_agent_sdk.query()`. SDK messages are
converted to the stream-json dict shape the Claude CLI prints, then
normalized, so both sources share one mapping.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Callable

from headless_coders.events import (
    CoderEvent,
    DoneEvent,
    ErrorEvent,
    FileChangeEvent,
    InitEvent,
    MessageEvent,
    PermissionEvent,
    PlanUpdateEvent,
    ProgressEvent,
    ToolResultEvent,
    ToolUseEvent,
    UsageEvent,
)
from headless_coders.lifecycle.threads import RunOptions, Thread
from headless_coders.runners.base import BaseCoder
from headless_coders.runners.supervisor import InProcessRun
from headless_coders.structured import PromptInput

log = logging.getLogger("claude")

PROVIDER = "claude"

FILE_TOOLS = {"Write": "create", "Edit": "modify", "MultiEdit": "modify", "NotebookEdit": "modify"}


# -- SDK messages -> stream-json dicts ----------------------------------------


def _block_to_dict(block: Any) -> dict:
    if isinstance(block, dict):
        return block
    if hasattr(block, "thinking"):
        return {"type": "thinking", "thinking": block.thinking}
    if hasattr(block, "tool_use_id"):
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": getattr(block, "content", None),
            "is_error": getattr(block, "is_error", None),
        }
    if hasattr(block, "name") and hasattr(block, "input"):
        return {"type": "tool_use", "id": getattr(block, "id", None), "name": block.name, "input": block.input}
    if hasattr(block, "text"):
        return {"type": "text", "text": block.text}
    return {"type": type(block).__name__}


def _content(content: Any) -> Any:
    if isinstance(content, list):
        return [_block_to_dict(block) for block in content]
    return content


def message_to_event(message: Any) -> dict:
    """Convert a `claude_agent_sdk` message object to its stream-json dict."""
    if isinstance(message, dict):
        return message

    kind = type(message).__name__
    if kind == "SystemMessage":
        event = dict(getattr(message, "data", None) or {})
        event["type"] = "system"
        event.setdefault("subtype", getattr(message, "subtype", None))
        return event
    if kind == "AssistantMessage":
        return {
            "type": "assistant",
            "message": {"model": getattr(message, "model", None), "content": _content(message.content)},
            "parent_tool_use_id": getattr(message, "parent_tool_use_id", None),
        }
    if kind == "UserMessage":
        return {
            "type": "user",
            "message": {"role": "user", "content": _content(message.content)},
            "parent_tool_use_id": getattr(message, "parent_tool_use_id", None),
        }
    if kind == "StreamEvent":
        return {
            "type": "stream_event",
            "event": getattr(message, "event", None),
            "session_id": getattr(message, "session_id", None),
        }
    if dataclasses.is_dataclass(message) and kind == "ResultMessage":
        event = dataclasses.asdict(message)
        event["type"] = "result"
        return event
    return {"type": kind}


# -- normalization ------------------------------------------------------------


def _progress(event: Any, label: str, detail: str | None = None) -> ProgressEvent:
    return ProgressEvent(provider=PROVIDER, label=label, detail=detail, original_item=event)


def _todo_text(todos: Any) -> str:
    lines = []
    for todo in todos or []:
        if isinstance(todo, dict):
            mark = {"completed": "x", "in_progress": "~"}.get(todo.get("status"), " ")
            lines.append(f"[{mark}] {todo.get('content', '')}")
    return "\n".join(lines)


def _assistant_events(event: dict, tool_names: dict[str, str]) -> list[CoderEvent]:
    message = event.get("message") or {}
    content = message.get("content") or []
    out: list[CoderEvent] = []

    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            text = block.get("text") or ""
            if text.strip():
                out.append(MessageEvent(provider=PROVIDER, role="assistant", text=text, original_item=event))
        elif block_type == "thinking":
            out.append(_progress(event, "thinking", block.get("thinking")))
        elif block_type == "tool_use":
            name = block.get("name") or "tool"
            args = block.get("input")
            call_id = block.get("id")
            if call_id:
                tool_names[call_id] = name
            out.append(ToolUseEvent(provider=PROVIDER, name=name, call_id=call_id, args=args, original_item=event))
            if not isinstance(args, dict):
                continue
            if name == "TodoWrite":
                out.append(PlanUpdateEvent(provider=PROVIDER, text=_todo_text(args.get("todos")), original_item=event))
            elif name in FILE_TOOLS:
                out.append(
                    FileChangeEvent(
                        provider=PROVIDER,
                        path=args.get("file_path") or args.get("notebook_path"),
                        op=FILE_TOOLS[name],
                        original_item=event,
                    )
                )

    return out or [_progress(event, "assistant")]


def _user_events(event: dict, tool_names: dict[str, str]) -> list[CoderEvent]:
    message = event.get("message") or {}
    content = message.get("content")
    out: list[CoderEvent] = []

    if isinstance(content, list):
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            call_id = block.get("tool_use_id")
            out.append(
                ToolResultEvent(
                    provider=PROVIDER,
                    name=tool_names.pop(call_id, "tool") if call_id else "tool",
                    call_id=call_id,
                    result=block.get("content"),
                    exit_code=1 if block.get("is_error") else None,
                    original_item=event,
                )
            )

    return out or [_progress(event, "user")]


def _stream_events(event: dict) -> list[CoderEvent]:
    inner = event.get("event")
    if isinstance(inner, dict) and inner.get("type") == "content_block_delta":
        delta = inner.get("delta") or {}
        if delta.get("type") == "text_delta":
            return [
                MessageEvent(
                    provider=PROVIDER,
                    role="assistant",
                    text=delta.get("text", ""),
                    delta=True,
                    original_item=event,
                )
            ]
    return [_progress(event, "stream_event")]


def _result_events(event: dict) -> list[CoderEvent]:
    subtype = event.get("subtype") or ""
    if event.get("is_error") or str(subtype).startswith("error"):
        errors = event.get("errors")
        message = event.get("result") or (errors[0] if isinstance(errors, list) and errors else None)
        return [ErrorEvent(provider=PROVIDER, message=str(message or subtype or "Claude run failed"), original_item=event)]

    out: list[CoderEvent] = []
    for denial in event.get("permission_denials") or []:
        out.append(PermissionEvent(provider=PROVIDER, request=denial, decision="denied", original_item=event))

    stats = dict(event.get("usage") or {})
    for key in ("total_cost_usd", "num_turns", "duration_ms"):
        if event.get(key) is not None:
            stats[key] = event[key]
    if stats:
        out.append(UsageEvent(provider=PROVIDER, stats=stats, original_item=event))

    out.append(DoneEvent(provider=PROVIDER, original_item=event))
    return out


def normalize_claude_event(event: Any, tool_names: dict[str, str] | None = None) -> list[CoderEvent]:
    """Map one stream-json event to unified events.

    `tool_names` maps tool call ids to tool names so results can be labelled;
    pass the same dict for every event of a run.
    """
    if tool_names is None:
        tool_names = {}
    if not isinstance(event, dict):
        return [_progress(event, "claude.event")]

    event_type = event.get("type")

    if event_type == "system":
        subtype = event.get("subtype")
        if subtype == "init":
            return [
                InitEvent(
                    provider=PROVIDER,
                    thread_id=event.get("session_id"),
                    model=event.get("model"),
                    original_item=event,
                )
            ]
        return [_progress(event, f"system.{subtype}" if subtype else "system")]

    if event_type == "assistant":
        return _assistant_events(event, tool_names)
    if event_type == "user":
        return _user_events(event, tool_names)
    if event_type == "stream_event":
        return _stream_events(event)
    if event_type == "result":
        return _result_events(event)

    return [_progress(event, event_type if isinstance(event_type, str) else "claude.event")]


# -- coder --------------------------------------------------------------------


class ClaudeCoder(BaseCoder):
    """Runs Claude through the Agent SDK, supervised in-process."""

    provider = PROVIDER

    def __init__(
        self,
        defaults: Any = None,
        *,
        query_fn: Callable[..., Any] | None = None,
        options_cls: Callable[..., Any] | None = None,
        **kwargs: Any,
    ):
        super().__init__(defaults, **kwargs)
        self._query_fn = query_fn
        self._options_cls = options_cls

    def _sdk(self) -> tuple[Callable[..., Any], Callable[..., Any]]:
        if self._query_fn is not None:
            return self._query_fn, self._options_cls or dict
        # Imported lazily so the other backends work without the SDK's CLI.
        from claude_agent_sdk import ClaudeAgentOptions, query

        return query, ClaudeAgentOptions

    def build_options(self, thread: Thread, options: RunOptions) -> dict[str, Any]:
        """Map thread and run options onto `ClaudeAgentOptions` keyword arguments."""
        opts = thread.options
        kwargs: dict[str, Any] = {}
        if opts.working_directory:
            kwargs["cwd"] = opts.working_directory
        if opts.model:
            kwargs["model"] = opts.model
        if opts.allowed_tools:
            kwargs["allowed_tools"] = list(opts.allowed_tools)
        if opts.mcp_servers:
            kwargs["mcp_servers"] = opts.mcp_servers
        if opts.continue_session:
            kwargs["continue_conversation"] = True
        if thread.resuming and thread.id:
            kwargs["resume"] = thread.id
        if opts.fork_session:
            kwargs["fork_session"] = True
        permission_mode = opts.permission_mode or ("bypassPermissions" if opts.yolo else None)
        if permission_mode:
            kwargs["permission_mode"] = permission_mode
        if opts.permission_prompt_tool_name:
            kwargs["permission_prompt_tool_name"] = opts.permission_prompt_tool_name
        if opts.executable_path:
            kwargs["cli_path"] = opts.executable_path
        if options.stream_partial_messages:
            kwargs["include_partial_messages"] = True
        if options.extra_env:
            kwargs["env"] = dict(options.extra_env)
        return kwargs

    def _create_run(self, thread: Thread, prompt: PromptInput, options: RunOptions) -> InProcessRun:
        text = self._prepare_prompt(prompt, options)
        option_kwargs = self.build_options(thread, options)

        def factory():
            query, options_cls = self._sdk()
            log.debug(f"claude query: {sorted(option_kwargs)}")
            return query(prompt=text, options=options_cls(**option_kwargs))

        return InProcessRun(factory, owner=thread, cancel_token=options.signal, config=self.config)

    def parse_event(self, event: Any) -> list[CoderEvent]:
        return normalize_claude_event(message_to_event(event))

    def event_parser(self) -> Callable[[Any], list[CoderEvent]]:
        # Tool call ids are only meaningful within one run.
        tool_names: dict[str, str] = {}

        def parse(event: Any) -> list[CoderEvent]:
            return normalize_claude_event(message_to_event(event), tool_names)

        return parse

    def extract_session_id(self, event: Any) -> str | None:
        session_id = message_to_event(event).get("session_id")
        return session_id if isinstance(session_id, str) and session_id else None
