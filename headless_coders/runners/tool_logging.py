"""Shared helpers for tool event logging.

Backends name their tools differently (`command`, `Bash`, `run_shell_command`),
but transcripts expect consistent tool markers like:
  [tool:bash <preview>]

This module centralizes:
- redaction of sensitive keys
- formatting of tool input previews
- env-based gating of tool-input logging
"""

from __future__ import annotations

import json
import os


_REDACT_KEYS = ("key", "token", "secret", "password", "auth", "cookie")

_SHELL_TOOLS = {"bash", "command", "run_shell_command", "shell"}
_FILE_TOOLS = {"read", "write", "edit", "multiedit", "read_file", "write_file", "replace"}


def should_log_tool_input() -> bool:
    return os.getenv("HEADLESS_CODERS_LOG_TOOL_INPUT", "").lower() in {"1", "true", "yes"}


def tool_input_max_len() -> int:
    return int(os.getenv("HEADLESS_CODERS_LOG_TOOL_INPUT_MAX", "2000"))


def redact_tool_input(obj: object) -> object:
    if isinstance(obj, dict):
        out: dict[object, object] = {}
        for k, v in obj.items():
            ks = str(k).lower()
            if any(rk in ks for rk in _REDACT_KEYS):
                out[k] = "[REDACTED]"
            else:
                out[k] = redact_tool_input(v)
        return out
    if isinstance(obj, list):
        return [redact_tool_input(x) for x in obj]
    return obj


def format_tool_input_preview(tool: str, raw_input: object) -> str | None:
    """Return a short, human-readable tool input preview (redacted if needed)."""

    if raw_input is None:
        return None

    name = tool.lower()

    if name in _SHELL_TOOLS and isinstance(raw_input, dict):
        cmd = raw_input.get("command")
        if isinstance(cmd, list):
            cmd = " ".join(str(part) for part in cmd)
        if isinstance(cmd, str) and cmd.strip():
            return cmd.strip()

    if name in _FILE_TOOLS and isinstance(raw_input, dict):
        fp = raw_input.get("file_path") or raw_input.get("filePath") or raw_input.get("absolute_path")
        if isinstance(fp, str) and fp:
            return fp

    if name in {"grep", "search_file_content"} and isinstance(raw_input, dict):
        pat = raw_input.get("pattern")
        inc = raw_input.get("include") or raw_input.get("glob")
        if isinstance(pat, str) and pat:
            suffix = f" include={inc!r}" if isinstance(inc, str) and inc else ""
            return f"pattern={pat!r}" + suffix

    redacted = redact_tool_input(raw_input)
    return json.dumps(redacted, ensure_ascii=True, sort_keys=True, default=str)


def format_tool_marker(tool: str, raw_input: object) -> str:
    """Return a transcript marker like `[tool:bash ls -la]`."""
    preview = format_tool_input_preview(tool, raw_input) if should_log_tool_input() else None
    if not preview:
        return f"[tool:{tool}]"
    limit = tool_input_max_len()
    if len(preview) > limit:
        preview = preview[:limit] + "..."
    return f"[tool:{tool} {preview}]"
