"""Prompt shaping and structured (JSON) output extraction.

Backends without a native schema-constrained mode get an instruction appended
to the prompt, and the final assistant text is searched for the first JSON
object. A backend that ignores the instruction simply yields no payload.
"""

from __future__ import annotations

import json
import re
from typing import Any, Sequence, Union

Message = dict[str, str]  # {"role": "user" | "assistant" | "system", "content": str}
PromptInput = Union[str, Sequence[Message]]

STRUCTURED_OUTPUT_INSTRUCTION = (
    "You must respond with valid JSON that satisfies the provided schema. "
    "Do not include prose before or after the JSON."
)

_FENCED_RE = re.compile(r"```(?:json)?[ \t]*\n?(.*?)```", re.IGNORECASE | re.DOTALL)


def prompt_to_text(prompt: PromptInput, *, upper_roles: bool = False) -> str:
    """Flatten a prompt into the single string a CLI or SDK accepts."""
    if isinstance(prompt, str):
        return prompt
    lines = []
    for message in prompt:
        role = str(message.get("role", "user"))
        lines.append(f"{role.upper() if upper_roles else role}: {message.get('content', '')}")
    return "\n".join(lines)


def apply_output_schema_prompt(prompt: PromptInput, schema: dict[str, Any] | None) -> PromptInput:
    """Ask for JSON-only output, with the schema serialized inline."""
    if not schema:
        return prompt
    instruction = f"{STRUCTURED_OUTPUT_INSTRUCTION}\nSchema:\n{json.dumps(schema, indent=2)}"
    if isinstance(prompt, str):
        return f"{prompt}\n\n{instruction}"
    return [{"role": "system", "content": instruction}, *prompt]


def _balanced_object_spans(text: str):
    """Yield (start, end) of each top-level balanced {...} span, string-aware."""
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and depth > 0:
            in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield start, index + 1


def _first_object(candidate: str) -> Any | None:
    for start, end in _balanced_object_spans(candidate):
        try:
            return json.loads(candidate[start:end])
        except json.JSONDecodeError:
            continue
    return None


def extract_json_payload(text: str | None) -> Any | None:
    """Return the first well-formed JSON object in text, or None.

    A fenced code block wins over loose braces in the surrounding prose.
    """
    if not text:
        return None
    for match in _FENCED_RE.finditer(text):
        block = match.group(1).strip()
        try:
            return json.loads(block)
        except json.JSONDecodeError:
            found = _first_object(block)
            if found is not None:
                return found
    return _first_object(text)


def parse_native_payload(text: str | None) -> Any | None:
    """Parse the final message of a schema-constrained run."""
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return extract_json_payload(text)
