"""Recover tool directives from free-form model replies.

Models answer with prose, with a single JSON object such as

    {"tool": "read_file", "parameters": {"path": "setup.py"}}

with several such objects, or with a JSON array of them. The parser
tries, in order:

1. the span from the first '[' to the last ']', if it mentions "tool"
   and parses as a JSON list: one ToolCall per element carrying both
   "tool" and "parameters", and nothing else is looked at;
2. every balanced {...} span that mentions "tool", each parsed on its
   own, failures skipped;
3. otherwise no tool calls, i.e. the reply is a final answer.

Nothing in here raises on bad input.
"""

import json
from typing import Any, Iterator, List, Optional, Tuple

from .logger import get_logger, truncate
from .models import ToolCall

_log = get_logger("tool_call_parser")

TOOL_TOKEN = '"tool"'


def _call_from(obj: Any, require_parameters: bool) -> Optional[ToolCall]:
    if not isinstance(obj, dict):
        return None
    name = obj.get("tool")
    if not isinstance(name, str) or not name:
        return None
    params = obj.get("parameters")
    if params is None:
        if require_parameters:
            return None
        params = {}
    if not isinstance(params, dict):
        return None
    return ToolCall(tool_name=name, parameters=params)


def _array_calls(text: str) -> Optional[List[ToolCall]]:
    """Calls from the array form, or None if the reply is not in array form."""
    start = text.find("[")
    end = text.rfind("]")
    if start == -1 or end <= start:
        return None
    span = text[start:end + 1]
    if TOOL_TOKEN not in span:
        return None
    try:
        parsed = json.loads(span)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, list):
        return None
    calls = []
    for item in parsed:
        call = _call_from(item, require_parameters=True)
        if call is not None:
            calls.append(call)
    return calls


def iter_object_spans(text: str, start: int = 0) -> Iterator[Tuple[int, int]]:
    """Yield (start, end) of each balanced top-level {...} span from ``start``.

    Braces inside JSON strings are ignored. Quotes are only tracked
    inside a span, so stray quotes in surrounding prose are harmless.
    """
    depth = 0
    begin = -1
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if depth and in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"' and depth:
            in_string = True
        elif ch == "{":
            if depth == 0:
                begin = i
            depth += 1
        elif ch == "}" and depth:
            depth -= 1
            if depth == 0:
                yield begin, i + 1


def _object_calls(text: str) -> List[ToolCall]:
    calls: List[ToolCall] = []
    pos = 0
    while pos < len(text):
        span = next(iter_object_spans(text, pos), None)
        if span is None:
            break
        begin, end = span
        chunk = text[begin:end]
        call = None
        if TOOL_TOKEN in chunk:
            try:
                call = _call_from(json.loads(chunk), require_parameters=False)
            except json.JSONDecodeError:
                _log.debug("Skipping unparseable tool span: %s", truncate(chunk, 120))
        if call is not None:
            calls.append(call)
            pos = end
        else:
            # Look for directives nested inside a span that was not one itself
            pos = begin + 1
    return calls


def extract_tool_calls(text: str) -> List[ToolCall]:
    """Return the tool calls in ``text`` in source order (possibly none)."""
    if not text or TOOL_TOKEN not in text:
        return []
    array_calls = _array_calls(text)
    if array_calls is not None:
        return array_calls
    return _object_calls(text)
