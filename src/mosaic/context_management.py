"""Context window helpers: token estimates and budget truncation."""

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


def estimate_tokens(text: str) -> int:
    """Estimate token count. Rough approximation: ~4 chars per token."""
    return math.ceil(len(text or "") / 4)


def estimate_messages_tokens(messages: List[Dict[str, Any]]) -> int:
    """Estimate total tokens in a list of wire messages."""
    return sum(estimate_tokens(str(m.get("content", ""))) for m in messages)


@dataclass
class TruncationResult:
    """Result of a truncation operation."""
    messages: List[Dict[str, Any]]
    removed_count: int
    notice: Optional[str] = None


def truncate_to_budget(messages: List[Dict[str, Any]], max_tokens: int) -> TruncationResult:
    """Drop the oldest non-system messages until the estimate fits ``max_tokens``.

    System messages are always kept and always counted. Walking from the
    newest message backwards, messages are kept until the next one would
    overflow the budget; the newest message survives even if it alone
    exceeds it.
    """
    system = [m for m in messages if m.get("role") == "system"]
    rest = [m for m in messages if m.get("role") != "system"]

    budget = max_tokens - estimate_messages_tokens(system)
    kept: List[Dict[str, Any]] = []
    used = 0
    for msg in reversed(rest):
        cost = estimate_tokens(str(msg.get("content", "")))
        if kept and used + cost > budget:
            break
        kept.append(msg)
        used += cost
    kept.reverse()

    removed = len(rest) - len(kept)
    notice = None
    if removed:
        notice = f"{removed} older message(s) dropped to fit the {max_tokens}-token context budget"
    return TruncationResult(messages=system + kept, removed_count=removed, notice=notice)


def truncate_output(
    text: str,
    max_lines: int = 200,
    keep_start: int = 50,
    keep_end: int = 50,
) -> str:
    """Truncate long command output, keeping start and end."""
    lines = text.splitlines()

    if len(lines) <= max_lines:
        return text

    start = lines[:keep_start]
    end = lines[-keep_end:]
    removed = len(lines) - keep_start - keep_end

    return "\n".join(start) + f"\n\n... ({removed} lines truncated) ...\n\n" + "\n".join(end)


def truncate_file_content(content: str, max_chars: int = 200_000) -> str:
    """Truncate file content if too large."""
    if len(content) <= max_chars:
        return content
    remaining = len(content) - max_chars
    return content[:max_chars] + f"\n\n... ({remaining:,} characters truncated) ..."
